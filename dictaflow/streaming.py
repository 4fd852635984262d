"""
Streaming engine: progressive transcription while recording.

On a fixed interval the engine copies the whole buffer recorded so far
and re-transcribes it from the beginning, emitting a partial result
whenever the text changes. Ticks are single-flight: a tick that fires
while the previous request is still outstanding is dropped, never
queued.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, Callable, Optional

from .audio import MIN_AUDIO_BYTES, recent_window, rms
from .metrics import log_stream_request
from .session import RecognitionSession
from .types import TranscriptionResponse

if TYPE_CHECKING:
    from .metrics import MetricsWriter


# Constants
DEFAULT_INTERVAL = 1.5          # seconds between ticks
DEFAULT_SILENCE_WINDOW = 2.0    # seconds of most recent audio checked for silence
DEFAULT_SILENCE_THRESHOLD = 500.0  # int16 RMS


# (audio_pcm, language, response_format) -> response
TranscribeFn = Callable[[bytes, str, str], TranscriptionResponse]


class StreamingEngine:
    """
    Drives periodic re-transcription of one session's buffer.

    A timer thread fires every `interval` seconds and hands the tick to a
    single worker. tick() can also be called directly; it applies the same
    single-flight rule, so concurrent callers never produce two requests
    in flight.

    Usage:
        engine = StreamingEngine(session, provider.transcribe_audio, on_partial)
        engine.start()
        ...
        engine.stop()
    """

    def __init__(
        self,
        session: RecognitionSession,
        transcribe: TranscribeFn,
        on_partial: Callable[[str], None],
        interval: float = DEFAULT_INTERVAL,
        silence_window_seconds: float = DEFAULT_SILENCE_WINDOW,
        silence_threshold: float = DEFAULT_SILENCE_THRESHOLD,
        word_timestamps: bool = False,
        metrics: Optional["MetricsWriter"] = None,
        tag: str = "Stream",
    ):
        self.session = session
        self.transcribe = transcribe
        self.on_partial = on_partial
        self.interval = interval
        self.silence_window_seconds = silence_window_seconds
        self.silence_threshold = silence_threshold
        self.word_timestamps = word_timestamps
        self.metrics = metrics
        self.tag = tag

        self.request_count = 0
        self.dropped_ticks = 0

        self._in_flight = False
        self._flag_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._timer_thread: Optional[threading.Thread] = None
        self._executor: Optional[ThreadPoolExecutor] = None

    @property
    def in_flight(self) -> bool:
        with self._flag_lock:
            return self._in_flight

    def start(self) -> None:
        if self._timer_thread is not None:
            return

        self._stop_event.clear()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="stream-tick")
        self._timer_thread = threading.Thread(
            target=self._timer_loop, name="stream-timer", daemon=True
        )
        self._timer_thread.start()
        print(f"[{self.tag}] Streaming every {self.interval:.1f}s")

    def stop(self) -> None:
        """Stop the timer and wait for an outstanding tick to finish."""
        self._stop_event.set()

        thread = self._timer_thread
        self._timer_thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join()

        executor = self._executor
        self._executor = None
        if executor is not None:
            executor.shutdown(wait=True)

    def tick(self) -> bool:
        """
        Run one streaming cycle now.

        Returns:
            True if a transcription request was sent
        """
        if not self._claim():
            return False
        try:
            return self._run_cycle()
        finally:
            self._release()

    # ---- Internals ----

    def _timer_loop(self) -> None:
        while not self._stop_event.wait(self.interval):
            if self.session.stopped.is_set():
                break
            self._dispatch()

    def _dispatch(self) -> None:
        if not self._claim():
            # Previous request still outstanding
            return

        executor = self._executor
        if executor is None:
            self._release()
            return

        try:
            executor.submit(self._run_claimed)
        except RuntimeError:
            # Executor shut down between the check and the submit
            self._release()

    def _run_claimed(self) -> None:
        try:
            self._run_cycle()
        finally:
            self._release()

    def _claim(self) -> bool:
        with self._flag_lock:
            if self._in_flight:
                self.dropped_ticks += 1
                return False
            self._in_flight = True
            return True

    def _release(self) -> None:
        with self._flag_lock:
            self._in_flight = False

    def _run_cycle(self) -> bool:
        try:
            return self._transcribe_buffer()
        except Exception as e:
            # A bad cycle never ends the session
            print(f"[{self.tag}] Streaming tick failed: {e}")
            return False

    def _transcribe_buffer(self) -> bool:
        if self._stop_event.is_set() or self.session.stopped.is_set():
            return False

        buffer = self.session.buffer
        audio = buffer.snapshot()
        if len(audio) < MIN_AUDIO_BYTES:
            return False

        # Nothing recorded since the last request
        if len(audio) <= buffer.cursor:
            return False

        recent = recent_window(audio, buffer.sample_rate, self.silence_window_seconds)
        level = rms(recent)
        if level < self.silence_threshold:
            return False

        response_format = "verbose_json" if self.word_timestamps else "json"
        start = time.time()
        response = self.transcribe(audio, self.session.language, response_format)
        latency_ms = int((time.time() - start) * 1000)

        buffer.advance_cursor(len(audio))
        self.request_count += 1

        if self.metrics:
            log_stream_request(
                self.metrics,
                session_id=str(self.session.id),
                provider=self.tag,
                audio_bytes=len(audio),
                rms=level,
                latency_ms=latency_ms,
            )

        text = response.text
        if self.word_timestamps and response.words:
            # Whole buffer every time, so word times are already absolute
            self.session.merger.merge(response.words, window_start_time=0.0)
            text = self.session.merger.text() or text

        if self.session.stopped.is_set():
            return True

        partial = self.session.update_partial(text)
        if partial is not None:
            self.on_partial(partial)
        return True
