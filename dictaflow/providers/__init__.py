"""
Recognition providers with lifecycle management.

Every provider shares one recording lifecycle: the injected capture
backend feeds the session's audio buffer, the streaming engine produces
partial results while recording (when the provider and the settings
allow it), and stop runs one final transcription over everything
recorded. Subclasses only say how audio becomes text.
"""

import threading
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

from ..audio import MIN_AUDIO_BYTES, AudioBuffer, CaptureBackend
from ..errors import DictationError, TranscriptionError, UnavailableError
from ..events import Signal
from ..metrics import log_session_complete
from ..session import RecognitionSession
from ..state import StateMachine
from ..streaming import StreamingEngine, TranscribeFn
from ..types import (
    ConfigSnapshot, ProviderDescriptor, RecognitionState, SpeechProvider,
    TranscriptionResponse,
)

if TYPE_CHECKING:
    from ..metrics import MetricsWriter
    from ..server import InferenceServerSupervisor


CANCEL_POLL_INTERVAL = 0.1  # seconds


class RecognitionProvider(ABC):
    """
    Base class for recognition providers.

    Subclasses must implement:
    - is_available: Whether the provider can run right now
    - _build_transcriber(): Turn a config snapshot into a transcribe function

    And may override:
    - _load(): Acquire heavy resources on initialize (model, server, client)
    - _unload(): Release them on shutdown
    - _open_session() / _audio_sink() / _finalize() / _close_session():
      for backends that stream audio to the service themselves

    Signals, each emitted with the provider key first:
        partial(key, text)
        completed(key, text)
        error(key, message, exception)
        state_changed(key, old_state, new_state)
        language_changed(key, language)
    """

    key: SpeechProvider
    supports_streaming: bool = False
    supports_word_timestamps: bool = False
    # Backend produces partials itself, the polling engine is not used
    native_streaming: bool = False

    def __init__(
        self,
        capture: CaptureBackend,
        metrics: Optional["MetricsWriter"] = None,
    ):
        self.capture = capture
        self.metrics = metrics

        self.partial = Signal("partial")
        self.completed = Signal("completed")
        self.error = Signal("error")
        self.state_changed = Signal("state_changed")
        self.language_changed = Signal("language_changed")

        self._machine = StateMachine(RecognitionState.IDLE, RecognitionState.ERROR)
        self._machine.state_changed.connect(
            lambda old, new: self.state_changed.emit(self.key, old, new)
        )

        self._config = ConfigSnapshot()
        self._language = self._config.recognition_language
        self._initialized = False

        # Per-session state, only touched between guarded transitions
        self._session: Optional[RecognitionSession] = None
        self._session_config: Optional[ConfigSnapshot] = None
        self._transcriber: Optional[TranscribeFn] = None
        self._engine: Optional[StreamingEngine] = None

    @property
    def name(self) -> str:
        return self.key.value

    @property
    @abstractmethod
    def is_available(self) -> bool:
        """True if credentials, executables or libraries are present."""

    @abstractmethod
    def _build_transcriber(self, config: ConfigSnapshot) -> TranscribeFn:
        """Return fn(audio_pcm, language, response_format) -> TranscriptionResponse."""

    def _load(self, config: ConfigSnapshot) -> None:
        pass

    def _unload(self) -> None:
        pass

    # ---- Public state ----

    @property
    def state(self) -> RecognitionState:
        return self._machine.state

    @property
    def language(self) -> str:
        return self._language

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def session(self) -> Optional[RecognitionSession]:
        return self._session

    @property
    def config(self) -> ConfigSnapshot:
        return self._config

    def descriptor(self) -> ProviderDescriptor:
        return ProviderDescriptor(
            provider_name=self.name,
            is_available=self.is_available,
            supports_streaming=self.supports_streaming,
        )

    # ---- Lifecycle ----

    def configure(self, config: ConfigSnapshot) -> None:
        """Apply credentials and parameters. A running session keeps its own."""
        self._config = config

    def initialize(self, language: str) -> None:
        """
        Prepare the provider for recording in `language`.

        Raises:
            UnavailableError: provider can't run with the current settings
        """
        if not self.is_available:
            raise UnavailableError(f"{self.name} is not available")

        self._load(self._config)
        self._initialized = True

        changed = language != self._language
        self._language = language
        print(f"[{self.name}] Initialized ({language})")
        if changed:
            self.language_changed.emit(self.key, language)

    def transcribe_audio(
        self,
        audio: bytes,
        language: str,
        response_format: str = "json",
    ) -> TranscriptionResponse:
        """One-shot transcription with the current settings."""
        return self._build_transcriber(self._config)(audio, language, response_format)

    def start_recognition(self, cancel: Optional[threading.Event] = None) -> bool:
        """
        Start recording.

        Args:
            cancel: Optional event; setting it stops the recording the same
                    way stop_recognition() does

        Returns:
            False if the provider wasn't idle (nothing happened)
        """
        if not self._machine.transition(RecognitionState.IDLE, RecognitionState.INITIALIZING):
            print(f"[{self.name}] Start ignored, state is {self.state.value}")
            return False

        config = self._config
        try:
            if not self._initialized:
                self.initialize(self._language)

            session = RecognitionSession(
                language=self._language,
                buffer=AudioBuffer(config.sample_rate),
            )
            self._session = session
            self._session_config = config
            self._transcriber = self._build_transcriber(config)

            self._open_session(session, config)
            self.capture.start(self._audio_sink(session))

            if self.supports_streaming and not self.native_streaming and config.streaming_enabled:
                self._engine = StreamingEngine(
                    session,
                    self._transcriber,
                    lambda text: self._emit_partial(session, text),
                    interval=config.streaming_interval_ms / 1000.0,
                    silence_window_seconds=config.silence_window_seconds,
                    silence_threshold=config.silence_threshold,
                    word_timestamps=config.word_timestamps and self.supports_word_timestamps,
                    metrics=self.metrics,
                    tag=self.name,
                )
                self._engine.start()

            if not self._machine.transition(RecognitionState.INITIALIZING, RecognitionState.LISTENING):
                raise DictationError("state changed while starting")

        except Exception as e:
            self._halt_session()
            self._close_session()
            self._session = None
            self._report_error(f"Failed to start recognition: {e}", e)
            raise

        print(f"[{self.name}] Listening")
        if self.metrics:
            self.metrics.log(
                "session_start",
                session_id=str(session.id),
                provider=self.name,
                language=session.language,
                streaming=self._engine is not None,
            )

        if cancel is not None:
            self._watch_cancel(cancel, session)
        return True

    def stop_recognition(self) -> str:
        """
        Stop recording and return the final text.

        Returns:
            Final transcript, "" if the provider wasn't listening
        """
        if not self._machine.transition(RecognitionState.LISTENING, RecognitionState.PROCESSING):
            return ""

        session = self._session
        text = ""
        try:
            self._halt_session()
            text = self._finalize(session)
        except Exception as e:
            text = session.last_partial if session else ""
            self._report_error(f"Failed to finish recognition: {e}", e)
            return text
        finally:
            self._close_session()
            self._session = None
            self._transcriber = None

        print(f"[{self.name}] Final: {text!r}")
        if self.metrics:
            log_session_complete(
                self.metrics,
                session_id=str(session.id),
                provider=self.name,
                audio_seconds=session.buffer.duration_seconds(),
                partial_count=session.partial_count,
                final_text=text,
            )

        self.completed.emit(self.key, text)
        self._machine.transition(RecognitionState.PROCESSING, RecognitionState.IDLE)
        return text

    def shutdown(self) -> None:
        """Stop any recording and release resources."""
        if self.state == RecognitionState.LISTENING:
            self.stop_recognition()
        self._unload()
        self._initialized = False
        self._machine.reset()
        print(f"[{self.name}] Shutdown")

    # ---- Internals ----

    def _open_session(self, session: RecognitionSession, config: ConfigSnapshot) -> None:
        pass

    def _close_session(self) -> None:
        pass

    def _audio_sink(self, session: RecognitionSession) -> Callable[[bytes], None]:
        def sink(data: bytes) -> None:
            # Blocks delivered after the stop request are not part of the session
            if not session.stopped.is_set():
                session.buffer.append(data)

        return sink

    def _finalize(self, session: RecognitionSession) -> str:
        # Capture is stopped, so this sees every appended block
        audio = session.buffer.snapshot()
        if len(audio) <= MIN_AUDIO_BYTES:
            print(f"[{self.name}] Audio too short ({len(audio)} bytes), skipping final pass")
            return session.last_partial

        config = self._session_config or self._config
        word_timestamps = config.word_timestamps and self.supports_word_timestamps
        response_format = "verbose_json" if word_timestamps else "json"

        response = self._transcriber(audio, session.language, response_format)
        if word_timestamps and response.words:
            session.merger.merge(response.words, window_start_time=0.0)

        return response.text.strip() or session.last_partial

    def _halt_session(self) -> None:
        session = self._session
        if session is not None:
            session.stopped.set()

        # Microphone first, the engine may wait on an in-flight request
        try:
            self.capture.stop()
        except Exception as e:
            print(f"[{self.name}] Error stopping capture: {e}")

        engine = self._engine
        self._engine = None
        if engine is not None:
            engine.stop()

    def _emit_partial(self, session: RecognitionSession, text: str) -> None:
        if session is not self._session:
            return
        if self.metrics:
            self.metrics.log(
                "partial",
                session_id=str(session.id),
                provider=self.name,
                partial_num=session.partial_count,
                text=text,
            )
        self.partial.emit(self.key, text)

    def _report_error(self, message: str, exc: Exception) -> None:
        print(f"[{self.name}] {message}")
        if self.metrics:
            self.metrics.log(
                "session_error",
                provider=self.name,
                error=str(exc),
                error_type=type(exc).__name__,
            )
        self.error.emit(self.key, message, exc)
        self._machine.fail()

    def _report_service_error(self, message: str) -> None:
        """An error pushed by a streaming service. The session keeps running."""
        print(f"[{self.name}] {message}")
        if self.metrics:
            self.metrics.log("service_error", provider=self.name, error=message)
        self.error.emit(self.key, message, TranscriptionError(message))

    def _watch_cancel(self, cancel: threading.Event, session: RecognitionSession) -> None:
        def watch() -> None:
            while not session.stopped.is_set():
                if cancel.wait(CANCEL_POLL_INTERVAL):
                    if session is self._session and not session.stopped.is_set():
                        print(f"[{self.name}] Cancellation requested, stopping")
                        self.stop_recognition()
                    return

        threading.Thread(target=watch, name=f"{self.name}-cancel", daemon=True).start()


class ProviderRegistry:
    """
    Enum-keyed table of recognition providers, built once at startup.

    Usage:
        registry = ProviderRegistry()
        registry.register(OpenAIProvider(capture))
        provider = registry.get(SpeechProvider.OPENAI)
    """

    def __init__(self):
        self.providers: Dict[SpeechProvider, RecognitionProvider] = {}
        self._lock = threading.Lock()

    def register(self, provider: RecognitionProvider) -> None:
        with self._lock:
            self.providers[provider.key] = provider

    def get(self, key: SpeechProvider) -> Optional[RecognitionProvider]:
        with self._lock:
            return self.providers.get(key)

    def keys(self) -> List[SpeechProvider]:
        with self._lock:
            return list(self.providers.keys())

    def values(self) -> List[RecognitionProvider]:
        with self._lock:
            return list(self.providers.values())

    def __contains__(self, key: SpeechProvider) -> bool:
        with self._lock:
            return key in self.providers

    def shutdown(self) -> None:
        """Shutdown all providers."""
        for provider in self.values():
            try:
                provider.shutdown()
            except Exception as e:
                print(f"Error shutting down {provider.name}: {e}")


def build_registry(
    capture: CaptureBackend,
    supervisor: "InferenceServerSupervisor",
    metrics: Optional["MetricsWriter"] = None,
    factories: Optional[Dict[SpeechProvider, Callable[[], RecognitionProvider]]] = None,
) -> ProviderRegistry:
    """Create one instance of every known provider."""
    from .azure import AzureSpeechProvider
    from .groq import GroqProvider
    from .openai import OpenAIProvider
    from .openai_realtime import OpenAIRealtimeProvider
    from .parakeet import ParakeetProvider
    from .whisper_server import WhisperServerProvider

    if factories is None:
        factories = {
            SpeechProvider.WHISPER_SERVER: lambda: WhisperServerProvider(capture, supervisor, metrics),
            SpeechProvider.OPENAI: lambda: OpenAIProvider(capture, metrics),
            SpeechProvider.GROQ: lambda: GroqProvider(capture, metrics),
            SpeechProvider.PARAKEET: lambda: ParakeetProvider(capture, metrics),
            SpeechProvider.OPENAI_REALTIME: lambda: OpenAIRealtimeProvider(capture, metrics),
            SpeechProvider.AZURE: lambda: AzureSpeechProvider(capture, metrics),
        }

    registry = ProviderRegistry()
    for key in SpeechProvider:
        factory = factories.get(key)
        if factory is not None:
            registry.register(factory())
    return registry
