"""
OpenAI Realtime provider: audio is streamed over a websocket while
recording and the service sends a transcript per utterance.
"""

from typing import Callable, Optional

from . import RecognitionProvider
from .openai import OPENAI_TRANSCRIPTIONS_URL
from ..client import TranscriptionClient, normalize_language
from ..errors import TransportError
from ..realtime import RealtimeTranscriber
from ..session import RecognitionSession
from ..streaming import TranscribeFn
from ..types import ConfigSnapshot, SpeechProvider


class OpenAIRealtimeProvider(RecognitionProvider):
    """
    Streaming transcription with server-side voice activity detection.

    Partials are the transcripts received so far; stop commits the tail
    and the final text is everything the session transcribed. One-shot
    requests (transcribe_audio) use the REST endpoint with the same key.
    """

    key = SpeechProvider.OPENAI_REALTIME
    supports_streaming = True
    native_streaming = True

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._realtime: Optional[RealtimeTranscriber] = None

    @property
    def is_available(self) -> bool:
        return bool(self._config.openai_api_key)

    def _build_transcriber(self, config: ConfigSnapshot) -> TranscribeFn:
        client = TranscriptionClient(
            OPENAI_TRANSCRIPTIONS_URL,
            api_key=config.openai_api_key,
            model=config.openai_realtime_transcription_model,
            sample_rate=config.sample_rate,
        )
        return client.transcribe

    def _open_session(self, session: RecognitionSession, config: ConfigSnapshot) -> None:
        realtime = RealtimeTranscriber(
            config.openai_api_key,
            model=config.openai_realtime_model,
            transcription_model=config.openai_realtime_transcription_model,
            on_transcript=lambda text: self._on_transcript(session, text),
            on_error=self._report_service_error,
            tag=self.name,
        )
        realtime.open(normalize_language(session.language))
        self._realtime = realtime

    def _audio_sink(self, session: RecognitionSession) -> Callable[[bytes], None]:
        realtime = self._realtime
        sample_rate = session.buffer.sample_rate

        def sink(data: bytes) -> None:
            if session.stopped.is_set():
                return
            session.buffer.append(data)
            try:
                realtime.send_audio(data, sample_rate)
            except TransportError as e:
                print(f"[{self.name}] Audio not sent: {e}")

        return sink

    def _finalize(self, session: RecognitionSession) -> str:
        text = self._realtime.finish()
        return text or session.last_partial

    def _close_session(self) -> None:
        realtime = self._realtime
        self._realtime = None
        if realtime is not None:
            realtime.close()

    def _on_transcript(self, session: RecognitionSession, text: str) -> None:
        partial = session.update_partial(text)
        if partial:
            self._emit_partial(session, partial)
