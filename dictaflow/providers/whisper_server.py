"""
Local whisper.cpp server provider.

Audio goes to a persistent whisper-server process on 127.0.0.1, started
and reused by the InferenceServerSupervisor. Supports streaming and
word timestamps.
"""

from typing import TYPE_CHECKING, Optional

from . import RecognitionProvider
from ..audio import CaptureBackend
from ..client import TranscriptionClient
from ..streaming import TranscribeFn
from ..types import ConfigSnapshot, SpeechProvider, TranscriptionResponse

if TYPE_CHECKING:
    from ..metrics import MetricsWriter
    from ..server import InferenceServerSupervisor


class WhisperServerProvider(RecognitionProvider):
    """
    Transcription through the local inference server.

    The supervisor is owned by the application root and shared; this
    provider never stops the server itself.
    """

    key = SpeechProvider.WHISPER_SERVER
    supports_streaming = True
    supports_word_timestamps = True

    def __init__(
        self,
        capture: CaptureBackend,
        supervisor: "InferenceServerSupervisor",
        metrics: Optional["MetricsWriter"] = None,
    ):
        super().__init__(capture, metrics)
        self.supervisor = supervisor

    @property
    def is_available(self) -> bool:
        return self.supervisor.is_available

    def _load(self, config: ConfigSnapshot) -> None:
        # Start (or adopt) the server up front so the first recording is fast
        self.supervisor.ensure_running(config.whisper_model, config.whisper_server_port)

    def _build_transcriber(self, config: ConfigSnapshot) -> TranscribeFn:
        model = config.whisper_model
        port = config.whisper_server_port
        client = TranscriptionClient(
            f"{self.supervisor.base_url(port)}/inference",
            supervisor=self.supervisor,
            sample_rate=config.sample_rate,
        )

        def transcribe(audio: bytes, language: str, response_format: str) -> TranscriptionResponse:
            # Cheap when known alive; re-verifies after a transport failure
            self.supervisor.ensure_running(model, port)
            return client.transcribe(audio, language, response_format)

        return transcribe
