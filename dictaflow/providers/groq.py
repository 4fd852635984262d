"""
Groq Whisper API provider for cloud transcription.
"""

import threading
import time
from typing import Optional

from groq import APIConnectionError, APIStatusError, Groq

from . import RecognitionProvider
from ..audio import pcm_to_wav_bytes
from ..client import normalize_language
from ..errors import TranscriptionError, TransportError
from ..streaming import TranscribeFn
from ..types import ConfigSnapshot, SpeechProvider, TranscriptionResponse


class GroqProvider(RecognitionProvider):
    """
    Cloud transcription using Groq's Whisper API.

    Fast cloud-based transcription with low latency. Returns plain text
    only, so word timestamps aren't available.
    """

    key = SpeechProvider.GROQ
    supports_streaming = True

    _client: Optional[Groq] = None
    _client_key: str = ""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._client_lock = threading.Lock()

    @property
    def is_available(self) -> bool:
        return bool(self._config.groq_api_key)

    def _load(self, config: ConfigSnapshot) -> None:
        self._get_client(config.groq_api_key)

    def _unload(self) -> None:
        with self._client_lock:
            self._client = None
            self._client_key = ""

    def _get_client(self, api_key: str) -> Groq:
        """Create the client once per API key."""
        with self._client_lock:
            if self._client is None or self._client_key != api_key:
                self._client = Groq(api_key=api_key)
                self._client_key = api_key
            return self._client

    def _build_transcriber(self, config: ConfigSnapshot) -> TranscribeFn:
        client = self._get_client(config.groq_api_key)
        model = config.groq_model
        sample_rate = config.sample_rate

        def transcribe(audio: bytes, language: str, response_format: str) -> TranscriptionResponse:
            start = time.time()
            try:
                response = client.audio.transcriptions.create(
                    file=("audio.wav", pcm_to_wav_bytes(audio, sample_rate)),
                    model=model,
                    language=normalize_language(language),
                    response_format="json",
                    temperature=0.0,
                )
            except APIConnectionError as e:
                raise TransportError(f"Groq request failed: {e}") from e
            except APIStatusError as e:
                raise TranscriptionError(
                    f"Groq returned {e.status_code}: {e.message}",
                    status_code=e.status_code,
                ) from e

            latency_ms = int((time.time() - start) * 1000)
            print(f"[{self.name}] Response in {latency_ms}ms")
            return TranscriptionResponse(text=(response.text or "").strip())

        return transcribe
