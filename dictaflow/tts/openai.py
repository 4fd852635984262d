"""
OpenAI text-to-speech (POST /v1/audio/speech).
"""

import io
from typing import Tuple

import numpy as np
import requests
import soundfile as sf

from . import SynthesisProvider
from ..errors import SynthesisError, TransportError
from ..types import ConfigSnapshot, TtsProvider


OPENAI_SPEECH_URL = "https://api.openai.com/v1/audio/speech"
REQUEST_TIMEOUT = 60.0


class OpenAISpeechProvider(SynthesisProvider):
    """Cloud speech. Speed is sent with the request, volume applied on playback."""

    key = TtsProvider.OPENAI
    rate_range = (0.25, 4.0)

    url = OPENAI_SPEECH_URL

    @property
    def is_available(self) -> bool:
        return bool(self._config.openai_api_key)

    def voice_for(self, config: ConfigSnapshot) -> str:
        return config.openai_tts_voice

    def _synthesize(self, text: str) -> Tuple[np.ndarray, int]:
        payload = {
            "model": self._config.openai_tts_model,
            "input": text,
            "voice": self.voice or self._config.openai_tts_voice,
            "speed": self._rate,
            "response_format": "wav",
        }
        headers = {"Authorization": f"Bearer {self._config.openai_api_key}"}

        try:
            response = requests.post(self.url, json=payload, headers=headers, timeout=REQUEST_TIMEOUT)
        except requests.RequestException as e:
            raise TransportError(f"Speech request failed: {e}") from e

        if not response.ok:
            raise SynthesisError(
                f"Speech endpoint returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        samples, sample_rate = sf.read(io.BytesIO(response.content), dtype="int16")
        return samples, sample_rate
