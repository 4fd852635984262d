"""
OpenAI Whisper API provider for cloud transcription.
"""

from . import RecognitionProvider
from ..client import TranscriptionClient
from ..streaming import TranscribeFn
from ..types import ConfigSnapshot, SpeechProvider


OPENAI_TRANSCRIPTIONS_URL = "https://api.openai.com/v1/audio/transcriptions"


class OpenAIProvider(RecognitionProvider):
    """
    Cloud transcription using OpenAI's audio transcription endpoint.

    Word timestamps are requested with verbose_json plus
    timestamp_granularities[]=word.
    """

    key = SpeechProvider.OPENAI
    supports_streaming = True
    supports_word_timestamps = True

    url = OPENAI_TRANSCRIPTIONS_URL

    @property
    def is_available(self) -> bool:
        return bool(self._config.openai_api_key)

    def _build_transcriber(self, config: ConfigSnapshot) -> TranscribeFn:
        client = TranscriptionClient(
            self.url,
            api_key=config.openai_api_key,
            model=config.openai_model,
            word_granularity_field=True,
            sample_rate=config.sample_rate,
        )
        return client.transcribe
