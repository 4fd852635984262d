"""
Azure text-to-speech through the Speech SDK, using SSML for voice and rate.
"""

import io
from typing import Tuple
from xml.sax.saxutils import escape

import numpy as np
import soundfile as sf

from . import SynthesisProvider
from ..azure_sdk import load_speech_sdk, speech_sdk_installed
from ..errors import SynthesisError
from ..types import ConfigSnapshot, TtsProvider


DEFAULT_VOICE = "en-US-JennyNeural"

VOICES = {
    "en-US": "en-US-JennyNeural",
    "en-GB": "en-GB-SoniaNeural",
    "de-DE": "de-DE-KatjaNeural",
    "fr-FR": "fr-FR-DeniseNeural",
    "es-ES": "es-ES-ElviraNeural",
    "it-IT": "it-IT-ElsaNeural",
    "pt-BR": "pt-BR-FranciscaNeural",
    "zh-CN": "zh-CN-XiaoxiaoNeural",
    "ja-JP": "ja-JP-NanamiNeural",
    "ro-RO": "ro-RO-AlinaNeural",
}


def build_ssml(text: str, voice: str, language: str, rate: float) -> str:
    rate_percent = int(round((rate - 1.0) * 100))
    return (
        f"<speak version='1.0' xmlns='http://www.w3.org/2001/10/synthesis' xml:lang='{language}'>"
        f"<voice name='{voice}'><prosody rate='{rate_percent:+d}%'>{escape(text)}</prosody></voice>"
        "</speak>"
    )


class AzureSpeechSynthesisProvider(SynthesisProvider):
    """
    Neural voices from Azure Speech.

    Audio comes back as 24 kHz WAV and plays through the shared player,
    so volume is applied on playback like the other providers.
    """

    key = TtsProvider.AZURE

    @property
    def is_available(self) -> bool:
        config = self._config
        return bool(config.azure_speech_key and config.azure_speech_region) and speech_sdk_installed()

    def voice_for(self, config: ConfigSnapshot) -> str:
        return config.azure_tts_voice or VOICES.get(config.recognition_language, DEFAULT_VOICE)

    def _synthesize(self, text: str) -> Tuple[np.ndarray, int]:
        speechsdk = load_speech_sdk()

        speech_config = speechsdk.SpeechConfig(
            subscription=self._config.azure_speech_key,
            region=self._config.azure_speech_region,
        )
        speech_config.speech_synthesis_language = self.language
        speech_config.set_speech_synthesis_output_format(
            speechsdk.SpeechSynthesisOutputFormat.Riff24Khz16BitMonoPcm
        )
        # No audio_config: keep the audio in the result instead of the default speaker
        synthesizer = speechsdk.SpeechSynthesizer(speech_config=speech_config, audio_config=None)

        ssml = build_ssml(text, self.voice or self.voice_for(self._config), self.language, self._rate)
        result = synthesizer.speak_ssml(ssml)

        if result.reason == speechsdk.ResultReason.SynthesizingAudioCompleted:
            samples, sample_rate = sf.read(io.BytesIO(result.audio_data), dtype="int16")
            return samples, sample_rate

        if result.reason == speechsdk.ResultReason.Canceled:
            details = result.cancellation_details
            if details.reason == speechsdk.CancellationReason.Error:
                raise SynthesisError(f"Azure Speech Error: {details.error_details}")
            print(f"[{self.name}] Synthesis canceled: {details.reason}")
            return np.zeros(0, dtype=np.int16), 24000

        raise SynthesisError(f"Azure synthesis ended with {result.reason}")
