"""
Tests for the Azure Speech recognition and synthesis providers.

The Speech SDK is replaced by a small fake: the push stream records
what was written, and closing it makes the recognizer deliver its last
phrase and end the session, like the real SDK at end of stream.
"""

from types import SimpleNamespace
from unittest.mock import Mock, patch

import numpy as np
import pytest

from dictaflow.audio import CaptureBackend
from dictaflow.types import ConfigSnapshot, RecognitionState, SynthesisState


SAMPLE_RATE = 16000

AZURE_CONFIG = ConfigSnapshot(azure_speech_key="az-key", azure_speech_region="westeurope")


def tone(seconds, amplitude=3000):
    t = np.arange(int(seconds * SAMPLE_RATE))
    return (amplitude * np.sin(2 * np.pi * 440 * t / SAMPLE_RATE)).astype("<i2").tobytes()


class FakeSdkSignal:
    def __init__(self):
        self.handlers = []

    def connect(self, handler):
        self.handlers.append(handler)

    def fire(self, evt):
        for handler in self.handlers:
            handler(evt)


class FakePushStream:
    def __init__(self, stream_format=None):
        self.stream_format = stream_format
        self.written = bytearray()
        self.closed = False
        self.on_close = None

    def write(self, data):
        self.written.extend(data)

    def close(self):
        self.closed = True
        if self.on_close:
            self.on_close()


class FakeRecognizer:
    def __init__(self, stream, final_phrase):
        self.stream = stream
        self.final_phrase = final_phrase
        self.recognizing = FakeSdkSignal()
        self.recognized = FakeSdkSignal()
        self.canceled = FakeSdkSignal()
        self.session_stopped = FakeSdkSignal()
        self.started = False
        self.stopped = False
        stream.on_close = self.end_of_stream

    def start_continuous_recognition(self):
        self.started = True

    def stop_continuous_recognition(self):
        self.stopped = True

    def say(self, text, final=True):
        reason = "recognized" if final else "recognizing"
        event = SimpleNamespace(result=SimpleNamespace(reason=reason, text=text))
        (self.recognized if final else self.recognizing).fire(event)

    def end_of_stream(self):
        if self.final_phrase:
            self.say(self.final_phrase)
        self.canceled.fire(SimpleNamespace(reason="end_of_stream"))
        self.session_stopped.fire(SimpleNamespace(session_id="s1"))


def fake_speech_sdk(final_phrase="how are you"):
    sdk = SimpleNamespace(
        ResultReason=SimpleNamespace(
            RecognizingSpeech="recognizing",
            RecognizedSpeech="recognized",
            NoMatch="no_match",
            SynthesizingAudioCompleted="synthesized",
            Canceled="canceled",
        ),
        CancellationReason=SimpleNamespace(Error="error", EndOfStream="end_of_stream"),
        SpeechSynthesisOutputFormat=SimpleNamespace(Riff24Khz16BitMonoPcm="riff-24khz"),
        SpeechConfig=Mock(),
        SpeechSynthesizer=Mock(),
        audio=SimpleNamespace(
            AudioStreamFormat=Mock(),
            PushAudioInputStream=FakePushStream,
            AudioConfig=lambda stream: SimpleNamespace(stream=stream),
        ),
        recognizers=[],
    )

    def make_recognizer(speech_config, audio_config):
        recognizer = FakeRecognizer(audio_config.stream, final_phrase)
        sdk.recognizers.append(recognizer)
        return recognizer

    sdk.SpeechRecognizer = make_recognizer
    return sdk


class SpeakingCapture(CaptureBackend):
    """Delivers audio, and has the recognizer hear a first phrase meanwhile."""

    def __init__(self, sdk, blocks):
        self.sdk = sdk
        self.blocks = blocks

    def start(self, on_data):
        recognizer = self.sdk.recognizers[-1]
        for block in self.blocks:
            on_data(block)
        recognizer.say("hello", final=False)
        recognizer.say("hello there")

    def stop(self):
        pass


class TestAzureSpeechProvider:
    """Tests for AzureSpeechProvider."""

    def test_requires_key_region_and_sdk(self):
        from dictaflow.providers.azure import AzureSpeechProvider

        provider = AzureSpeechProvider(Mock())
        with patch("dictaflow.providers.azure.speech_sdk_installed", return_value=True):
            assert provider.is_available is False
            provider.configure(ConfigSnapshot(azure_speech_key="az-key"))
            assert provider.is_available is False
            provider.configure(AZURE_CONFIG)
            assert provider.is_available is True

        with patch("dictaflow.providers.azure.speech_sdk_installed", return_value=False):
            assert provider.is_available is False

    def test_session_pushes_audio_and_collects_phrases(self):
        from dictaflow.providers.azure import AzureSpeechProvider

        sdk = fake_speech_sdk()
        provider = AzureSpeechProvider(SpeakingCapture(sdk, [tone(0.5), tone(0.5)]))
        provider.configure(AZURE_CONFIG)
        partials = []
        provider.partial.connect(lambda key, text: partials.append(text))

        with patch("dictaflow.providers.azure.speech_sdk_installed", return_value=True), \
                patch("dictaflow.providers.azure.load_speech_sdk", return_value=sdk):
            provider.initialize("de-DE")
            provider.start_recognition()
            assert provider._engine is None
            text = provider.stop_recognition()

        recognizer = sdk.recognizers[0]
        assert text == "hello there how are you"
        assert partials == ["hello", "hello there", "hello there how are you"]
        assert bytes(recognizer.stream.written) == tone(0.5) + tone(0.5)
        assert recognizer.started and recognizer.stopped
        assert recognizer.stream.closed
        assert sdk.SpeechConfig.return_value.speech_recognition_language == "de-DE"
        sdk.SpeechConfig.assert_called_with(subscription="az-key", region="westeurope")
        assert provider.state == RecognitionState.IDLE

    def test_cancellation_error_is_reported(self):
        from dictaflow.providers.azure import AzureSpeechProvider

        sdk = fake_speech_sdk(final_phrase="")
        provider = AzureSpeechProvider(Mock())
        provider.configure(AZURE_CONFIG)
        errors = []
        provider.error.connect(lambda key, message, exc: errors.append(message))

        with patch("dictaflow.providers.azure.speech_sdk_installed", return_value=True), \
                patch("dictaflow.providers.azure.load_speech_sdk", return_value=sdk):
            provider.start_recognition()
            sdk.recognizers[0].canceled.fire(SimpleNamespace(
                reason="error", error_details="Authentication failed", error_code="401",
            ))
            provider.stop_recognition()

        assert errors == ["Azure Speech Error: Authentication failed (Code: 401)"]

    def test_one_shot_transcription(self):
        from dictaflow.providers.azure import AzureSpeechProvider

        sdk = fake_speech_sdk(final_phrase="single phrase")
        provider = AzureSpeechProvider(Mock())
        provider.configure(AZURE_CONFIG)

        with patch("dictaflow.providers.azure.load_speech_sdk", return_value=sdk):
            result = provider.transcribe_audio(tone(1.0), "en-US")

        assert result.text == "single phrase"
        assert bytes(sdk.recognizers[0].stream.written) == tone(1.0)

    def test_missing_sdk_fails_start(self):
        from dictaflow.errors import UnavailableError
        from dictaflow.providers.azure import AzureSpeechProvider

        provider = AzureSpeechProvider(Mock())
        provider.configure(AZURE_CONFIG)

        with patch("dictaflow.providers.azure.speech_sdk_installed", return_value=True), \
                patch("dictaflow.providers.azure.load_speech_sdk",
                      side_effect=UnavailableError("not installed")):
            with pytest.raises(UnavailableError):
                provider.start_recognition()

        assert provider.state == RecognitionState.ERROR
        provider.shutdown()


class TestAzureSpeechSynthesisProvider:
    """Tests for AzureSpeechSynthesisProvider."""

    def make_provider(self, config=AZURE_CONFIG):
        from dictaflow.tts.azure import AzureSpeechSynthesisProvider

        provider = AzureSpeechSynthesisProvider()
        provider.configure(config)
        return provider

    def test_voice_follows_language(self):
        from dataclasses import replace

        provider = self.make_provider()
        assert provider.voice_for(replace(AZURE_CONFIG, recognition_language="de-DE")) == "de-DE-KatjaNeural"
        assert provider.voice_for(replace(AZURE_CONFIG, recognition_language="xx-XX")) == "en-US-JennyNeural"
        assert provider.voice_for(replace(AZURE_CONFIG, azure_tts_voice="en-US-GuyNeural")) == "en-US-GuyNeural"

    def test_ssml(self):
        from dictaflow.tts.azure import build_ssml

        ssml = build_ssml("Tom & Jerry <3", "en-GB-SoniaNeural", "en-GB", 1.5)

        assert "xml:lang='en-GB'" in ssml
        assert "<voice name='en-GB-SoniaNeural'>" in ssml
        assert "<prosody rate='+50%'>Tom &amp; Jerry &lt;3</prosody>" in ssml
        assert "rate='-25%'" in build_ssml("hi", "v", "en-US", 0.75)

    def test_speak_plays_synthesized_audio(self):
        from dictaflow.audio import pcm_to_wav_bytes

        sdk = fake_speech_sdk()
        wav = pcm_to_wav_bytes(np.ones(2400, dtype="<i2").tobytes(), 24000)
        synthesizer = sdk.SpeechSynthesizer.return_value
        synthesizer.speak_ssml.return_value = SimpleNamespace(reason="synthesized", audio_data=wav)

        provider = self.make_provider()
        with patch("dictaflow.tts.azure.speech_sdk_installed", return_value=True), \
                patch("dictaflow.tts.azure.load_speech_sdk", return_value=sdk), \
                patch("dictaflow.tts.play_samples", return_value=True) as mock_play:
            provider.initialize("fr-FR", "fr-FR-DeniseNeural")
            provider.set_rate(1.2)
            assert provider.speak("bonjour") is True

        ssml = synthesizer.speak_ssml.call_args.args[0]
        assert "<voice name='fr-FR-DeniseNeural'>" in ssml
        assert "rate='+20%'" in ssml
        sdk.SpeechSynthesizer.assert_called_once_with(
            speech_config=sdk.SpeechConfig.return_value, audio_config=None,
        )
        samples, sample_rate = mock_play.call_args.args[:2]
        assert sample_rate == 24000
        assert len(samples) == 2400
        assert provider.state == SynthesisState.IDLE

    def test_canceled_with_error(self):
        from dictaflow.errors import SynthesisError

        sdk = fake_speech_sdk()
        details = SimpleNamespace(reason="error", error_details="Quota exceeded")
        sdk.SpeechSynthesizer.return_value.speak_ssml.return_value = SimpleNamespace(
            reason="canceled", cancellation_details=details,
        )
        provider = self.make_provider()
        errors = []
        provider.error.connect(lambda key, message, exc: errors.append(exc))

        with patch("dictaflow.tts.azure.load_speech_sdk", return_value=sdk), \
                patch("dictaflow.tts.play_samples") as mock_play:
            assert provider.speak("hi") is False

        assert isinstance(errors[0], SynthesisError)
        assert "Quota exceeded" in str(errors[0])
        mock_play.assert_not_called()
        assert provider.state == SynthesisState.ERROR
        provider.shutdown()
