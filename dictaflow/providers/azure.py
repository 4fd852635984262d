"""
Azure Speech provider: continuous recognition fed through a push stream.
"""

import threading
from typing import Callable, List, Optional

from . import RecognitionProvider
from ..azure_sdk import load_speech_sdk, speech_sdk_installed
from ..errors import TranscriptionError
from ..session import RecognitionSession
from ..streaming import TranscribeFn
from ..types import ConfigSnapshot, SpeechProvider, TranscriptionResponse


END_OF_STREAM_TIMEOUT = 5.0  # seconds for the last phrase after the stream closes


class AzureRecognition:
    """
    One continuous recognition over a push stream.

    recognizing events give the in-progress phrase, recognized events a
    finished one. Closing the stream lets the SDK flush the last phrase
    and then end the session.
    """

    def __init__(
        self,
        speechsdk,
        key: str,
        region: str,
        language: str,
        sample_rate: int,
        on_partial: Optional[Callable[[str], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
        tag: str = "azure",
    ):
        self.sdk = speechsdk
        self.on_partial = on_partial
        self.on_error = on_error
        self.tag = tag

        speech_config = speechsdk.SpeechConfig(subscription=key, region=region)
        speech_config.speech_recognition_language = language

        stream_format = speechsdk.audio.AudioStreamFormat(
            samples_per_second=sample_rate, bits_per_sample=16, channels=1
        )
        self.stream = speechsdk.audio.PushAudioInputStream(stream_format=stream_format)
        audio_config = speechsdk.audio.AudioConfig(stream=self.stream)
        self.recognizer = speechsdk.SpeechRecognizer(
            speech_config=speech_config, audio_config=audio_config
        )

        self.recognizer.recognizing.connect(self._on_recognizing)
        self.recognizer.recognized.connect(self._on_recognized)
        self.recognizer.canceled.connect(self._on_canceled)
        self.recognizer.session_stopped.connect(lambda evt: self._ended.set())

        self._segments: List[str] = []
        self._lock = threading.Lock()
        self._ended = threading.Event()
        self._finished = False

    @property
    def text(self) -> str:
        with self._lock:
            return " ".join(self._segments).strip()

    def start(self) -> None:
        try:
            self.recognizer.start_continuous_recognition()
        except RuntimeError as e:
            raise TranscriptionError(f"Azure recognition failed to start: {e}") from e
        print(f"[{self.tag}] Continuous recognition started")

    def write(self, pcm: bytes) -> None:
        self.stream.write(pcm)

    def finish(self, timeout: float = END_OF_STREAM_TIMEOUT) -> str:
        """End the audio, wait for the last phrase, stop recognition."""
        if not self._finished:
            self._finished = True
            self.stream.close()
            if not self._ended.wait(timeout):
                print(f"[{self.tag}] Timed out waiting for the last phrase")
            try:
                self.recognizer.stop_continuous_recognition()
            except RuntimeError as e:
                print(f"[{self.tag}] Error stopping recognizer: {e}")
        return self.text

    def _on_recognizing(self, evt) -> None:
        if evt.result.reason != self.sdk.ResultReason.RecognizingSpeech:
            return
        committed = self.text
        partial = f"{committed} {evt.result.text}".strip()
        if self.on_partial:
            self.on_partial(partial)

    def _on_recognized(self, evt) -> None:
        result = evt.result
        if result.reason == self.sdk.ResultReason.RecognizedSpeech and result.text:
            with self._lock:
                self._segments.append(result.text.strip())
            if self.on_partial:
                self.on_partial(self.text)
        elif result.reason == self.sdk.ResultReason.NoMatch:
            print(f"[{self.tag}] No speech recognized")

    def _on_canceled(self, evt) -> None:
        if evt.reason == self.sdk.CancellationReason.Error:
            message = f"Azure Speech Error: {evt.error_details} (Code: {evt.error_code})"
            print(f"[{self.tag}] {message}")
            if self.on_error:
                self.on_error(message)
        self._ended.set()


class AzureSpeechProvider(RecognitionProvider):
    """
    Cloud recognition with Azure Speech.

    Needs a subscription key and a region, plus the SDK from the `azure`
    extra. The SDK emits partials while audio is pushed.
    """

    key = SpeechProvider.AZURE
    supports_streaming = True
    native_streaming = True

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._recognition: Optional[AzureRecognition] = None

    @property
    def is_available(self) -> bool:
        config = self._config
        return bool(config.azure_speech_key and config.azure_speech_region) and speech_sdk_installed()

    def _recognizer(self, config: ConfigSnapshot, language: str, **callbacks) -> AzureRecognition:
        return AzureRecognition(
            load_speech_sdk(),
            config.azure_speech_key,
            config.azure_speech_region,
            language,
            config.sample_rate,
            tag=self.name,
            **callbacks,
        )

    def _build_transcriber(self, config: ConfigSnapshot) -> TranscribeFn:
        def transcribe(audio: bytes, language: str, response_format: str = "json") -> TranscriptionResponse:
            recognition = self._recognizer(config, language)
            recognition.start()
            recognition.write(audio)
            return TranscriptionResponse(text=recognition.finish())

        return transcribe

    def _open_session(self, session: RecognitionSession, config: ConfigSnapshot) -> None:
        recognition = self._recognizer(
            config,
            session.language,
            on_partial=lambda text: self._on_partial(session, text),
            on_error=self._report_service_error,
        )
        recognition.start()
        self._recognition = recognition

    def _audio_sink(self, session: RecognitionSession) -> Callable[[bytes], None]:
        recognition = self._recognition

        def sink(data: bytes) -> None:
            if session.stopped.is_set():
                return
            session.buffer.append(data)
            recognition.write(data)

        return sink

    def _finalize(self, session: RecognitionSession) -> str:
        text = self._recognition.finish()
        return text or session.last_partial

    def _close_session(self) -> None:
        recognition = self._recognition
        self._recognition = None
        if recognition is not None:
            recognition.finish(timeout=0)

    def _on_partial(self, session: RecognitionSession, text: str) -> None:
        partial = session.update_partial(text)
        if partial:
            self._emit_partial(session, partial)
