"""
Shared type definitions for DictaFlow.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class RecognitionState(Enum):
    """Lifecycle of one recognition provider."""
    IDLE = "idle"
    INITIALIZING = "initializing"
    LISTENING = "listening"
    PROCESSING = "processing"
    ERROR = "error"


class SynthesisState(Enum):
    """Lifecycle of one text-to-speech provider."""
    IDLE = "idle"
    INITIALIZING = "initializing"
    SPEAKING = "speaking"
    PAUSED = "paused"
    ERROR = "error"


class SpeechProvider(Enum):
    """Recognition providers the registry knows about."""
    WHISPER_SERVER = "whisper_server"
    OPENAI = "openai"
    GROQ = "groq"
    PARAKEET = "parakeet"
    OPENAI_REALTIME = "openai_realtime"
    AZURE = "azure"


class TtsProvider(Enum):
    """Text-to-speech providers the registry knows about."""
    PIPER = "piper"
    OPENAI = "openai"
    AZURE = "azure"


@dataclass
class TranscribedWord:
    """One word with absolute timing, seconds from recording start."""
    text: str
    start_time: float
    end_time: float


@dataclass
class TranscriptionResponse:
    """Parsed answer from a transcription endpoint."""
    text: str
    words: List[TranscribedWord] = field(default_factory=list)


@dataclass(frozen=True)
class ProviderDescriptor:
    """Capability set used by the manager to decide fallback."""
    provider_name: str
    is_available: bool
    supports_streaming: bool


@dataclass
class ServerProcessHandle:
    """The inference server process currently owned by the supervisor."""
    pid: int
    port: int
    loaded_model: str
    started_at: float
    adopted: bool = False


@dataclass(frozen=True)
class ConfigSnapshot:
    """
    Immutable snapshot of configuration.
    Managers only ever see snapshots, so a settings change mid-session
    can't leave a provider half-configured.
    """
    # Recognition
    speech_provider: str = SpeechProvider.WHISPER_SERVER.value
    fallback_provider: str = SpeechProvider.WHISPER_SERVER.value
    recognition_language: str = "en-US"
    sample_rate: int = 16000
    max_recording_seconds: int = 120
    input_device: str = ""

    # API keys
    openai_api_key: str = ""
    groq_api_key: str = ""
    azure_speech_key: str = ""
    azure_speech_region: str = ""

    # Cloud models
    openai_model: str = "whisper-1"
    groq_model: str = "whisper-large-v3"
    openai_realtime_model: str = "gpt-4o-realtime-preview"
    openai_realtime_transcription_model: str = "whisper-1"

    # Local whisper.cpp server
    whisper_server_dir: str = ""
    whisper_model: str = "base.en"
    whisper_server_port: int = 8178
    whisper_use_gpu: bool = True
    whisper_keep_server_alive: bool = False

    # Streaming
    streaming_enabled: bool = False
    streaming_interval_ms: int = 1500
    silence_window_seconds: float = 2.0
    silence_threshold: float = 500.0
    word_timestamps: bool = False

    # Text-to-speech
    tts_provider: str = TtsProvider.PIPER.value
    tts_rate: float = 1.0
    tts_volume: float = 1.0
    openai_tts_model: str = "tts-1"
    openai_tts_voice: str = "alloy"
    piper_dir: str = ""
    piper_voice: str = "voices/en_US-amy-medium.onnx"
    azure_tts_voice: str = ""

    def provider_key(self) -> Optional[SpeechProvider]:
        """Configured recognition provider as an enum, None if unknown."""
        try:
            return SpeechProvider(self.speech_provider)
        except ValueError:
            return None

    def tts_key(self) -> Optional[TtsProvider]:
        """Configured TTS provider as an enum, None if unknown."""
        try:
            return TtsProvider(self.tts_provider)
        except ValueError:
            return None
