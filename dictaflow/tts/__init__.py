"""
Text-to-speech providers.

Same shape as recognition: a guarded state machine per provider,
signals carrying the provider key first, and a manager that swaps the
active provider when settings change.
"""

import threading
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Dict, Optional, Tuple

import numpy as np

from ..audio import play_samples
from ..errors import UnavailableError
from ..events import Signal
from ..state import StateMachine
from ..types import ConfigSnapshot, SynthesisState, TtsProvider

if TYPE_CHECKING:
    from ..metrics import MetricsWriter


CANCEL_POLL_INTERVAL = 0.1  # seconds


class SynthesisProvider(ABC):
    """
    Base class for text-to-speech providers.

    Subclasses must implement:
    - is_available: Whether the provider can run right now
    - voice_for(): Voice the given settings select
    - _synthesize(): Turn text into (int16 samples, sample rate)

    Signals, each emitted with the provider key first:
        started(key, text)
        completed(key, text)
        error(key, message, exception)
        state_changed(key, old_state, new_state)
    """

    key: TtsProvider
    rate_range: Tuple[float, float] = (0.5, 2.0)

    def __init__(self, metrics: Optional["MetricsWriter"] = None):
        self.metrics = metrics

        self.started = Signal("started")
        self.completed = Signal("completed")
        self.error = Signal("error")
        self.state_changed = Signal("state_changed")

        self._machine = StateMachine(SynthesisState.IDLE, SynthesisState.ERROR)
        self._machine.state_changed.connect(
            lambda old, new: self.state_changed.emit(self.key, old, new)
        )

        self._config = ConfigSnapshot()
        self.language = self._config.recognition_language
        self.voice = ""
        self._rate = 1.0
        self._volume = 1.0
        self._stop_event = threading.Event()
        self._stop_lock = threading.Lock()
        self._speak_lock = threading.Lock()

    @property
    def name(self) -> str:
        return self.key.value

    @property
    @abstractmethod
    def is_available(self) -> bool:
        pass

    @abstractmethod
    def voice_for(self, config: ConfigSnapshot) -> str:
        pass

    @abstractmethod
    def _synthesize(self, text: str) -> Tuple[np.ndarray, int]:
        pass

    @property
    def state(self) -> SynthesisState:
        return self._machine.state

    @property
    def rate(self) -> float:
        return self._rate

    @property
    def volume(self) -> float:
        return self._volume

    def configure(self, config: ConfigSnapshot) -> None:
        self._config = config

    def initialize(self, language: str, voice: Optional[str] = None) -> None:
        """
        Raises:
            UnavailableError: provider can't run with the current settings
        """
        if not self.is_available:
            raise UnavailableError(f"{self.name} text-to-speech is not available")
        self.language = language
        self.voice = voice or self.voice_for(self._config)
        print(f"[{self.name}] Initialized (voice: {self.voice})")

    def set_rate(self, rate: float) -> None:
        low, high = self.rate_range
        self._rate = min(max(rate, low), high)

    def set_volume(self, volume: float) -> None:
        self._volume = min(max(volume, 0.0), 1.0)

    def speak(self, text: str, cancel: Optional[threading.Event] = None) -> bool:
        """
        Synthesize and play `text`, blocking until playback ends.

        Any ongoing speech is stopped first. A stop() from here on applies
        to this utterance, even while it waits for the previous one to end.

        Returns:
            True if playback ran to the end
        """
        if not text.strip():
            return False

        with self._stop_lock:
            self._stop_event.set()
            stop_event = threading.Event()
            self._stop_event = stop_event

        with self._speak_lock:
            if not self._machine.transition(SynthesisState.IDLE, SynthesisState.SPEAKING):
                print(f"[{self.name}] Speak ignored, state is {self.state.value}")
                return False

            done = threading.Event()
            if cancel is not None:
                self._link_cancel(cancel, stop_event, done)

            self.started.emit(self.key, text)
            try:
                samples, sample_rate = self._synthesize(text)
                finished = False
                if not stop_event.is_set() and len(samples) > 0:
                    finished = play_samples(samples, sample_rate, self._volume, stop_event)
            except Exception as e:
                done.set()
                self._report_error(f"Speech failed: {e}", e)
                return False

            done.set()
            if finished:
                self.completed.emit(self.key, text)
            self._machine.transition(SynthesisState.SPEAKING, SynthesisState.IDLE)
            return finished

    def stop(self) -> None:
        """Stop current playback. No-op when idle."""
        with self._stop_lock:
            self._stop_event.set()

    def shutdown(self) -> None:
        self.stop()
        self._machine.reset()

    def _report_error(self, message: str, exc: Exception) -> None:
        print(f"[{self.name}] {message}")
        if self.metrics:
            self.metrics.log("tts_error", provider=self.name, error=str(exc))
        self.error.emit(self.key, message, exc)
        self._machine.fail()

    def _link_cancel(
        self,
        cancel: threading.Event,
        stop_event: threading.Event,
        done: threading.Event,
    ) -> None:
        def watch() -> None:
            while not done.is_set():
                if cancel.wait(CANCEL_POLL_INTERVAL):
                    stop_event.set()
                    return

        threading.Thread(target=watch, name=f"{self.name}-cancel", daemon=True).start()


def build_tts_providers(metrics: Optional["MetricsWriter"] = None) -> Dict[TtsProvider, SynthesisProvider]:
    """Create one instance of every known TTS provider."""
    from .azure import AzureSpeechSynthesisProvider
    from .openai import OpenAISpeechProvider
    from .piper import PiperProvider

    return {
        TtsProvider.PIPER: PiperProvider(metrics),
        TtsProvider.OPENAI: OpenAISpeechProvider(metrics),
        TtsProvider.AZURE: AzureSpeechSynthesisProvider(metrics),
    }
