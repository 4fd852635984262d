"""
Synthesis manager: picks and hot-swaps the active TTS provider.
"""

import threading
from typing import TYPE_CHECKING, Callable, Dict, Optional

from . import SynthesisProvider
from ..errors import DictationError, UnavailableError
from ..events import Signal
from ..types import ConfigSnapshot, SynthesisState, TtsProvider

if TYPE_CHECKING:
    from ..metrics import MetricsWriter


class SynthesisManager:
    """
    One text-to-speech contract over several providers.

    Rate and volume changes are cheap and applied in place. Changing the
    provider, language or voice stops current speech and swaps providers.
    Only the active provider's events are re-broadcast.

    Usage:
        tts = SynthesisManager(build_tts_providers(), config.snapshot())
        tts.initialize("en-US")
        tts.speak("Hello")
    """

    def __init__(
        self,
        providers: Dict[TtsProvider, SynthesisProvider],
        config: ConfigSnapshot,
        metrics: Optional["MetricsWriter"] = None,
        default: TtsProvider = TtsProvider.PIPER,
    ):
        self.providers = providers
        self.metrics = metrics
        self.default = default

        self.started = Signal("started")
        self.completed = Signal("completed")
        self.error = Signal("error")
        self.state_changed = Signal("state_changed")

        self._config = config
        self._language = config.recognition_language
        self._voice = ""
        self._active_key: Optional[TtsProvider] = None
        self._initialized = False
        self._lock = threading.RLock()

        for provider in providers.values():
            provider.configure(config)
            provider.started.connect(self._forward(self.started))
            provider.completed.connect(self._forward(self.completed))
            provider.error.connect(self._forward(self.error))
            provider.state_changed.connect(self._forward(self.state_changed))

    @property
    def active_provider(self) -> Optional[SynthesisProvider]:
        key = self._active_key
        return self.providers.get(key) if key is not None else None

    @property
    def active_provider_name(self) -> str:
        key = self._active_key
        return key.value if key is not None else ""

    @property
    def current_state(self) -> SynthesisState:
        provider = self.active_provider
        return provider.state if provider is not None else SynthesisState.IDLE

    def resolve(self, config: ConfigSnapshot) -> TtsProvider:
        requested = config.tts_key() or self.default
        provider = self.providers.get(requested)
        if provider is not None and provider.is_available:
            return requested

        fallback = self.providers.get(self.default)
        if requested != self.default and fallback is not None and fallback.is_available:
            print(f"[TTS] {requested.value} is not available, falling back to {self.default.value}")
            return self.default

        raise UnavailableError(f"{requested.value} text-to-speech is not available")

    def initialize(self, language: str) -> None:
        """
        Initialize the configured provider, or the default one if it fails.

        Raises:
            UnavailableError: no provider can run
        """
        with self._lock:
            key = self.resolve(self._config)
            provider = self.providers[key]
            try:
                provider.initialize(language, provider.voice_for(self._config))
            except Exception as e:
                fallback = self.providers.get(self.default)
                if key == self.default or fallback is None or not fallback.is_available:
                    raise
                print(f"[TTS] {key.value} failed to initialize ({e}), using {self.default.value}")
                key, provider = self.default, fallback
                provider.initialize(language, provider.voice_for(self._config))

            self._apply_parameters(provider)
            self._active_key = key
            self._language = language
            self._voice = provider.voice
            self._initialized = True

    def speak(self, text: str, cancel: Optional[threading.Event] = None) -> bool:
        provider = self.active_provider
        if provider is None:
            raise DictationError("Text-to-speech is not initialized")
        return provider.speak(text, cancel)

    def stop(self) -> None:
        provider = self.active_provider
        if provider is not None:
            provider.stop()

    def on_settings_changed(self, config: ConfigSnapshot) -> None:
        with self._lock:
            self._config = config
            for provider in self.providers.values():
                provider.configure(config)

            try:
                target_key = self.resolve(config)
            except UnavailableError as e:
                self._emit_error(str(e), e)
                return

            target = self.providers[target_key]
            language = config.recognition_language
            voice = target.voice_for(config)

            provider_changed = target_key != self._active_key
            language_changed = language != self._language
            voice_changed = voice != self._voice

            if not provider_changed and not language_changed and not voice_changed:
                current = self.active_provider
                if current is not None:
                    self._apply_parameters(current)
                return

            current = self.active_provider
            if current is not None:
                current.stop()

            if self._initialized:
                try:
                    target.initialize(language, voice)
                except Exception as e:
                    self._emit_error(f"Failed to initialize {target.name}: {e}", e)
                    return

            self._apply_parameters(target)
            self._active_key = target_key
            self._language = language
            self._voice = voice

        if provider_changed:
            print(f"[TTS] Switched provider to {target_key.value}")
        self.state_changed.emit(SynthesisState.IDLE, SynthesisState.IDLE)

    def shutdown(self) -> None:
        for provider in self.providers.values():
            try:
                provider.shutdown()
            except Exception as e:
                print(f"Error shutting down {provider.name}: {e}")

    def _apply_parameters(self, provider: SynthesisProvider) -> None:
        provider.set_rate(self._config.tts_rate)
        provider.set_volume(self._config.tts_volume)

    def _forward(self, signal: Signal) -> Callable:
        def handler(source: TtsProvider, *args) -> None:
            if source == self._active_key:
                signal.emit(*args)
        return handler

    def _emit_error(self, message: str, exc: Exception) -> None:
        print(f"[TTS] {message}")
        self.error.emit(message, exc)
