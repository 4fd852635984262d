"""
Provider manager: one recognition contract for the rest of the app.

Picks the provider the settings ask for (falling back to the default
one when it can't run), hot-swaps it when settings change, and
re-broadcasts events from the active provider only.
"""

import threading
from typing import TYPE_CHECKING, Callable, Optional

from .errors import DictationError, UnavailableError
from .events import Signal
from .providers import ProviderRegistry, RecognitionProvider
from .types import ConfigSnapshot, RecognitionState, SpeechProvider

if TYPE_CHECKING:
    from .metrics import MetricsWriter


class ProviderManager:
    """
    Owns the registry and tracks which provider is active.

    Signals (no provider key, already filtered to the active provider):
        partial(text)
        completed(text)
        error(message, exception)
        state_changed(old_state, new_state)
        language_changed(language)

    Usage:
        manager = ProviderManager(registry, config.snapshot())
        manager.initialize("en-US")
        manager.start_recognition()
        text = manager.stop_recognition()
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        config: ConfigSnapshot,
        metrics: Optional["MetricsWriter"] = None,
    ):
        self.registry = registry
        self.metrics = metrics

        self.partial = Signal("partial")
        self.completed = Signal("completed")
        self.error = Signal("error")
        self.state_changed = Signal("state_changed")
        self.language_changed = Signal("language_changed")

        self._config = config
        self._language = config.recognition_language
        self._active_key: Optional[SpeechProvider] = None
        self._initialized = False
        self._lock = threading.RLock()

        for provider in registry.values():
            provider.configure(config)
            self._subscribe(provider)

    # ---- Public state ----

    @property
    def active_provider(self) -> Optional[RecognitionProvider]:
        key = self._active_key
        return self.registry.get(key) if key is not None else None

    @property
    def active_provider_name(self) -> str:
        key = self._active_key
        return key.value if key is not None else ""

    @property
    def current_state(self) -> RecognitionState:
        provider = self.active_provider
        return provider.state if provider is not None else RecognitionState.IDLE

    @property
    def language(self) -> str:
        return self._language

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    # ---- Selection ----

    def resolve(self, config: ConfigSnapshot) -> SpeechProvider:
        """
        Map the configured provider to one that can run.

        Raises:
            UnavailableError: neither the configured provider nor the
                              default one is available
        """
        default = _parse_key(config.fallback_provider) or SpeechProvider.WHISPER_SERVER
        requested = config.provider_key()
        if requested is None:
            print(f"[Manager] Unknown provider {config.speech_provider!r}, using {default.value}")
            requested = default

        provider = self.registry.get(requested)
        if provider is not None and provider.is_available:
            return requested

        fallback = self.registry.get(default)
        if requested != default and fallback is not None and fallback.is_available:
            print(f"[Manager] {requested.value} is not available, falling back to {default.value}")
            return default

        raise UnavailableError(
            f"{requested.value} is not available (check its API key or installation) "
            f"and no fallback provider can run"
        )

    # ---- Lifecycle ----

    def initialize(self, language: str) -> None:
        """
        Resolve and initialize the active provider.

        Raises:
            UnavailableError: no provider can run
            DictationError: the provider failed to initialize
        """
        with self._lock:
            key = self.resolve(self._config)
            provider = self.registry.get(key)
            provider.initialize(language)

            self._active_key = key
            self._language = language
            self._initialized = True
            print(f"[Manager] Active provider: {key.value}")

    def start_recognition(self, cancel: Optional[threading.Event] = None) -> bool:
        provider = self.active_provider
        if provider is None:
            raise DictationError("Recognition is not initialized")
        return provider.start_recognition(cancel)

    def stop_recognition(self) -> str:
        provider = self.active_provider
        if provider is None:
            return ""
        return provider.stop_recognition()

    def on_settings_changed(self, config: ConfigSnapshot) -> None:
        """
        Apply new settings, swapping the active provider when needed.

        If neither the provider nor the language changed, only the new
        parameters are applied. Otherwise a listening session is stopped
        first, the target is initialized, and only then becomes active.
        A failing target leaves the previous provider active.
        """
        with self._lock:
            self._config = config
            for provider in self.registry.values():
                provider.configure(config)

            try:
                target_key = self.resolve(config)
            except UnavailableError as e:
                self._emit_error(str(e), e)
                return

            language = config.recognition_language
            provider_changed = target_key != self._active_key
            language_changed = language != self._language

            if not provider_changed and not language_changed:
                return

            current = self.active_provider
            if current is not None and current.state == RecognitionState.LISTENING:
                print(f"[Manager] Stopping {current.name} before switching")
                current.stop_recognition()

            target = self.registry.get(target_key)
            if self._initialized:
                try:
                    target.initialize(language)
                except Exception as e:
                    self._emit_error(f"Failed to initialize {target.name}: {e}", e)
                    return

            previous = self._active_key
            self._active_key = target_key
            self._language = language

        if provider_changed:
            print(f"[Manager] Switched provider: {previous.value if previous else None} -> {target_key.value}")
            if self.metrics:
                self.metrics.log(
                    "provider_swapped",
                    from_provider=previous.value if previous else None,
                    to_provider=target_key.value,
                    language=language,
                )
        if language_changed:
            self.language_changed.emit(language)

        # Observers refresh even though nothing really transitioned
        self.state_changed.emit(RecognitionState.IDLE, RecognitionState.IDLE)

    def shutdown(self) -> None:
        with self._lock:
            self.stop_recognition()
            self.registry.shutdown()
            self._initialized = False

    # ---- Event forwarding ----

    def _subscribe(self, provider: RecognitionProvider) -> None:
        provider.partial.connect(self._forward(self.partial))
        provider.completed.connect(self._forward(self.completed))
        provider.error.connect(self._forward(self.error))
        provider.state_changed.connect(self._forward(self.state_changed))

    def _forward(self, signal: Signal) -> Callable:
        def handler(source: SpeechProvider, *args) -> None:
            # No lock: providers emit from worker threads while a swap holds it
            if source == self._active_key:
                signal.emit(*args)
        return handler

    def _emit_error(self, message: str, exc: Exception) -> None:
        print(f"[Manager] {message}")
        self.error.emit(message, exc)


def _parse_key(value: str) -> Optional[SpeechProvider]:
    try:
        return SpeechProvider(value)
    except ValueError:
        return None
