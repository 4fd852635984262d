"""
Tests for ProviderManager: selection, fallback and hot-swap.
"""

from dataclasses import replace
from unittest.mock import Mock

import pytest

from dictaflow.audio import CaptureBackend
from dictaflow.providers import ProviderRegistry, RecognitionProvider
from dictaflow.types import (
    ConfigSnapshot, RecognitionState, SpeechProvider, TranscriptionResponse,
)


class NullCapture(CaptureBackend):
    def start(self, on_data):
        pass

    def stop(self):
        pass


class StubProvider(RecognitionProvider):
    """Provider with a switchable availability and counted initializes."""

    supports_streaming = True

    def __init__(self, key, available=True):
        self.key = key
        super().__init__(NullCapture())
        self.available = available
        self.init_languages = []
        self.fail_load = None

    @property
    def is_available(self):
        return self.available

    def _load(self, config):
        if self.fail_load is not None:
            raise self.fail_load

    def initialize(self, language):
        super().initialize(language)
        self.init_languages.append(language)

    def _build_transcriber(self, config):
        return Mock(return_value=TranscriptionResponse(text=self.key.value))


def make_registry(**availability):
    registry = ProviderRegistry()
    for key in SpeechProvider:
        registry.register(StubProvider(key, availability.get(key.value, True)))
    return registry


def config(**kwargs):
    return replace(ConfigSnapshot(streaming_enabled=False), **kwargs)


class TestResolve:
    """Tests for provider selection and fallback."""

    def test_configured_provider_is_used(self):
        from dictaflow.manager import ProviderManager

        manager = ProviderManager(make_registry(), config())
        assert manager.resolve(config(speech_provider="groq")) == SpeechProvider.GROQ

    def test_unavailable_falls_back_to_default(self):
        from dictaflow.manager import ProviderManager

        manager = ProviderManager(make_registry(openai=False), config())
        resolved = manager.resolve(config(speech_provider="openai"))
        assert resolved == SpeechProvider.WHISPER_SERVER

    def test_configurable_fallback(self):
        from dictaflow.manager import ProviderManager

        manager = ProviderManager(make_registry(openai=False), config())
        resolved = manager.resolve(config(speech_provider="openai", fallback_provider="groq"))
        assert resolved == SpeechProvider.GROQ

    def test_unknown_provider_uses_default(self):
        from dictaflow.manager import ProviderManager

        manager = ProviderManager(make_registry(), config())
        assert manager.resolve(config(speech_provider="nope")) == SpeechProvider.WHISPER_SERVER

    def test_nothing_available_raises(self):
        from dictaflow.errors import UnavailableError
        from dictaflow.manager import ProviderManager

        manager = ProviderManager(make_registry(openai=False, whisper_server=False), config())
        with pytest.raises(UnavailableError):
            manager.resolve(config(speech_provider="openai"))


class TestLifecycle:
    """Tests for initialize/start/stop through the manager."""

    def test_initialize_activates_provider(self):
        from dictaflow.manager import ProviderManager

        registry = make_registry()
        manager = ProviderManager(registry, config(speech_provider="groq"))
        manager.initialize("en-US")

        assert manager.active_provider is registry.get(SpeechProvider.GROQ)
        assert manager.active_provider_name == "groq"
        assert manager.is_initialized
        assert registry.get(SpeechProvider.GROQ).init_languages == ["en-US"]

    def test_start_before_initialize_raises(self):
        from dictaflow.errors import DictationError
        from dictaflow.manager import ProviderManager

        manager = ProviderManager(make_registry(), config())
        with pytest.raises(DictationError):
            manager.start_recognition()
        assert manager.stop_recognition() == ""

    def test_events_are_forwarded_without_key(self):
        from dictaflow.manager import ProviderManager

        manager = ProviderManager(make_registry(), config(speech_provider="groq"))
        manager.initialize("en-US")
        states, completed = [], []
        manager.state_changed.connect(lambda old, new: states.append(new))
        manager.completed.connect(completed.append)

        manager.start_recognition()
        manager.stop_recognition()

        assert states == [
            RecognitionState.INITIALIZING,
            RecognitionState.LISTENING,
            RecognitionState.PROCESSING,
            RecognitionState.IDLE,
        ]
        # Buffer is empty, so the final pass is skipped
        assert completed == [""]

    def test_inactive_provider_events_are_dropped(self):
        from dictaflow.manager import ProviderManager

        registry = make_registry()
        manager = ProviderManager(registry, config(speech_provider="groq"))
        manager.initialize("en-US")
        partials = []
        manager.partial.connect(partials.append)

        registry.get(SpeechProvider.OPENAI).partial.emit(SpeechProvider.OPENAI, "stale")
        registry.get(SpeechProvider.GROQ).partial.emit(SpeechProvider.GROQ, "live")

        assert partials == ["live"]


class TestSettingsChanged:
    """Tests for hot-swapping on settings change."""

    def make_manager(self, **availability):
        from dictaflow.manager import ProviderManager

        registry = make_registry(**availability)
        manager = ProviderManager(registry, config(speech_provider="groq"))
        manager.initialize("en-US")
        return manager, registry

    def test_nothing_changed_does_not_reinitialize(self):
        manager, registry = self.make_manager()
        states = []
        manager.state_changed.connect(lambda old, new: states.append((old, new)))

        manager.on_settings_changed(config(speech_provider="groq", groq_model="other"))

        assert registry.get(SpeechProvider.GROQ).init_languages == ["en-US"]
        assert registry.get(SpeechProvider.GROQ).config.groq_model == "other"
        assert states == []

    def test_swap_initializes_target_and_emits_refresh(self):
        manager, registry = self.make_manager()
        states = []
        manager.state_changed.connect(lambda old, new: states.append((old, new)))

        manager.on_settings_changed(config(speech_provider="openai"))

        assert manager.active_provider_name == "openai"
        assert registry.get(SpeechProvider.OPENAI).init_languages == ["en-US"]
        assert states == [(RecognitionState.IDLE, RecognitionState.IDLE)]

    def test_swap_logs_metric(self):
        from dictaflow.manager import ProviderManager

        metrics = Mock()
        manager = ProviderManager(make_registry(), config(speech_provider="groq"), metrics)
        manager.initialize("en-US")

        manager.on_settings_changed(config(speech_provider="openai"))

        metrics.log.assert_called_once_with(
            "provider_swapped", from_provider="groq", to_provider="openai", language="en-US",
        )

    def test_failed_initialize_keeps_previous_provider(self):
        from dictaflow.errors import UnavailableError

        manager, registry = self.make_manager()
        registry.get(SpeechProvider.OPENAI).fail_load = UnavailableError("no model")
        errors = []
        manager.error.connect(lambda message, exc: errors.append(exc))

        manager.on_settings_changed(config(speech_provider="openai"))

        assert manager.active_provider_name == "groq"
        assert len(errors) == 1
        assert isinstance(errors[0], UnavailableError)

    def test_no_available_provider_emits_error(self):
        manager, registry = self.make_manager()
        registry.get(SpeechProvider.OPENAI).available = False
        registry.get(SpeechProvider.WHISPER_SERVER).available = False
        errors = []
        manager.error.connect(lambda message, exc: errors.append(message))

        manager.on_settings_changed(config(speech_provider="openai"))

        assert manager.active_provider_name == "groq"
        assert len(errors) == 1

    def test_listening_session_is_stopped_before_swap(self):
        manager, registry = self.make_manager()
        groq = registry.get(SpeechProvider.GROQ)
        completed = []
        manager.completed.connect(completed.append)

        manager.start_recognition()
        assert groq.state == RecognitionState.LISTENING

        manager.on_settings_changed(config(speech_provider="openai"))

        assert groq.state == RecognitionState.IDLE
        assert completed == [""]
        assert manager.active_provider_name == "openai"

    def test_language_change_reinitializes_same_provider(self):
        manager, registry = self.make_manager()
        languages = []
        manager.language_changed.connect(languages.append)

        manager.on_settings_changed(config(speech_provider="groq", recognition_language="fr-FR"))

        assert registry.get(SpeechProvider.GROQ).init_languages == ["en-US", "fr-FR"]
        assert manager.language == "fr-FR"
        assert languages == ["fr-FR"]

    def test_old_provider_events_dropped_after_swap(self):
        manager, registry = self.make_manager()
        partials = []
        manager.partial.connect(partials.append)

        manager.on_settings_changed(config(speech_provider="openai"))
        registry.get(SpeechProvider.GROQ).partial.emit(SpeechProvider.GROQ, "late")

        assert partials == []
