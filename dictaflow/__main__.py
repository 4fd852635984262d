"""
Main entry point for DictaFlow.

Run with: python -m dictaflow

Console controls:
    Enter         start / stop recording
    say <text>    read text aloud
    reload        re-read settings and apply them
    q             quit
"""

import signal
import sys
import threading
from typing import Optional

from . import __version__
from .audio import SoundDeviceCapture
from .config import Config
from .errors import DictationError
from .manager import ProviderManager
from .metrics import MetricsWriter, get_metrics
from .providers import build_registry
from .server import InferenceServerSupervisor
from .tts import build_tts_providers
from .tts.manager import SynthesisManager
from .types import RecognitionState


# Global state
config: Config
metrics: MetricsWriter
supervisor: InferenceServerSupervisor
manager: ProviderManager
tts: SynthesisManager
_deadline: Optional[threading.Timer] = None
_shutdown_done = False


def main():
    """Main entry point."""
    global config, metrics, supervisor, manager, tts

    print(f"DictaFlow v{__version__} starting...")

    # Load configuration
    config = Config.load()
    snapshot = config.snapshot()
    print(f"  Speech provider: {snapshot.speech_provider}")
    print(f"  Language: {snapshot.recognition_language}")
    print(f"  Streaming: {'on' if snapshot.streaming_enabled else 'off'}")

    # Initialize metrics
    metrics = get_metrics(config.metrics_file)

    # One supervisor for the whole app, shared by every provider that needs it
    supervisor = InferenceServerSupervisor(
        server_dir=snapshot.whisper_server_dir,
        pid_file=config.server_pid_file,
        log_file=config.server_log_file,
        use_gpu=snapshot.whisper_use_gpu,
        metrics=metrics,
    )

    capture = SoundDeviceCapture(sample_rate=snapshot.sample_rate, device=snapshot.input_device)

    registry = build_registry(capture, supervisor, metrics)
    manager = ProviderManager(registry, snapshot, metrics)
    manager.partial.connect(lambda text: print(f"  ... {text}"))
    manager.completed.connect(_on_completed)
    manager.error.connect(lambda message, exc: print(f"  Error: {message}"))
    manager.state_changed.connect(lambda old, new: print(f"  [{new.value}]"))

    tts = SynthesisManager(build_tts_providers(metrics), snapshot, metrics)
    tts.error.connect(lambda message, exc: print(f"  TTS error: {message}"))

    # Setup signal handlers
    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    try:
        manager.initialize(snapshot.recognition_language)
        print(f"  Active provider: {manager.active_provider_name}")
    except DictationError as e:
        print(f"  Recognition unavailable: {e}")

    try:
        tts.initialize(snapshot.recognition_language)
        print(f"  Text-to-speech: {tts.active_provider_name}")
    except DictationError as e:
        print(f"  Text-to-speech unavailable: {e}")

    print("Ready! Press Enter to record, 'say <text>' to speak, 'q' to quit.")

    try:
        _console_loop()
    finally:
        shutdown()


def _console_loop() -> None:
    while True:
        try:
            line = input()
        except EOFError:
            return

        command = line.strip()
        if command in ("q", "quit", "exit"):
            return
        elif command.startswith("say "):
            text = command[4:]
            threading.Thread(target=_speak, args=(text,), daemon=True).start()
        elif command == "reload":
            on_settings()
        elif command == "":
            toggle_recording()
        else:
            print(f"  Unknown command: {command}")


def toggle_recording() -> None:
    """Start recording if idle, stop it if listening."""
    if manager.current_state == RecognitionState.LISTENING:
        on_stop()
    else:
        on_start()


def on_start() -> None:
    """Called when recording should start."""
    global _deadline

    cancel = threading.Event()
    try:
        if not manager.start_recognition(cancel):
            print(f"  Busy ({manager.current_state.value})")
            return
    except DictationError as e:
        print(f"  Could not start: {e}")
        return

    # Max recording length: firing the token stops the session like Enter does
    _deadline = threading.Timer(config.max_recording_seconds, cancel.set)
    _deadline.daemon = True
    _deadline.start()
    print(f"Recording... (max {config.max_recording_seconds}s)")


def on_stop() -> None:
    """Called when recording should stop."""
    global _deadline

    if _deadline is not None:
        _deadline.cancel()
        _deadline = None

    # Final text arrives through the completed signal
    manager.stop_recognition()


def on_settings() -> None:
    """Reload settings from disk and hand the new snapshot to both managers."""
    config.reload()

    snapshot = config.snapshot()
    manager.on_settings_changed(snapshot)
    tts.on_settings_changed(snapshot)
    print(f"Settings reloaded (provider: {manager.active_provider_name})")


def _on_completed(text: str) -> None:
    if text:
        print(f"\n>>> {text}\n")
    else:
        print("  (nothing recognized)")


def _speak(text: str) -> None:
    try:
        tts.speak(text)
    except DictationError as e:
        print(f"  Cannot speak: {e}")


def shutdown() -> None:
    """Clean shutdown."""
    global _shutdown_done
    if _shutdown_done:
        return
    _shutdown_done = True

    print("\nShutting down...")

    if _deadline is not None:
        _deadline.cancel()

    manager.shutdown()
    tts.shutdown()

    if config.whisper_keep_server_alive:
        print("  Leaving whisper server running for next start")
    else:
        supervisor.stop_server()

    metrics.shutdown()
    print("Goodbye!")


def _signal_handler(signum, frame):
    """Handle SIGINT/SIGTERM."""
    shutdown()
    sys.exit(0)


if __name__ == "__main__":
    main()
