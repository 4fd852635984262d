"""
Minimal multicast callback list.

Providers and managers expose one Signal per event kind. Providers emit
with their own id as the first argument so a manager can tell which
provider an event came from.
"""

import threading
from typing import Callable, List


class Signal:
    """
    Thread-safe list of callbacks.

    Usage:
        partial = Signal("partial")
        partial.connect(lambda source, text: print(text))
        partial.emit(SpeechProvider.OPENAI, "hello")
    """

    def __init__(self, name: str = ""):
        self.name = name
        self._handlers: List[Callable] = []
        self._lock = threading.Lock()

    def connect(self, handler: Callable) -> None:
        with self._lock:
            self._handlers.append(handler)

    def disconnect(self, handler: Callable) -> None:
        with self._lock:
            if handler in self._handlers:
                self._handlers.remove(handler)

    def clear(self) -> None:
        with self._lock:
            self._handlers.clear()

    def emit(self, *args) -> None:
        """Call every handler. A failing handler doesn't stop the others."""
        with self._lock:
            handlers = list(self._handlers)

        for handler in handlers:
            try:
                handler(*args)
            except Exception as e:
                print(f"[Signal] {self.name} handler error: {e}")

    def __len__(self) -> int:
        with self._lock:
            return len(self._handlers)
