"""
Guarded state machine for recognition and synthesis providers.

Every transition is a compare-and-swap: it only happens if the current
state equals the expected one. Concurrent start/stop calls therefore
can't race into an inconsistent state. There is no terminal state;
the error state reverts to idle on its own after a short pause.
"""

import threading
from enum import Enum
from typing import Optional

from .events import Signal


ERROR_RESET_DELAY = 2.0  # seconds spent in the error state before reverting


class StateMachine:
    """
    Thread-safe state holder with guarded transitions.

    state_changed is emitted as (old_state, new_state) after the lock
    is released, so handlers may call back into the machine.

    Usage:
        machine = StateMachine(RecognitionState.IDLE, RecognitionState.ERROR)
        if machine.transition(RecognitionState.IDLE, RecognitionState.INITIALIZING):
            ...
    """

    def __init__(
        self,
        idle_state: Enum,
        error_state: Enum,
        error_reset_delay: float = ERROR_RESET_DELAY,
    ):
        self.idle_state = idle_state
        self.error_state = error_state
        self.error_reset_delay = error_reset_delay
        self.state_changed = Signal("state_changed")

        self._state = idle_state
        self._lock = threading.Lock()
        self._reset_timer: Optional[threading.Timer] = None

    @property
    def state(self) -> Enum:
        with self._lock:
            return self._state

    def transition(self, expected: Enum, new_state: Enum) -> bool:
        """
        Move to new_state only if the current state is expected.

        Returns:
            True if the transition happened
        """
        with self._lock:
            if self._state != expected:
                return False
            old = self._state
            self._state = new_state

        self.state_changed.emit(old, new_state)
        return True

    def fail(self) -> None:
        """Enter the error state from anywhere and schedule the revert."""
        with self._lock:
            old = self._state
            self._state = self.error_state
            self._cancel_reset_timer()
            timer = threading.Timer(self.error_reset_delay, self._revert_from_error)
            timer.daemon = True
            self._reset_timer = timer

        if old != self.error_state:
            self.state_changed.emit(old, self.error_state)
        timer.start()

    def reset(self) -> None:
        """Force the idle state. Used on shutdown."""
        with self._lock:
            self._cancel_reset_timer()
            old = self._state
            self._state = self.idle_state

        if old != self.idle_state:
            self.state_changed.emit(old, self.idle_state)

    def _revert_from_error(self) -> None:
        self.transition(self.error_state, self.idle_state)

    def _cancel_reset_timer(self) -> None:
        # Must be called with lock held
        if self._reset_timer is not None:
            self._reset_timer.cancel()
            self._reset_timer = None
