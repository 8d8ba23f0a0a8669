"""Connection state management for BLE battery peripherals."""

import time
from collections.abc import Callable
from enum import Enum, auto
from typing import Any


class ConnectionState(Enum):
    """Enum representing the lifecycle states of a battery peripheral."""

    DISCOVERED = auto()
    CONNECTING = auto()
    CONNECTED = auto()
    SERVICES_DISCOVERED = auto()
    SUBSCRIBED = auto()
    DISCONNECTED = auto()
    ERROR = auto()

    @property
    def is_terminal(self) -> bool:
        """Return True for states a device never leaves."""
        return self in (ConnectionState.DISCONNECTED, ConnectionState.ERROR)


class ConnectionStateManager:
    """State holder for one peripheral, with event callbacks and history."""

    def __init__(self, initial: ConnectionState = ConnectionState.DISCOVERED) -> None:
        """Initialize ConnectionStateManager with an initial state and history."""
        self._state: ConnectionState = initial
        self._history: list[tuple[ConnectionState, float]] = [
            (self._state, time.time()),
        ]
        self._callbacks: dict[
            ConnectionState,
            list[Callable[[ConnectionState], Any]],
        ] = {}

    @property
    def state(self) -> ConnectionState:
        """Get the current connection state."""
        return self._state

    @property
    def history(self) -> list[tuple[ConnectionState, float]]:
        """Get the history of state transitions as (state, timestamp) tuples."""
        return self._history.copy()

    def on_state(
        self,
        state: ConnectionState,
        callback: Callable[[ConnectionState], Any],
    ) -> None:
        """
        Register a callback to be called when the given state is entered.

        Args:
            state: The ConnectionState to listen for.
            callback: Function to call with the new state.
        """
        self._callbacks.setdefault(state, []).append(callback)

    def set_state(self, new_state: ConnectionState) -> bool:
        """
        Transition to a new state, record history, and trigger callbacks.

        Args:
            new_state: The new ConnectionState to transition to.

        Returns:
            True if the state changed, False if it was already current.
        """
        if new_state == self._state:
            return False
        self._state = new_state
        self._history.append((new_state, time.time()))
        for cb in self._callbacks.get(new_state, []):
            cb(new_state)
        return True

    def get_state_history(self, limit: int = 20) -> list[tuple[ConnectionState, float]]:
        """
        Get the most recent state transitions.

        Args:
            limit: Maximum number of history entries to return.

        Returns:
            List of (state, timestamp) tuples.
        """
        return self._history[-limit:]
