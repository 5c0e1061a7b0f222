"""Connection state machine.

Tracks one client's progress through a session:

    waiting -> connecting -> [verifying] -> connected -> active -> disconnected

Any non-terminal state may fail to `disconnected`, which is terminal.
States listed in `timeouts` arm a timer on entry; if the state is still
current when the timer fires, the machine fails with a timeout error.
"""

import asyncio
import logging
from enum import Enum
from typing import Callable, Optional

from huddle.errors import InvalidTransitionError

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    """Client connection states."""

    WAITING = "waiting"
    CONNECTING = "connecting"
    VERIFYING = "verifying"
    CONNECTED = "connected"
    ACTIVE = "active"
    DISCONNECTED = "disconnected"


VALID_TRANSITIONS: dict[ConnectionState, set[ConnectionState]] = {
    ConnectionState.WAITING: {ConnectionState.CONNECTING, ConnectionState.DISCONNECTED},
    ConnectionState.CONNECTING: {
        ConnectionState.VERIFYING,
        ConnectionState.CONNECTED,
        ConnectionState.DISCONNECTED,
    },
    ConnectionState.VERIFYING: {ConnectionState.CONNECTED, ConnectionState.DISCONNECTED},
    ConnectionState.CONNECTED: {ConnectionState.ACTIVE, ConnectionState.DISCONNECTED},
    ConnectionState.ACTIVE: {ConnectionState.DISCONNECTED},
    ConnectionState.DISCONNECTED: set(),
}

TIMEOUT_MESSAGES = {
    ConnectionState.WAITING: "Timed out waiting for a peer",
    ConnectionState.CONNECTING: "Timed out while connecting",
    ConnectionState.VERIFYING: "Timed out waiting for verification",
}

# Listener: (old_state, new_state, error)
StateListener = Callable[[ConnectionState, ConnectionState, Optional[str]], None]


def default_timeouts(waiting: float = 15 * 60, connecting: float = 5 * 60) -> dict:
    """Timeout table for the bounded states."""
    return {
        ConnectionState.WAITING: waiting,
        ConnectionState.CONNECTING: connecting,
        ConnectionState.VERIFYING: connecting,
    }


class ConnectionStateMachine:
    """Validated connection state with listeners and per-state timeouts."""

    def __init__(
        self,
        initial: ConnectionState = ConnectionState.WAITING,
        timeouts: dict[ConnectionState, float] | None = None,
    ):
        """Initialize state machine.

        Args:
            initial: Starting state.
            timeouts: Seconds allowed in each bounded state. States not listed
                never time out.
        """
        self._state = initial
        self._error: str | None = None
        self._timeouts = timeouts or {}
        self._timer: asyncio.TimerHandle | None = None
        self._listeners: list[StateListener] = []

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def error(self) -> str | None:
        """Human-readable reason for the last failure, if any."""
        return self._error

    @property
    def is_terminal(self) -> bool:
        return self._state == ConnectionState.DISCONNECTED

    def can_transition(self, new_state: ConnectionState) -> bool:
        return new_state in VALID_TRANSITIONS[self._state]

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        """Register a listener.

        Returns:
            Function that removes the listener.
        """
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def start(self) -> None:
        """Arm the timeout for the current state. Requires a running loop."""
        self._arm_timer()

    def transition_to(self, new_state: ConnectionState, error: str | None = None) -> None:
        """Transition to a new state with validation.

        Args:
            new_state: Target state.
            error: Failure reason (only meaningful for DISCONNECTED).

        Raises:
            InvalidTransitionError: If transition is not valid from current state.
        """
        if not self.can_transition(new_state):
            raise InvalidTransitionError(
                f"Invalid transition: {self._state.value} -> {new_state.value}"
            )

        old_state = self._state
        self._state = new_state
        if error is not None:
            self._error = error
        self._cancel_timer()
        if new_state != ConnectionState.DISCONNECTED:
            self._arm_timer()

        logger.debug(f"Connection state {old_state.value} -> {new_state.value}")
        self._notify(old_state, new_state)

    def fail(self, error: str) -> bool:
        """Move to DISCONNECTED with an error.

        Returns:
            False if already disconnected (nothing changed).
        """
        if self.is_terminal:
            return False
        logger.info(f"Connection failed in {self._state.value}: {error}")
        self.transition_to(ConnectionState.DISCONNECTED, error=error)
        return True

    def close(self) -> None:
        """Disconnect without an error (no-op when already terminal)."""
        if not self.is_terminal:
            self.transition_to(ConnectionState.DISCONNECTED)

    def _notify(self, old_state: ConnectionState, new_state: ConnectionState) -> None:
        for listener in list(self._listeners):
            try:
                listener(old_state, new_state, self._error)
            except Exception as e:
                logger.error(f"State listener error: {e}")

    def _arm_timer(self) -> None:
        timeout = self._timeouts.get(self._state)
        if timeout is None:
            return
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(timeout, self._on_timeout, self._state)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timeout(self, state: ConnectionState) -> None:
        self._timer = None
        if self._state != state:
            return
        message = TIMEOUT_MESSAGES.get(state, f"Timed out in {state.value}")
        logger.warning(message)
        self.fail(message)
