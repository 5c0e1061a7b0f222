"""Tests for the connection state machine."""

import asyncio
from unittest.mock import Mock

import pytest

from huddle.errors import InvalidTransitionError
from huddle.state import (
    TIMEOUT_MESSAGES,
    VALID_TRANSITIONS,
    ConnectionState,
    ConnectionStateMachine,
    default_timeouts,
)

S = ConnectionState


def drive(machine, *states):
    for state in states:
        machine.transition_to(state)


class TestTransitions:
    """Transition validation."""

    def test_initial_state(self):
        machine = ConnectionStateMachine()
        assert machine.state == S.WAITING
        assert machine.error is None
        assert not machine.is_terminal

    def test_happy_path_with_verification(self):
        machine = ConnectionStateMachine()
        drive(machine, S.CONNECTING, S.VERIFYING, S.CONNECTED, S.ACTIVE, S.DISCONNECTED)
        assert machine.is_terminal

    def test_happy_path_without_verification(self):
        machine = ConnectionStateMachine()
        drive(machine, S.CONNECTING, S.CONNECTED, S.ACTIVE)
        assert machine.state == S.ACTIVE

    @pytest.mark.parametrize(
        "path,bad",
        [
            ((), S.CONNECTED),
            ((), S.ACTIVE),
            ((S.CONNECTING,), S.ACTIVE),
            ((S.CONNECTING, S.VERIFYING), S.ACTIVE),
            ((S.CONNECTING, S.CONNECTED), S.CONNECTING),
            ((S.CONNECTING, S.CONNECTED, S.ACTIVE), S.CONNECTED),
        ],
    )
    def test_invalid_transitions_raise(self, path, bad):
        machine = ConnectionStateMachine()
        drive(machine, *path)

        with pytest.raises(InvalidTransitionError):
            machine.transition_to(bad)

    def test_invalid_transition_is_value_error(self):
        machine = ConnectionStateMachine()
        with pytest.raises(ValueError):
            machine.transition_to(S.ACTIVE)

    def test_disconnected_is_terminal(self):
        """Nothing leaves disconnected."""
        machine = ConnectionStateMachine()
        machine.close()

        for state in S:
            assert not machine.can_transition(state)
        assert VALID_TRANSITIONS[S.DISCONNECTED] == set()

    def test_every_live_state_can_fail(self):
        for state in S:
            if state != S.DISCONNECTED:
                assert S.DISCONNECTED in VALID_TRANSITIONS[state]


class TestFailAndClose:
    """fail() and close()."""

    def test_fail_records_error(self):
        machine = ConnectionStateMachine()
        machine.transition_to(S.CONNECTING)

        assert machine.fail("boom") is True
        assert machine.state == S.DISCONNECTED
        assert machine.error == "boom"

    def test_fail_twice_keeps_first_error(self):
        machine = ConnectionStateMachine()
        machine.fail("first")

        assert machine.fail("second") is False
        assert machine.error == "first"

    def test_close_without_error(self):
        machine = ConnectionStateMachine()
        machine.close()
        machine.close()
        assert machine.error is None


class TestListeners:
    """Listener notification."""

    def test_listener_receives_transition(self):
        machine = ConnectionStateMachine()
        listener = Mock()
        machine.add_listener(listener)

        machine.transition_to(S.CONNECTING)
        machine.fail("nope")

        assert listener.call_args_list[0].args == (S.WAITING, S.CONNECTING, None)
        assert listener.call_args_list[1].args == (S.CONNECTING, S.DISCONNECTED, "nope")

    def test_remove_listener(self):
        machine = ConnectionStateMachine()
        listener = Mock()
        remove = machine.add_listener(listener)
        remove()
        remove()

        machine.transition_to(S.CONNECTING)

        listener.assert_not_called()

    def test_listener_error_does_not_block_others(self):
        machine = ConnectionStateMachine()
        second = Mock()
        machine.add_listener(Mock(side_effect=RuntimeError("bad listener")))
        machine.add_listener(second)

        machine.transition_to(S.CONNECTING)

        second.assert_called_once()
        assert machine.state == S.CONNECTING


class TestTimeouts:
    """Per-state timers."""

    def test_default_timeouts(self):
        timeouts = default_timeouts(waiting=10, connecting=5)
        assert timeouts == {S.WAITING: 10, S.CONNECTING: 5, S.VERIFYING: 5}

    async def test_waiting_timeout(self):
        machine = ConnectionStateMachine(timeouts={S.WAITING: 0.01})
        machine.start()

        await asyncio.sleep(0.05)

        assert machine.state == S.DISCONNECTED
        assert machine.error == TIMEOUT_MESSAGES[S.WAITING]

    async def test_leaving_state_cancels_timer(self):
        machine = ConnectionStateMachine(timeouts={S.CONNECTING: 0.02})
        machine.transition_to(S.CONNECTING)
        machine.transition_to(S.CONNECTED)

        await asyncio.sleep(0.05)

        assert machine.state == S.CONNECTED

    async def test_verifying_timeout(self):
        machine = ConnectionStateMachine(timeouts=default_timeouts(waiting=10, connecting=0.01))
        machine.transition_to(S.CONNECTING)
        machine.transition_to(S.VERIFYING)

        await asyncio.sleep(0.05)

        assert machine.error == TIMEOUT_MESSAGES[S.VERIFYING]

    async def test_unbounded_state_never_times_out(self):
        machine = ConnectionStateMachine(timeouts={S.WAITING: 0.01})
        machine.transition_to(S.CONNECTING)
        machine.transition_to(S.CONNECTED)

        await asyncio.sleep(0.05)

        assert machine.state == S.CONNECTED
