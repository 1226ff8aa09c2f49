"""Tests for threadfix.workflow.fsm module."""

import pytest

from threadfix.workflow.fsm import (
    InvalidTransition,
    RunFSM,
    RunState,
    STATES,
    TERMINAL_STATES,
    TRANSITIONS,
    TRIGGER_FOR,
)


class TestFSMStates:
    """Tests for FSM state definitions."""

    def test_all_states_defined(self):
        assert set(STATES) == {"researching", "planning", "executing", "resolving", "done", "aborted"}

    def test_terminal_states(self):
        assert TERMINAL_STATES == {"done", "aborted"}

    def test_no_transitions_leave_terminal_states(self):
        assert not [t for t in TRANSITIONS if t["source"] in TERMINAL_STATES]

    def test_trigger_lookup(self):
        assert TRIGGER_FOR[("researching", "planning")] == "plan"
        assert TRIGGER_FOR[("executing", "aborted")] == "abort"
        assert ("resolving", "aborted") not in TRIGGER_FOR


class TestRunFSM:
    """Basic FSM behavior."""

    def test_initial_state(self):
        fsm = RunFSM("acme/api#1")
        assert fsm.current == RunState.RESEARCHING
        assert not fsm.is_terminal

    def test_happy_path_history(self):
        seen = []
        fsm = RunFSM("1", on_transition=lambda f, t, trig: seen.append(trig))
        for state in (RunState.PLANNING, RunState.EXECUTING, RunState.RESOLVING, RunState.DONE):
            fsm.transition_to(state)

        assert fsm.current == RunState.DONE
        assert fsm.is_terminal
        assert seen == ["plan", "execute", "resolve", "finish"]
        assert [h[1] for h in fsm.history] == ["planning", "executing", "resolving", "done"]

    def test_trigger_methods(self):
        fsm = RunFSM("1")
        fsm.plan()
        assert fsm.state == "planning"
        assert fsm.can("abort")
        assert set(fsm.get_available_triggers()) == {"execute", "abort"}

    @pytest.mark.parametrize("steps", [
        [],
        [RunState.PLANNING],
        [RunState.PLANNING, RunState.EXECUTING],
    ])
    def test_abort_allowed_before_resolving(self, steps):
        fsm = RunFSM("1")
        for step in steps:
            fsm.transition_to(step)
        fsm.transition_to(RunState.ABORTED)
        assert fsm.current == RunState.ABORTED

    def test_abort_not_allowed_while_resolving(self):
        fsm = RunFSM("1")
        for state in (RunState.PLANNING, RunState.EXECUTING, RunState.RESOLVING):
            fsm.transition_to(state)
        with pytest.raises(InvalidTransition):
            fsm.transition_to(RunState.ABORTED)

    def test_skipping_states_is_invalid(self):
        fsm = RunFSM("1")
        with pytest.raises(InvalidTransition, match="researching -> executing"):
            fsm.transition_to(RunState.EXECUTING)

    def test_terminal_is_final(self):
        fsm = RunFSM("1")
        fsm.transition_to(RunState.ABORTED)
        with pytest.raises(InvalidTransition):
            fsm.transition_to(RunState.PLANNING)

    def test_same_state_is_noop(self):
        fsm = RunFSM("1")
        fsm.transition_to(RunState.RESEARCHING)
        assert fsm.history == []
