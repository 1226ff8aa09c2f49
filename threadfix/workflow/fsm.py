"""PR resolution run state machine using the transitions library.

A run moves through:

    researching -> planning -> executing -> resolving -> done

and may drop to `aborted` from any non-terminal state before resolving.

Usage:
    from threadfix.workflow.fsm import RunFSM, RunState

    fsm = RunFSM("acme/api#42")
    fsm.plan()  # researching -> planning
    fsm.transition_to(RunState.EXECUTING, reason="2 batches")
"""

import logging
from enum import Enum
from typing import Callable

from transitions import Machine, MachineError

logger = logging.getLogger(__name__)


class RunState(Enum):
    """All valid PR resolution run states."""

    RESEARCHING = "researching"
    PLANNING = "planning"
    EXECUTING = "executing"
    RESOLVING = "resolving"

    # Terminal states
    DONE = "done"
    ABORTED = "aborted"


STATES = [s.value for s in RunState]

TERMINAL_STATES = {RunState.DONE.value, RunState.ABORTED.value}

# Each trigger becomes a method on the FSM
TRANSITIONS = [
    {"trigger": "plan", "source": "researching", "dest": "planning"},
    {"trigger": "execute", "source": "planning", "dest": "executing"},
    {"trigger": "resolve", "source": "executing", "dest": "resolving"},
    {"trigger": "finish", "source": "resolving", "dest": "done"},

    # Source errors, planning errors, cancellation
    {"trigger": "abort", "source": "researching", "dest": "aborted"},
    {"trigger": "abort", "source": "planning", "dest": "aborted"},
    {"trigger": "abort", "source": "executing", "dest": "aborted"},
]


def _build_trigger_lookup() -> dict[tuple[str, str], str]:
    """Build lookup from (source, dest) -> trigger name."""
    lookup: dict[tuple[str, str], str] = {}
    for t in TRANSITIONS:
        key = (t["source"], t["dest"])
        if key not in lookup:
            lookup[key] = t["trigger"]
    return lookup


TRIGGER_FOR = _build_trigger_lookup()


class InvalidTransition(Exception):
    """Raised when attempting an invalid state transition."""

    def __init__(self, from_state: str, to_state: RunState, run_id: str = ""):
        self.from_state = from_state
        self.to_state = to_state
        self.run_id = run_id
        super().__init__(
            f"Invalid transition: {from_state} -> {to_state.value}"
            + (f" (run: {run_id})" if run_id else "")
        )


class RunFSM:
    """In-memory state machine for one PR resolution run.

    Keeps the ordered transition history so reports and tests can inspect
    the path a run took.
    """

    def __init__(self, run_id: str, on_transition: Callable[[str, str, str], None] | None = None):
        """
        Args:
            run_id: PR identifier, used in log lines
            on_transition: Optional callback(from_state, to_state, trigger)
        """
        self.run_id = run_id
        self.on_transition = on_transition
        self.history: list[tuple[str, str, str]] = []

        self.machine = Machine(
            model=self,
            states=STATES,
            transitions=TRANSITIONS,
            initial=RunState.RESEARCHING.value,
            auto_transitions=False,
            send_event=True,
            after_state_change="on_state_change",
        )

    def on_state_change(self, event) -> None:
        from_state = event.transition.source
        to_state = event.transition.dest
        trigger = event.event.name

        logger.info(f"[FSM] {self.run_id}: {from_state} -> {to_state} ({trigger})")
        self.history.append((from_state, to_state, trigger))

        if self.on_transition:
            self.on_transition(from_state, to_state, trigger)

    @property
    def current(self) -> RunState:
        return RunState(self.state)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition_to(self, to_state: RunState, reason: str = "") -> None:
        """Move to to_state via the matching trigger.

        Raises:
            InvalidTransition: If no trigger leads from the current state to to_state
        """
        if self.state == to_state.value:
            logger.debug(f"[FSM] {self.run_id}: already in {to_state.value}, no-op")
            return

        trigger = TRIGGER_FOR.get((self.state, to_state.value))
        if trigger is None:
            raise InvalidTransition(self.state, to_state, self.run_id)

        if reason:
            logger.debug(f"[FSM] {self.run_id}: {trigger} because {reason}")
        try:
            getattr(self, trigger)()
        except MachineError as e:
            raise InvalidTransition(self.state, to_state, self.run_id) from e

    def can(self, trigger: str) -> bool:
        """Check if a trigger can be executed in current state."""
        return trigger in self.machine.get_triggers(self.state)

    def get_available_triggers(self) -> list[str]:
        """Get list of triggers available in current state."""
        return self.machine.get_triggers(self.state)
