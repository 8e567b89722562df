from enum import Enum
from typing import Optional, Callable, List
from dataclasses import dataclass

from .errors import ConflictError, ValidationError


class MixStatus(str, Enum):
    WAITING = "waiting"
    SORTING = "sorting"
    LIVE = "live"
    FINISHED = "finished"


class TransitionError(ConflictError):
    error_type = "TransitionError"

    def __init__(self, from_state: str, to_state: str, reason: str = None):
        self.from_state = from_state
        self.to_state = to_state
        self.reason = reason or f"Cannot transition from {from_state} to {to_state}"
        super().__init__(self.reason, {"from_state": from_state, "to_state": to_state})


@dataclass
class Transition:
    from_state: MixStatus
    to_state: MixStatus
    action: str
    guard: Optional[Callable] = None


def roster_full_guard(capacity: int = 10):
    def guard(context: dict) -> bool:
        return context.get("roster_size", 0) == context.get("capacity", capacity)
    return guard


def bans_exhausted_guard(pool_size: int = 7):
    def guard(context: dict) -> bool:
        return context.get("ban_count", 0) == context.get("pool_size", pool_size) - 1
    return guard


def winner_selected_guard(context: dict) -> bool:
    return context.get("winner") in ("A", "B")


class MixStateMachine:
    """
    Lifecycle of a single mix: waiting -> sorting -> live -> finished.

    Only the transitions listed in TRANSITIONS exist. Status never moves
    backward and ``finished`` has no outgoing transition.
    """
    TRANSITIONS = [
        Transition(MixStatus.WAITING, MixStatus.SORTING, "balance", roster_full_guard()),
        Transition(MixStatus.SORTING, MixStatus.LIVE, "lock_map", bans_exhausted_guard()),
        Transition(MixStatus.LIVE, MixStatus.FINISHED, "finalize", winner_selected_guard),
    ]

    ALLOWED_ACTIONS = {
        MixStatus.WAITING: ["join", "ban", "balance"],
        MixStatus.SORTING: ["ban", "lock_map"],
        MixStatus.LIVE: ["set_server", "finalize"],
        MixStatus.FINISHED: ["record_stats"],
    }

    def __init__(self, initial_state: MixStatus = MixStatus.WAITING):
        self._state = initial_state
        self._history: List[tuple] = []

    @property
    def state(self) -> MixStatus:
        return self._state

    @property
    def allowed_actions(self) -> List[str]:
        return self.ALLOWED_ACTIONS.get(self._state, [])

    @property
    def is_terminal(self) -> bool:
        return not any(t.from_state == self._state for t in self.TRANSITIONS)

    def can_transition(self, action: str) -> bool:
        for t in self.TRANSITIONS:
            if t.from_state == self._state and t.action == action:
                return True
        return False

    def can_perform(self, action: str) -> bool:
        return action in self.allowed_actions

    def require(self, action: str):
        """Raise ConflictError unless ``action`` is legal in the current state."""
        if not self.can_perform(action):
            raise ConflictError(
                f"Cannot {action} while mix is {self._state.value}",
                {"status": self._state.value, "action": action},
            )

    def transition(self, action: str, guard_context: dict = None) -> MixStatus:
        for t in self.TRANSITIONS:
            if t.from_state == self._state and t.action == action:
                if t.guard and guard_context is not None:
                    if not t.guard(guard_context):
                        raise TransitionError(
                            self._state.value,
                            t.to_state.value,
                            f"Guard condition failed for action '{action}'"
                        )

                old_state = self._state
                self._state = t.to_state
                self._history.append((old_state, action, self._state))
                return self._state

        raise TransitionError(
            self._state.value,
            "unknown",
            f"No valid transition for action '{action}' from state '{self._state.value}'"
        )

    def get_history(self) -> List[tuple]:
        return self._history.copy()

    @classmethod
    def from_state_string(cls, state_str: str) -> "MixStateMachine":
        try:
            state = MixStatus(state_str)
        except ValueError:
            raise ValidationError(f"Unknown mix status '{state_str}'")
        return cls(initial_state=state)
