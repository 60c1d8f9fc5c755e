"""Generic state transition primitives with an audit trail.

Used for job status, client operation status and the lifecycle of focus
items. Transition tables map a state to the states reachable from it; an
empty entry marks a terminal state. Moving to the current state is always
allowed.
"""

from typing import Any, Dict, Iterable, List, Mapping, Optional

from pydantic import BaseModel, Field

from coach.utils.time import utc_now_ms

TransitionTable = Mapping[str, Iterable[str]]


class InvalidTransitionError(ValueError):
    def __init__(self, item_kind: str, current: str, target: str, allowed: List[str]):
        self.item_kind = item_kind
        self.current = current
        self.target = target
        self.allowed = allowed
        valid = ", ".join(allowed) or "none (terminal state)"
        super().__init__(
            f"Invalid {item_kind} state transition: {current} → {target}. "
            f"Valid transitions: {valid}"
        )


class StateTransition(BaseModel):
    state: str
    timestamp: str = Field(default_factory=utc_now_ms)
    source: Optional[str] = None
    note: Optional[str] = None


class StatefulItem(BaseModel):
    data: Dict[str, Any] = Field(default_factory=dict)
    state_history: List[StateTransition] = Field(..., min_length=1)

    @property
    def state(self) -> str:
        return current_state(self.state_history)


def _state_value(state: Any) -> str:
    return state.value if hasattr(state, "value") else str(state)


def validate_transition(
    current: Any, target: Any, transitions: TransitionTable, item_kind: str
) -> None:
    """Raise InvalidTransitionError unless ``current -> target`` is legal."""
    current_value = _state_value(current)
    target_value = _state_value(target)
    if current_value == target_value:
        return
    if current_value not in transitions:
        raise InvalidTransitionError(item_kind, current_value, target_value, [])
    allowed = [_state_value(state) for state in transitions[current_value]]
    if target_value not in allowed:
        raise InvalidTransitionError(item_kind, current_value, target_value, allowed)


def is_terminal(state: Any, transitions: TransitionTable) -> bool:
    return not list(transitions.get(_state_value(state), []))


def current_state(history: List[StateTransition]) -> str:
    if not history:
        raise ValueError("State history is empty")
    return history[-1].state


def create_stateful_item(
    data: Dict[str, Any],
    initial_state: Any,
    source: Optional[str] = None,
    note: Optional[str] = None,
) -> StatefulItem:
    return StatefulItem(
        data=dict(data),
        state_history=[
            StateTransition(state=_state_value(initial_state), source=source, note=note)
        ],
    )


def transition_item(
    item: StatefulItem,
    new_state: Any,
    transitions: TransitionTable,
    item_kind: str,
    source: Optional[str] = None,
    note: Optional[str] = None,
) -> StatefulItem:
    """Return a copy of ``item`` with ``new_state`` appended to its history."""
    validate_transition(item.state, new_state, transitions, item_kind)
    entry = StateTransition(state=_state_value(new_state), source=source, note=note)
    return item.model_copy(update={"state_history": [*item.state_history, entry]})
