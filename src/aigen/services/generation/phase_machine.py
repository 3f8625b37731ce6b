"""Explicit phase reducer for wizard-driven generation.

A pure `(state, action) -> state` function. Transitions not listed in
`_TRANSITIONS` return the incoming state unchanged, so callers can dispatch
freely without corrupting the phase.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class FlowStatus(StrEnum):
    IDLE = "IDLE"
    PREPARING = "PREPARING"
    GENERATING = "GENERATING"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"


class FlowActionType(StrEnum):
    START_PREPARATION = "START_PREPARATION"
    START_GENERATION = "START_GENERATION"
    COMPLETE = "COMPLETE"
    ERROR = "ERROR"
    RESET = "RESET"


@dataclass(frozen=True, slots=True)
class FlowState:
    status: FlowStatus = FlowStatus.IDLE
    error: str | None = None


@dataclass(frozen=True, slots=True)
class FlowAction:
    type: FlowActionType
    error: str | None = None


INITIAL_FLOW_STATE = FlowState()

_TRANSITIONS: dict[FlowActionType, tuple[frozenset[FlowStatus], FlowStatus]] = {
    FlowActionType.START_PREPARATION: (
        frozenset({FlowStatus.IDLE}),
        FlowStatus.PREPARING,
    ),
    FlowActionType.START_GENERATION: (
        frozenset({FlowStatus.PREPARING}),
        FlowStatus.GENERATING,
    ),
    FlowActionType.COMPLETE: (
        frozenset({FlowStatus.GENERATING}),
        FlowStatus.COMPLETED,
    ),
    FlowActionType.ERROR: (
        frozenset({FlowStatus.PREPARING, FlowStatus.GENERATING}),
        FlowStatus.ERROR,
    ),
}


def generation_reducer(state: FlowState, action: FlowAction) -> FlowState:
    if action.type is FlowActionType.RESET:
        return INITIAL_FLOW_STATE

    allowed_from, target = _TRANSITIONS[action.type]
    if state.status not in allowed_from:
        return state

    if target is FlowStatus.ERROR:
        return FlowState(status=target, error=action.error or "Generation failed")
    return FlowState(status=target)


def can_transition(state: FlowState, action_type: FlowActionType) -> bool:
    if action_type is FlowActionType.RESET:
        return True
    allowed_from, _ = _TRANSITIONS[action_type]
    return state.status in allowed_from
