from __future__ import annotations

from typing import Callable, Dict, List, Tuple

from gare.domain.records import TERMINAL_LOT_STATES, LotSnapshot, LotState
from gare.domain.results import ErrorKind, Result


Guard = Callable[[LotSnapshot], "Result[None] | None"]


# Rejected is reachable from every non-terminal state and is handled apart.
TRANSITIONS: Dict[LotState, Tuple[LotState, ...]] = {
    LotState.CREATED: (LotState.TECHNICAL_EVALUATION,),
    LotState.TECHNICAL_EVALUATION: (LotState.ECONOMIC_EVALUATION,),
    LotState.ECONOMIC_EVALUATION: (LotState.PRICE_ELABORATION,),
    LotState.PRICE_ELABORATION: (LotState.SUBMITTED,),
    LotState.SUBMITTED: (LotState.UNDER_EXAMINATION,),
    LotState.UNDER_EXAMINATION: (
        LotState.CLARIFICATION_PENDING,
        LotState.AWARDED,
        LotState.LOST,
        LotState.DISCARDED_BY_AUTHORITY,
    ),
    LotState.CLARIFICATION_PENDING: (LotState.UNDER_EXAMINATION,),
}


def _technical_approved(snapshot: LotSnapshot) -> Result[None] | None:
    if snapshot.technical_approved is True:
        return None
    return Result.fail(
        ErrorKind.EVALUATION_NOT_READY,
        "technical_evaluation_not_approved",
        phase="technical",
        approved=snapshot.technical_approved,
    )


def _economic_approved(snapshot: LotSnapshot) -> Result[None] | None:
    if snapshot.economic_approved is True:
        return None
    return Result.fail(
        ErrorKind.EVALUATION_NOT_READY,
        "economic_evaluation_not_approved",
        phase="economic",
        approved=snapshot.economic_approved,
    )


def _price_elaboration_complete(snapshot: LotSnapshot) -> Result[None] | None:
    if not snapshot.has_price_elaboration:
        return Result.fail(
            ErrorKind.INVALID_TRANSITION,
            "price_elaboration_missing",
            reason="price_elaboration_missing",
        )
    if not snapshot.price_rationale_satisfied:
        return Result.fail(ErrorKind.RATIONALE_REQUIRED, "adaptation_rationale_required")
    return None


def _has_open_clarification(snapshot: LotSnapshot) -> Result[None] | None:
    if snapshot.open_clarification_count > 0:
        return None
    return Result.fail(
        ErrorKind.INVALID_TRANSITION,
        "clarification_request_required",
        reason="no_open_clarification_requests",
    )


def _all_clarifications_closed(snapshot: LotSnapshot) -> Result[None] | None:
    if snapshot.open_clarification_count == 0:
        return None
    return Result.fail(
        ErrorKind.INVALID_TRANSITION,
        "clarification_requests_open",
        reason="clarification_requests_open",
        open_requests=snapshot.open_clarification_count,
    )


def _single_awardee(snapshot: LotSnapshot) -> Result[None] | None:
    if snapshot.awardee_count == 1:
        return None
    return Result.fail(
        ErrorKind.INVALID_PARTICIPANT_STATE,
        "awardee_required",
        awardee_count=snapshot.awardee_count,
    )


GUARDS: Dict[Tuple[LotState, LotState], Guard] = {
    (LotState.TECHNICAL_EVALUATION, LotState.ECONOMIC_EVALUATION): _technical_approved,
    (LotState.ECONOMIC_EVALUATION, LotState.PRICE_ELABORATION): _economic_approved,
    (LotState.PRICE_ELABORATION, LotState.SUBMITTED): _price_elaboration_complete,
    (LotState.UNDER_EXAMINATION, LotState.CLARIFICATION_PENDING): _has_open_clarification,
    (LotState.CLARIFICATION_PENDING, LotState.UNDER_EXAMINATION): _all_clarifications_closed,
    (LotState.UNDER_EXAMINATION, LotState.AWARDED): _single_awardee,
}


def is_terminal(state: LotState) -> bool:
    return state in TERMINAL_LOT_STATES


def allowed_transitions(state: LotState) -> List[LotState]:
    if is_terminal(state):
        return []
    return [*TRANSITIONS.get(state, ()), LotState.REJECTED]


def _illegal(current: LotState, requested: LotState, reason: str) -> Result[LotState]:
    return Result.fail(
        ErrorKind.INVALID_TRANSITION,
        "invalid_transition",
        current_state=current.value,
        requested_state=requested.value,
        reason=reason,
        allowed=[state.value for state in allowed_transitions(current)],
    )


def validate_transition(
    current: LotState,
    requested: LotState,
    snapshot: LotSnapshot,
    *,
    reason: str | None = None,
) -> Result[LotState]:
    """Decide whether ``current -> requested`` is legal. Pure: no I/O, no mutation."""
    if is_terminal(current):
        return _illegal(current, requested, "terminal_state")

    if requested == LotState.REJECTED:
        if not (reason or "").strip():
            return Result.fail(ErrorKind.EMPTY_REASON, "rejection_reason_required")
        return Result.ok(requested)

    if requested not in TRANSITIONS.get(current, ()):
        return _illegal(current, requested, "not_in_transition_table")

    guard = GUARDS.get((current, requested))
    if guard is not None:
        failure = guard(snapshot)
        if failure is not None:
            return Result.from_error(failure.error)
    return Result.ok(requested)
