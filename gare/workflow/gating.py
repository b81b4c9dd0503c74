from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, List, Sequence

from gare.domain.records import (
    TERMINAL_LOT_STATES,
    ClarificationRequest,
    Evaluation,
    FreeTextCompany,
    KnownSubject,
    Lot,
    LotSnapshot,
    Participant,
    PriceElaboration,
)
from gare.domain.results import ErrorKind, Result


@dataclass(frozen=True)
class AwardeePlan:
    target: Participant
    to_clear: List[Participant] = field(default_factory=list)


def check_economic_evaluation_allowed(evaluation: Evaluation | None) -> Result[None]:
    if evaluation is None or not evaluation.technical.is_approved:
        return Result.fail(
            ErrorKind.EVALUATION_NOT_READY,
            "technical_evaluation_not_approved",
            technical_approved=None if evaluation is None else evaluation.technical.approved,
        )
    return Result.ok()


def check_phase_rejection_reason(approved: bool | None, reason: str | None) -> Result[None]:
    if approved is False and not (reason or "").strip():
        return Result.fail(ErrorKind.EMPTY_REASON, "evaluation_rejection_reason_required")
    return Result.ok()


def check_price_rationale(
    desired: Decimal | None,
    actual: Decimal | None,
    rationale: str | None,
) -> Result[None]:
    for name, value in (("desired_price", desired), ("actual_exit_price", actual)):
        if value is not None and value < 0:
            return Result.fail(ErrorKind.VALIDATION_FAILED, "price_negative", field=name)
    if desired is not None and actual is not None and desired != actual and not (rationale or "").strip():
        return Result.fail(
            ErrorKind.RATIONALE_REQUIRED,
            "adaptation_rationale_required",
            desired_price=str(desired),
            actual_exit_price=str(actual),
        )
    return Result.ok()


def price_elaboration_satisfied(elaboration: PriceElaboration | None) -> bool:
    if elaboration is None:
        return False
    if elaboration.prices_diverge and not (elaboration.adaptation_rationale or "").strip():
        return False
    return True


def plan_awardee(participants: Sequence[Participant], participant_id: int) -> Result[AwardeePlan]:
    """Single awardee per lot: the target gains the flag, every other holder loses it."""
    target = next((item for item in participants if item.id == participant_id), None)
    if target is None:
        return Result.fail(ErrorKind.NOT_FOUND, "participant_not_found", participant_id=participant_id)
    if target.is_rejected_by_authority:
        return Result.fail(
            ErrorKind.INVALID_PARTICIPANT_STATE,
            "participant_rejected_by_authority",
            participant_id=participant_id,
        )
    to_clear = [item for item in participants if item.is_awardee and item.id != participant_id]
    return Result.ok(AwardeePlan(target=target, to_clear=to_clear))


def check_participant_flags(is_awardee: bool, is_rejected_by_authority: bool) -> Result[None]:
    if is_awardee and is_rejected_by_authority:
        return Result.fail(ErrorKind.INVALID_PARTICIPANT_STATE, "participant_flags_exclusive")
    return Result.ok()


def check_new_awardee_allowed(participants: Iterable[Participant], is_awardee: bool) -> Result[None]:
    if not is_awardee:
        return Result.ok()
    holders = [item.id for item in participants if item.is_awardee]
    if holders:
        return Result.fail(
            ErrorKind.INVALID_PARTICIPANT_STATE,
            "awardee_already_set",
            awardee_participant_ids=holders,
        )
    return Result.ok()


def build_bidder(subject_id: str | None, company_name: str | None) -> Result[KnownSubject | FreeTextCompany]:
    subject = str(subject_id or "").strip()
    company = str(company_name or "").strip()
    if subject and company:
        return Result.fail(ErrorKind.VALIDATION_FAILED, "bidder_ambiguous", field="bidder")
    if subject:
        return Result.ok(KnownSubject(subject))
    if company:
        return Result.ok(FreeTextCompany(company))
    return Result.fail(ErrorKind.VALIDATION_FAILED, "bidder_required", field="bidder")


def count_open_requests(requests: Iterable[ClarificationRequest]) -> int:
    return sum(1 for item in requests if not item.deleted and not item.closed)


def check_clarification_gate(open_requests: int) -> Result[None]:
    if open_requests > 0:
        return Result.fail(
            ErrorKind.INVALID_TRANSITION,
            "clarification_requests_open",
            reason="clarification_requests_open",
            open_requests=open_requests,
        )
    return Result.ok()


def check_can_close_request(request: ClarificationRequest) -> Result[None]:
    if request.closed:
        return Result.fail(ErrorKind.ALREADY_CLOSED, "clarification_already_closed", request_id=request.id)
    if not request.has_response:
        return Result.fail(ErrorKind.RESPONSE_REQUIRED, "clarification_response_required", request_id=request.id)
    return Result.ok()


def check_lot_deletable(quote_count: int, participant_count: int, clarification_count: int) -> Result[None]:
    if quote_count or participant_count or clarification_count:
        return Result.fail(
            ErrorKind.VALIDATION_FAILED,
            "lot_has_dependents",
            quotes=quote_count,
            participants=participant_count,
            clarification_requests=clarification_count,
        )
    return Result.ok()


def check_tender_deletable(lot_count: int) -> Result[None]:
    if lot_count:
        return Result.fail(ErrorKind.VALIDATION_FAILED, "tender_has_lots", lots=lot_count)
    return Result.ok()


def tender_closable(lots: Sequence[Lot]) -> bool:
    live = [lot for lot in lots if not lot.deleted]
    return bool(live) and all(lot.state in TERMINAL_LOT_STATES for lot in live)


def build_snapshot(
    evaluation: Evaluation | None,
    elaboration: PriceElaboration | None,
    participants: Iterable[Participant],
    requests: Iterable[ClarificationRequest],
) -> LotSnapshot:
    return LotSnapshot(
        technical_approved=None if evaluation is None else evaluation.technical.approved,
        economic_approved=None if evaluation is None else evaluation.economic.approved,
        has_price_elaboration=elaboration is not None,
        price_rationale_satisfied=price_elaboration_satisfied(elaboration),
        open_clarification_count=count_open_requests(requests),
        awardee_count=sum(1 for item in participants if item.is_awardee and not item.deleted),
    )
