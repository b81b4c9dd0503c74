from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List

from gare.application.state_history import record_state_change
from gare.application.tender_service import TenderService
from gare.application.unit_of_work import conflict_result, rejected, unit_of_work
from gare.core import DomainEvent, EventBus, LotStateChanged, get_event_bus
from gare.domain.records import (
    TERMINAL_LOT_STATES,
    ClarificationRequest,
    Evaluation,
    EvaluationPhase,
    Lot,
    LotState,
    Participant,
    PriceElaboration,
    StateChangeRecord,
    TriggeredBy,
    record_to_dict,
)
from gare.domain.results import ErrorKind, Result
from gare.domain.values import ensure_utc, utc_now
from gare.errors import ConcurrencyConflictError
from gare.identity import scoped_actor
from gare.infrastructure.repositories import (
    ClarificationRequestRepository,
    EvaluationRepository,
    LotRepository,
    ParticipantRepository,
    PriceElaborationRepository,
    QuoteRepository,
    StateChangeRepository,
    TenderRepository,
)
from gare.workflow import gating
from gare.workflow.transitions import allowed_transitions, validate_transition


logger = logging.getLogger("gare.workflow")

DEFAULT_MIN_TEXT_LENGTH = 10

_CLARIFICATION_STATES = (LotState.UNDER_EXAMINATION, LotState.CLARIFICATION_PENDING)


@dataclass(frozen=True)
class ClarificationClosure:
    request: ClarificationRequest
    open_requests: int
    state_change: StateChangeRecord | None = None

    @property
    def gate_satisfied(self) -> bool:
        return self.open_requests == 0


class LotWorkflowService:
    """Orchestrates lot state changes: loads the snapshot, validates, persists, records history.

    Business-rule failures come back as ``Result`` values; only storage faults raise.
    """

    def __init__(
        self,
        lots: LotRepository | None = None,
        evaluations: EvaluationRepository | None = None,
        price_elaborations: PriceElaborationRepository | None = None,
        participants: ParticipantRepository | None = None,
        clarifications: ClarificationRequestRepository | None = None,
        history: StateChangeRepository | None = None,
        tender_service: TenderService | None = None,
        event_bus: EventBus | None = None,
        clock: Callable[[], datetime] | None = None,
        min_text_length: int = DEFAULT_MIN_TEXT_LENGTH,
    ) -> None:
        self.lots = lots or LotRepository()
        self.evaluations = evaluations or EvaluationRepository()
        self.price_elaborations = price_elaborations or PriceElaborationRepository()
        self.participants = participants or ParticipantRepository()
        self.clarifications = clarifications or ClarificationRequestRepository()
        self.history = history or StateChangeRepository()
        self.event_bus = event_bus or get_event_bus()
        self.clock = clock or utc_now
        self.min_text_length = max(1, int(min_text_length))
        self.tender_service = tender_service or TenderService(
            tenders=TenderRepository(),
            lots=self.lots,
            participants=self.participants,
            clarifications=self.clarifications,
            history=self.history,
            event_bus=self.event_bus,
            clock=self.clock,
        )

    @staticmethod
    def _lot_not_found(lot_id: int) -> Result:
        return Result.fail(ErrorKind.NOT_FOUND, "lot_not_found", lot_id=lot_id)

    @staticmethod
    def _terminal(lot: Lot) -> Result:
        return Result.fail(
            ErrorKind.INVALID_TRANSITION,
            "invalid_transition",
            current_state=lot.state.value,
            reason="terminal_state",
            allowed=[],
        )

    def _check_text(self, value: str | None, field: str) -> Result | None:
        text = (value or "").strip()
        if not text:
            return Result.fail(ErrorKind.VALIDATION_FAILED, "field_required", field=field)
        if len(text) < self.min_text_length:
            return Result.fail(
                ErrorKind.VALIDATION_FAILED,
                "text_too_short",
                field=field,
                minimum=self.min_text_length,
            )
        return None

    def _check_not_future(self, value: datetime, field: str) -> Result | None:
        if value > self.clock():
            return Result.fail(ErrorKind.VALIDATION_FAILED, "date_in_future", field=field)
        return None

    def snapshot(self, db, lot_id: int):
        return gating.build_snapshot(
            self.evaluations.get_for_lot(db, lot_id),
            self.price_elaborations.get_for_lot(db, lot_id),
            self.participants.list_for_lot(db, lot_id),
            self.clarifications.list_for_lot(db, lot_id),
        )

    def _transition(
        self,
        db,
        lot: Lot,
        requested: LotState,
        *,
        actor: str,
        reason: str | None,
        triggered_by: TriggeredBy,
        events: List[DomainEvent],
    ) -> Result[StateChangeRecord]:
        verdict = validate_transition(lot.state, requested, self.snapshot(db, int(lot.id)), reason=reason)
        if not verdict.is_ok:
            return rejected(
                verdict,
                "change_state",
                lot_id=lot.id,
                from_state=lot.state.value,
                to_state=requested.value,
                triggered_by=triggered_by.value,
            )

        clean_reason = (reason or "").strip() or None
        updated = replace(
            lot,
            state=requested,
            rejection_reason=clean_reason if requested == LotState.REJECTED else lot.rejection_reason,
        )
        self.lots.upsert(db, updated, actor)
        record = record_state_change(
            self.history,
            db,
            entity="lot",
            entity_id=int(lot.id),
            lot_id=int(lot.id),
            from_state=lot.state.value,
            to_state=requested.value,
            occurred_at=self.clock(),
            triggered_by=triggered_by,
            actor=actor,
            reason=clean_reason,
        )
        events.append(
            LotStateChanged(
                lot_id=int(lot.id),
                tender_id=lot.tender_id,
                from_state=lot.state.value,
                to_state=requested.value,
                triggered_by=triggered_by.value,
                reason=clean_reason,
                actor=actor,
            )
        )
        if requested in TERMINAL_LOT_STATES:
            self.tender_service.close_if_complete(
                db,
                lot.tender_id,
                actor=actor,
                triggered_by=TriggeredBy.AUTOMATIC,
                events=events,
            )
        return Result.ok(record)

    def get_lot(self, db, lot_id: int) -> Result[Lot]:
        lot = self.lots.get(db, lot_id)
        if lot is None:
            return self._lot_not_found(lot_id)
        return Result.ok(lot)

    def lot_detail(self, db, lot_id: int, quotes: QuoteRepository | None = None) -> Result[Dict[str, Any]]:
        lot = self.lots.get(db, lot_id)
        if lot is None:
            return self._lot_not_found(lot_id)
        evaluation = self.evaluations.get_for_lot(db, lot_id)
        elaboration = self.price_elaborations.get_for_lot(db, lot_id)
        quote_repository = quotes or QuoteRepository()
        return Result.ok(
            {
                "lot": record_to_dict(lot),
                "allowed_transitions": [state.value for state in allowed_transitions(lot.state)],
                "evaluation": record_to_dict(evaluation) if evaluation else None,
                "price_elaboration": record_to_dict(elaboration) if elaboration else None,
                "participants": [record_to_dict(item) for item in self.participants.list_for_lot(db, lot_id)],
                "clarification_requests": [
                    record_to_dict(item) for item in self.clarifications.list_for_lot(db, lot_id)
                ],
                "quotes": [record_to_dict(item) for item in quote_repository.list_for_lot(db, lot_id)],
            }
        )

    def lot_history(self, db, lot_id: int) -> Result[List[StateChangeRecord]]:
        if self.lots.get(db, lot_id, include_deleted=True) is None:
            return self._lot_not_found(lot_id)
        return Result.ok(self.history.list_for_lot(db, lot_id))

    def assign_operator(self, db, lot_id: int, operator_id: str, *, actor: str | None = None) -> Result[Lot]:
        operator = str(operator_id or "").strip()
        if not operator:
            return Result.fail(ErrorKind.VALIDATION_FAILED, "field_required", field="operator_id")
        actor = scoped_actor(actor)
        try:
            with db.transaction():
                lot = self.lots.get(db, lot_id)
                if lot is None:
                    return self._lot_not_found(lot_id)
                if lot.operator_id == operator:
                    return Result.ok(lot)
                lot = self.lots.upsert(db, replace(lot, operator_id=operator), actor)
        except ConcurrencyConflictError as exc:
            return conflict_result(exc)
        logger.info("lot_operator_assigned", extra={"lot_id": lot_id, "operator_id": operator, "actor": actor})
        return Result.ok(lot)

    def set_examination_start_date(
        self,
        db,
        lot_id: int,
        examination_start_date: datetime,
        *,
        actor: str | None = None,
    ) -> Result[Lot]:
        """Store the date only; the deadline job moves the lot once the date is reached."""
        actor = scoped_actor(actor)
        try:
            with db.transaction():
                lot = self.lots.get(db, lot_id)
                if lot is None:
                    return self._lot_not_found(lot_id)
                if lot.state != LotState.SUBMITTED:
                    return rejected(
                        Result.fail(
                            ErrorKind.INVALID_TRANSITION,
                            "examination_start_requires_submitted",
                            current_state=lot.state.value,
                        ),
                        "set_examination_start_date",
                        lot_id=lot_id,
                    )
                lot = self.lots.upsert(db, replace(lot, examination_start_date=examination_start_date), actor)
        except ConcurrencyConflictError as exc:
            return conflict_result(exc)
        return Result.ok(lot)

    def change_state(
        self,
        db,
        lot_id: int,
        requested_state: LotState | str,
        *,
        actor: str | None = None,
        reason: str | None = None,
        triggered_by: TriggeredBy = TriggeredBy.MANUAL,
    ) -> Result[StateChangeRecord]:
        try:
            requested = LotState(requested_state)
        except ValueError:
            return Result.fail(
                ErrorKind.VALIDATION_FAILED,
                "field_invalid",
                field="state",
                value=str(requested_state),
            )
        actor = scoped_actor(actor)
        try:
            with unit_of_work(db, self.event_bus) as events:
                lot = self.lots.get(db, lot_id)
                if lot is None:
                    return self._lot_not_found(lot_id)
                result = self._transition(
                    db,
                    lot,
                    requested,
                    actor=actor,
                    reason=reason,
                    triggered_by=triggered_by,
                    events=events,
                )
        except ConcurrencyConflictError as exc:
            return conflict_result(exc)
        return result

    def reject(self, db, lot_id: int, reason: str, *, actor: str | None = None) -> Result[StateChangeRecord]:
        return self.change_state(db, lot_id, LotState.REJECTED, actor=actor, reason=reason)

    def _record_phase(
        self,
        db,
        lot_id: int,
        phase: str,
        evaluator_id: str,
        approved: bool | None,
        reason: str | None,
        notes: str | None,
        actor: str | None,
    ) -> Result[Evaluation]:
        if not str(evaluator_id or "").strip():
            return Result.fail(ErrorKind.VALIDATION_FAILED, "field_required", field="evaluator_id")
        reason_check = gating.check_phase_rejection_reason(approved, reason)
        if not reason_check.is_ok:
            return reason_check
        actor = scoped_actor(actor)
        try:
            with db.transaction():
                lot = self.lots.get(db, lot_id)
                if lot is None:
                    return self._lot_not_found(lot_id)
                if lot.is_terminal:
                    return self._terminal(lot)
                evaluation = self.evaluations.get_for_lot(db, lot_id) or Evaluation(lot_id=lot_id)
                if phase == "economic":
                    gate = gating.check_economic_evaluation_allowed(evaluation)
                    if not gate.is_ok:
                        return rejected(gate, "record_economic_evaluation", lot_id=lot_id)
                data = EvaluationPhase(
                    evaluator_id=evaluator_id.strip(),
                    approved=approved,
                    rejection_reason=(reason or "").strip() or None,
                    notes=(notes or "").strip() or None,
                    evaluated_at=self.clock(),
                )
                changes: Dict[str, EvaluationPhase] = {phase: data}
                # Economic approval never outlives the technical approval it depends on.
                if phase == "technical" and approved is not True and evaluation.economic.is_set:
                    changes["economic"] = EvaluationPhase()
                    logger.info("economic_evaluation_cleared", extra={"lot_id": lot_id, "actor": actor})
                evaluation = self.evaluations.upsert(db, replace(evaluation, **changes), actor)
        except ConcurrencyConflictError as exc:
            return conflict_result(exc)
        logger.info(
            f"{phase}_evaluation_recorded",
            extra={"lot_id": lot_id, "approved": approved, "evaluator_id": evaluator_id, "actor": actor},
        )
        return Result.ok(evaluation)

    def record_technical_evaluation(
        self,
        db,
        lot_id: int,
        evaluator_id: str,
        approved: bool | None,
        reason: str | None = None,
        notes: str | None = None,
        *,
        actor: str | None = None,
    ) -> Result[Evaluation]:
        return self._record_phase(db, lot_id, "technical", evaluator_id, approved, reason, notes, actor)

    def record_economic_evaluation(
        self,
        db,
        lot_id: int,
        evaluator_id: str,
        approved: bool | None,
        reason: str | None = None,
        notes: str | None = None,
        *,
        actor: str | None = None,
    ) -> Result[Evaluation]:
        return self._record_phase(db, lot_id, "economic", evaluator_id, approved, reason, notes, actor)

    def record_price_elaboration(
        self,
        db,
        lot_id: int,
        desired_price: Decimal | None = None,
        actual_exit_price: Decimal | None = None,
        adaptation_rationale: str | None = None,
        *,
        actor: str | None = None,
    ) -> Result[PriceElaboration]:
        check = gating.check_price_rationale(desired_price, actual_exit_price, adaptation_rationale)
        if not check.is_ok:
            return rejected(check, "record_price_elaboration", lot_id=lot_id)
        actor = scoped_actor(actor)
        try:
            with db.transaction():
                lot = self.lots.get(db, lot_id)
                if lot is None:
                    return self._lot_not_found(lot_id)
                if lot.is_terminal:
                    return self._terminal(lot)
                current = self.price_elaborations.get_for_lot(db, lot_id) or PriceElaboration(lot_id=lot_id)
                elaboration = self.price_elaborations.upsert(
                    db,
                    replace(
                        current,
                        desired_price=desired_price,
                        actual_exit_price=actual_exit_price,
                        adaptation_rationale=(adaptation_rationale or "").strip() or None,
                    ),
                    actor,
                )
        except ConcurrencyConflictError as exc:
            return conflict_result(exc)
        return Result.ok(elaboration)

    def add_participant(
        self,
        db,
        lot_id: int,
        subject_id: str | None = None,
        company_name: str | None = None,
        economic_offer: Decimal | None = None,
        is_awardee: bool = False,
        is_rejected_by_authority: bool = False,
        *,
        actor: str | None = None,
    ) -> Result[Participant]:
        bidder = gating.build_bidder(subject_id, company_name)
        if not bidder.is_ok:
            return bidder
        flags = gating.check_participant_flags(is_awardee, is_rejected_by_authority)
        if not flags.is_ok:
            return flags
        if economic_offer is not None and economic_offer < 0:
            return Result.fail(ErrorKind.VALIDATION_FAILED, "price_negative", field="economic_offer")
        actor = scoped_actor(actor)
        try:
            with db.transaction():
                lot = self.lots.get(db, lot_id)
                if lot is None:
                    return self._lot_not_found(lot_id)
                awardee_check = gating.check_new_awardee_allowed(
                    self.participants.list_for_lot(db, lot_id),
                    is_awardee,
                )
                if not awardee_check.is_ok:
                    return rejected(awardee_check, "add_participant", lot_id=lot_id)
                self.lots.touch(db, lot, actor)
                participant = self.participants.upsert(
                    db,
                    Participant(
                        lot_id=lot_id,
                        bidder=bidder.value,
                        economic_offer=economic_offer,
                        is_awardee=is_awardee,
                        is_rejected_by_authority=is_rejected_by_authority,
                    ),
                    actor,
                )
        except ConcurrencyConflictError as exc:
            return conflict_result(exc)
        return Result.ok(participant)

    def set_awardee(self, db, lot_id: int, participant_id: int, *, actor: str | None = None) -> Result[Participant]:
        actor = scoped_actor(actor)
        try:
            with db.transaction():
                lot = self.lots.get(db, lot_id)
                if lot is None:
                    return self._lot_not_found(lot_id)
                plan = gating.plan_awardee(self.participants.list_for_lot(db, lot_id), participant_id)
                if not plan.is_ok:
                    return rejected(plan, "set_awardee", lot_id=lot_id, participant_id=participant_id)
                # The plan was computed from this lot version; a concurrent awardee change bumps it.
                self.lots.touch(db, lot, actor)
                for previous in plan.value.to_clear:
                    self.participants.upsert(db, replace(previous, is_awardee=False), actor)
                target = plan.value.target
                if not target.is_awardee:
                    target = self.participants.upsert(db, replace(target, is_awardee=True), actor)
        except ConcurrencyConflictError as exc:
            return conflict_result(exc)
        logger.info(
            "lot_awardee_set",
            extra={
                "lot_id": lot_id,
                "participant_id": participant_id,
                "cleared_participant_ids": [item.id for item in plan.value.to_clear],
                "actor": actor,
            },
        )
        return Result.ok(target)

    def mark_participant_rejected(self, db, participant_id: int, *, actor: str | None = None) -> Result[Participant]:
        actor = scoped_actor(actor)
        try:
            with db.transaction():
                participant = self.participants.get(db, participant_id)
                if participant is None:
                    return Result.fail(ErrorKind.NOT_FOUND, "participant_not_found", participant_id=participant_id)
                if participant.is_awardee:
                    return rejected(
                        Result.fail(
                            ErrorKind.INVALID_PARTICIPANT_STATE,
                            "participant_is_awardee",
                            participant_id=participant_id,
                        ),
                        "mark_participant_rejected",
                        participant_id=participant_id,
                    )
                if participant.is_rejected_by_authority:
                    return Result.ok(participant)
                participant = self.participants.upsert(db, replace(participant, is_rejected_by_authority=True), actor)
        except ConcurrencyConflictError as exc:
            return conflict_result(exc)
        return Result.ok(participant)

    def open_clarification_request(
        self,
        db,
        lot_id: int,
        request_text: str,
        request_date: datetime | None = None,
        *,
        actor: str | None = None,
    ) -> Result[ClarificationRequest]:
        failure = self._check_text(request_text, "request_text")
        if failure is not None:
            return failure
        request_date = ensure_utc(request_date) if request_date is not None else self.clock()
        failure = self._check_not_future(request_date, "request_date")
        if failure is not None:
            return failure
        actor = scoped_actor(actor)
        try:
            with unit_of_work(db, self.event_bus) as events:
                lot = self.lots.get(db, lot_id)
                if lot is None:
                    return self._lot_not_found(lot_id)
                if lot.state not in _CLARIFICATION_STATES:
                    return rejected(
                        Result.fail(
                            ErrorKind.INVALID_TRANSITION,
                            "clarification_requires_examination",
                            current_state=lot.state.value,
                        ),
                        "open_clarification_request",
                        lot_id=lot_id,
                    )
                request = self.clarifications.upsert(
                    db,
                    ClarificationRequest(
                        lot_id=lot_id,
                        sequence_number=self.clarifications.next_sequence_number(db, lot_id),
                        request_text=request_text.strip(),
                        request_date=request_date,
                    ),
                    actor,
                )
                if lot.state == LotState.UNDER_EXAMINATION:
                    outcome = self._transition(
                        db,
                        lot,
                        LotState.CLARIFICATION_PENDING,
                        actor=actor,
                        reason="clarification_request_opened",
                        triggered_by=TriggeredBy.AUTOMATIC,
                        events=events,
                    )
                    if not outcome.is_ok:
                        # The open request satisfies the guard, so this only fires on a stale snapshot.
                        raise ConcurrencyConflictError("lot", lot.id, lot.version)
                else:
                    # A transition that read the gate before this insert must fail its lot update.
                    self.lots.touch(db, lot, actor)
        except ConcurrencyConflictError as exc:
            return conflict_result(exc)
        return Result.ok(request)

    def _apply_response(
        self,
        request: ClarificationRequest,
        response_text: str | None,
        response_date: datetime | None,
        responder_id: str | None,
        actor: str,
    ) -> Result[ClarificationRequest]:
        failure = self._check_text(response_text, "response_text")
        if failure is not None:
            return failure
        response_date = ensure_utc(response_date) if response_date is not None else self.clock()
        failure = self._check_not_future(response_date, "response_date")
        if failure is not None:
            return failure
        if response_date < request.request_date:
            return Result.fail(ErrorKind.VALIDATION_FAILED, "response_before_request", field="response_date")
        return Result.ok(
            replace(
                request,
                response_text=response_text.strip(),
                response_date=response_date,
                responder_id=str(responder_id or "").strip() or actor,
            )
        )

    def respond_to_clarification_request(
        self,
        db,
        request_id: int,
        response_text: str,
        response_date: datetime | None = None,
        responder_id: str | None = None,
        *,
        actor: str | None = None,
    ) -> Result[ClarificationRequest]:
        actor = scoped_actor(actor)
        try:
            with db.transaction():
                request = self.clarifications.get(db, request_id)
                if request is None:
                    return Result.fail(ErrorKind.NOT_FOUND, "clarification_not_found", request_id=request_id)
                if request.closed:
                    return Result.fail(ErrorKind.ALREADY_CLOSED, "clarification_already_closed", request_id=request_id)
                if request.has_response:
                    return Result.fail(
                        ErrorKind.VALIDATION_FAILED,
                        "clarification_already_answered",
                        request_id=request_id,
                    )
                answered = self._apply_response(request, response_text, response_date, responder_id, actor)
                if not answered.is_ok:
                    return answered
                lot = self.lots.get(db, request.lot_id)
                if lot is not None:
                    self.lots.touch(db, lot, actor)
                request = self.clarifications.upsert(db, answered.value, actor)
        except ConcurrencyConflictError as exc:
            return conflict_result(exc)
        return Result.ok(request)

    def close_clarification_request(
        self,
        db,
        request_id: int,
        response_text: str | None = None,
        response_date: datetime | None = None,
        responder_id: str | None = None,
        *,
        actor: str | None = None,
    ) -> Result[ClarificationClosure]:
        """Close one request; when none stay open the lot returns to examination automatically."""
        actor = scoped_actor(actor)
        try:
            with unit_of_work(db, self.event_bus) as events:
                request = self.clarifications.get(db, request_id)
                if request is None:
                    return Result.fail(ErrorKind.NOT_FOUND, "clarification_not_found", request_id=request_id)
                if request.closed:
                    return rejected(
                        Result.fail(ErrorKind.ALREADY_CLOSED, "clarification_already_closed", request_id=request_id),
                        "close_clarification_request",
                        request_id=request_id,
                    )
                if (response_text or "").strip():
                    answered = self._apply_response(request, response_text, response_date, responder_id, actor)
                    if not answered.is_ok:
                        return answered
                    request = answered.value
                closable = gating.check_can_close_request(request)
                if not closable.is_ok:
                    return rejected(closable, "close_clarification_request", request_id=request_id)
                lot = self.lots.get(db, request.lot_id)
                request = self.clarifications.upsert(db, replace(request, closed=True), actor)

                open_requests = self.clarifications.count_open(db, request.lot_id)
                state_change = None
                if lot is not None and lot.state == LotState.CLARIFICATION_PENDING and open_requests == 0:
                    outcome = self._transition(
                        db,
                        lot,
                        LotState.UNDER_EXAMINATION,
                        actor=actor,
                        reason="clarification_gate_satisfied",
                        triggered_by=TriggeredBy.AUTOMATIC,
                        events=events,
                    )
                    state_change = outcome.value if outcome.is_ok else None
                elif lot is not None:
                    self.lots.touch(db, lot, actor)
                if open_requests:
                    logger.info(
                        "clarification_gate_not_satisfied",
                        extra={"lot_id": request.lot_id, "open_requests": open_requests},
                    )
        except ConcurrencyConflictError as exc:
            return conflict_result(exc)
        return Result.ok(ClarificationClosure(request=request, open_requests=open_requests, state_change=state_change))
