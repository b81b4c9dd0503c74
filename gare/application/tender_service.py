from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Mapping

from gare.application.state_history import record_state_change
from gare.application.unit_of_work import conflict_result, rejected, unit_of_work
from gare.core import DomainEvent, EventBus, TenderStatusChanged, get_event_bus
from gare.domain.records import TERMINAL_LOT_STATES, Lot, StateChangeRecord, Tender, TenderStatus, TriggeredBy
from gare.domain.results import ErrorKind, Result
from gare.domain.values import utc_now
from gare.errors import ConcurrencyConflictError
from gare.identity import scoped_actor
from gare.infrastructure.repositories import (
    ClarificationRequestRepository,
    LotRepository,
    PageRequest,
    ParticipantRepository,
    QuoteRepository,
    RecordPage,
    StateChangeRepository,
    TenderRepository,
)
from gare.workflow import gating


logger = logging.getLogger("gare.workflow")


class TenderService:
    """Tender lifecycle (Open -> Closed) and lot creation/deletion."""

    def __init__(
        self,
        tenders: TenderRepository | None = None,
        lots: LotRepository | None = None,
        quotes: QuoteRepository | None = None,
        participants: ParticipantRepository | None = None,
        clarifications: ClarificationRequestRepository | None = None,
        history: StateChangeRepository | None = None,
        event_bus: EventBus | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.tenders = tenders or TenderRepository()
        self.lots = lots or LotRepository()
        self.quotes = quotes or QuoteRepository()
        self.participants = participants or ParticipantRepository()
        self.clarifications = clarifications or ClarificationRequestRepository()
        self.history = history or StateChangeRepository()
        self.event_bus = event_bus or get_event_bus()
        self.clock = clock or utc_now

    @staticmethod
    def _tender_not_found(tender_id: int) -> Result:
        return Result.fail(ErrorKind.NOT_FOUND, "tender_not_found", tender_id=tender_id)

    @staticmethod
    def _required(value: str | None, field: str) -> Result | None:
        if str(value or "").strip():
            return None
        return Result.fail(ErrorKind.VALIDATION_FAILED, "field_required", field=field)

    def get_tender(self, db, tender_id: int) -> Result[Tender]:
        tender = self.tenders.get(db, tender_id)
        if tender is None:
            return self._tender_not_found(tender_id)
        return Result.ok(tender)

    def list_tenders(
        self,
        db,
        filters: Mapping[str, object] | None = None,
        page: PageRequest | None = None,
    ) -> RecordPage[Tender]:
        return self.tenders.query(db, filters, page)

    def list_lots(self, db, tender_id: int) -> Result[List[Lot]]:
        if self.tenders.get(db, tender_id) is None:
            return self._tender_not_found(tender_id)
        return Result.ok(self.lots.list_for_tender(db, tender_id))

    def create_tender(
        self,
        db,
        code: str,
        title: str,
        submission_deadline: datetime | None = None,
        *,
        actor: str | None = None,
    ) -> Result[Tender]:
        failure = self._required(code, "code") or self._required(title, "title")
        if failure is not None:
            return failure
        code = code.strip()
        actor = scoped_actor(actor)
        with db.transaction():
            if self.tenders.get_by_code(db, code) is not None:
                return Result.fail(ErrorKind.VALIDATION_FAILED, "tender_code_taken", field="code", code=code)
            tender = self.tenders.upsert(
                db,
                Tender(code=code, title=title.strip(), submission_deadline=submission_deadline),
                actor,
            )
        logger.info("tender_created", extra={"tender_id": tender.id, "code": tender.code, "actor": actor})
        return Result.ok(tender)

    def create_lot(
        self,
        db,
        tender_id: int,
        code: str,
        description: str = "",
        base_price: Decimal | None = None,
        quoted_price: Decimal | None = None,
        *,
        actor: str | None = None,
    ) -> Result[Lot]:
        failure = self._required(code, "code")
        if failure is not None:
            return failure
        for field, value in (("base_price", base_price), ("quoted_price", quoted_price)):
            if value is not None and value < 0:
                return Result.fail(ErrorKind.VALIDATION_FAILED, "price_negative", field=field)
        code = code.strip()
        actor = scoped_actor(actor)
        with db.transaction():
            tender = self.tenders.get(db, tender_id)
            if tender is None:
                return self._tender_not_found(tender_id)
            if tender.status != TenderStatus.OPEN:
                return Result.fail(ErrorKind.INVALID_TRANSITION, "tender_closed", tender_id=tender_id)
            if self.lots.get_by_code(db, tender_id, code) is not None:
                return Result.fail(ErrorKind.VALIDATION_FAILED, "lot_code_taken", field="code", code=code)
            lot = self.lots.upsert(
                db,
                Lot(
                    tender_id=tender_id,
                    code=code,
                    description=(description or "").strip(),
                    base_price=base_price,
                    quoted_price=quoted_price,
                ),
                actor,
            )
        logger.info("lot_created", extra={"lot_id": lot.id, "tender_id": tender_id, "code": lot.code, "actor": actor})
        return Result.ok(lot)

    def _change_status(
        self,
        db,
        tender: Tender,
        updated: Tender,
        *,
        actor: str,
        triggered_by: TriggeredBy,
        reason: str | None,
        events: List[DomainEvent],
    ) -> StateChangeRecord:
        self.tenders.upsert(db, updated, actor)
        record = record_state_change(
            self.history,
            db,
            entity="tender",
            entity_id=int(tender.id),
            lot_id=None,
            from_state=tender.status.value,
            to_state=updated.status.value,
            occurred_at=self.clock(),
            triggered_by=triggered_by,
            actor=actor,
            reason=reason,
        )
        events.append(
            TenderStatusChanged(
                tender_id=int(tender.id),
                from_status=tender.status.value,
                to_status=updated.status.value,
                triggered_by=triggered_by.value,
                reason=reason,
                actor=actor,
            )
        )
        return record

    def close_tender(self, db, tender_id: int, reason: str, *, actor: str | None = None) -> Result[StateChangeRecord]:
        if not (reason or "").strip():
            return Result.fail(ErrorKind.EMPTY_REASON, "closure_reason_required")
        actor = scoped_actor(actor)
        try:
            with unit_of_work(db, self.event_bus) as events:
                tender = self.tenders.get(db, tender_id)
                if tender is None:
                    return self._tender_not_found(tender_id)
                if tender.status == TenderStatus.CLOSED:
                    return rejected(
                        Result.fail(
                            ErrorKind.INVALID_TRANSITION,
                            "tender_invalid_transition",
                            current_state=tender.status.value,
                            requested_state=TenderStatus.CLOSED.value,
                        ),
                        "close_tender",
                        tender_id=tender_id,
                    )
                updated = replace(
                    tender,
                    status=TenderStatus.CLOSED,
                    closed_at=self.clock(),
                    closed_by=actor,
                    closure_reason=reason.strip(),
                    closed_manually=True,
                )
                record = self._change_status(
                    db,
                    tender,
                    updated,
                    actor=actor,
                    triggered_by=TriggeredBy.MANUAL,
                    reason=reason.strip(),
                    events=events,
                )
        except ConcurrencyConflictError as exc:
            return conflict_result(exc)
        return Result.ok(record)

    def reopen_tender(self, db, tender_id: int, *, actor: str | None = None) -> Result[StateChangeRecord]:
        actor = scoped_actor(actor)
        try:
            with unit_of_work(db, self.event_bus) as events:
                tender = self.tenders.get(db, tender_id)
                if tender is None:
                    return self._tender_not_found(tender_id)
                lots = self.lots.list_for_tender(db, tender_id)
                reopenable = (
                    tender.status == TenderStatus.CLOSED
                    and tender.closed_manually
                    and any(lot.state not in TERMINAL_LOT_STATES for lot in lots)
                )
                if not reopenable:
                    return rejected(
                        Result.fail(
                            ErrorKind.INVALID_TRANSITION,
                            "tender_not_reopenable",
                            current_state=tender.status.value,
                            closed_manually=tender.closed_manually,
                        ),
                        "reopen_tender",
                        tender_id=tender_id,
                    )
                updated = replace(
                    tender,
                    status=TenderStatus.OPEN,
                    closed_at=None,
                    closed_by=None,
                    closure_reason=None,
                    closed_manually=False,
                )
                record = self._change_status(
                    db,
                    tender,
                    updated,
                    actor=actor,
                    triggered_by=TriggeredBy.MANUAL,
                    reason=None,
                    events=events,
                )
        except ConcurrencyConflictError as exc:
            return conflict_result(exc)
        return Result.ok(record)

    def close_if_complete(
        self,
        db,
        tender_id: int,
        *,
        actor: str,
        triggered_by: TriggeredBy,
        events: List[DomainEvent],
    ) -> StateChangeRecord | None:
        """Auto-close an open tender once every live lot is terminal. Runs inside the caller's transaction."""
        tender = self.tenders.get(db, tender_id)
        if tender is None or tender.status != TenderStatus.OPEN:
            return None
        if not gating.tender_closable(self.lots.list_for_tender(db, tender_id)):
            return None
        updated = replace(
            tender,
            status=TenderStatus.CLOSED,
            closed_at=self.clock(),
            closed_by=actor,
            closure_reason="all_lots_terminal",
            closed_manually=False,
        )
        return self._change_status(
            db,
            tender,
            updated,
            actor=actor,
            triggered_by=triggered_by,
            reason="all_lots_terminal",
            events=events,
        )

    def refresh_tender_status(
        self,
        db,
        tender_id: int,
        *,
        actor: str | None = None,
        triggered_by: TriggeredBy = TriggeredBy.AUTOMATIC,
    ) -> Result[StateChangeRecord | None]:
        actor = scoped_actor(actor)
        try:
            with unit_of_work(db, self.event_bus) as events:
                if self.tenders.get(db, tender_id) is None:
                    return self._tender_not_found(tender_id)
                record = self.close_if_complete(
                    db,
                    tender_id,
                    actor=actor,
                    triggered_by=triggered_by,
                    events=events,
                )
        except ConcurrencyConflictError as exc:
            return conflict_result(exc)
        return Result.ok(record)

    def delete_tender(self, db, tender_id: int, *, actor: str | None = None) -> Result[None]:
        actor = scoped_actor(actor)
        with db.transaction():
            if self.tenders.get(db, tender_id) is None:
                return self._tender_not_found(tender_id)
            guard = gating.check_tender_deletable(self.lots.count(db, {"tender_id": tender_id}))
            if not guard.is_ok:
                return rejected(guard, "delete_tender", tender_id=tender_id)
            self.tenders.soft_delete(db, tender_id, actor)
        logger.info("tender_deleted", extra={"tender_id": tender_id, "actor": actor})
        return Result.ok()

    def delete_lot(self, db, lot_id: int, *, actor: str | None = None) -> Result[None]:
        actor = scoped_actor(actor)
        with db.transaction():
            if self.lots.get(db, lot_id) is None:
                return Result.fail(ErrorKind.NOT_FOUND, "lot_not_found", lot_id=lot_id)
            guard = gating.check_lot_deletable(
                self.quotes.count(db, {"lot_id": lot_id}),
                self.participants.count(db, {"lot_id": lot_id}),
                self.clarifications.count(db, {"lot_id": lot_id}),
            )
            if not guard.is_ok:
                return rejected(guard, "delete_lot", lot_id=lot_id)
            self.lots.soft_delete(db, lot_id, actor)
        logger.info("lot_deleted", extra={"lot_id": lot_id, "actor": actor})
        return Result.ok()
