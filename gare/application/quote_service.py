from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, List

from gare.application.state_history import record_state_change
from gare.application.unit_of_work import conflict_result, rejected, unit_of_work
from gare.core import DomainEvent, EventBus, QuoteStateChanged, get_event_bus
from gare.domain.records import Quote, StateChangeRecord, TriggeredBy
from gare.domain.results import ErrorKind, Result
from gare.domain.values import ensure_utc, utc_now
from gare.errors import ConcurrencyConflictError
from gare.identity import DEADLINE_JOB_ACTOR, scoped_actor
from gare.infrastructure.repositories import LotRepository, QuoteRepository, StateChangeRepository
from gare.workflow import quote_lifecycle


logger = logging.getLogger("gare.workflow")

QUOTE_RENEWED_REASON = "quote_auto_renewed"
QUOTE_EXPIRED_REASON = "quote_expired"


class QuoteService:
    def __init__(
        self,
        quotes: QuoteRepository | None = None,
        lots: LotRepository | None = None,
        history: StateChangeRepository | None = None,
        event_bus: EventBus | None = None,
        clock: Callable[[], datetime] | None = None,
        min_renewal_days: int = 1,
    ) -> None:
        self.quotes = quotes or QuoteRepository()
        self.lots = lots or LotRepository()
        self.history = history or StateChangeRepository()
        self.event_bus = event_bus or get_event_bus()
        self.clock = clock or utc_now
        self.min_renewal_days = max(1, int(min_renewal_days))

    @staticmethod
    def _quote_not_found(quote_id: int) -> Result:
        return Result.fail(ErrorKind.NOT_FOUND, "quote_not_found", quote_id=quote_id)

    def _save(
        self,
        db,
        before: Quote,
        after: Quote,
        *,
        actor: str,
        triggered_by: TriggeredBy,
        reason: str | None,
        events: List[DomainEvent],
    ) -> StateChangeRecord:
        self.quotes.upsert(db, after, actor)
        record = record_state_change(
            self.history,
            db,
            entity="quote",
            entity_id=int(before.id),
            lot_id=before.lot_id,
            from_state=before.state.value,
            to_state=after.state.value,
            occurred_at=self.clock(),
            triggered_by=triggered_by,
            actor=actor,
            reason=reason,
        )
        events.append(
            QuoteStateChanged(
                quote_id=int(before.id),
                lot_id=before.lot_id,
                from_state=before.state.value,
                to_state=after.state.value,
                triggered_by=triggered_by.value,
                reason=reason,
                actor=actor,
            )
        )
        return record

    def _apply(self, db, quote_id: int, operation: str, rule, *, actor: str | None) -> Result[Quote]:
        actor = scoped_actor(actor)
        try:
            with unit_of_work(db, self.event_bus) as events:
                quote = self.quotes.get(db, quote_id)
                if quote is None:
                    return self._quote_not_found(quote_id)
                outcome = rule(quote)
                if not outcome.is_ok:
                    return rejected(outcome, operation, quote_id=quote_id)
                self._save(
                    db,
                    quote,
                    outcome.value,
                    actor=actor,
                    triggered_by=TriggeredBy.MANUAL,
                    reason=None,
                    events=events,
                )
                stored = self.quotes.get(db, quote_id)
        except ConcurrencyConflictError as exc:
            return conflict_result(exc)
        return Result.ok(stored)

    def get_quote(self, db, quote_id: int) -> Result[Quote]:
        quote = self.quotes.get(db, quote_id)
        if quote is None:
            return self._quote_not_found(quote_id)
        return Result.ok(quote)

    def list_for_lot(self, db, lot_id: int) -> Result[List[Quote]]:
        if self.lots.get(db, lot_id) is None:
            return Result.fail(ErrorKind.NOT_FOUND, "lot_not_found", lot_id=lot_id)
        return Result.ok(self.quotes.list_for_lot(db, lot_id))

    def request_quote(
        self,
        db,
        lot_id: int,
        supplier_id: str,
        expiry_date: datetime,
        *,
        request_date: datetime | None = None,
        description: str = "",
        auto_renewal_days: int | None = None,
        actor: str | None = None,
    ) -> Result[Quote]:
        if not str(supplier_id or "").strip():
            return Result.fail(ErrorKind.VALIDATION_FAILED, "field_required", field="supplier_id")
        request_date = ensure_utc(request_date) if request_date is not None else self.clock()
        if expiry_date is None:
            return Result.fail(ErrorKind.VALIDATION_FAILED, "field_required", field="expiry_date")
        expiry_date = ensure_utc(expiry_date)
        terms = quote_lifecycle.check_quote_terms(
            request_date,
            expiry_date,
            auto_renewal_days,
            min_renewal_days=self.min_renewal_days,
        )
        if not terms.is_ok:
            return terms
        actor = scoped_actor(actor)
        with db.transaction():
            if self.lots.get(db, lot_id) is None:
                return Result.fail(ErrorKind.NOT_FOUND, "lot_not_found", lot_id=lot_id)
            quote = self.quotes.upsert(
                db,
                Quote(
                    lot_id=lot_id,
                    supplier_id=supplier_id.strip(),
                    description=(description or "").strip(),
                    request_date=request_date,
                    expiry_date=expiry_date,
                    auto_renewal_days=auto_renewal_days,
                ),
                actor,
            )
        logger.info("quote_requested", extra={"quote_id": quote.id, "lot_id": lot_id, "actor": actor})
        return Result.ok(quote)

    def confirm_receipt(
        self,
        db,
        quote_id: int,
        received_date: datetime | None = None,
        offered_amount: Decimal | None = None,
        *,
        actor: str | None = None,
    ) -> Result[Quote]:
        received = ensure_utc(received_date) if received_date is not None else self.clock()
        return self._apply(
            db,
            quote_id,
            "confirm_receipt",
            lambda quote: quote_lifecycle.confirm_receipt(quote, received, offered_amount),
            actor=actor,
        )

    def validate_quote(self, db, quote_id: int, *, actor: str | None = None) -> Result[Quote]:
        return self._apply(db, quote_id, "validate_quote", quote_lifecycle.validate, actor=actor)

    def toggle_selected(self, db, quote_id: int, *, actor: str | None = None) -> Result[Quote]:
        return self._apply(db, quote_id, "toggle_selected", quote_lifecycle.toggle_selection, actor=actor)

    def select_exclusive(self, db, quote_id: int, *, actor: str | None = None) -> Result[Quote]:
        """Deselect every other selected quote of the lot, then select this one, in one transaction."""
        actor = scoped_actor(actor)
        try:
            with unit_of_work(db, self.event_bus) as events:
                quote = self.quotes.get(db, quote_id)
                if quote is None:
                    return self._quote_not_found(quote_id)
                siblings = self.quotes.list_for_lot(db, quote.lot_id)
                plan = quote_lifecycle.plan_exclusive_selection(siblings, quote_id)
                if not plan.is_ok:
                    return rejected(plan, "select_exclusive", quote_id=quote_id)
                by_id = {item.id: item for item in siblings}
                for change in plan.value:
                    self._save(
                        db,
                        by_id[change.id],
                        change,
                        actor=actor,
                        triggered_by=TriggeredBy.MANUAL,
                        reason="exclusive_selection",
                        events=events,
                    )
                stored = self.quotes.get(db, quote_id)
        except ConcurrencyConflictError as exc:
            return conflict_result(exc)
        return Result.ok(stored)

    def delete_quote(self, db, quote_id: int, *, actor: str | None = None) -> Result[None]:
        actor = scoped_actor(actor)
        with db.transaction():
            quote = self.quotes.get(db, quote_id)
            if quote is None:
                return self._quote_not_found(quote_id)
            guard = quote_lifecycle.check_deletable(quote)
            if not guard.is_ok:
                return rejected(guard, "delete_quote", quote_id=quote_id)
            self.quotes.soft_delete(db, quote_id, actor, expected_version=quote.version)
        logger.info("quote_deleted", extra={"quote_id": quote_id, "actor": actor})
        return Result.ok()

    def renew_or_expire(
        self,
        db,
        quote_id: int,
        now: datetime | None = None,
        *,
        actor: str | None = None,
    ) -> Result[StateChangeRecord | None]:
        """Renew a lapsed Valid quote by whole ``auto_renewal_days`` periods, or expire it.

        Returns ``None`` when the quote needs nothing, which keeps repeated runs idempotent.
        """
        moment = ensure_utc(now) if now is not None else self.clock()
        actor = actor or DEADLINE_JOB_ACTOR
        try:
            with unit_of_work(db, self.event_bus) as events:
                quote = self.quotes.get(db, quote_id)
                if quote is None:
                    return self._quote_not_found(quote_id)
                outcome = quote_lifecycle.renewal_outcome(quote, moment)
                if outcome is None:
                    return Result.ok(None)
                renewed = outcome.state == quote.state
                record = self._save(
                    db,
                    quote,
                    outcome,
                    actor=actor,
                    triggered_by=TriggeredBy.AUTOMATIC,
                    reason=QUOTE_RENEWED_REASON if renewed else QUOTE_EXPIRED_REASON,
                    events=events,
                )
        except ConcurrencyConflictError as exc:
            return conflict_result(exc)
        if renewed:
            logger.info(
                "quote_auto_renewed",
                extra={
                    "quote_id": quote_id,
                    "previous_expiry": quote.expiry_date.isoformat(),
                    "expiry_date": outcome.expiry_date.isoformat(),
                },
            )
        return Result.ok(record)
