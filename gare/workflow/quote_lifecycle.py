from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Sequence, Tuple

from gare.domain.records import Quote, QuoteState
from gare.domain.results import ErrorKind, Result


QUOTE_TRANSITIONS: Dict[QuoteState, Tuple[QuoteState, ...]] = {
    QuoteState.PENDING: (QuoteState.RECEIVED,),
    QuoteState.RECEIVED: (QuoteState.VALID,),
    QuoteState.VALID: (QuoteState.SELECTED, QuoteState.EXPIRED),
    QuoteState.SELECTED: (QuoteState.VALID,),
    QuoteState.EXPIRED: (),
}


def _illegal(quote: Quote, requested: QuoteState) -> Result[Quote]:
    return Result.fail(
        ErrorKind.INVALID_TRANSITION,
        "quote_invalid_transition",
        quote_id=quote.id,
        current_state=quote.state.value,
        requested_state=requested.value,
        allowed=[state.value for state in QUOTE_TRANSITIONS.get(quote.state, ())],
    )


def check_quote_terms(
    request_date: datetime,
    expiry_date: datetime,
    auto_renewal_days: int | None,
    *,
    min_renewal_days: int = 1,
) -> Result[None]:
    if expiry_date <= request_date:
        return Result.fail(ErrorKind.VALIDATION_FAILED, "quote_expiry_before_request", field="expiry_date")
    if auto_renewal_days is not None and auto_renewal_days < min_renewal_days:
        return Result.fail(
            ErrorKind.VALIDATION_FAILED,
            "quote_auto_renewal_invalid",
            field="auto_renewal_days",
            minimum=min_renewal_days,
        )
    return Result.ok()


def confirm_receipt(quote: Quote, received_date: datetime, offered_amount: Decimal | None) -> Result[Quote]:
    if quote.state != QuoteState.PENDING:
        return _illegal(quote, QuoteState.RECEIVED)
    if received_date < quote.request_date:
        return Result.fail(ErrorKind.VALIDATION_FAILED, "quote_received_before_request", field="received_date")
    if offered_amount is not None and offered_amount < 0:
        return Result.fail(ErrorKind.VALIDATION_FAILED, "quote_amount_negative", field="offered_amount")
    amount = quote.offered_amount if offered_amount is None else offered_amount
    return Result.ok(replace(quote, state=QuoteState.RECEIVED, received_date=received_date, offered_amount=amount))


def validate(quote: Quote) -> Result[Quote]:
    if quote.state != QuoteState.RECEIVED:
        return _illegal(quote, QuoteState.VALID)
    if quote.offered_amount is None:
        return Result.fail(ErrorKind.VALIDATION_FAILED, "quote_amount_required", field="offered_amount")
    return Result.ok(replace(quote, state=QuoteState.VALID))


def toggle_selection(quote: Quote) -> Result[Quote]:
    """Non-exclusive selection: sibling quotes are left untouched."""
    if quote.state == QuoteState.VALID:
        return Result.ok(replace(quote, state=QuoteState.SELECTED))
    if quote.state == QuoteState.SELECTED:
        return Result.ok(replace(quote, state=QuoteState.VALID))
    return _illegal(quote, QuoteState.SELECTED)


def plan_exclusive_selection(quotes: Sequence[Quote], quote_id: int) -> Result[List[Quote]]:
    """Return the quotes to write: selected siblings back to Valid, then the target as Selected."""
    target = next((item for item in quotes if item.id == quote_id), None)
    if target is None:
        return Result.fail(ErrorKind.NOT_FOUND, "quote_not_found", quote_id=quote_id)
    if target.state not in (QuoteState.VALID, QuoteState.SELECTED):
        return _illegal(target, QuoteState.SELECTED)

    changes = [
        replace(item, state=QuoteState.VALID)
        for item in quotes
        if item.id != quote_id and item.state == QuoteState.SELECTED
    ]
    if target.state != QuoteState.SELECTED:
        changes.append(replace(target, state=QuoteState.SELECTED))
    return Result.ok(changes)


def renewal_outcome(quote: Quote, now: datetime) -> Quote | None:
    """Expiry handling for the deadline job; None means nothing to do.

    Only Valid quotes whose expiry has passed are touched. With
    ``auto_renewal_days`` the expiry advances in whole periods until it is
    no longer in the past, so a second run in the same instant is a no-op.
    """
    if quote.state != QuoteState.VALID or quote.expiry_date >= now:
        return None
    if quote.auto_renewal_days:
        step = timedelta(days=quote.auto_renewal_days)
        expiry = quote.expiry_date + step
        while expiry < now:
            expiry += step
        return replace(quote, expiry_date=expiry)
    return replace(quote, state=QuoteState.EXPIRED)


def check_deletable(quote: Quote) -> Result[None]:
    if quote.state == QuoteState.SELECTED:
        return Result.fail(ErrorKind.VALIDATION_FAILED, "selected_quote_not_deletable", quote_id=quote.id)
    return Result.ok()
