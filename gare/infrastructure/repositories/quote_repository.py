from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Mapping

from gare.domain.records import Quote, QuoteState
from gare.domain.values import parse_decimal, parse_timestamp
from gare.infrastructure.repositories.base import PageRequest, RecordRepository, audit_fields


class QuoteRepository(RecordRepository[Quote]):
    table = "quotes"
    entity = "quote"
    filterable = ("id", "lot_id", "supplier_id", "state", "expiry_date", "request_date")

    def _from_row(self, row: Mapping[str, Any]) -> Quote:
        renewal = row["auto_renewal_days"]
        return Quote(
            **audit_fields(row),
            lot_id=int(row["lot_id"]),
            supplier_id=row["supplier_id"],
            description=row["description"] or "",
            state=QuoteState(row["state"]),
            request_date=parse_timestamp(row["request_date"]),
            expiry_date=parse_timestamp(row["expiry_date"]),
            received_date=parse_timestamp(row["received_date"]),
            offered_amount=parse_decimal(row["offered_amount"]),
            auto_renewal_days=None if renewal is None else int(renewal),
        )

    def _to_values(self, record: Quote) -> Dict[str, Any]:
        return {
            "lot_id": record.lot_id,
            "supplier_id": record.supplier_id,
            "description": record.description or "",
            "state": record.state,
            "request_date": record.request_date,
            "expiry_date": record.expiry_date,
            "received_date": record.received_date,
            "offered_amount": record.offered_amount,
            "auto_renewal_days": record.auto_renewal_days,
        }

    def list_for_lot(self, db, lot_id: int) -> List[Quote]:
        return self.list_all(db, {"lot_id": lot_id})

    def list_expired_valid(self, db, now: datetime, limit: int) -> List[Quote]:
        page = self.query(
            db,
            {"state": QuoteState.VALID, "expiry_date__lt": now},
            PageRequest(limit=limit),
        )
        return page.items
