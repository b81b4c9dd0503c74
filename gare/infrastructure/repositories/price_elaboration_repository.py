from __future__ import annotations

from typing import Any, Dict, Mapping

from gare.domain.records import PriceElaboration
from gare.domain.values import parse_decimal
from gare.infrastructure.repositories.base import RecordRepository, audit_fields


class PriceElaborationRepository(RecordRepository[PriceElaboration]):
    table = "price_elaborations"
    entity = "price_elaboration"
    filterable = ("id", "lot_id")

    def _from_row(self, row: Mapping[str, Any]) -> PriceElaboration:
        return PriceElaboration(
            **audit_fields(row),
            lot_id=int(row["lot_id"]),
            desired_price=parse_decimal(row["desired_price"]),
            actual_exit_price=parse_decimal(row["actual_exit_price"]),
            adaptation_rationale=row["adaptation_rationale"],
        )

    def _to_values(self, record: PriceElaboration) -> Dict[str, Any]:
        return {
            "lot_id": record.lot_id,
            "desired_price": record.desired_price,
            "actual_exit_price": record.actual_exit_price,
            "adaptation_rationale": record.adaptation_rationale,
        }

    def get_for_lot(self, db, lot_id: int) -> PriceElaboration | None:
        page = self.query(db, {"lot_id": lot_id})
        return page.items[0] if page.items else None
