from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Mapping

from gare.domain.records import Lot, LotState
from gare.domain.values import parse_decimal, parse_timestamp
from gare.infrastructure.repositories.base import PageRequest, RecordRepository, audit_fields


class LotRepository(RecordRepository[Lot]):
    table = "lots"
    entity = "lot"
    filterable = ("id", "tender_id", "code", "state", "operator_id", "examination_start_date")

    def _from_row(self, row: Mapping[str, Any]) -> Lot:
        return Lot(
            **audit_fields(row),
            tender_id=int(row["tender_id"]),
            code=row["code"],
            description=row["description"] or "",
            state=LotState(row["state"]),
            operator_id=row["operator_id"],
            examination_start_date=parse_timestamp(row["examination_start_date"]),
            rejection_reason=row["rejection_reason"],
            base_price=parse_decimal(row["base_price"]),
            quoted_price=parse_decimal(row["quoted_price"]),
        )

    def _to_values(self, record: Lot) -> Dict[str, Any]:
        return {
            "tender_id": record.tender_id,
            "code": record.code,
            "description": record.description or "",
            "state": record.state,
            "operator_id": record.operator_id,
            "examination_start_date": record.examination_start_date,
            "rejection_reason": record.rejection_reason,
            "base_price": record.base_price,
            "quoted_price": record.quoted_price,
        }

    def list_for_tender(self, db, tender_id: int) -> List[Lot]:
        return self.list_all(db, {"tender_id": tender_id})

    def get_by_code(self, db, tender_id: int, code: str) -> Lot | None:
        page = self.query(db, {"tender_id": tender_id, "code": code})
        return page.items[0] if page.items else None

    def list_due_for_examination(self, db, now: datetime, limit: int) -> List[Lot]:
        page = self.query(
            db,
            {"state": LotState.SUBMITTED, "examination_start_date__lte": now},
            PageRequest(limit=limit),
        )
        return page.items

    def list_in_state(self, db, state: LotState, limit: int) -> List[Lot]:
        return self.query(db, {"state": state}, PageRequest(limit=limit)).items

    def list_clarification_gate_ready(self, db, limit: int) -> List[Lot]:
        """Lots still in clarification_pending although no live request is open."""
        rows = db.execute(
            """
            SELECT l.*
            FROM lots l
            WHERE l.deleted = ? AND l.state = ?
              AND NOT EXISTS (
                  SELECT 1 FROM clarification_requests c
                  WHERE c.lot_id = l.id AND c.deleted = ? AND c.closed = ?
              )
            ORDER BY l.id ASC
            LIMIT ?
            """,
            (False, LotState.CLARIFICATION_PENDING.value, False, False, int(limit)),
        ).fetchall()
        return [self._from_row(row) for row in self.rows_to_dicts(rows)]
