from __future__ import annotations

from typing import Any, Dict, List, Mapping

from gare.domain.records import ClarificationRequest
from gare.domain.values import parse_timestamp
from gare.infrastructure.repositories.base import RecordRepository, audit_fields


class ClarificationRequestRepository(RecordRepository[ClarificationRequest]):
    table = "clarification_requests"
    entity = "clarification_request"
    filterable = ("id", "lot_id", "sequence_number", "closed")
    order_by = "lot_id ASC, sequence_number ASC"

    def _from_row(self, row: Mapping[str, Any]) -> ClarificationRequest:
        return ClarificationRequest(
            **audit_fields(row),
            lot_id=int(row["lot_id"]),
            sequence_number=int(row["sequence_number"]),
            request_text=row["request_text"],
            request_date=parse_timestamp(row["request_date"]),
            response_text=row["response_text"],
            response_date=parse_timestamp(row["response_date"]),
            responder_id=row["responder_id"],
            closed=bool(row["closed"]),
        )

    def _to_values(self, record: ClarificationRequest) -> Dict[str, Any]:
        return {
            "lot_id": record.lot_id,
            "sequence_number": record.sequence_number,
            "request_text": record.request_text,
            "request_date": record.request_date,
            "response_text": record.response_text,
            "response_date": record.response_date,
            "responder_id": record.responder_id,
            "closed": bool(record.closed),
        }

    def list_for_lot(self, db, lot_id: int) -> List[ClarificationRequest]:
        return self.list_all(db, {"lot_id": lot_id})

    def count_open(self, db, lot_id: int) -> int:
        return self.count(db, {"lot_id": lot_id, "closed": False})

    def next_sequence_number(self, db, lot_id: int) -> int:
        # Soft-deleted rows keep their number so it is never reused.
        row = db.execute(
            "SELECT COALESCE(MAX(sequence_number), 0) AS last_number FROM clarification_requests WHERE lot_id = ?",
            (lot_id,),
        ).fetchone()
        last = row["last_number"] if isinstance(row, dict) else row[0]
        return int(last or 0) + 1
