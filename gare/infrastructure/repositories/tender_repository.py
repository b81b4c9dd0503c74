from __future__ import annotations

from typing import Any, Dict, List, Mapping

from gare.domain.records import Tender, TenderStatus
from gare.domain.values import parse_timestamp
from gare.infrastructure.repositories.base import RecordRepository, audit_fields, to_db_value


class TenderRepository(RecordRepository[Tender]):
    table = "tenders"
    entity = "tender"
    filterable = ("id", "code", "status", "submission_deadline", "closed_manually")

    def _from_row(self, row: Mapping[str, Any]) -> Tender:
        return Tender(
            **audit_fields(row),
            code=row["code"],
            title=row["title"],
            status=TenderStatus(row["status"]),
            submission_deadline=parse_timestamp(row["submission_deadline"]),
            closed_at=parse_timestamp(row["closed_at"]),
            closed_by=row["closed_by"],
            closure_reason=row["closure_reason"],
            closed_manually=bool(row["closed_manually"]),
        )

    def _to_values(self, record: Tender) -> Dict[str, Any]:
        return {
            "code": record.code,
            "title": record.title,
            "status": record.status,
            "submission_deadline": record.submission_deadline,
            "closed_at": record.closed_at,
            "closed_by": record.closed_by,
            "closure_reason": record.closure_reason,
            "closed_manually": bool(record.closed_manually),
        }

    def get_by_code(self, db, code: str) -> Tender | None:
        page = self.query(db, {"code": code})
        return page.items[0] if page.items else None

    def list_completable(self, db, terminal_states, limit: int) -> List[Tender]:
        """Open tenders with at least one live lot and no live lot outside ``terminal_states``."""
        states = [to_db_value(state) for state in terminal_states]
        placeholders = ", ".join("?" for _ in states)
        rows = db.execute(
            f"""
            SELECT t.*
            FROM tenders t
            WHERE t.deleted = ? AND t.status = ?
              AND EXISTS (SELECT 1 FROM lots l WHERE l.tender_id = t.id AND l.deleted = ?)
              AND NOT EXISTS (
                  SELECT 1 FROM lots l
                  WHERE l.tender_id = t.id AND l.deleted = ? AND l.state NOT IN ({placeholders})
              )
            ORDER BY t.id ASC
            LIMIT ?
            """,
            (False, TenderStatus.OPEN.value, False, False, *states, int(limit)),
        ).fetchall()
        return [self._from_row(row) for row in self.rows_to_dicts(rows)]
