from __future__ import annotations

from dataclasses import replace
from typing import Any, List, Mapping

from gare.domain.records import StateChangeRecord, TriggeredBy
from gare.domain.values import format_timestamp, parse_timestamp
from gare.infrastructure.repositories.base import RecordRepository, row_id


class StateChangeRepository:
    """Append-only history of lot, quote and tender state changes."""

    @staticmethod
    def _from_row(row: Mapping[str, Any]) -> StateChangeRecord:
        return StateChangeRecord(
            id=int(row["id"]),
            entity=row["entity"],
            entity_id=int(row["entity_id"]),
            lot_id=None if row["lot_id"] is None else int(row["lot_id"]),
            from_state=row["from_state"],
            to_state=row["to_state"],
            occurred_at=parse_timestamp(row["occurred_at"]),
            triggered_by=TriggeredBy(row["triggered_by"]),
            actor=row["actor"],
            reason=row["reason"],
        )

    def add(self, db, record: StateChangeRecord) -> StateChangeRecord:
        cursor = db.execute(
            """
            INSERT INTO state_change_records (
                entity, entity_id, lot_id, from_state, to_state, triggered_by, actor, reason, occurred_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (
                record.entity,
                record.entity_id,
                record.lot_id,
                record.from_state,
                record.to_state,
                record.triggered_by.value,
                record.actor,
                record.reason,
                format_timestamp(record.occurred_at),
            ),
        )
        return replace(record, id=row_id(cursor.fetchone()))

    def list_for_lot(self, db, lot_id: int, *, limit: int = 200) -> List[StateChangeRecord]:
        rows = db.execute(
            """
            SELECT *
            FROM state_change_records
            WHERE lot_id = ?
            ORDER BY occurred_at DESC, id DESC
            LIMIT ?
            """,
            (lot_id, int(limit)),
        ).fetchall()
        return [self._from_row(row) for row in RecordRepository.rows_to_dicts(rows)]

    def list_for_entity(self, db, *, entity: str, entity_id: int, limit: int = 200) -> List[StateChangeRecord]:
        rows = db.execute(
            """
            SELECT *
            FROM state_change_records
            WHERE entity = ? AND entity_id = ?
            ORDER BY occurred_at DESC, id DESC
            LIMIT ?
            """,
            (entity, entity_id, int(limit)),
        ).fetchall()
        return [self._from_row(row) for row in RecordRepository.rows_to_dicts(rows)]
