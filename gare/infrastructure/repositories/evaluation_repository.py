from __future__ import annotations

from typing import Any, Dict, Mapping

from gare.domain.records import Evaluation, EvaluationPhase
from gare.domain.values import parse_timestamp
from gare.infrastructure.repositories.base import RecordRepository, audit_fields


_PHASES = ("technical", "economic")


def _tri_state(value: Any) -> bool | None:
    if value is None:
        return None
    return bool(value)


class EvaluationRepository(RecordRepository[Evaluation]):
    table = "evaluations"
    entity = "evaluation"
    filterable = ("id", "lot_id")

    def _from_row(self, row: Mapping[str, Any]) -> Evaluation:
        phases = {
            phase: EvaluationPhase(
                evaluator_id=row[f"{phase}_evaluator_id"],
                approved=_tri_state(row[f"{phase}_approved"]),
                rejection_reason=row[f"{phase}_rejection_reason"],
                notes=row[f"{phase}_notes"],
                evaluated_at=parse_timestamp(row[f"{phase}_evaluated_at"]),
            )
            for phase in _PHASES
        }
        return Evaluation(**audit_fields(row), lot_id=int(row["lot_id"]), **phases)

    def _to_values(self, record: Evaluation) -> Dict[str, Any]:
        values: Dict[str, Any] = {"lot_id": record.lot_id}
        for phase in _PHASES:
            data: EvaluationPhase = getattr(record, phase)
            values[f"{phase}_evaluator_id"] = data.evaluator_id
            values[f"{phase}_approved"] = data.approved
            values[f"{phase}_rejection_reason"] = data.rejection_reason
            values[f"{phase}_notes"] = data.notes
            values[f"{phase}_evaluated_at"] = data.evaluated_at
        return values

    def get_for_lot(self, db, lot_id: int) -> Evaluation | None:
        page = self.query(db, {"lot_id": lot_id})
        return page.items[0] if page.items else None
