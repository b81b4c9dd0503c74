from __future__ import annotations

import logging
from datetime import datetime

from gare.domain.records import StateChangeRecord, TriggeredBy
from gare.infrastructure.repositories import StateChangeRepository
from gare.observability import observe_state_change


logger = logging.getLogger("gare.workflow")


def record_state_change(
    history: StateChangeRepository,
    db,
    *,
    entity: str,
    entity_id: int,
    lot_id: int | None,
    from_state: str,
    to_state: str,
    occurred_at: datetime,
    triggered_by: TriggeredBy,
    actor: str | None,
    reason: str | None = None,
) -> StateChangeRecord:
    stored = history.add(
        db,
        StateChangeRecord(
            entity=entity,
            entity_id=entity_id,
            lot_id=lot_id,
            from_state=from_state,
            to_state=to_state,
            occurred_at=occurred_at,
            triggered_by=triggered_by,
            actor=actor,
            reason=reason,
        ),
    )
    observe_state_change(entity, to_state, triggered_by.value)
    logger.info(
        f"{entity}_state_changed",
        extra={
            "entity": entity,
            "entity_id": entity_id,
            "lot_id": lot_id,
            "from_state": from_state,
            "to_state": to_state,
            "triggered_by": triggered_by.value,
            "actor": actor,
        },
    )
    return stored
