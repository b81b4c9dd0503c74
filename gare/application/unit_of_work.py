from __future__ import annotations

import contextlib
import logging
from typing import Iterator, List

from gare.core import DomainEvent, EventBus
from gare.domain.results import ErrorKind, Result
from gare.errors import ConcurrencyConflictError


logger = logging.getLogger("gare.workflow")


@contextlib.contextmanager
def unit_of_work(db, event_bus: EventBus) -> Iterator[List[DomainEvent]]:
    """One transaction; events collected inside are published only after commit."""
    events: List[DomainEvent] = []
    with db.transaction():
        yield events
    for event in events:
        event_bus.publish(event)


def conflict_result(exc: ConcurrencyConflictError) -> Result:
    logger.warning(
        "concurrency_conflict",
        extra={"entity": exc.entity, "record_id": exc.record_id, "expected_version": exc.expected_version},
    )
    return Result.fail(
        ErrorKind.CONCURRENCY_CONFLICT,
        "concurrency_conflict",
        entity=exc.entity,
        record_id=exc.record_id,
        retryable=True,
    )


def rejected(result: Result, operation: str, **context) -> Result:
    logger.warning(
        "workflow_operation_rejected",
        extra={
            "operation": operation,
            "error_kind": result.error.kind.value,
            "message_key": result.error.message_key,
            **context,
        },
    )
    return result
