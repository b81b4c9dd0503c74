from __future__ import annotations

import logging
import os
import socket
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List

from flask import Flask

from gare.application.services import WorkflowServices, build_services
from gare.config import int_setting
from gare.db import close_db, get_db
from gare.domain.records import LotState, StateChangeRecord, TERMINAL_LOT_STATES, TriggeredBy
from gare.domain.results import Result
from gare.domain.values import ensure_utc, utc_now
from gare.identity import DEADLINE_JOB_ACTOR
from gare.infrastructure.job_lock import JobLockRepository, LeaseLostError
from gare.infrastructure.repositories import JobRunRepository
from gare.notifications import NotificationDispatcher, get_notification_dispatcher
from gare.observability import (
    bind_request_id,
    new_job_request_id,
    observe_deadline_job_item,
    observe_deadline_job_run,
)


logger = logging.getLogger("gare.jobs")

DEFAULT_JOB_NAME = "deadline_reevaluation"

STEP_EXAMINATION_START = "examination_start"
STEP_QUOTE_EXPIRY = "quote_expiry"
STEP_CLARIFICATION_GATE = "clarification_gate"
STEP_TENDER_CLOSURE = "tender_closure"

# Items handled between two lease renewals inside one step.
HEARTBEAT_EVERY = 100


def _no_heartbeat() -> None:
    return None


@dataclass
class JobRunSummary:
    records: List[StateChangeRecord] = field(default_factory=list)
    succeeded: int = 0
    failed: int = 0
    failures: List[Dict[str, Any]] = field(default_factory=list)
    lease_lost: bool = False

    @property
    def processed(self) -> int:
        return self.succeeded + self.failed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "failures": list(self.failures),
            "lease_lost": self.lease_lost,
            "records": [record.to_dict() for record in self.records],
        }


class DeadlineReevaluationJob:
    """Date-driven automatic transitions.

    Steps run in a fixed order: lots whose examination start date is due,
    lapsed Valid quotes, clarification-pending lots whose gate already
    passes, then open tenders whose lots are all terminal. Every item is
    handled in its own transaction; a failing item is logged and counted
    and the batch moves on.
    """

    def __init__(
        self,
        services: WorkflowServices,
        *,
        batch_limit: int = 500,
        actor: str = DEADLINE_JOB_ACTOR,
    ) -> None:
        self.services = services
        self.batch_limit = max(1, int(batch_limit))
        self.actor = actor

    def run(
        self,
        db,
        now: datetime | None = None,
        *,
        heartbeat: Callable[[], None] | None = None,
    ) -> JobRunSummary:
        """Run every step once. ``heartbeat`` renews the job lease and raises ``LeaseLostError`` when it is gone."""
        moment = ensure_utc(now) if now is not None else utc_now()
        summary = JobRunSummary()
        try:
            self._run_steps(db, moment, summary, heartbeat or _no_heartbeat)
        except LeaseLostError as exc:
            summary.lease_lost = True
            logger.warning(
                "deadline_job_lease_lost",
                extra={"lock_name": exc.name, "owner": exc.owner, "processed": summary.processed},
            )
        return summary

    def _run_steps(self, db, moment: datetime, summary: JobRunSummary, heartbeat: Callable[[], None]) -> None:
        lots = self.services.lots
        quotes = self.services.quotes
        tenders = self.services.tenders

        for lot in lots.lots.list_due_for_examination(db, moment, self.batch_limit):
            self._process(
                summary,
                STEP_EXAMINATION_START,
                lot.id,
                lambda lot_id=lot.id: lots.change_state(
                    db,
                    lot_id,
                    LotState.UNDER_EXAMINATION,
                    actor=self.actor,
                    reason="examination_start_date_reached",
                    triggered_by=TriggeredBy.AUTOMATIC,
                ),
                heartbeat,
            )

        heartbeat()
        for quote in quotes.quotes.list_expired_valid(db, moment, self.batch_limit):
            self._process(
                summary,
                STEP_QUOTE_EXPIRY,
                quote.id,
                lambda quote_id=quote.id: quotes.renew_or_expire(db, quote_id, moment, actor=self.actor),
                heartbeat,
            )

        heartbeat()
        for lot in lots.lots.list_clarification_gate_ready(db, self.batch_limit):
            self._process(
                summary,
                STEP_CLARIFICATION_GATE,
                lot.id,
                lambda lot_id=lot.id: lots.change_state(
                    db,
                    lot_id,
                    LotState.UNDER_EXAMINATION,
                    actor=self.actor,
                    reason="clarification_gate_satisfied",
                    triggered_by=TriggeredBy.AUTOMATIC,
                ),
                heartbeat,
            )

        heartbeat()
        for tender in tenders.tenders.list_completable(db, TERMINAL_LOT_STATES, self.batch_limit):
            self._process(
                summary,
                STEP_TENDER_CLOSURE,
                tender.id,
                lambda tender_id=tender.id: tenders.refresh_tender_status(
                    db,
                    tender_id,
                    actor=self.actor,
                    triggered_by=TriggeredBy.AUTOMATIC,
                ),
                heartbeat,
            )

    @staticmethod
    def _process(
        summary: JobRunSummary,
        step: str,
        item_id: int | None,
        action: Callable[[], Result[StateChangeRecord | None]],
        heartbeat: Callable[[], None],
    ) -> None:
        if summary.processed and summary.processed % HEARTBEAT_EVERY == 0:
            heartbeat()
        try:
            result = action()
        except Exception as exc:  # noqa: BLE001 - one bad record must not halt the batch
            logger.exception("deadline_job_item_failed", extra={"step": step, "item_id": item_id})
            summary.failed += 1
            summary.failures.append({"step": step, "item_id": item_id, "error": type(exc).__name__})
            observe_deadline_job_item(step, "failed")
            return

        if not result.is_ok:
            logger.warning(
                "deadline_job_item_rejected",
                extra={
                    "step": step,
                    "item_id": item_id,
                    "error_kind": result.error.kind.value,
                    "message_key": result.error.message_key,
                },
            )
            summary.failed += 1
            summary.failures.append({"step": step, "item_id": item_id, "error": result.error.kind.value})
            observe_deadline_job_item(step, "rejected")
            return

        if result.value is None:
            observe_deadline_job_item(step, "noop")
            return
        summary.succeeded += 1
        summary.records.append(result.value)
        observe_deadline_job_item(step, "succeeded")


def build_deadline_job(app: Flask) -> DeadlineReevaluationJob:
    return DeadlineReevaluationJob(
        build_services(app.config),
        batch_limit=int_setting(app.config, "DEADLINE_JOB_BATCH_LIMIT", 500, 1, 100_000),
    )


def _lock_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


def _dispatch(dispatcher: NotificationDispatcher, records: Iterable[StateChangeRecord]) -> None:
    records = list(records)
    if not records:
        return
    try:
        dispatcher.dispatch(records)
    except Exception:  # noqa: BLE001 - delivery belongs to the dispatcher; state is already committed
        logger.exception("deadline_job_dispatch_failed", extra={"records": len(records)})


def run_deadline_job(
    app: Flask,
    now: datetime | None = None,
    *,
    job: DeadlineReevaluationJob | None = None,
    dispatcher: NotificationDispatcher | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> JobRunSummary | None:
    """Run the job once under the cluster lock, retrying whole runs on infrastructure failure.

    Returns ``None`` when another instance holds the lock. The lease is renewed
    between steps and before every retry; once it is lost the run stops.
    Re-raises the last error once the retry budget is spent.
    """
    job_name = str(app.config.get("DEADLINE_JOB_NAME") or DEFAULT_JOB_NAME)
    attempts = int_setting(app.config, "DEADLINE_JOB_RETRY_ATTEMPTS", 3, 1, 10)
    backoff_seconds = int_setting(app.config, "DEADLINE_JOB_RETRY_BACKOFF_SECONDS", 5, 0, 3600)
    max_backoff_seconds = int_setting(
        app.config,
        "DEADLINE_JOB_RETRY_MAX_BACKOFF_SECONDS",
        300,
        backoff_seconds,
        86_400,
    )
    ttl_seconds = int_setting(app.config, "DEADLINE_JOB_LOCK_TTL_SECONDS", 900, 30, 86_400)
    locks = JobLockRepository()
    runs = JobRunRepository()
    owner = _lock_owner()

    with app.app_context(), bind_request_id(new_job_request_id(job_name)):
        job = job or build_deadline_job(app)
        dispatcher = dispatcher or get_notification_dispatcher(app)
        db = get_db()

        def heartbeat() -> None:
            if not locks.renew(db, job_name, owner, ttl_seconds):
                raise LeaseLostError(job_name, owner)

        try:
            if not locks.acquire(db, job_name, owner, ttl_seconds):
                runs.record_skipped(db, job_name=job_name)
                observe_deadline_job_run("skipped_locked")
                logger.info(
                    "deadline_job_skipped_locked",
                    extra={"job_name": job_name, "lock_holder": locks.holder(db, job_name)},
                )
                return None
            try:
                summary = _run_with_retries(
                    db,
                    job,
                    runs,
                    now=now,
                    job_name=job_name,
                    attempts=attempts,
                    backoff_seconds=backoff_seconds,
                    max_backoff_seconds=max_backoff_seconds,
                    sleep=sleep,
                    heartbeat=heartbeat,
                )
            finally:
                locks.release(db, job_name, owner)
            _dispatch(dispatcher, summary.records)
            return summary
        finally:
            close_db()


def _run_with_retries(
    db,
    job: DeadlineReevaluationJob,
    runs: JobRunRepository,
    *,
    now: datetime | None,
    job_name: str,
    attempts: int,
    backoff_seconds: int,
    max_backoff_seconds: int,
    sleep: Callable[[float], None],
    heartbeat: Callable[[], None],
) -> JobRunSummary:
    parent_run_id: int | None = None
    for attempt in range(1, attempts + 1):
        run_id = runs.start(db, job_name=job_name, attempt=attempt, parent_run_id=parent_run_id)
        parent_run_id = parent_run_id or run_id
        started = time.perf_counter()
        try:
            summary = job.run(db, now, heartbeat=heartbeat)
        except Exception as exc:
            db.rollback()
            elapsed = time.perf_counter() - started
            runs.finish(
                db,
                run_id,
                status="failed",
                duration_ms=int(elapsed * 1000),
                error_summary=f"{type(exc).__name__}: {exc}",
            )
            observe_deadline_job_run("failed", elapsed)
            if attempt >= attempts:
                logger.exception("deadline_job_failed", extra={"job_name": job_name, "attempt": attempt})
                raise
            delay = min(max_backoff_seconds, backoff_seconds * (2 ** (attempt - 1)))
            logger.warning(
                "deadline_job_retry_scheduled",
                extra={"job_name": job_name, "attempt": attempt, "delay_seconds": delay, "error": str(exc)},
            )
            sleep(delay)
            try:
                heartbeat()
            except LeaseLostError:
                logger.warning("deadline_job_lease_lost", extra={"job_name": job_name, "attempt": attempt})
                raise exc
            continue

        elapsed = time.perf_counter() - started
        status = "lease_lost" if summary.lease_lost else "succeeded"
        runs.finish(
            db,
            run_id,
            status=status,
            duration_ms=int(elapsed * 1000),
            records_total=len(summary.records),
            items_succeeded=summary.succeeded,
            items_failed=summary.failed,
        )
        observe_deadline_job_run(status, elapsed)
        logger.info(
            "deadline_job_completed",
            extra={
                "job_name": job_name,
                "attempt": attempt,
                "status": status,
                "succeeded": summary.succeeded,
                "failed": summary.failed,
                "records": len(summary.records),
            },
        )
        return summary
    raise RuntimeError("deadline job retry loop exhausted")  # pragma: no cover
