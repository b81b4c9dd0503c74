from __future__ import annotations

from typing import List

from gare.domain.values import format_timestamp, utc_now
from gare.infrastructure.repositories.base import RecordRepository, row_id


class JobRunRepository:
    def start(self, db, *, job_name: str, attempt: int = 1, parent_run_id: int | None = None) -> int:
        cursor = db.execute(
            """
            INSERT INTO job_runs (job_name, status, attempt, parent_run_id, started_at)
            VALUES (?, 'running', ?, ?, ?)
            RETURNING id
            """,
            (job_name, int(attempt), parent_run_id, format_timestamp(utc_now())),
        )
        run_id = row_id(cursor.fetchone())
        db.commit()
        return run_id

    def finish(
        self,
        db,
        run_id: int,
        *,
        status: str,
        duration_ms: int | None = None,
        records_total: int = 0,
        items_succeeded: int = 0,
        items_failed: int = 0,
        error_summary: str | None = None,
    ) -> None:
        db.execute(
            """
            UPDATE job_runs
            SET status = ?, finished_at = ?, duration_ms = ?, records_total = ?,
                items_succeeded = ?, items_failed = ?, error_summary = ?
            WHERE id = ?
            """,
            (
                status,
                format_timestamp(utc_now()),
                duration_ms,
                int(records_total),
                int(items_succeeded),
                int(items_failed),
                (error_summary or "")[:500] or None,
                run_id,
            ),
        )
        db.commit()

    def record_skipped(self, db, *, job_name: str) -> int:
        now = format_timestamp(utc_now())
        cursor = db.execute(
            """
            INSERT INTO job_runs (job_name, status, attempt, started_at, finished_at)
            VALUES (?, 'skipped_locked', 1, ?, ?)
            RETURNING id
            """,
            (job_name, now, now),
        )
        run_id = row_id(cursor.fetchone())
        db.commit()
        return run_id

    def list_recent(self, db, job_name: str, limit: int = 20) -> List[dict]:
        rows = db.execute(
            """
            SELECT *
            FROM job_runs
            WHERE job_name = ?
            ORDER BY id DESC
            LIMIT ?
            """,
            (job_name, int(limit)),
        ).fetchall()
        return RecordRepository.rows_to_dicts(rows)
