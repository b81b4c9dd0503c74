from __future__ import annotations

from datetime import datetime, timedelta

from gare.domain.values import format_timestamp, utc_now


class LeaseLostError(RuntimeError):
    def __init__(self, name: str, owner: str) -> None:
        self.name = name
        self.owner = owner
        super().__init__(f"lock {name!r} no longer held by {owner!r}")


def _expiry(moment: datetime, ttl_seconds: int) -> str:
    return format_timestamp(moment + timedelta(seconds=max(1, int(ttl_seconds))))


class JobLockRepository:
    """Lease-style lock row keyed by job name; an expired lease can be taken over.

    Holders extend the lease with ``renew`` while they work. A renewal that
    finds another owner means the lease lapsed and was taken over.
    """

    def acquire(self, db, name: str, owner: str, ttl_seconds: int, *, now: datetime | None = None) -> bool:
        moment = now or utc_now()
        acquired_at = format_timestamp(moment)
        db.execute("DELETE FROM job_locks WHERE name = ? AND expires_at <= ?", (name, acquired_at))
        db.execute(
            """
            INSERT INTO job_locks (name, owner, acquired_at, expires_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (name) DO NOTHING
            """,
            (name, owner, acquired_at, _expiry(moment, ttl_seconds)),
        )
        db.commit()
        return self.holder(db, name) == owner

    def renew(self, db, name: str, owner: str, ttl_seconds: int, *, now: datetime | None = None) -> bool:
        cursor = db.execute(
            "UPDATE job_locks SET expires_at = ? WHERE name = ? AND owner = ?",
            (_expiry(now or utc_now(), ttl_seconds), name, owner),
        )
        db.commit()
        return cursor.rowcount > 0

    def release(self, db, name: str, owner: str) -> None:
        db.execute("DELETE FROM job_locks WHERE name = ? AND owner = ?", (name, owner))
        db.commit()

    def holder(self, db, name: str) -> str | None:
        row = db.execute("SELECT owner FROM job_locks WHERE name = ?", (name,)).fetchone()
        if row is None:
            return None
        return row["owner"] if isinstance(row, dict) else row[0]
