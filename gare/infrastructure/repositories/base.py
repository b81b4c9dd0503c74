from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Generic, Iterable, List, Mapping, Tuple, TypeVar

from gare.domain.records import Record
from gare.domain.values import format_decimal, format_timestamp, parse_timestamp, utc_now
from gare.errors import ConcurrencyConflictError


R = TypeVar("R", bound=Record)

AUDIT_COLUMNS: Tuple[str, ...] = (
    "version",
    "created_at",
    "created_by",
    "updated_at",
    "updated_by",
    "deleted",
    "deleted_at",
    "deleted_by",
)

_OPERATORS: Dict[str, str] = {
    "": "=",
    "lt": "<",
    "lte": "<=",
    "gt": ">",
    "gte": ">=",
    "ne": "<>",
}

DEFAULT_PAGE_LIMIT = 100
MAX_PAGE_LIMIT = 1000


class UnknownFilterError(ValueError):
    """Raised when a query names a column the repository does not expose for filtering."""


@dataclass(frozen=True)
class PageRequest:
    limit: int = DEFAULT_PAGE_LIMIT
    offset: int = 0

    def normalized(self) -> "PageRequest":
        limit = max(1, min(int(self.limit or DEFAULT_PAGE_LIMIT), MAX_PAGE_LIMIT))
        return PageRequest(limit=limit, offset=max(0, int(self.offset or 0)))


@dataclass(frozen=True)
class RecordPage(Generic[R]):
    items: List[R] = field(default_factory=list)
    limit: int = DEFAULT_PAGE_LIMIT
    offset: int = 0
    has_more: bool = False


def to_db_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, Decimal):
        return format_decimal(value)
    return value


def row_id(row: Any) -> int:
    return int(row["id"] if isinstance(row, dict) else row[0])


def audit_fields(row: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "id": int(row["id"]),
        "version": int(row["version"]),
        "created_at": parse_timestamp(row["created_at"]),
        "created_by": row["created_by"],
        "updated_at": parse_timestamp(row["updated_at"]),
        "updated_by": row["updated_by"],
        "deleted": bool(row["deleted"]),
        "deleted_at": parse_timestamp(row["deleted_at"]),
        "deleted_by": row["deleted_by"],
    }


class RecordRepository(Generic[R]):
    """Versioned, soft-deleting record store over one table.

    Reads always carry an explicit ``deleted = ?`` predicate. Updates are
    conditional on the caller's ``version``; a stale copy raises
    ``ConcurrencyConflictError`` and leaves the row untouched.
    """

    table: str = ""
    entity: str = ""
    columns: Tuple[str, ...] = ()
    filterable: Tuple[str, ...] = ()
    order_by: str = "id ASC"

    def _from_row(self, row: Mapping[str, Any]) -> R:
        raise NotImplementedError

    def _to_values(self, record: R) -> Dict[str, Any]:
        raise NotImplementedError

    def get(self, db, record_id: int, *, include_deleted: bool = False) -> R | None:
        sql = f"SELECT * FROM {self.table} WHERE id = ?"
        params: List[Any] = [record_id]
        if not include_deleted:
            sql += " AND deleted = ?"
            params.append(False)
        row = db.execute(f"{sql} LIMIT 1", params).fetchone()
        return self._from_row(dict(row)) if row else None

    def _where(self, filters: Mapping[str, Any] | None, include_deleted: bool) -> Tuple[str, List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if not include_deleted:
            clauses.append("deleted = ?")
            params.append(False)
        for key, value in (filters or {}).items():
            column, _, op = key.partition("__")
            if column not in self.filterable:
                raise UnknownFilterError(f"{self.table}: cannot filter on {column!r}")
            if op == "in":
                values = [to_db_value(item) for item in value]
                if not values:
                    clauses.append("1 = 0")
                    continue
                clauses.append(f"{column} IN ({', '.join('?' for _ in values)})")
                params.extend(values)
                continue
            if op == "isnull":
                clauses.append(f"{column} IS NULL" if value else f"{column} IS NOT NULL")
                continue
            if op not in _OPERATORS:
                raise UnknownFilterError(f"{self.table}: unknown operator {op!r}")
            clauses.append(f"{column} {_OPERATORS[op]} ?")
            params.append(to_db_value(value))
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    def query(
        self,
        db,
        filters: Mapping[str, Any] | None = None,
        page: PageRequest | None = None,
        *,
        include_deleted: bool = False,
    ) -> RecordPage[R]:
        page = (page or PageRequest()).normalized()
        where, params = self._where(filters, include_deleted)
        rows = db.execute(
            f"SELECT * FROM {self.table}{where} ORDER BY {self.order_by} LIMIT ? OFFSET ?",
            (*params, page.limit + 1, page.offset),
        ).fetchall()
        items = [self._from_row(dict(row)) for row in rows[: page.limit]]
        return RecordPage(items=items, limit=page.limit, offset=page.offset, has_more=len(rows) > page.limit)

    def list_all(self, db, filters: Mapping[str, Any] | None = None) -> List[R]:
        where, params = self._where(filters, False)
        rows = db.execute(f"SELECT * FROM {self.table}{where} ORDER BY {self.order_by}", params).fetchall()
        return [self._from_row(dict(row)) for row in rows]

    def count(self, db, filters: Mapping[str, Any] | None = None, *, include_deleted: bool = False) -> int:
        where, params = self._where(filters, include_deleted)
        row = db.execute(f"SELECT COUNT(*) AS total FROM {self.table}{where}", params).fetchone()
        return int(row["total"] if isinstance(row, dict) else row[0])

    def upsert(self, db, record: R, actor: str | None) -> R:
        now = format_timestamp(utc_now())
        values = {key: to_db_value(value) for key, value in self._to_values(record).items()}
        if record.id is None:
            record_id = self._insert(db, values, actor, now)
        else:
            self._update(db, record, values, actor, now)
            record_id = int(record.id)
        stored = self.get(db, record_id)
        if stored is None:
            raise ConcurrencyConflictError(self.entity, record_id, record.version)
        return stored

    def _insert(self, db, values: Dict[str, Any], actor: str | None, now: str) -> int:
        data = {
            **values,
            "version": 1,
            "created_at": now,
            "created_by": actor,
            "updated_at": now,
            "updated_by": actor,
            "deleted": False,
        }
        columns = ", ".join(data.keys())
        placeholders = ", ".join("?" for _ in data)
        cursor = db.execute(
            f"INSERT INTO {self.table} ({columns}) VALUES ({placeholders}) RETURNING id",
            tuple(data.values()),
        )
        return row_id(cursor.fetchone())

    def _update(self, db, record: R, values: Dict[str, Any], actor: str | None, now: str) -> None:
        assignments = ", ".join(f"{column} = ?" for column in values)
        cursor = db.execute(
            f"""
            UPDATE {self.table}
            SET {assignments}, version = version + 1, updated_at = ?, updated_by = ?
            WHERE id = ? AND version = ? AND deleted = ?
            """,
            (*values.values(), now, actor, record.id, record.version, False),
        )
        if cursor.rowcount == 0:
            raise ConcurrencyConflictError(self.entity, record.id, record.version)

    def touch(self, db, record: R, actor: str | None) -> R:
        """Bump ``version`` without changing data, claiming the row for the current transaction."""
        now = format_timestamp(utc_now())
        cursor = db.execute(
            f"""
            UPDATE {self.table}
            SET version = version + 1, updated_at = ?, updated_by = ?
            WHERE id = ? AND version = ? AND deleted = ?
            """,
            (now, actor, record.id, record.version, False),
        )
        if cursor.rowcount == 0:
            raise ConcurrencyConflictError(self.entity, record.id, record.version)
        stored = self.get(db, int(record.id))
        if stored is None:
            raise ConcurrencyConflictError(self.entity, record.id, record.version)
        return stored

    def soft_delete(self, db, record_id: int, actor: str | None, *, expected_version: int | None = None) -> bool:
        now = format_timestamp(utc_now())
        sql = f"""
            UPDATE {self.table}
            SET deleted = ?, deleted_at = ?, deleted_by = ?, version = version + 1, updated_at = ?, updated_by = ?
            WHERE id = ? AND deleted = ?
            """
        params: List[Any] = [True, now, actor, now, actor, record_id, False]
        if expected_version is not None:
            sql += " AND version = ?"
            params.append(expected_version)
        cursor = db.execute(sql, params)
        if cursor.rowcount == 0 and expected_version is not None:
            raise ConcurrencyConflictError(self.entity, record_id, expected_version)
        return cursor.rowcount > 0

    @staticmethod
    def rows_to_dicts(rows: Iterable[Any]) -> list[dict]:
        return [dict(row) for row in rows]
