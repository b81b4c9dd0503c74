"""Initial schema for tenders, lots and the deadline job

Revision ID: 20261018_000001
Revises:
Create Date: 2026-10-18 00:00:01
"""

from __future__ import annotations

from typing import Iterable, Sequence, Union

from alembic import op
from sqlalchemy.engine import Connection

from gare.db import SCHEMA_TABLES, _convert_qmark_to_pg, _init_db_postgres, _init_db_sqlite, _split_sql_statements


# revision identifiers, used by Alembic.
revision: str = "20261018_000001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


class _ResultAdapter:
    def __init__(self, result):
        self._result = result

    @staticmethod
    def _map_row(row):
        if row is None:
            return None
        if isinstance(row, dict):
            return row
        mapping = getattr(row, "_mapping", None)
        if mapping is not None:
            return dict(mapping)
        return row

    def fetchone(self):
        return self._map_row(self._result.fetchone())

    def fetchall(self):
        return [self._map_row(row) for row in self._result.fetchall()]


class _AlembicDbAdapter:
    def __init__(self, connection: Connection, backend: str):
        self._connection = connection
        self.backend = backend

    def execute(self, sql: str, params: Iterable | None = None):
        if params is None:
            return _ResultAdapter(self._connection.exec_driver_sql(sql))
        statement = _convert_qmark_to_pg(sql) if self.backend == "postgres" else sql
        return _ResultAdapter(self._connection.exec_driver_sql(statement, tuple(params)))

    def executescript(self, sql: str):
        for statement in _split_sql_statements(sql):
            if statement.strip():
                self.execute(statement)

    def commit(self):
        # Transactions belong to the migration context.
        return None

    def close(self):
        return None


def _resolve_backend(connection: Connection) -> str:
    dialect = (connection.dialect.name or "").lower()
    if dialect.startswith("postgres"):
        return "postgres"
    return "sqlite"


def upgrade() -> None:
    connection = op.get_bind()
    backend = _resolve_backend(connection)
    adapter = _AlembicDbAdapter(connection, backend)

    if backend == "postgres":
        _init_db_postgres(adapter)
        return

    _init_db_sqlite(adapter)


def downgrade() -> None:
    for table in SCHEMA_TABLES:
        op.execute(f"DROP TABLE IF EXISTS {table}")
