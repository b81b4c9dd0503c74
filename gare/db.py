import contextlib
import sqlite3
from typing import Dict, Iterable, List

try:
    import psycopg2
    import psycopg2.extras
except ImportError:  # pragma: no cover - optional dependency for postgres
    psycopg2 = None

from flask import current_app, g


class Database:
    def __init__(self, backend: str, connection):
        self.backend = backend
        self._conn = connection
        self._tx_depth = 0

    def execute(self, sql: str, params: Iterable | None = None):
        if self.backend == "postgres":
            cursor = self._conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            if params:
                sql = _convert_qmark_to_pg(sql)
                cursor.execute(sql, list(params))
            else:
                cursor.execute(sql)
            return cursor
        return self._conn.execute(sql, params or ())

    def executescript(self, sql: str):
        if self.backend != "postgres":
            return self._conn.executescript(sql)
        for statement in _split_sql_statements(sql):
            if statement.strip():
                self.execute(statement)

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    @property
    def in_transaction(self) -> bool:
        return self._tx_depth > 0

    @contextlib.contextmanager
    def transaction(self):
        """Unit of work. Nested blocks join the outermost one, which commits or rolls back."""
        outermost = self._tx_depth == 0
        if outermost and self.backend == "postgres":
            self._conn.autocommit = False
        self._tx_depth += 1
        try:
            yield self
        except BaseException:
            self._tx_depth -= 1
            if outermost:
                try:
                    self._conn.rollback()
                finally:
                    self._restore_autocommit()
            raise
        else:
            self._tx_depth -= 1
            if outermost:
                try:
                    self._conn.commit()
                finally:
                    self._restore_autocommit()

    def _restore_autocommit(self) -> None:
        if self.backend == "postgres":
            self._conn.autocommit = True

    def close(self):
        self._conn.close()


def _split_sql_statements(sql: str) -> List[str]:
    statements = []
    current = []
    in_single = False
    in_double = False
    i = 0
    while i < len(sql):
        ch = sql[i]
        if ch == "'" and not in_double:
            in_single = not in_single
        elif ch == '"' and not in_single:
            in_double = not in_double
        elif ch == ";" and not in_single and not in_double:
            statements.append("".join(current))
            current = []
            i += 1
            continue
        current.append(ch)
        i += 1
    if current:
        statements.append("".join(current))
    return statements


def _convert_qmark_to_pg(sql: str) -> str:
    return sql.replace("?", "%s")


def _connect_database(db_path: str) -> Database:
    if db_path.lower().startswith("postgres"):
        if psycopg2 is None:
            raise RuntimeError("psycopg2 non installato.")
        conn = psycopg2.connect(db_path)
        conn.autocommit = True
        return Database("postgres", conn)

    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    return Database("sqlite", conn)


def get_db():
    if "db" not in g:
        db_path = current_app.config["DB_PATH"]
        g.db = _connect_database(db_path)
    return g.db


def close_db(_error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db():
    db = get_db()
    if db.backend == "postgres":
        _init_db_postgres(db)
        return

    _init_db_sqlite(db)


SCHEMA_TABLES = (
    "job_runs",
    "job_locks",
    "state_change_records",
    "clarification_requests",
    "participants",
    "quotes",
    "price_elaborations",
    "evaluations",
    "lots",
    "tenders",
)

LOT_STATES = (
    "created",
    "technical_evaluation",
    "economic_evaluation",
    "price_elaboration",
    "submitted",
    "under_examination",
    "clarification_pending",
    "awarded",
    "lost",
    "rejected",
    "discarded_by_authority",
)

QUOTE_STATES = ("pending", "received", "valid", "selected", "expired")

_SQLITE_TYPES: Dict[str, str] = {
    "pk": "INTEGER PRIMARY KEY AUTOINCREMENT",
    "bool": "INTEGER",
    "false": "0",
    "true": "1",
}

_POSTGRES_TYPES: Dict[str, str] = {
    "pk": "SERIAL PRIMARY KEY",
    "bool": "BOOLEAN",
    "false": "FALSE",
    "true": "TRUE",
}


def _in_list(values: Iterable[str]) -> str:
    return ",".join(f"'{value}'" for value in values)


def _audit_columns(types: Dict[str, str]) -> str:
    return f"""
            version INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL,
            created_by TEXT,
            updated_at TEXT NOT NULL,
            updated_by TEXT,
            deleted {types["bool"]} NOT NULL DEFAULT {types["false"]},
            deleted_at TEXT,
            deleted_by TEXT"""


def _schema_statements(types: Dict[str, str]) -> List[str]:
    # Timestamps are ISO-8601 UTC text and money is decimal text on both backends.
    audit = _audit_columns(types)
    live = f"deleted = {types['false']}"
    return [
        f"""
        CREATE TABLE IF NOT EXISTS tenders (
            id {types["pk"]},
            code TEXT NOT NULL,
            title TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'open' CHECK (status IN ('open','closed')),
            submission_deadline TEXT,
            closed_at TEXT,
            closed_by TEXT,
            closure_reason TEXT,
            closed_manually {types["bool"]} NOT NULL DEFAULT {types["false"]},{audit}
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS lots (
            id {types["pk"]},
            tender_id INTEGER NOT NULL REFERENCES tenders (id),
            code TEXT NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            state TEXT NOT NULL DEFAULT 'created' CHECK (state IN ({_in_list(LOT_STATES)})),
            operator_id TEXT,
            examination_start_date TEXT,
            rejection_reason TEXT,
            base_price TEXT,
            quoted_price TEXT,{audit}
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS evaluations (
            id {types["pk"]},
            lot_id INTEGER NOT NULL REFERENCES lots (id),
            technical_evaluator_id TEXT,
            technical_approved {types["bool"]},
            technical_rejection_reason TEXT,
            technical_notes TEXT,
            technical_evaluated_at TEXT,
            economic_evaluator_id TEXT,
            economic_approved {types["bool"]},
            economic_rejection_reason TEXT,
            economic_notes TEXT,
            economic_evaluated_at TEXT,{audit}
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS price_elaborations (
            id {types["pk"]},
            lot_id INTEGER NOT NULL REFERENCES lots (id),
            desired_price TEXT,
            actual_exit_price TEXT,
            adaptation_rationale TEXT,{audit}
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS quotes (
            id {types["pk"]},
            lot_id INTEGER NOT NULL REFERENCES lots (id),
            supplier_id TEXT NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            state TEXT NOT NULL DEFAULT 'pending' CHECK (state IN ({_in_list(QUOTE_STATES)})),
            request_date TEXT NOT NULL,
            expiry_date TEXT NOT NULL,
            received_date TEXT,
            offered_amount TEXT,
            auto_renewal_days INTEGER,{audit}
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS participants (
            id {types["pk"]},
            lot_id INTEGER NOT NULL REFERENCES lots (id),
            subject_id TEXT,
            company_name TEXT,
            economic_offer TEXT,
            is_awardee {types["bool"]} NOT NULL DEFAULT {types["false"]},
            is_rejected_by_authority {types["bool"]} NOT NULL DEFAULT {types["false"]},{audit},
            CHECK (subject_id IS NOT NULL OR company_name IS NOT NULL)
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS clarification_requests (
            id {types["pk"]},
            lot_id INTEGER NOT NULL REFERENCES lots (id),
            sequence_number INTEGER NOT NULL,
            request_text TEXT NOT NULL,
            request_date TEXT NOT NULL,
            response_text TEXT,
            response_date TEXT,
            responder_id TEXT,
            closed {types["bool"]} NOT NULL DEFAULT {types["false"]},{audit},
            UNIQUE (lot_id, sequence_number)
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS state_change_records (
            id {types["pk"]},
            entity TEXT NOT NULL CHECK (entity IN ('lot','quote','tender')),
            entity_id INTEGER NOT NULL,
            lot_id INTEGER,
            from_state TEXT NOT NULL,
            to_state TEXT NOT NULL,
            triggered_by TEXT NOT NULL CHECK (triggered_by IN ('manual','automatic')),
            actor TEXT,
            reason TEXT,
            occurred_at TEXT NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS job_locks (
            name TEXT PRIMARY KEY,
            owner TEXT NOT NULL,
            acquired_at TEXT NOT NULL,
            expires_at TEXT NOT NULL
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS job_runs (
            id {types["pk"]},
            job_name TEXT NOT NULL,
            status TEXT NOT NULL CHECK (status IN ('running','succeeded','failed','skipped_locked','lease_lost')),
            attempt INTEGER NOT NULL DEFAULT 1,
            parent_run_id INTEGER,
            started_at TEXT NOT NULL,
            finished_at TEXT,
            duration_ms INTEGER,
            records_total INTEGER NOT NULL DEFAULT 0,
            items_succeeded INTEGER NOT NULL DEFAULT 0,
            items_failed INTEGER NOT NULL DEFAULT 0,
            error_summary TEXT
        )
        """,
        f"CREATE UNIQUE INDEX IF NOT EXISTS idx_tenders_code_live ON tenders (code) WHERE {live}",
        f"CREATE UNIQUE INDEX IF NOT EXISTS idx_lots_tender_code_live ON lots (tender_id, code) WHERE {live}",
        f"CREATE UNIQUE INDEX IF NOT EXISTS idx_evaluations_lot_live ON evaluations (lot_id) WHERE {live}",
        f"CREATE UNIQUE INDEX IF NOT EXISTS idx_price_elaborations_lot_live ON price_elaborations (lot_id) WHERE {live}",
        # One awardee per lot.
        f"CREATE UNIQUE INDEX IF NOT EXISTS idx_participants_awardee_live ON participants (lot_id) "
        f"WHERE is_awardee = {types['true']} AND {live}",
        "CREATE INDEX IF NOT EXISTS idx_lots_state ON lots (state, examination_start_date)",
        "CREATE INDEX IF NOT EXISTS idx_quotes_state_expiry ON quotes (state, expiry_date)",
        "CREATE INDEX IF NOT EXISTS idx_participants_lot ON participants (lot_id)",
        "CREATE INDEX IF NOT EXISTS idx_clarification_requests_lot ON clarification_requests (lot_id, closed)",
        "CREATE INDEX IF NOT EXISTS idx_state_change_records_lot ON state_change_records (lot_id, occurred_at)",
        "CREATE INDEX IF NOT EXISTS idx_job_runs_name ON job_runs (job_name, started_at)",
    ]


def _init_db_sqlite(db: Database) -> None:
    for statement in _schema_statements(_SQLITE_TYPES):
        db.execute(statement)
    db.commit()


def _init_db_postgres(db: Database) -> None:
    for statement in _schema_statements(_POSTGRES_TYPES):
        db.execute(statement)
    db.commit()


def _drop_schema(db: Database) -> None:
    for table in SCHEMA_TABLES:
        db.execute(f"DROP TABLE IF EXISTS {table}")
    db.commit()
