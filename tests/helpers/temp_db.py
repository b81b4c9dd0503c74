from __future__ import annotations

import shutil
import sqlite3
import tempfile
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List

from gare.db import Database, _connect_database


# The scheduler stays off and retries never sleep; tests drive the deadline job directly.
SANDBOX_DEFAULTS: Dict[str, object] = {
    "DEADLINE_JOB_ENABLED": False,
    "DEADLINE_JOB_RETRY_ATTEMPTS": 1,
    "DEADLINE_JOB_RETRY_BACKOFF_SECONDS": 0,
    "DEADLINE_JOB_RETRY_MAX_BACKOFF_SECONDS": 0,
    "DEADLINE_JOB_LOCK_TTL_SECONDS": 60,
}


@dataclass
class TempDbSandbox:
    """Throwaway SQLite file for one test case, outside the repository."""

    prefix: str = "gare_tests"
    db_name: str = "gare_test.db"
    _connections: List[Database] = field(default_factory=list, init=False, repr=False)

    def __post_init__(self) -> None:
        folder = Path(tempfile.mkdtemp(prefix=f"{self.prefix}_{uuid.uuid4().hex[:8]}_"))
        self.temp_dir = str(folder)
        self.db_path = str(folder / self.db_name)

    def make_config(self, base_config, **overrides):
        attrs = {
            "DATABASE_DIR": self.temp_dir,
            "DB_PATH": self.db_path,
            **SANDBOX_DEFAULTS,
        }
        attrs.update(overrides)
        return type("TempConfig", (base_config,), attrs)

    def connect(self) -> Database:
        """An extra connection, closed by ``cleanup``; stands in for another worker."""
        connection = _connect_database(self.db_path)
        self._connections.append(connection)
        return connection

    def table_names(self) -> List[str]:
        conn = sqlite3.connect(self.db_path)
        try:
            rows = conn.execute("SELECT name FROM sqlite_master WHERE type = 'table' ORDER BY name").fetchall()
        finally:
            conn.close()
        return [row[0] for row in rows if not row[0].startswith("sqlite_")]

    def cleanup(self) -> None:
        while self._connections:
            self._connections.pop().close()
        shutil.rmtree(self.temp_dir, ignore_errors=True)
