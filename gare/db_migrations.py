from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import List, Tuple

import click
from alembic import command
from alembic.config import Config as AlembicConfig
from flask import Flask
from sqlalchemy import create_engine, inspect, text
from sqlalchemy.pool import NullPool

from gare.db import SCHEMA_TABLES
from gare.domain.values import format_timestamp, utc_now


_ROOT = Path(__file__).resolve().parents[1]


def to_sqlalchemy_url(raw_db_path: str) -> str:
    """Map ``DB_PATH`` (a sqlite file path or a postgres DSN) to a SQLAlchemy URL."""
    raw = (raw_db_path or "").strip()
    if not raw:
        raise RuntimeError("DB_PATH non definito per le migrazioni.")
    if raw.startswith("postgres://"):
        raw = "postgresql://" + raw[len("postgres://") :]
    if raw.startswith(("postgresql://", "postgresql+", "sqlite://", "sqlite+pysqlite://")):
        return raw
    return f"sqlite:///{Path(raw).expanduser().resolve().as_posix()}"


def build_alembic_config(app: Flask) -> AlembicConfig:
    alembic_ini = _ROOT / "alembic.ini"
    if not alembic_ini.exists():
        raise RuntimeError("alembic.ini non trovato nella radice del progetto.")
    cfg = AlembicConfig(str(alembic_ini))
    cfg.set_main_option("script_location", (_ROOT / "migrations").as_posix())
    cfg.set_main_option("sqlalchemy.url", to_sqlalchemy_url(app.config["DB_PATH"]))
    return cfg


@dataclass(frozen=True)
class SchemaReport:
    present: Tuple[str, ...]
    missing: Tuple[str, ...]

    @property
    def complete(self) -> bool:
        return not self.missing


def _engine(app: Flask):
    return create_engine(to_sqlalchemy_url(app.config["DB_PATH"]), poolclass=NullPool)


def schema_report(app: Flask) -> SchemaReport:
    engine = _engine(app)
    try:
        existing = set(inspect(engine).get_table_names())
    finally:
        engine.dispose()
    expected = sorted(SCHEMA_TABLES)
    return SchemaReport(
        present=tuple(name for name in expected if name in existing),
        missing=tuple(name for name in expected if name not in existing),
    )


def live_job_leases(app: Flask) -> List[Tuple[str, str]]:
    """(name, owner) of job locks whose lease has not expired yet."""
    engine = _engine(app)
    try:
        if "job_locks" not in inspect(engine).get_table_names():
            return []
        with engine.connect() as connection:
            rows = connection.execute(
                text("SELECT name, owner FROM job_locks WHERE expires_at > :now ORDER BY name"),
                {"now": format_timestamp(utc_now())},
            ).fetchall()
    finally:
        engine.dispose()
    return [(row[0], row[1]) for row in rows]


def register_db_cli(app: Flask) -> None:
    @app.cli.group("db")
    def db_group() -> None:
        """Migrazioni dello schema gare (Alembic)."""

    @db_group.command("upgrade")
    @click.argument("revision", required=False, default="head")
    def db_upgrade(revision: str) -> None:
        command.upgrade(build_alembic_config(app), revision)
        report = schema_report(app)
        click.echo(f"Schema aggiornato a {revision}: {len(report.present)}/{len(SCHEMA_TABLES)} tabelle.")
        if revision == "head" and not report.complete:
            raise click.ClickException(f"Tabelle mancanti dopo la migrazione: {', '.join(report.missing)}")

    @db_group.command("downgrade")
    @click.argument("revision", required=False, default="-1")
    @click.option("--force", is_flag=True, help="Procede anche con un job di rivalutazione in corso.")
    def db_downgrade(revision: str, force: bool) -> None:
        leases = live_job_leases(app)
        if leases and not force:
            holders = ", ".join(f"{name} ({owner})" for name, owner in leases)
            raise click.ClickException(f"Job in esecuzione, rollback annullato: {holders}")
        command.downgrade(build_alembic_config(app), revision)
        click.echo(f"Rollback applicato fino a {revision}.")

    @db_group.command("current")
    def db_current() -> None:
        command.current(build_alembic_config(app), verbose=True)

    @db_group.command("check")
    def db_check() -> None:
        report = schema_report(app)
        if not report.complete:
            raise click.ClickException(f"Tabelle mancanti: {', '.join(report.missing)}")
        click.echo(f"Schema completo: {', '.join(report.present)}")
