from __future__ import annotations

import json

import click
from flask import Flask

from gare.domain.values import parse_timestamp
from gare.jobs.deadline_reevaluation import run_deadline_job


def register_jobs_cli(app: Flask) -> None:
    @app.cli.group("jobs")
    def jobs_group() -> None:
        """Job batch pianificati."""

    @jobs_group.command("run-deadlines")
    @click.option("--now", "now_value", default=None, help="Istante di riferimento ISO-8601 (default: adesso, UTC).")
    @click.option("--json", "as_json", is_flag=True, default=False, help="Stampa il riepilogo in JSON.")
    def run_deadlines(now_value: str | None, as_json: bool) -> None:
        try:
            now = parse_timestamp(now_value)
        except ValueError as exc:
            raise click.BadParameter(f"data non valida: {now_value}", param_hint="--now") from exc

        summary = run_deadline_job(app, now=now)
        if summary is None:
            click.echo("Job gia in esecuzione su un'altra istanza, nessuna elaborazione.")
            return
        if as_json:
            click.echo(json.dumps(summary.to_dict(), ensure_ascii=True))
            return
        click.echo(
            f"Elementi elaborati: {summary.processed} "
            f"(riusciti {summary.succeeded}, falliti {summary.failed}), "
            f"cambi di stato: {len(summary.records)}."
        )
