from __future__ import annotations

import logging
import os

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from flask import Flask

from gare.jobs.deadline_reevaluation import DEFAULT_JOB_NAME, run_deadline_job


logger = logging.getLogger("gare.scheduler")

DEFAULT_CRON = "0 6 * * *"


def build_trigger(cron_expression: str | None) -> CronTrigger:
    return CronTrigger.from_crontab(str(cron_expression or "").strip() or DEFAULT_CRON, timezone="UTC")


class DeadlineScheduler:
    """Cron-driven runner for the deadline job; the job itself takes the cluster lock."""

    def __init__(self, app: Flask, scheduler: BackgroundScheduler | None = None) -> None:
        self.app = app
        self.job_name = str(app.config.get("DEADLINE_JOB_NAME") or DEFAULT_JOB_NAME)
        self.cron = str(app.config.get("DEADLINE_JOB_CRON") or DEFAULT_CRON)
        self.trigger = build_trigger(self.cron)
        self._scheduler = scheduler or BackgroundScheduler(timezone="UTC")
        self._scheduler.add_job(
            self.run_once,
            trigger=self.trigger,
            id=self.job_name,
            name="Rivalutazione scadenze lotti e preventivi",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

    @property
    def scheduler(self) -> BackgroundScheduler:
        return self._scheduler

    def start(self) -> None:
        if self._scheduler.running:
            return
        self._scheduler.start()

    def stop(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)

    def run_once(self) -> None:
        try:
            run_deadline_job(self.app)
        except Exception:  # noqa: BLE001 - the next cron tick retries
            logger.exception("deadline_job_failed", extra={"job_name": self.job_name})


def start_deadline_scheduler(app: Flask) -> DeadlineScheduler | None:
    if not _should_start_scheduler(app):
        return None
    scheduler = DeadlineScheduler(app)
    scheduler.start()
    app.extensions["deadline_scheduler"] = scheduler
    app.logger.info(
        "deadline_scheduler_started",
        extra={"job_name": scheduler.job_name, "cron": scheduler.cron},
    )
    return scheduler


def _should_start_scheduler(app: Flask) -> bool:
    if not app.config.get("DEADLINE_JOB_ENABLED", False):
        return False
    if app.config.get("TESTING"):
        return False
    if app.debug:
        run_main = os.environ.get("WERKZEUG_RUN_MAIN")
        if run_main and run_main.lower() != "true":
            return False
    return True
