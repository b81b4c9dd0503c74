import os
import unittest
from datetime import datetime, timezone
from unittest import mock

from apscheduler.schedulers.background import BackgroundScheduler
from flask import Flask

from gare.scheduler import DeadlineScheduler, _should_start_scheduler, build_trigger, start_deadline_scheduler


def _app(**config) -> Flask:
    app = Flask("gare_scheduler_test")
    app.config.update(config)
    return app


class TriggerTest(unittest.TestCase):
    def test_cron_expression_is_evaluated_in_utc(self) -> None:
        trigger = build_trigger("0 6 * * *")
        after = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
        self.assertEqual(
            trigger.get_next_fire_time(None, after),
            datetime(2026, 3, 3, 6, 0, tzinfo=timezone.utc),
        )

    def test_blank_expression_uses_daily_default(self) -> None:
        self.assertEqual(str(build_trigger(" ")), str(build_trigger("0 6 * * *")))

    def test_bad_expression_raises(self) -> None:
        with self.assertRaises(ValueError):
            build_trigger("ogni mattina")


class DeadlineSchedulerTest(unittest.TestCase):
    def test_registers_single_instance_job(self) -> None:
        app = _app(DEADLINE_JOB_NAME="scadenze", DEADLINE_JOB_CRON="30 5 * * 1-5")
        scheduler = DeadlineScheduler(app, BackgroundScheduler(timezone="UTC"))

        job = scheduler.scheduler.get_job("scadenze")
        self.assertIsNotNone(job)
        self.assertEqual(job.max_instances, 1)
        self.assertTrue(job.coalesce)
        self.assertEqual(scheduler.cron, "30 5 * * 1-5")
        self.assertFalse(scheduler.scheduler.running)

    def test_run_once_logs_and_swallows_failures(self) -> None:
        scheduler = DeadlineScheduler(_app(), BackgroundScheduler(timezone="UTC"))
        with mock.patch("gare.scheduler.run_deadline_job", side_effect=RuntimeError("db offline")):
            with self.assertLogs("gare.scheduler", level="ERROR") as logs:
                scheduler.run_once()
        self.assertTrue(any("deadline_job_failed" in line for line in logs.output))

    def test_stop_is_safe_when_not_started(self) -> None:
        scheduler = DeadlineScheduler(_app(), BackgroundScheduler(timezone="UTC"))
        scheduler.stop()
        self.assertFalse(scheduler.scheduler.running)


class StartPolicyTest(unittest.TestCase):
    def test_disabled_or_testing_apps_do_not_start(self) -> None:
        self.assertFalse(_should_start_scheduler(_app(DEADLINE_JOB_ENABLED=False)))
        self.assertFalse(_should_start_scheduler(_app(DEADLINE_JOB_ENABLED=True, TESTING=True)))
        app = _app(DEADLINE_JOB_ENABLED=False)
        self.assertIsNone(start_deadline_scheduler(app))
        self.assertNotIn("deadline_scheduler", app.extensions)

    def test_enabled_app_starts(self) -> None:
        self.assertTrue(_should_start_scheduler(_app(DEADLINE_JOB_ENABLED=True)))

    def test_debug_reloader_parent_does_not_start(self) -> None:
        app = _app(DEADLINE_JOB_ENABLED=True)
        app.debug = True
        with mock.patch.dict(os.environ, {"WERKZEUG_RUN_MAIN": "false"}):
            self.assertFalse(_should_start_scheduler(app))
        with mock.patch.dict(os.environ, {"WERKZEUG_RUN_MAIN": "true"}):
            self.assertTrue(_should_start_scheduler(app))


if __name__ == "__main__":
    unittest.main()
