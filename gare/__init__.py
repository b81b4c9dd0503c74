import os

from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException

from gare.config import Config
from gare.db import close_db, init_db
from gare.db_migrations import register_db_cli
from gare.observability import (
    configure_json_logging,
    ensure_request_id,
    mark_request_start,
    metrics_snapshot,
    observe_response,
)


def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class)
    configure_json_logging(app)

    _ensure_database_dir(app)
    _register_error_handlers(app)
    _register_blueprints(app)
    _register_health(app)
    register_db_cli(app)
    _register_jobs_cli(app)
    _maybe_init_schema(app)

    _register_scheduler(app)
    app.teardown_appcontext(close_db)
    return app


def _ensure_database_dir(app: Flask) -> None:
    database_dir = app.config.get("DATABASE_DIR")
    if database_dir:
        os.makedirs(database_dir, exist_ok=True)


def _maybe_init_schema(app: Flask) -> None:
    auto_init = bool(app.config.get("DB_AUTO_INIT", False))
    if app.testing:
        # Tests run against a throwaway database without an external migration step.
        auto_init = True
    if not auto_init:
        return

    flask_env = (os.environ.get("FLASK_ENV", "development") or "development").strip().lower()
    if not app.testing and flask_env != "development":
        app.logger.warning("db_auto_init_ignored", extra={"flask_env": flask_env})
        return

    with app.app_context():
        init_db()
        close_db()


def _register_blueprints(app: Flask) -> None:
    from gare.routes.lot_routes import lots_bp

    app.register_blueprint(lots_bp)


def _register_jobs_cli(app: Flask) -> None:
    from gare.jobs.cli import register_jobs_cli

    register_jobs_cli(app)


def _register_scheduler(app: Flask) -> None:
    from gare.scheduler import start_deadline_scheduler

    start_deadline_scheduler(app)


def _register_error_handlers(app: Flask) -> None:
    from gare.errors import AppError, SystemError

    @app.before_request
    def _ensure_request_id() -> None:
        ensure_request_id()
        mark_request_start()

    @app.after_request
    def _append_request_id(response):
        response.headers["X-Request-Id"] = ensure_request_id()
        return observe_response(response)

    def _log_error(error: AppError, request_id: str) -> None:
        log_method = app.logger.error if error.critical else app.logger.warning
        log_method(
            "application_error",
            extra={
                "request_id": request_id,
                "error_code": error.code,
                "http_status": error.http_status,
                "message_key": error.message_key,
                "details": error.details,
                "request_path": request.path,
                "http_method": request.method,
            },
            exc_info=error.critical,
        )

    @app.errorhandler(AppError)
    def _handle_app_error(exc: AppError):
        request_id = ensure_request_id()
        _log_error(exc, request_id)
        return jsonify(exc.to_response_payload(request_id)), exc.http_status

    @app.errorhandler(Exception)
    def _handle_unexpected(exc: Exception):
        if isinstance(exc, HTTPException):
            return exc

        request_id = ensure_request_id()
        mapped = SystemError(
            code="unexpected_error",
            message_key="unexpected_error",
            http_status=500,
            critical=True,
            details=str(exc),
            payload={"retryable": True},
        )
        app.logger.exception(
            "unexpected_exception",
            extra={
                "request_id": request_id,
                "error_code": mapped.code,
                "request_path": request.path,
                "http_method": request.method,
            },
        )
        return jsonify(mapped.to_response_payload(request_id)), mapped.http_status


def _register_health(app: Flask) -> None:
    @app.route("/health")
    def health():
        from gare.db import get_db
        from gare.infrastructure.repositories import JobRunRepository

        db_path = app.config.get("DB_PATH") or "unknown"
        backend = "postgres" if str(db_path).startswith("postgres") else "sqlite"
        job_name = str(app.config.get("DEADLINE_JOB_NAME") or "deadline_reevaluation")
        payload = {
            "status": "ok",
            "db": backend,
            "metrics": metrics_snapshot(),
            "scheduler": {
                "running": "deadline_scheduler" in app.extensions,
                "job_name": job_name,
                "cron": app.config.get("DEADLINE_JOB_CRON"),
            },
        }
        try:
            recent = JobRunRepository().list_recent(get_db(), job_name, limit=1)
            payload["scheduler"]["last_run"] = recent[0] if recent else None
        except Exception:  # noqa: BLE001
            app.logger.warning("health_job_runs_unavailable", exc_info=True)
            payload["status"] = "degraded"
            payload["scheduler"]["last_run"] = None
        return payload, 200
