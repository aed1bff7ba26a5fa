import os

from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException

from order_receipts.config import Config
from order_receipts.db import close_db, init_db
from order_receipts.db_migrations import register_db_cli
from order_receipts.observability import (
    TRACE_ID_HEADER,
    configure_json_logging,
    ensure_trace_id,
    mark_request_start,
    metrics_snapshot,
    observe_response,
    outbox_health,
)
from order_receipts.runtime import build_runtime
from order_receipts.security import apply_security_headers


def create_app(config_class=Config, *, uploader=None):
    app = Flask(__name__)
    app.config.from_object(config_class)
    configure_json_logging(app)

    _ensure_database_dir(app)
    _register_error_handlers(app)
    _register_blueprints(app)
    _register_health(app)
    register_db_cli(app)
    _maybe_init_schema(app)

    runtime = build_runtime(app, uploader=uploader)
    _register_scheduler(app, runtime)
    app.teardown_appcontext(close_db)
    return app


def _ensure_database_dir(app: Flask) -> None:
    database_dir = app.config.get("DATABASE_DIR")
    if database_dir:
        os.makedirs(database_dir, exist_ok=True)


def _maybe_init_schema(app: Flask) -> None:
    auto_init = bool(app.config.get("DB_AUTO_INIT", False))
    if app.testing:
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
    from order_receipts.routes.admin_routes import admin_bp
    from order_receipts.routes.order_routes import orders_bp

    app.register_blueprint(orders_bp)
    app.register_blueprint(admin_bp)


def _register_scheduler(app: Flask, runtime) -> None:
    from order_receipts.scheduler import start_background_jobs

    start_background_jobs(app, runtime)


def _register_error_handlers(app: Flask) -> None:
    from order_receipts.errors import AppError, SystemError

    @app.before_request
    def _ensure_trace_id() -> None:
        ensure_trace_id()
        mark_request_start()

    @app.after_request
    def _append_trace_id(response):
        response.headers[TRACE_ID_HEADER] = ensure_trace_id()
        response = observe_response(response)
        return apply_security_headers(response)

    def _log_error(error: AppError, trace_id: str) -> None:
        log_method = app.logger.error if error.critical else app.logger.warning
        log_method(
            "application_error",
            extra={
                "trace_id": trace_id,
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
        trace_id = ensure_trace_id()
        _log_error(exc, trace_id)
        return jsonify(exc.to_response_payload(trace_id)), exc.http_status

    @app.errorhandler(Exception)
    def _handle_unexpected(exc: Exception):
        if isinstance(exc, HTTPException):
            return exc

        trace_id = ensure_trace_id()
        mapped = SystemError(
            code="unexpected_error",
            message_key="unexpected_error",
            http_status=500,
            critical=True,
            details=str(exc),
        )
        app.logger.exception(
            "unexpected_exception",
            extra={
                "trace_id": trace_id,
                "error_code": mapped.code,
                "request_path": request.path,
                "http_method": request.method,
            },
        )
        return jsonify(mapped.to_response_payload(trace_id)), mapped.http_status


def _register_health(app: Flask) -> None:
    @app.route("/health")
    def health():
        from order_receipts.runtime import current_runtime

        db_path = app.config.get("DB_PATH") or "unknown"
        backend = "postgres" if str(db_path).startswith("postgres") else "sqlite"
        payload = {
            "status": "ok",
            "db": backend,
            "trace_id": ensure_trace_id(),
            "metrics": metrics_snapshot(),
        }
        try:
            payload["outbox"] = outbox_health(current_runtime().outbox)
        except OSError:
            app.logger.warning("outbox_health_unavailable", exc_info=True)
            payload["status"] = "degraded"
            payload["outbox"] = {"pending": 0, "sent": 0, "failed": 0, "oldest_pending_age_seconds": 0}
        return payload, 200
