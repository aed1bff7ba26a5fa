from __future__ import annotations

import contextlib
import contextvars
import json
import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Dict

from flask import current_app, g, has_request_context, request


TRACE_ID_HEADER = "X-Trace-Id"

_LOG_TRACE_ID_CTX: contextvars.ContextVar[str] = contextvars.ContextVar("log_trace_id", default="")


def new_trace_id() -> str:
    return uuid.uuid4().hex


def _normalize_trace_id(value: str | None) -> str:
    return str(value or "").strip() or "n/a"


def set_log_trace_id(trace_id: str | None) -> None:
    _LOG_TRACE_ID_CTX.set(_normalize_trace_id(trace_id))


@contextlib.contextmanager
def bind_trace_id(trace_id: str | None):
    token = _LOG_TRACE_ID_CTX.set(_normalize_trace_id(trace_id))
    try:
        yield _LOG_TRACE_ID_CTX.get()
    finally:
        _LOG_TRACE_ID_CTX.reset(token)


def _background_trace_id(default: str | None = None) -> str:
    trace_id = str(_LOG_TRACE_ID_CTX.get() or "").strip()
    if trace_id:
        return trace_id
    return default or "n/a"


class JsonLogFormatter(logging.Formatter):
    _base_keys = {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
    }

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, object] = {
            "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        record_trace_id = str(getattr(record, "trace_id", "") or "").strip()
        # A bound trace id (e.g. the target entry during admin recovery) wins over the request's own id.
        payload["trace_id"] = record_trace_id or _background_trace_id(default="n/a")
        if has_request_context():
            payload["path"] = request.path
            payload["method"] = request.method

        for key, value in record.__dict__.items():
            if key in self._base_keys or key.startswith("_"):
                continue
            if key in payload:
                continue
            if callable(value):
                continue
            payload[key] = value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, separators=(",", ":"), default=str)


def configure_json_logging(app) -> None:
    if not bool(app.config.get("LOG_JSON", True)):
        return
    level_name = str(app.config.get("LOG_LEVEL", "INFO")).strip().upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonLogFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)
    app.logger.handlers = []
    app.logger.propagate = True


def ensure_trace_id() -> str:
    trace_id = str(getattr(g, "trace_id", "") or "").strip()
    if trace_id:
        set_log_trace_id(trace_id)
        return trace_id
    incoming = str(request.headers.get(TRACE_ID_HEADER) or "").strip()
    trace_id = incoming or new_trace_id()
    g.trace_id = trace_id
    set_log_trace_id(trace_id)
    return trace_id


class MetricsRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._requests_total = 0
        self._errors_total = 0
        self._by_route: Dict[str, Dict[str, float]] = {}
        self._receipt_events: Dict[str, int] = {}
        self._last_sweep_at: float | None = None

    def observe_http(self, method: str, route: str, status_code: int, duration_ms: float) -> None:
        key = f"{str(method or 'GET').upper()} {route or 'unknown'}"
        with self._lock:
            self._requests_total += 1
            bucket = self._by_route.setdefault(
                key,
                {"requests": 0.0, "errors": 0.0, "latency_sum_ms": 0.0, "latency_max_ms": 0.0},
            )
            bucket["requests"] += 1
            bucket["latency_sum_ms"] += max(0.0, float(duration_ms))
            bucket["latency_max_ms"] = max(bucket["latency_max_ms"], max(0.0, float(duration_ms)))
            if int(status_code) >= 500:
                self._errors_total += 1
                bucket["errors"] += 1

    def observe_receipt(self, event: str, count: int = 1) -> None:
        with self._lock:
            self._receipt_events[event] = self._receipt_events.get(event, 0) + int(count)

    def observe_sweep(self) -> None:
        with self._lock:
            self._last_sweep_at = time.time()

    def snapshot(self) -> dict:
        with self._lock:
            routes = {}
            for key, bucket in self._by_route.items():
                requests = bucket["requests"] or 1.0
                routes[key] = {
                    "requests": int(bucket["requests"]),
                    "errors": int(bucket["errors"]),
                    "latency_avg_ms": round(bucket["latency_sum_ms"] / requests, 2),
                    "latency_max_ms": round(bucket["latency_max_ms"], 2),
                }
            last_sweep = None
            if self._last_sweep_at is not None:
                last_sweep = (
                    datetime.fromtimestamp(self._last_sweep_at, timezone.utc).isoformat().replace("+00:00", "Z")
                )
            return {
                "requests_total": self._requests_total,
                "errors_total": self._errors_total,
                "routes": routes,
                "receipts": dict(self._receipt_events),
                "last_retry_sweep_at": last_sweep,
            }

    def reset(self) -> None:
        with self._lock:
            self._requests_total = 0
            self._errors_total = 0
            self._by_route = {}
            self._receipt_events = {}
            self._last_sweep_at = None


_METRICS = MetricsRegistry()


def mark_request_start() -> None:
    g._request_started_at = time.perf_counter()


def observe_response(response):
    started = float(getattr(g, "_request_started_at", 0.0) or 0.0)
    elapsed_ms = 0.0
    if started > 0.0:
        elapsed_ms = (time.perf_counter() - started) * 1000.0
    route = request.url_rule.rule if request.url_rule is not None else request.path
    _METRICS.observe_http(request.method, route, int(response.status_code), elapsed_ms)
    response.headers["X-Response-Time-Ms"] = f"{elapsed_ms:.2f}"
    current_app.logger.info(
        "http_request_completed",
        extra={
            "status": int(response.status_code),
            "result": "success" if response.status_code < 400 else "fail",
            "elapsed_ms": round(elapsed_ms, 2),
        },
    )
    return response


def metrics_snapshot() -> dict:
    return _METRICS.snapshot()


def observe_receipt_event(event: str, count: int = 1) -> None:
    _METRICS.observe_receipt(event, count)


def observe_retry_sweep() -> None:
    _METRICS.observe_sweep()


def reset_metrics_for_tests() -> None:
    _METRICS.reset()
    set_log_trace_id(None)


def outbox_health(outbox) -> dict:
    now = time.time()
    counts: Dict[str, int] = {}
    oldest_pending_age = 0
    for state in ("pending", "sent", "failed"):
        meta_paths = list(outbox.iter_meta_paths(state))
        counts[state] = len(meta_paths)
        if state != "pending":
            continue
        for meta_path in meta_paths:
            try:
                age = int(now - meta_path.stat().st_mtime)
            except FileNotFoundError:
                continue
            oldest_pending_age = max(oldest_pending_age, age)
    return {
        "pending": counts["pending"],
        "sent": counts["sent"],
        "failed": counts["failed"],
        "oldest_pending_age_seconds": oldest_pending_age,
    }
