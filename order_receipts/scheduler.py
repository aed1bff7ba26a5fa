from __future__ import annotations

import os
import threading
from typing import Callable, List

from flask import Flask


class PeriodicJob:
    """Runs `task` on a daemon thread with a fixed delay between the end of one run and the next."""

    def __init__(
        self,
        app: Flask,
        name: str,
        task: Callable[[], object],
        *,
        interval_seconds: int,
        initial_delay_seconds: int = 0,
    ) -> None:
        self.app = app
        self.name = name
        self.task = task
        self.interval_seconds = interval_seconds
        self.initial_delay_seconds = initial_delay_seconds
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run_loop, name=self.name, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()

    def _run_loop(self) -> None:
        if self.initial_delay_seconds and self._stop_event.wait(self.initial_delay_seconds):
            return
        while not self._stop_event.is_set():
            self.run_once()
            self._stop_event.wait(self.interval_seconds)

    def run_once(self) -> None:
        try:
            self.task()
        except Exception:  # noqa: BLE001 - a failed run must not kill the thread
            self.app.logger.error("scheduled_job_failed", extra={"job": self.name}, exc_info=True)


def start_background_jobs(app: Flask, runtime) -> List[PeriodicJob]:
    if not _should_start_scheduler(app):
        return []
    jobs: List[PeriodicJob] = []
    if app.config.get("RECEIPT_RETRY_ENABLED", False):
        jobs.append(
            PeriodicJob(
                app,
                "receipt-retry-sweep",
                runtime.retry_sweeper.run_once,
                interval_seconds=_int_config(app, "RECEIPT_RETRY_INTERVAL_SECONDS", 60, 1, 86_400),
            )
        )
    if app.config.get("SHIPMENT_BATCH_ENABLED", False):
        jobs.append(
            PeriodicJob(
                app,
                "shipment-batch",
                runtime.shipment_batch.run_once,
                interval_seconds=_int_config(app, "SHIPMENT_BATCH_INTERVAL_SECONDS", 300, 1, 86_400),
                initial_delay_seconds=_int_config(app, "SHIPMENT_BATCH_INITIAL_DELAY_SECONDS", 30, 0, 86_400),
            )
        )
    for job in jobs:
        job.start()
        app.logger.info(
            "background_job_started",
            extra={"job": job.name, "interval_seconds": job.interval_seconds},
        )
    app.extensions["background_jobs"] = jobs
    return jobs


def _should_start_scheduler(app: Flask) -> bool:
    if app.config.get("TESTING"):
        return False
    if app.debug:
        run_main = os.environ.get("WERKZEUG_RUN_MAIN")
        if run_main and run_main.lower() != "true":
            return False
    return True


def _int_config(app: Flask, key: str, default: int, min_value: int, max_value: int) -> int:
    try:
        value = int(app.config.get(key, default))
    except (TypeError, ValueError):
        value = default
    return max(min_value, min(value, max_value))
