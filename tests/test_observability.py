import json
import logging
import threading
import unittest
from unittest.mock import patch

from order_receipts import create_app
from order_receipts.config import Config
from order_receipts.db import close_db
from order_receipts.observability import (
    JsonLogFormatter,
    bind_trace_id,
    metrics_snapshot,
    observe_receipt_event,
    reset_metrics_for_tests,
    set_log_trace_id,
)
from order_receipts.scheduler import PeriodicJob, start_background_jobs
from tests.helpers.fakes import FakeUploader
from tests.helpers.temp_db import TempDbSandbox


def _record(message: str = "receipt_uploaded", **extra) -> logging.LogRecord:
    record = logging.LogRecord("order_receipts", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class JsonLogFormatterTest(unittest.TestCase):
    def setUp(self) -> None:
        reset_metrics_for_tests()
        self.formatter = JsonLogFormatter()

    def test_bound_trace_id_and_extra_fields_are_emitted(self) -> None:
        with bind_trace_id("trace-bound"):
            line = json.loads(self.formatter.format(_record(file_name="INSPIEN_a_20261019000000.txt")))

        self.assertEqual(line["trace_id"], "trace-bound")
        self.assertEqual(line["message"], "receipt_uploaded")
        self.assertEqual(line["level"], "info")
        self.assertEqual(line["file_name"], "INSPIEN_a_20261019000000.txt")

    def test_binding_is_restored_on_exit(self) -> None:
        set_log_trace_id("trace-outer")
        with bind_trace_id("trace-inner"):
            pass
        line = json.loads(self.formatter.format(_record()))
        self.assertEqual(line["trace_id"], "trace-outer")

    def test_explicit_record_trace_id_wins(self) -> None:
        with bind_trace_id("trace-bound"):
            line = json.loads(self.formatter.format(_record(trace_id="trace-explicit")))
        self.assertEqual(line["trace_id"], "trace-explicit")

    def test_unbound_trace_id_falls_back(self) -> None:
        line = json.loads(self.formatter.format(_record()))
        self.assertEqual(line["trace_id"], "n/a")


class HealthEndpointTest(unittest.TestCase):
    def setUp(self) -> None:
        reset_metrics_for_tests()
        self._temp_db = TempDbSandbox(prefix="observability")
        self.app = create_app(self._temp_db.make_config(Config), uploader=FakeUploader(failures=-1))
        self.client = self.app.test_client()

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()

    def test_health_reports_outbox_counts_and_metrics(self) -> None:
        self.client.post(
            "/api/orders",
            data="<HEADER><USER_ID>U1</USER_ID><STATUS>N</STATUS></HEADER>"
            "<ITEM><USER_ID>U1</USER_ID><ITEM_ID>I1</ITEM_ID><ITEM_NAME>Pen</ITEM_NAME><PRICE>10</PRICE></ITEM>",
            content_type="application/xml",
        )

        response = self.client.get("/health", headers={"X-Trace-Id": "trace-health"})

        self.assertEqual(response.status_code, 200)
        payload = response.get_json()
        self.assertEqual(payload["status"], "ok")
        self.assertEqual(payload["db"], "sqlite")
        self.assertEqual(payload["trace_id"], "trace-health")
        self.assertEqual(payload["outbox"]["pending"], 1)
        self.assertEqual(payload["outbox"]["sent"], 0)
        self.assertEqual(payload["metrics"]["receipts"], {"requeued": 1})
        self.assertEqual(payload["metrics"]["routes"]["POST /api/orders"]["requests"], 1)

    def test_responses_carry_security_headers(self) -> None:
        response = self.client.get("/health")
        self.assertEqual(response.headers.get("X-Content-Type-Options"), "nosniff")
        self.assertEqual(response.headers.get("X-Frame-Options"), "DENY")
        self.assertIn("X-Response-Time-Ms", response.headers)

    def test_unexpected_error_is_mapped_to_500(self) -> None:
        with patch(
            "order_receipts.orders.order_service.OrderService.preview",
            side_effect=RuntimeError("boom"),
        ):
            response = self.client.post("/api/orders/preview", data="<X/>", content_type="application/xml")

        self.assertEqual(response.status_code, 500)
        payload = response.get_json()
        self.assertEqual(payload["error"], "unexpected_error")
        self.assertNotIn("details", payload)
        self.assertEqual(payload["trace_id"], response.headers.get("X-Trace-Id"))
        self.assertEqual(metrics_snapshot()["errors_total"], 1)


class MetricsRegistryTest(unittest.TestCase):
    def test_receipt_events_accumulate_and_reset(self) -> None:
        reset_metrics_for_tests()
        observe_receipt_event("sent")
        observe_receipt_event("sent", 2)
        self.assertEqual(metrics_snapshot()["receipts"], {"sent": 3})
        reset_metrics_for_tests()
        self.assertEqual(metrics_snapshot()["receipts"], {})


class SchedulerTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="scheduler")

    def tearDown(self) -> None:
        self._temp_db.cleanup()

    def test_jobs_are_not_started_under_testing(self) -> None:
        app = create_app(
            self._temp_db.make_config(Config, RECEIPT_RETRY_ENABLED=True, SHIPMENT_BATCH_ENABLED=True),
            uploader=FakeUploader(),
        )
        self.assertNotIn("background_jobs", app.extensions)

    def test_enabled_jobs_are_registered(self) -> None:
        app = create_app(self._temp_db.make_config(Config), uploader=FakeUploader())
        app.config.update(
            TESTING=False,
            RECEIPT_RETRY_ENABLED=True,
            SHIPMENT_BATCH_ENABLED=True,
            SHIPMENT_BATCH_INITIAL_DELAY_SECONDS=3600,
            RECEIPT_RETRY_INTERVAL_SECONDS=3600,
        )
        with patch.object(PeriodicJob, "start") as start:
            jobs = start_background_jobs(app, app.extensions["receipts"])

        self.assertEqual([job.name for job in jobs], ["receipt-retry-sweep", "shipment-batch"])
        self.assertEqual(jobs[1].initial_delay_seconds, 3600)
        self.assertEqual(start.call_count, 2)

    def test_started_job_runs_until_stopped(self) -> None:
        app = create_app(self._temp_db.make_config(Config), uploader=FakeUploader())
        ran = threading.Event()

        job = PeriodicJob(app, "tick-job", ran.set, interval_seconds=3600)
        job.start()
        try:
            self.assertTrue(ran.wait(5))
        finally:
            job.stop()
        job._thread.join(5)
        self.assertFalse(job._thread.is_alive())

    def test_failing_task_is_logged_not_raised(self) -> None:
        app = create_app(self._temp_db.make_config(Config), uploader=FakeUploader())

        def _boom():
            raise RuntimeError("boom")

        job = PeriodicJob(app, "boom-job", _boom, interval_seconds=1)
        with self.assertLogs(app.logger, level="ERROR") as captured:
            job.run_once()
        self.assertIn("scheduled_job_failed", captured.output[0])


if __name__ == "__main__":
    unittest.main()
