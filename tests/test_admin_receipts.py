import json
import os
import unittest
from pathlib import Path

from order_receipts import create_app
from order_receipts.config import Config
from order_receipts.db import close_db, get_db
from order_receipts.observability import reset_metrics_for_tests
from tests.helpers.fakes import FakeUploader
from tests.helpers.temp_db import TempDbSandbox


ORDER_DOCUMENT = """<HEADER><USER_ID>U1</USER_ID><NAME>Kim</NAME><ADDRESS>Seoul</ADDRESS><STATUS>N</STATUS></HEADER>
<ITEM><USER_ID>U1</USER_ID><ITEM_ID>I1</ITEM_ID><ITEM_NAME>Pencil</ITEM_NAME><PRICE>1200</PRICE></ITEM>
<ITEM><USER_ID>U1</USER_ID><ITEM_ID>I2</ITEM_ID><ITEM_NAME>Eraser</ITEM_NAME><PRICE>500</PRICE></ITEM>
"""

ADMIN_HEADERS = {"X-Admin-Key": "admin-secret"}


class AdminReceiptRetryTest(unittest.TestCase):
    def setUp(self) -> None:
        reset_metrics_for_tests()
        self._temp_db = TempDbSandbox(prefix="admin_receipts")
        # Intake upload fails once so every test starts with one pending receipt.
        self.uploader = FakeUploader(failures=1)
        self.app = create_app(self._temp_db.make_config(Config), uploader=self.uploader)
        self.client = self.app.test_client()
        self.outbox_dir = Path(self._temp_db.outbox_dir)

        response = self.client.post(
            "/api/orders",
            data=ORDER_DOCUMENT,
            content_type="application/xml",
            headers={"X-Trace-Id": "trace-order-1"},
        )
        payload = response.get_json()
        self.assertFalse(payload["sftp_uploaded"])
        self.file_name = payload["receipt_file_name"]

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()

    def _retry(self, body: dict, headers=None):
        return self.client.post(
            "/api/admin/receipts/retry",
            data=json.dumps(body),
            content_type="application/json",
            headers=ADMIN_HEADERS if headers is None else headers,
        )

    def _meta(self, state: str, file_name: str) -> dict:
        path = self.outbox_dir / state / f"{file_name}.meta.json"
        return json.loads(path.read_text(encoding="utf-8"))

    def test_missing_admin_key_is_forbidden(self) -> None:
        response = self._retry({"trace_id": "trace-order-1"}, headers={})

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.get_json()["error"], "permission_denied")
        self.assertEqual(len(self.uploader.calls), 1)

    def test_wrong_admin_key_is_forbidden(self) -> None:
        response = self._retry({"trace_id": "trace-order-1"}, headers={"X-Admin-Key": "nope"})
        self.assertEqual(response.status_code, 403)

    def test_unconfigured_admin_key_locks_endpoint(self) -> None:
        self.app.config["ADMIN_API_KEY"] = ""
        response = self._retry({"trace_id": "trace-order-1"})
        self.assertEqual(response.status_code, 403)

    def test_blank_trace_id_is_reported(self) -> None:
        response = self._retry({"trace_id": "  "}, headers={**ADMIN_HEADERS, "X-Trace-Id": "trace-admin"})

        self.assertEqual(response.status_code, 200)
        payload = response.get_json()
        self.assertFalse(payload["success"])
        self.assertEqual(payload["message"], "trace_id is required")
        self.assertEqual(payload["trace_id"], "trace-admin")

    def test_unknown_trace_id_is_not_found(self) -> None:
        response = self._retry({"trace_id": "trace-unknown"})

        payload = response.get_json()
        self.assertFalse(payload["success"])
        self.assertEqual(payload["message"], "No receipt found in pending/failed for this trace_id.")

    def test_resend_moves_pending_entry_to_sent(self) -> None:
        response = self._retry({"trace_id": "trace-order-1"})

        payload = response.get_json()
        self.assertTrue(payload["success"])
        self.assertEqual(payload["message"], "SFTP resend success.")
        self.assertEqual(payload["found_in"], "pending")
        self.assertEqual(payload["old_file_name"], self.file_name)
        self.assertEqual(payload["new_file_name"], self.file_name)
        self.assertIn(self.file_name, self.uploader.uploaded)
        self.assertTrue((self.outbox_dir / "sent" / self.file_name).exists())
        self.assertEqual(os.listdir(self.outbox_dir / "pending"), [])

        second = self._retry({"trace_id": "trace-order-1"}).get_json()
        self.assertFalse(second["success"])
        self.assertEqual(second["message"], "No receipt found in pending/failed for this trace_id.")

    def test_resend_with_participant_name_renames_entry(self) -> None:
        response = self._retry({"trace_id": "trace-order-1", "participant_name": "renamed"})

        payload = response.get_json()
        self.assertTrue(payload["success"])
        new_name = payload["new_file_name"]
        self.assertEqual(new_name, self.file_name.replace("_tester_", "_renamed_"))
        self.assertEqual(list(self.uploader.uploaded), [new_name])
        self.assertEqual(self._meta("sent", new_name)["file_name"], new_name)
        self.assertFalse((self.outbox_dir / "sent" / self.file_name).exists())

    def test_resend_from_failed_folder(self) -> None:
        for suffix in ("", ".meta.json"):
            os.replace(
                self.outbox_dir / "pending" / f"{self.file_name}{suffix}",
                self.outbox_dir / "failed" / f"{self.file_name}{suffix}",
            )

        payload = self._retry({"trace_id": "trace-order-1"}).get_json()

        self.assertTrue(payload["success"])
        self.assertEqual(payload["found_in"], "failed")
        self.assertTrue((self.outbox_dir / "sent" / f"{self.file_name}.meta.json").exists())

    def test_missing_receipt_is_regenerated_before_resend(self) -> None:
        original = (self.outbox_dir / "pending" / self.file_name).read_text(encoding="utf-8")
        (self.outbox_dir / "pending" / self.file_name).unlink()

        payload = self._retry({"trace_id": "trace-order-1"}).get_json()

        self.assertTrue(payload["success"])
        self.assertEqual(self.uploader.uploaded[self.file_name], original)

    def test_missing_receipt_without_rows_cannot_be_resent(self) -> None:
        (self.outbox_dir / "pending" / self.file_name).unlink()
        with self.app.app_context():
            db = get_db()
            db.execute("DELETE FROM orders")
            db.commit()
            close_db()

        payload = self._retry({"trace_id": "trace-order-1"}).get_json()

        self.assertFalse(payload["success"])
        self.assertEqual(payload["message"], "Receipt file missing and order rows not found. Cannot resend.")

    def test_transport_failure_leaves_attempts_untouched(self) -> None:
        self.uploader.failures = -1
        before = self._meta("pending", self.file_name)

        payload = self._retry({"trace_id": "trace-order-1"}).get_json()

        self.assertFalse(payload["success"])
        self.assertTrue(payload["message"].startswith("Retry failed: "))
        self.assertEqual(self._meta("pending", self.file_name), before)

    def test_xml_body_and_legacy_header_are_accepted(self) -> None:
        response = self.client.post(
            "/api/admin/receipts/retry",
            data="<RETRY><TRACE_ID>trace-order-1</TRACE_ID></RETRY>",
            content_type="application/xml",
            headers={"adminkey": "admin-secret"},
        )

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.get_json()["success"])

    def test_malformed_body_is_a_validation_error(self) -> None:
        response = self.client.post(
            "/api/admin/receipts/retry",
            data="{not json",
            content_type="application/json",
            headers=ADMIN_HEADERS,
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["error"], "validation_error")


if __name__ == "__main__":
    unittest.main()
