from __future__ import annotations

import logging

from order_receipts.domain.contracts import ReceiptRetryRequest, ReceiptRetryResult
from order_receipts.errors import ReceiptRecordsNotFound, ReceiptRenderError, ReceiptTargetExists
from order_receipts.observability import bind_trace_id, observe_receipt_event
from order_receipts.receipts.content import rename_receipt_file_name
from order_receipts.receipts.outbox import ReceiptOutbox
from order_receipts.receipts.retry import FetchOrdersFn, regenerate_receipt


class AdminReceiptService:
    """Operator-triggered resend of a single receipt, looked up by the trace id of the intake request.

    Runs outside the sweep lock and leaves attempts/backoff alone; a failed
    manual resend is reported to the caller and nothing else.
    """

    def __init__(
        self,
        outbox: ReceiptOutbox,
        uploader,
        fetch_orders_fn: FetchOrdersFn,
        *,
        file_prefix: str,
    ) -> None:
        self._logger = logging.getLogger("order_receipts")
        self.outbox = outbox
        self.uploader = uploader
        self.fetch_orders_fn = fetch_orders_fn
        self.file_prefix = file_prefix

    def retry_by_trace_id(self, request: ReceiptRetryRequest) -> ReceiptRetryResult:
        trace_id = str(request.trace_id or "").strip()
        if not trace_id:
            return ReceiptRetryResult(trace_id=None, success=False, message="trace_id is required")
        with bind_trace_id(trace_id):
            return self._retry(trace_id, str(request.participant_name or "").strip() or None)

    def _failure(self, trace_id: str, message: str) -> ReceiptRetryResult:
        return ReceiptRetryResult(trace_id=trace_id, success=False, message=message)

    def _retry(self, trace_id: str, participant_name: str | None) -> ReceiptRetryResult:
        self.outbox.ensure_dirs()
        found = self.outbox.find_by_trace_id(trace_id)
        if found is None:
            self._logger.warning("admin_receipt_not_found", extra={"target_trace_id": trace_id})
            return self._failure(trace_id, "No receipt found in pending/failed for this trace_id.")

        state, meta_path, meta = found
        old_file_name = meta.file_name
        file_name = old_file_name

        if participant_name:
            renamed = rename_receipt_file_name(old_file_name, self.file_prefix, participant_name)
            if renamed is None:
                self._logger.warning(
                    "admin_receipt_rename_skipped",
                    extra={"file_name": old_file_name, "reason": "name_pattern_mismatch"},
                )
            elif renamed != old_file_name:
                try:
                    meta_path = self.outbox.rename_entry(state, old_file_name, renamed)
                except ReceiptTargetExists as exc:
                    self._logger.warning("admin_receipt_rename_conflict", extra={"file_name": renamed})
                    return self._failure(trace_id, f"Retry failed: {exc}")
                meta.file_name = renamed
                self.outbox.update_meta(meta_path, meta)
                file_name = renamed
                self._logger.info(
                    "admin_receipt_renamed",
                    extra={"old_file_name": old_file_name, "new_file_name": file_name},
                )

        receipt_path = self.outbox.receipt_path(state, file_name)
        if not receipt_path.exists():
            self._logger.warning("admin_receipt_missing", extra={"file_name": file_name, "found_in": state.value})
            try:
                receipt_path = regenerate_receipt(self.outbox, state, meta, self.fetch_orders_fn)
            except ReceiptRecordsNotFound:
                self._logger.error(
                    "receipt_records_not_found",
                    extra={"file_name": file_name, "order_ids": meta.order_ids},
                )
                return self._failure(trace_id, "Receipt file missing and order rows not found. Cannot resend.")
            except (ReceiptRenderError, OSError) as exc:
                self._logger.error("admin_receipt_regenerate_failed", extra={"file_name": file_name}, exc_info=True)
                return self._failure(trace_id, f"Retry failed: {exc}")
            self._logger.info("receipt_regenerated", extra={"file_name": file_name, "found_in": state.value})

        try:
            self.uploader.upload(receipt_path, file_name)
        except Exception as exc:
            self._logger.error(
                "admin_receipt_upload_failed",
                extra={"file_name": file_name, "error": str(exc)},
            )
            observe_receipt_event("admin_failed")
            return self._failure(trace_id, f"Retry failed: {exc}")

        self.outbox.mark_sent(file_name, source=state)
        self._logger.info("admin_receipt_uploaded", extra={"file_name": file_name, "found_in": state.value})
        observe_receipt_event("admin_sent")
        return ReceiptRetryResult(
            trace_id=trace_id,
            success=True,
            message="SFTP resend success.",
            old_file_name=old_file_name,
            new_file_name=file_name,
            found_in=state.value,
        )
