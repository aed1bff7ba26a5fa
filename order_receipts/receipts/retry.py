from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Callable, Dict, List, Sequence

from order_receipts.domain.contracts import OrderRow, ReceiptMeta
from order_receipts.errors import ReceiptRecordsNotFound, ReceiptRenderError
from order_receipts.observability import bind_trace_id, observe_receipt_event, observe_retry_sweep
from order_receipts.receipts.content import render_receipt
from order_receipts.receipts.delivery import format_error, record_failed_attempt
from order_receipts.receipts.lifecycle import OutboxState
from order_receipts.receipts.outbox import ReceiptOutbox


FetchOrdersFn = Callable[[str, Sequence[str]], List[OrderRow]]


def regenerate_receipt(
    outbox: ReceiptOutbox,
    state: OutboxState,
    meta: ReceiptMeta,
    fetch_orders_fn: FetchOrdersFn,
) -> Path:
    rows = fetch_orders_fn(meta.applicant_key, meta.order_ids)
    missing = sorted(set(meta.order_ids) - {str(row.order_id) for row in rows})
    if not rows or missing:
        raise ReceiptRecordsNotFound(
            f"orders not found for applicant {meta.applicant_key}: {', '.join(missing or meta.order_ids)}"
        )
    return outbox.write_receipt(meta.file_name, render_receipt(rows), state=state)


class ReceiptRetrySweeper:
    """Periodic pass over `pending` that resends receipts whose backoff has elapsed.

    Entries that never failed (attempts 0, no error) belong to a request that
    is still delivering them and are left alone.
    """

    def __init__(
        self,
        outbox: ReceiptOutbox,
        uploader,
        fetch_orders_fn: FetchOrdersFn,
        *,
        max_attempts: int,
    ) -> None:
        self._logger = logging.getLogger("order_receipts")
        self._lock = threading.Lock()
        self.outbox = outbox
        self.uploader = uploader
        self.fetch_orders_fn = fetch_orders_fn
        self.max_attempts = max(1, int(max_attempts))

    def run_once(self) -> Dict[str, int] | None:
        if not self._lock.acquire(blocking=False):
            self._logger.info("receipt_retry_sweep_skipped", extra={"reason": "already_running"})
            return None
        try:
            return self._sweep()
        finally:
            self._lock.release()

    def _sweep(self) -> Dict[str, int]:
        summary = {"scanned": 0, "skipped": 0, "sent": 0, "requeued": 0, "failed": 0, "regenerated": 0, "errors": 0}
        for meta_path in self.outbox.iter_meta_paths(OutboxState.PENDING):
            summary["scanned"] += 1
            try:
                meta = self.outbox.read_meta(meta_path)
            except FileNotFoundError:
                # Delivered or moved by another unit since the listing.
                summary["skipped"] += 1
                continue
            except (OSError, ValueError, KeyError):
                summary["errors"] += 1
                self._logger.error("receipt_meta_unreadable", extra={"meta_path": str(meta_path)}, exc_info=True)
                continue

            with bind_trace_id(meta.trace_id):
                try:
                    outcome = self._process(meta_path, meta)
                except Exception:
                    summary["errors"] += 1
                    self._logger.error(
                        "receipt_retry_entry_failed",
                        extra={"file_name": meta.file_name},
                        exc_info=True,
                    )
                    continue
            for key in outcome:
                summary[key] += 1

        observe_retry_sweep()
        self._logger.info("receipt_retry_sweep_completed", extra=dict(summary))
        return summary

    def _process(self, meta_path: Path, meta: ReceiptMeta) -> List[str]:
        if not meta.has_failure_history():
            return ["skipped"]
        if self.outbox.now_ms() < meta.next_attempt_at_epoch_ms:
            return ["skipped"]

        outcome: List[str] = []
        receipt_path = self.outbox.receipt_path(OutboxState.PENDING, meta.file_name)
        if not receipt_path.exists():
            try:
                receipt_path = regenerate_receipt(self.outbox, OutboxState.PENDING, meta, self.fetch_orders_fn)
            except ReceiptRecordsNotFound as exc:
                meta.last_error = format_error("receipt_records_not_found", exc)
                if not self.outbox.update_meta(meta_path, meta):
                    return ["skipped"]
                self.outbox.mark_failed(meta.file_name)
                self._logger.error(
                    "receipt_records_not_found",
                    extra={"file_name": meta.file_name, "order_ids": meta.order_ids},
                )
                observe_receipt_event("failed")
                return ["failed"]
            except ReceiptRenderError as exc:
                state = record_failed_attempt(
                    self.outbox,
                    meta_path,
                    meta,
                    format_error("receipt_render_failed", exc),
                    max_attempts=self.max_attempts,
                )
                if state is None:
                    self._logger.info("receipt_attempt_not_recorded", extra={"file_name": meta.file_name})
                    return ["skipped"]
                self._logger.warning(
                    "receipt_render_failed",
                    extra={"file_name": meta.file_name, "attempts": meta.attempts},
                )
                return ["failed" if state is OutboxState.FAILED else "requeued"]
            outcome.append("regenerated")
            self._logger.info("receipt_regenerated", extra={"file_name": meta.file_name})

        try:
            self.uploader.upload(receipt_path, meta.file_name)
        except Exception as exc:
            error_text = format_error("sftp_upload_failed", exc)
            state = record_failed_attempt(self.outbox, meta_path, meta, error_text, max_attempts=self.max_attempts)
            if state is None:
                self._logger.info("receipt_attempt_not_recorded", extra={"file_name": meta.file_name})
                outcome.append("skipped")
                return outcome
            self._logger.warning(
                "receipt_upload_failed",
                extra={
                    "file_name": meta.file_name,
                    "attempts": meta.attempts,
                    "state": state.value,
                    "error": error_text,
                },
            )
            if state is OutboxState.FAILED:
                observe_receipt_event("failed")
                outcome.append("failed")
            else:
                observe_receipt_event("requeued")
                outcome.append("requeued")
            return outcome

        self.outbox.mark_sent(meta.file_name)
        self._logger.info("receipt_uploaded", extra={"file_name": meta.file_name, "attempts": meta.attempts})
        observe_receipt_event("sent")
        outcome.append("sent")
        return outcome
