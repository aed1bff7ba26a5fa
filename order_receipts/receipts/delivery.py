from __future__ import annotations

import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Sequence

from order_receipts.domain.contracts import OrderRow, ReceiptDeliveryOutcome, ReceiptMeta
from order_receipts.errors import ReceiptRenderError, ReceiptTargetExists
from order_receipts.observability import bind_trace_id, observe_receipt_event
from order_receipts.receipts.content import build_receipt_file_name, render_receipt
from order_receipts.receipts.lifecycle import OutboxState
from order_receipts.receipts.outbox import ReceiptOutbox


MAX_ERROR_TEXT_LENGTH = 1000
MAX_FILE_NAME_ATTEMPTS = 60


def format_error(prefix: str, exc: BaseException) -> str:
    text = str(exc).strip() or exc.__class__.__name__
    return f"{prefix}: {text}"[:MAX_ERROR_TEXT_LENGTH]


def record_failed_attempt(
    outbox: ReceiptOutbox,
    meta_path: Path,
    meta: ReceiptMeta,
    error_text: str,
    *,
    max_attempts: int,
) -> OutboxState | None:
    """Count one failed attempt; park the entry in `failed` once the ceiling is reached.

    Returns None when the sidecar is no longer at `meta_path` (another unit
    delivered or moved the entry meanwhile); nothing is recorded then.
    """
    meta.attempts += 1
    meta.last_error = error_text
    if meta.attempts >= max_attempts:
        if not outbox.update_meta(meta_path, meta):
            return None
        outbox.mark_failed(meta.file_name)
        return OutboxState.FAILED
    meta.next_attempt_at_epoch_ms = outbox.next_attempt_at(meta.attempts)
    if not outbox.update_meta(meta_path, meta):
        return None
    return OutboxState.PENDING


class ReceiptDeliveryService:
    def __init__(
        self,
        outbox: ReceiptOutbox,
        uploader,
        *,
        file_prefix: str,
        participant_name: str,
        max_attempts: int,
        now_fn: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._logger = logging.getLogger("order_receipts")
        self.outbox = outbox
        self.uploader = uploader
        self.file_prefix = file_prefix
        self.participant_name = participant_name
        self.max_attempts = max(1, int(max_attempts))
        self._now_fn = now_fn

    def deliver_new(self, trace_id: str, applicant_key: str, rows: Sequence[OrderRow]) -> ReceiptDeliveryOutcome:
        with bind_trace_id(trace_id):
            return self._deliver_new(trace_id, applicant_key, list(rows))

    def _reserve_entry(self, trace_id: str, applicant_key: str, rows: list[OrderRow]) -> tuple[ReceiptMeta, Path]:
        """Claim a unique receipt file name, moving the timestamp forward a second while the name is taken."""
        started = self._now_fn()
        for offset in range(MAX_FILE_NAME_ATTEMPTS):
            file_name = build_receipt_file_name(
                self.file_prefix,
                self.participant_name,
                started + timedelta(seconds=offset),
            )
            meta = ReceiptMeta(
                trace_id=trace_id,
                applicant_key=applicant_key,
                file_name=file_name,
                order_ids=[str(row.order_id) for row in rows],
                attempts=0,
                next_attempt_at_epoch_ms=self.outbox.now_ms(),
                last_error=None,
            )
            try:
                return meta, self.outbox.write_meta(meta)
            except ReceiptTargetExists:
                self._logger.info("receipt_file_name_taken", extra={"file_name": file_name})
        raise ReceiptTargetExists(f"No free receipt file name after {MAX_FILE_NAME_ATTEMPTS} attempts")

    def _state_value(self, file_name: str, state: OutboxState | None) -> str | None:
        if state is None:
            state = self.outbox.locate(file_name)
        return state.value if state is not None else None

    def _deliver_new(self, trace_id: str, applicant_key: str, rows: list[OrderRow]) -> ReceiptDeliveryOutcome:
        try:
            meta, meta_path = self._reserve_entry(trace_id, applicant_key, rows)
        except OSError:
            file_name = build_receipt_file_name(self.file_prefix, self.participant_name, self._now_fn())
            self._logger.error("receipt_meta_write_failed", extra={"file_name": file_name}, exc_info=True)
            observe_receipt_event("meta_write_failed")
            return ReceiptDeliveryOutcome(
                file_name=file_name,
                receipt_created=False,
                uploaded=False,
                attempts=0,
                final_state=None,
                last_error="receipt_meta_write_failed",
            )
        file_name = meta.file_name

        try:
            content = render_receipt(rows)
            receipt_path = self.outbox.write_receipt(file_name, content)
        except (ReceiptRenderError, OSError) as exc:
            error_text = format_error("receipt_render_failed", exc)
            state = record_failed_attempt(self.outbox, meta_path, meta, error_text, max_attempts=self.max_attempts)
            self._logger.warning(
                "receipt_render_failed",
                extra={"file_name": file_name, "attempts": meta.attempts, "error": error_text},
            )
            observe_receipt_event("render_failed")
            return ReceiptDeliveryOutcome(
                file_name=file_name,
                receipt_created=False,
                uploaded=False,
                attempts=meta.attempts,
                final_state=self._state_value(file_name, state),
                last_error=error_text,
            )

        self._logger.info(
            "receipt_created",
            extra={"file_name": file_name, "record_count": len(rows), "applicant_key": applicant_key},
        )

        try:
            self.uploader.upload(receipt_path, file_name)
        except Exception as exc:
            error_text = format_error("sftp_upload_failed", exc)
            state = record_failed_attempt(self.outbox, meta_path, meta, error_text, max_attempts=self.max_attempts)
            self._logger.warning(
                "receipt_upload_failed",
                extra={
                    "file_name": file_name,
                    "attempts": meta.attempts,
                    "state": self._state_value(file_name, state),
                    "error": error_text,
                },
            )
            if state is not None:
                observe_receipt_event("failed" if state is OutboxState.FAILED else "requeued")
            return ReceiptDeliveryOutcome(
                file_name=file_name,
                receipt_created=True,
                uploaded=False,
                attempts=meta.attempts,
                final_state=self._state_value(file_name, state),
                last_error=error_text,
            )

        self.outbox.mark_sent(file_name)
        self._logger.info("receipt_uploaded", extra={"file_name": file_name})
        observe_receipt_event("sent")
        return ReceiptDeliveryOutcome(
            file_name=file_name,
            receipt_created=True,
            uploaded=True,
            attempts=meta.attempts,
            final_state=OutboxState.SENT.value,
        )
