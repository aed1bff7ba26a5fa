from __future__ import annotations

import logging

from order_receipts.domain.contracts import ServiceOutput
from order_receipts.domain.order_ids import OrderIdAllocator
from order_receipts.orders.parsing import build_order_rows, parse_order_document
from order_receipts.receipts.delivery import ReceiptDeliveryService
from order_receipts.repositories.order_repository import OrderRepository


PARTIAL_SUCCESS_MESSAGE = "Orders were stored but the receipt upload failed. The receipt is kept locally for retry."


class OrderService:
    """Order intake: parse, allocate ids and insert, then hand the receipt to delivery."""

    def __init__(self, delivery_service: ReceiptDeliveryService, *, applicant_key: str) -> None:
        self._logger = logging.getLogger("order_receipts")
        self.delivery_service = delivery_service
        self.applicant_key = str(applicant_key or "").strip()

    def preview(self, raw_document) -> ServiceOutput:
        headers, items = parse_order_document(raw_document)
        rows = build_order_rows(headers, items, self.applicant_key)
        return ServiceOutput(
            payload={
                "success": True,
                "record_count": len(rows),
                "rows": [row.to_dict() for row in rows],
            },
        )

    def create(self, db, raw_document, *, trace_id: str) -> ServiceOutput:
        headers, items = parse_order_document(raw_document)
        rows = build_order_rows(headers, items, self.applicant_key)

        allocator = OrderIdAllocator(OrderRepository(applicant_key=self.applicant_key))
        stored = allocator.insert_with_ids(db, rows)
        order_ids = [str(row.order_id) for row in stored]
        self._logger.info(
            "orders_inserted",
            extra={"record_count": len(stored), "first_order_id": order_ids[0], "last_order_id": order_ids[-1]},
        )

        outcome = self.delivery_service.deliver_new(trace_id, self.applicant_key, stored)
        payload = {
            "success": outcome.uploaded,
            "db_inserted": True,
            "receipt_created": outcome.receipt_created,
            "sftp_uploaded": outcome.uploaded,
            "receipt_file_name": outcome.file_name,
            "record_count": len(stored),
            "order_ids": order_ids,
        }
        if not outcome.uploaded:
            payload["message"] = PARTIAL_SUCCESS_MESSAGE
        self._logger.info(
            "order_intake_completed",
            extra={
                "receipt_file_name": outcome.file_name,
                "receipt_created": outcome.receipt_created,
                "sftp_uploaded": outcome.uploaded,
            },
        )
        return ServiceOutput(payload=payload, status_code=200)
