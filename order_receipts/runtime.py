from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence

from flask import Flask, current_app

from order_receipts.db import connect_database
from order_receipts.domain.contracts import OrderRow
from order_receipts.infrastructure.sftp import ReceiptUploader, build_receipt_uploader
from order_receipts.orders.order_service import OrderService
from order_receipts.orders.shipment_batch import ShipmentBatchService
from order_receipts.receipts.admin import AdminReceiptService
from order_receipts.receipts.delivery import ReceiptDeliveryService
from order_receipts.receipts.outbox import ReceiptOutbox
from order_receipts.receipts.retry import ReceiptRetrySweeper
from order_receipts.repositories.order_repository import OrderRepository


EXTENSION_KEY = "receipts"


@dataclass
class ReceiptRuntime:
    outbox: ReceiptOutbox
    uploader: ReceiptUploader
    delivery_service: ReceiptDeliveryService
    order_service: OrderService
    retry_sweeper: ReceiptRetrySweeper
    admin_service: AdminReceiptService
    shipment_batch: ShipmentBatchService


def build_runtime(app: Flask, uploader: ReceiptUploader | None = None) -> ReceiptRuntime:
    config = app.config
    db_path = config["DB_PATH"]

    def _connect():
        return connect_database(db_path)

    def _fetch_orders(applicant_key: str, order_ids: Sequence[str]) -> List[OrderRow]:
        db = _connect()
        try:
            return OrderRepository(applicant_key=applicant_key).find_by_ids(db, order_ids)
        finally:
            db.close()

    outbox = ReceiptOutbox(config["RECEIPT_OUTBOX_DIR"])
    outbox.ensure_dirs()
    uploader = uploader or build_receipt_uploader(config)
    max_attempts = int(config.get("RECEIPT_MAX_ATTEMPTS") or 10)
    file_prefix = str(config.get("RECEIPT_FILE_PREFIX") or "INSPIEN")
    applicant_key = str(config.get("APPLICANT_KEY") or "").strip()

    delivery_service = ReceiptDeliveryService(
        outbox,
        uploader,
        file_prefix=file_prefix,
        participant_name=str(config.get("RECEIPT_PARTICIPANT_NAME") or "participant"),
        max_attempts=max_attempts,
    )
    runtime = ReceiptRuntime(
        outbox=outbox,
        uploader=uploader,
        delivery_service=delivery_service,
        order_service=OrderService(delivery_service, applicant_key=applicant_key),
        retry_sweeper=ReceiptRetrySweeper(outbox, uploader, _fetch_orders, max_attempts=max_attempts),
        admin_service=AdminReceiptService(outbox, uploader, _fetch_orders, file_prefix=file_prefix),
        shipment_batch=ShipmentBatchService(
            _connect,
            applicant_key=applicant_key,
            fetch_limit=int(config.get("SHIPMENT_BATCH_FETCH_LIMIT") or 200),
        ),
    )
    app.extensions[EXTENSION_KEY] = runtime
    return runtime


def current_runtime() -> ReceiptRuntime:
    return current_app.extensions[EXTENSION_KEY]
