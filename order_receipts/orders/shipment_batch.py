from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable

from order_receipts.db import Database
from order_receipts.observability import bind_trace_id
from order_receipts.receipts.content import TIMESTAMP_FORMAT
from order_receipts.repositories.order_repository import OrderRepository


def shipment_batch_trace_id(now: datetime | None = None) -> str:
    return f"SHIPBATCH-{(now or datetime.now()).strftime(TIMESTAMP_FORMAT)}"


class ShipmentBatchService:
    """Copies unshipped orders into `shipments` and flips them to status Y, one transaction per run."""

    def __init__(
        self,
        connect_fn: Callable[[], Database],
        *,
        applicant_key: str,
        fetch_limit: int = 200,
    ) -> None:
        self._logger = logging.getLogger("order_receipts")
        self._lock = threading.Lock()
        self.connect_fn = connect_fn
        self.applicant_key = applicant_key
        self.fetch_limit = max(1, int(fetch_limit))

    def run_once(self) -> int | None:
        if not self._lock.acquire(blocking=False):
            self._logger.warning("shipment_batch_skipped", extra={"reason": "already_running"})
            return None
        try:
            with bind_trace_id(shipment_batch_trace_id()):
                return self._run()
        finally:
            self._lock.release()

    def _run(self) -> int:
        repository = OrderRepository(applicant_key=self.applicant_key)
        self._logger.info("shipment_batch_started", extra={"fetch_limit": self.fetch_limit})
        db = self.connect_fn()
        try:
            with db.transaction():
                orders = repository.select_unshipped_for_update(db, limit=self.fetch_limit)
                if not orders:
                    self._logger.info("shipment_batch_completed", extra={"shipped": 0})
                    return 0
                inserted = repository.insert_shipments(db, orders)
                updated = repository.mark_shipped(db, [str(order.order_id) for order in orders])
        finally:
            db.close()
        self._logger.info("shipment_batch_completed", extra={"shipped": inserted, "status_updated": updated})
        return inserted
