from __future__ import annotations

import logging
import re
import time
from typing import Callable, List

from order_receipts.domain.contracts import OrderRow
from order_receipts.errors import OrderIdCollisionError, OrderIdRangeExhausted, ValidationError


_LOGGER = logging.getLogger("order_receipts")

ORDER_ID_PATTERN = re.compile(r"^[A-Z]\d{3}$")
LETTER_COUNT = 26
NUMBERS_PER_LETTER = 1000
MAX_ORDER_INDEX = LETTER_COUNT * NUMBERS_PER_LETTER - 1

MAX_ALLOCATION_ATTEMPTS = 5
INSERT_CHUNK_SIZE = 200


def order_id_to_index(order_id: str) -> int:
    value = str(order_id or "").strip()
    if not ORDER_ID_PATTERN.match(value):
        raise ValidationError(details=f"Invalid order id format: {order_id!r}")
    return (ord(value[0]) - ord("A")) * NUMBERS_PER_LETTER + int(value[1:])


def index_to_order_id(index: int) -> str:
    if index < 0 or index > MAX_ORDER_INDEX:
        raise OrderIdRangeExhausted(details=f"Order id index out of range (A000-Z999): {index}")
    letter = chr(ord("A") + index // NUMBERS_PER_LETTER)
    return f"{letter}{index % NUMBERS_PER_LETTER:03d}"


def next_order_ids(max_order_id: str | None, count: int) -> List[str]:
    """Return `count` contiguous ids following `max_order_id`.

    B997 + 4 rows -> B998, B999, C000, C001. An empty partition starts at A000.
    """
    start = -1
    if max_order_id is not None and str(max_order_id).strip():
        start = order_id_to_index(str(max_order_id).strip())
    last = start + count
    if last > MAX_ORDER_INDEX:
        raise OrderIdRangeExhausted(
            details=f"Order id range exceeded (A000-Z999): max={max_order_id}, requested={count}"
        )
    return [index_to_order_id(index) for index in range(start + 1, last + 1)]


def collision_backoff_seconds(attempt: int) -> float:
    return min(50, 10 * max(1, int(attempt))) / 1000.0


class OrderIdAllocator:
    """Assigns sequential order ids and inserts the rows in one transaction.

    Concurrent writers may read the same MAX(order_id); the primary key on
    (applicant_key, order_id) turns that race into OrderIdCollisionError, and the
    whole read-allocate-insert cycle is retried with a short jitter.
    """

    def __init__(
        self,
        repository,
        *,
        max_attempts: int = MAX_ALLOCATION_ATTEMPTS,
        chunk_size: int = INSERT_CHUNK_SIZE,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.repository = repository
        self.max_attempts = max(1, int(max_attempts))
        self.chunk_size = max(1, int(chunk_size))
        self._sleep = sleep

    def insert_with_ids(self, db, rows: List[OrderRow]) -> List[OrderRow]:
        if not rows:
            return []
        for attempt in range(1, self.max_attempts + 1):
            try:
                with db.transaction():
                    max_order_id = self.repository.max_order_id(db)
                    order_ids = next_order_ids(max_order_id, len(rows))
                    assigned = [row.with_order_id(order_id) for row, order_id in zip(rows, order_ids)]
                    for offset in range(0, len(assigned), self.chunk_size):
                        self.repository.insert_orders(db, assigned[offset : offset + self.chunk_size])
                return assigned
            except OrderIdCollisionError:
                _LOGGER.warning(
                    "order_id_collision_detected",
                    extra={
                        "applicant_key": self.repository.applicant_key,
                        "attempt": attempt,
                        "max_attempts": self.max_attempts,
                    },
                )
                if attempt >= self.max_attempts:
                    raise
                self._sleep(collision_backoff_seconds(attempt))
        raise AssertionError("unreachable")
