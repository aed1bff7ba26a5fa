from __future__ import annotations

import re
from datetime import datetime
from typing import Iterable

from order_receipts.domain.contracts import OrderRow
from order_receipts.errors import ReceiptRenderError


FIELD_DELIMITER = "^"
TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"
RECEIPT_EXTENSION = ".txt"

# ORDER_ID^USER_ID^ITEM_ID^APPLICANT_KEY^NAME^ADDRESS^ITEM_NAME^PRICE
RECEIPT_FIELDS = ("order_id", "user_id", "item_id", "applicant_key", "name", "address", "item_name", "price")


def render_receipt(rows: Iterable[OrderRow]) -> str:
    lines = []
    for row in rows:
        values = []
        for field_name in RECEIPT_FIELDS:
            value = getattr(row, field_name, None)
            if value is None:
                raise ReceiptRenderError(f"{field_name} is missing for order {row.order_id}")
            values.append(str(value))
        lines.append(FIELD_DELIMITER.join(values) + "\n")
    if not lines:
        raise ReceiptRenderError("no order rows to render")
    return "".join(lines)


def build_receipt_file_name(prefix: str, participant_name: str, now: datetime | None = None) -> str:
    timestamp = (now or datetime.now()).strftime(TIMESTAMP_FORMAT)
    return f"{prefix}_{participant_name}_{timestamp}{RECEIPT_EXTENSION}"


def receipt_name_pattern(prefix: str) -> re.Pattern[str]:
    return re.compile(rf"^{re.escape(prefix)}_(.+)_(\d{{14}}){re.escape(RECEIPT_EXTENSION)}$")


def rename_receipt_file_name(file_name: str, prefix: str, participant_name: str) -> str | None:
    """Swap the participant part of a receipt name, keeping its timestamp; None if the name does not match."""
    match = receipt_name_pattern(prefix).match(file_name)
    if not match:
        return None
    return f"{prefix}_{participant_name}_{match.group(2)}{RECEIPT_EXTENSION}"
