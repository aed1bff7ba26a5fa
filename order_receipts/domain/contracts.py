from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from typing import Any, Dict, List


@dataclass(frozen=True)
class ServiceOutput:
    payload: Dict[str, Any]
    status_code: int = 200


@dataclass(frozen=True)
class OrderHeader:
    user_id: str | None
    name: str | None
    address: str | None
    status: str | None


@dataclass(frozen=True)
class OrderItem:
    user_id: str | None
    item_id: str | None
    item_name: str | None
    price: str | None


@dataclass(frozen=True)
class OrderRow:
    order_id: str | None
    user_id: str
    item_id: str
    applicant_key: str
    name: str | None
    address: str | None
    item_name: str
    price: str
    status: str = "N"

    def with_order_id(self, order_id: str) -> "OrderRow":
        return replace(self, order_id=order_id)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row) -> "OrderRow":
        data = dict(row)
        return cls(
            order_id=data.get("order_id"),
            user_id=data.get("user_id"),
            item_id=data.get("item_id"),
            applicant_key=data.get("applicant_key"),
            name=data.get("name"),
            address=data.get("address"),
            item_name=data.get("item_name"),
            price=data.get("price"),
            status=data.get("status") or "N",
        )


@dataclass
class ReceiptMeta:
    """Sidecar stored next to a receipt file as `<file_name>.meta.json`.

    The sidecar is written before the receipt, so it is always enough to
    rebuild the receipt from the database (via `order_ids`) and to resend it.
    """

    trace_id: str | None
    applicant_key: str
    file_name: str
    order_ids: List[str] = field(default_factory=list)
    attempts: int = 0
    next_attempt_at_epoch_ms: int = 0
    last_error: str | None = None

    def has_failure_history(self) -> bool:
        return self.attempts > 0 or bool(str(self.last_error or "").strip())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ReceiptMeta":
        return cls(
            trace_id=payload.get("trace_id"),
            applicant_key=str(payload.get("applicant_key") or ""),
            file_name=str(payload["file_name"]),
            order_ids=[str(order_id) for order_id in payload.get("order_ids") or []],
            attempts=int(payload.get("attempts") or 0),
            next_attempt_at_epoch_ms=int(payload.get("next_attempt_at_epoch_ms") or 0),
            last_error=payload.get("last_error"),
        )


@dataclass(frozen=True)
class ReceiptDeliveryOutcome:
    file_name: str
    receipt_created: bool
    uploaded: bool
    attempts: int
    final_state: str | None
    last_error: str | None = None


@dataclass(frozen=True)
class ReceiptRetryRequest:
    trace_id: str | None
    participant_name: str | None = None


@dataclass(frozen=True)
class ReceiptRetryResult:
    trace_id: str | None
    success: bool
    message: str
    old_file_name: str | None = None
    new_file_name: str | None = None
    found_in: str | None = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "trace_id": self.trace_id,
            "success": self.success,
            "message": self.message,
        }
        if self.success:
            payload["old_file_name"] = self.old_file_name
            payload["new_file_name"] = self.new_file_name
            payload["found_in"] = self.found_in
        return payload
