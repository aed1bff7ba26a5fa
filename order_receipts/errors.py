from __future__ import annotations

from typing import Any, Dict


ERROR_MESSAGES: Dict[str, str] = {
    "unexpected_error": "The operation could not be completed.",
    "validation_error": "The order document is invalid.",
    "action_invalid": "The requested action is not allowed.",
    "permission_denied": "Admin key missing or invalid.",
    "order_id_collision": "Order ids collided with a concurrent request. Try again.",
    "order_id_range_exhausted": "No order ids left for this applicant (A000-Z999).",
    "sftp_unavailable": "The receipt transfer server is unavailable.",
}


def error_message(key: str, fallback: str | None = None) -> str:
    return ERROR_MESSAGES.get(key) or fallback or ERROR_MESSAGES["unexpected_error"]


class AppError(Exception):
    default_code = "system_error"
    default_message_key = "unexpected_error"
    default_http_status = 500
    default_critical = True

    def __init__(
        self,
        code: str | None = None,
        message_key: str | None = None,
        http_status: int | None = None,
        critical: bool | None = None,
        details: str | None = None,
        payload: Dict[str, Any] | None = None,
    ) -> None:
        self.code = (code or self.default_code).strip()
        self.message_key = (message_key or self.default_message_key).strip()
        self.http_status = int(http_status or self.default_http_status)
        self.critical = bool(self.default_critical if critical is None else critical)
        self.details = (details or "").strip() or None
        self.payload = dict(payload or {})
        super().__init__(self.details or self.code)

    def user_message(self) -> str:
        return error_message(self.message_key)

    def to_response_payload(self, trace_id: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "error": self.code,
            "message": self.user_message(),
            "trace_id": trace_id,
            "success": False,
        }
        if self.details and not self.critical:
            payload["details"] = self.details
        if self.payload:
            payload.update(self.payload)
        return payload


class UserActionError(AppError):
    default_code = "action_invalid"
    default_message_key = "action_invalid"
    default_http_status = 400
    default_critical = False


class ValidationError(UserActionError):
    default_code = "validation_error"
    default_message_key = "validation_error"
    default_http_status = 400
    default_critical = False


class PermissionError(UserActionError):
    default_code = "permission_denied"
    default_message_key = "permission_denied"
    default_http_status = 403
    default_critical = False


class IntegrationError(AppError):
    default_code = "integration_error"
    default_message_key = "sftp_unavailable"
    default_http_status = 502
    default_critical = False


class SystemError(AppError):
    default_code = "system_error"
    default_message_key = "unexpected_error"
    default_http_status = 500
    default_critical = True


class OrderIdCollisionError(AppError):
    """Two writers allocated overlapping ids; the uniqueness constraint rejected ours."""

    default_code = "order_id_collision"
    default_message_key = "order_id_collision"
    default_http_status = 409
    default_critical = False


class OrderIdRangeExhausted(AppError):
    default_code = "order_id_range_exhausted"
    default_message_key = "order_id_range_exhausted"
    default_http_status = 409
    default_critical = True


class ReceiptTransportError(IntegrationError):
    default_code = "sftp_upload_failed"


class ReceiptRenderError(RuntimeError):
    pass


class ReceiptRecordsNotFound(LookupError):
    pass


class ReceiptTargetExists(FileExistsError):
    pass


class InvalidOutboxTransition(ValueError):
    pass
