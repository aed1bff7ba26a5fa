from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from order_receipts.observability import ensure_trace_id
from order_receipts.orders.parsing import parse_retry_request
from order_receipts.runtime import current_runtime
from order_receipts.security import require_admin_key


admin_bp = Blueprint("admin", __name__)


@admin_bp.route("/api/admin/receipts/retry", methods=["POST"])
def retry_receipt():
    trace_id = ensure_trace_id()
    require_admin_key()
    retry_request = parse_retry_request(request.get_data(as_text=True), request.content_type)
    current_app.logger.info(
        "admin_receipt_retry_requested",
        extra={
            "target_trace_id": retry_request.trace_id,
            "rename_requested": bool(retry_request.participant_name),
        },
    )
    result = current_runtime().admin_service.retry_by_trace_id(retry_request)
    payload = result.to_payload()
    if not payload.get("trace_id"):
        payload["trace_id"] = trace_id
    return jsonify(payload), 200
