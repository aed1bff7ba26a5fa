from __future__ import annotations

from flask import Blueprint, jsonify, request

from order_receipts.db import get_db
from order_receipts.observability import ensure_trace_id
from order_receipts.runtime import current_runtime


orders_bp = Blueprint("orders", __name__)


@orders_bp.route("/api/orders/preview", methods=["POST"])
def preview_orders():
    trace_id = ensure_trace_id()
    result = current_runtime().order_service.preview(request.get_data(as_text=True))
    return jsonify({"trace_id": trace_id, **result.payload}), result.status_code


@orders_bp.route("/api/orders", methods=["POST"])
def create_orders():
    trace_id = ensure_trace_id()
    result = current_runtime().order_service.create(
        get_db(),
        request.get_data(as_text=True),
        trace_id=trace_id,
    )
    return jsonify({"trace_id": trace_id, **result.payload}), result.status_code
