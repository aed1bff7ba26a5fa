from __future__ import annotations

import secrets

from flask import current_app, request

from order_receipts.errors import PermissionError


ADMIN_KEY_HEADER = "X-Admin-Key"
LEGACY_ADMIN_KEY_HEADER = "adminkey"


def provided_admin_key() -> str:
    return str(request.headers.get(ADMIN_KEY_HEADER) or request.headers.get(LEGACY_ADMIN_KEY_HEADER) or "").strip()


def require_admin_key() -> None:
    expected = str(current_app.config.get("ADMIN_API_KEY") or "").strip()
    provided = provided_admin_key()
    # An unset ADMIN_API_KEY locks the admin surface instead of opening it.
    if not expected or not provided or not secrets.compare_digest(expected.encode("utf-8"), provided.encode("utf-8")):
        current_app.logger.warning("admin_key_rejected", extra={"key_present": bool(provided)})
        raise PermissionError(details="admin key missing or invalid")


def apply_security_headers(response):
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    response.headers.setdefault("Cache-Control", "no-store")
    return response
