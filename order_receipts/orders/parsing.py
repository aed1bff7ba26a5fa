from __future__ import annotations

import json
import re
from typing import Any, List, Tuple
from xml.etree.ElementTree import Element, ParseError

from defusedxml import DefusedXmlException
from defusedxml import ElementTree as SafeElementTree

from order_receipts.domain.contracts import OrderHeader, OrderItem, OrderRow, ReceiptRetryRequest
from order_receipts.errors import SystemError, ValidationError


_PRICE_PATTERN = re.compile(r"^\d+$")
ORDER_STATUSES = ("N", "Y")


def _is_blank(value: str | None) -> bool:
    return value is None or not str(value).strip()


def _fromstring(document: str) -> Element:
    return SafeElementTree.fromstring(document.encode("utf-8"), forbid_dtd=True)


def wrap_document(document: str) -> str:
    """Put a synthetic <ROOT> around a document that has several top-level elements."""
    trimmed = document.strip()
    if trimmed.startswith("<?xml"):
        end = trimmed.find("?>")
        if end != -1:
            return f"{trimmed[:end + 2]}<ROOT>{trimmed[end + 2:]}</ROOT>"
    return f"<ROOT>{trimmed}</ROOT>"


def parse_xml_document(raw: str | bytes | None) -> Element:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    document = str(raw or "").strip()
    if not document:
        raise ValidationError(details="XML body is empty.")
    try:
        return _fromstring(document)
    except DefusedXmlException as exc:
        raise ValidationError(details=f"XML rejected: {exc}") from exc
    except ParseError:
        pass
    try:
        return _fromstring(wrap_document(document))
    except (DefusedXmlException, ParseError) as exc:
        raise ValidationError(details=f"XML parsing failed: {exc}") from exc


def _text(parent: Element, tag: str) -> str | None:
    node = parent if parent.tag == tag else parent.find(f".//{tag}")
    if node is None:
        return None
    return "".join(node.itertext()).strip()


def parse_order_document(raw: str | bytes | None) -> Tuple[List[OrderHeader], List[OrderItem]]:
    root = parse_xml_document(raw)
    headers = [
        OrderHeader(
            user_id=_text(node, "USER_ID"),
            name=_text(node, "NAME"),
            address=_text(node, "ADDRESS"),
            status=_text(node, "STATUS"),
        )
        for node in root.iter("HEADER")
    ]
    items = [
        OrderItem(
            user_id=_text(node, "USER_ID"),
            item_id=_text(node, "ITEM_ID"),
            item_name=_text(node, "ITEM_NAME"),
            price=_text(node, "PRICE"),
        )
        for node in root.iter("ITEM")
    ]
    return headers, items


def build_order_rows(
    headers: List[OrderHeader],
    items: List[OrderItem],
    applicant_key: str | None,
) -> List[OrderRow]:
    if not headers:
        raise ValidationError(details="No HEADER elements found.")
    if not items:
        raise ValidationError(details="No ITEM elements found.")
    if _is_blank(applicant_key):
        raise SystemError(details="applicant key is not configured.")

    headers_by_user: dict[str, OrderHeader] = {}
    for header in headers:
        if _is_blank(header.user_id):
            raise ValidationError(details="HEADER.USER_ID is required.")
        headers_by_user[str(header.user_id)] = header

    rows: List[OrderRow] = []
    for item in items:
        if _is_blank(item.user_id):
            raise ValidationError(details="ITEM.USER_ID is required.")
        if _is_blank(item.item_id):
            raise ValidationError(details="ITEM.ITEM_ID is required.")
        if _is_blank(item.item_name):
            raise ValidationError(details="ITEM.ITEM_NAME is required.")
        if _is_blank(item.price) or not _PRICE_PATTERN.match(str(item.price)):
            raise ValidationError(details="ITEM.PRICE must be numeric.")
        header = headers_by_user.get(str(item.user_id))
        if header is None:
            raise ValidationError(details=f"No matching HEADER for ITEM.USER_ID={item.user_id}")
        status = (header.status or "").strip() or "N"
        if status not in ORDER_STATUSES:
            raise ValidationError(details=f"HEADER.STATUS must be one of {', '.join(ORDER_STATUSES)}.")
        rows.append(
            OrderRow(
                order_id=None,
                user_id=str(item.user_id),
                item_id=str(item.item_id),
                applicant_key=str(applicant_key).strip(),
                name=header.name,
                address=header.address,
                item_name=str(item.item_name),
                price=str(item.price),
                status=status,
            )
        )
    return rows


def _first_text(root: Element, *tags: str) -> str | None:
    for tag in tags:
        value = _text(root, tag)
        if not _is_blank(value):
            return value
    return None


def parse_retry_request(raw: str | bytes | None, content_type: str | None = None) -> ReceiptRetryRequest:
    """Read an admin retry request sent either as JSON or as the legacy XML body."""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    body = str(raw or "").strip()
    if not body:
        raise ValidationError(details="Request body is empty.")

    if "json" in str(content_type or "").lower() or body.startswith("{"):
        try:
            payload: Any = json.loads(body)
        except ValueError as exc:
            raise ValidationError(details=f"Invalid JSON body: {exc}") from exc
        if not isinstance(payload, dict):
            raise ValidationError(details="JSON body must be an object.")
        return ReceiptRetryRequest(
            trace_id=str(payload.get("trace_id") or "").strip() or None,
            participant_name=str(payload.get("participant_name") or "").strip() or None,
        )

    root = parse_xml_document(body)
    return ReceiptRetryRequest(
        trace_id=_first_text(root, "TRACE_ID", "traceId"),
        participant_name=_first_text(root, "PARTICIPANT_NAME", "participantName"),
    )
