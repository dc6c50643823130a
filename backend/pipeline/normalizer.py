"""
Notification Normalizer
=======================
Turns whatever the gateway sent (query string, JSON or form body, raw query,
a JSON "custom field") into one NormalizedNotification.

Field names are resolved through a declarative alias table. Keys are compared
after stripping non-alphanumerics and lower-casing, so `transaction-id`,
`transactionId` and `transaction_id` are the same key. Precedence across
sources: body > parsed query > raw query.

Never raises. A notification with no session id anywhere comes back with
`missing_session == True`.
"""

import json
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple
from urllib.parse import parse_qsl

from schemas.checkout import NormalizedNotification


FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "session_id": ("sessionId", "session-id", "session_id"),
    "event_id": ("id", "event-id", "eventId"),
    "transaction_id": (
        "transaction-id",
        "transactionId",
        "transactionid",
        "txn_id",
        "txn-id",
        "txnid",
        "result-txn-id",
        "resultTxnId",
        "reference",
    ),
    "auth_code": ("authorization-code", "authorizationCode", "auth-code", "auth"),
    "masked_pan": ("maskedPAN", "masked-pan", "cc-number"),
    "result_code": ("result-code", "resultCode"),
    "result_text": ("result", "status"),
    "success_flag": ("success", "paid"),
    "order_id": ("order-id", "orderId", "invoiceno", "invoice-no"),
    "amount": ("amount", "total-amount", "totalAmount"),
}

CUSTOM_FIELD_ALIASES: Tuple[str, ...] = ("customfield-data", "customfield")

_NON_ALNUM = re.compile(r"[^a-z0-9]")


def normalize_key(key: Any) -> str:
    return _NON_ALNUM.sub("", str(key).lower())


def first_string(value: Any) -> Optional[str]:
    """First non-empty trimmed string in `value` (lists are searched in order).

    Lone surrogates (valid in JSON, not encodable as UTF-8) are dropped.
    """
    if isinstance(value, str):
        trimmed = value.encode("utf-8", "ignore").decode("utf-8").strip()
        return trimmed or None
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        return str(value)
    if isinstance(value, (list, tuple)):
        for entry in value:
            match = first_string(entry)
            if match:
                return match
    return None


def clean_session_id(value: Any) -> Optional[str]:
    raw = first_string(value)
    if not raw:
        return None
    cleaned = re.sub(r"[?#].*$", "", raw)
    cleaned = re.sub(r"&.*$", "", cleaned).strip()
    return cleaned or None


def parse_raw_query(raw: Optional[str]) -> Dict[str, str]:
    """Parse a raw query string, tolerating a leading ?/# and stray `?` separators."""
    if not raw or not raw.strip():
        return {}
    cleaned = re.sub(r"^[?#]", "", raw.strip()).replace("?", "&")
    result: Dict[str, str] = {}
    for key, value in parse_qsl(cleaned, keep_blank_values=False):
        if value != "":
            result[key] = value
    return result


def _as_mapping(value: Any) -> Dict[str, Any]:
    if isinstance(value, Mapping):
        return dict(value)
    return {}


def merge_sources(*sources: Mapping[str, Any]) -> Dict[str, Any]:
    """Merge sources, later ones winning, keyed by normalized field name."""
    merged: Dict[str, Any] = {}
    for source in sources:
        for key, value in source.items():
            if value is None:
                continue
            if isinstance(value, str) and not value.strip():
                continue
            merged[normalize_key(key)] = value
    return merged


def pick(merged: Mapping[str, Any], aliases: Iterable[str]) -> Any:
    for alias in aliases:
        value = merged.get(normalize_key(alias))
        if value is not None:
            return value
    return None


def pick_string(merged: Mapping[str, Any], field: str) -> Optional[str]:
    return first_string(pick(merged, FIELD_ALIASES[field]))


def _parse_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    text = first_string(value)
    if text is None:
        return None
    lowered = text.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    return None


def _parse_amount(value: Any) -> Optional[Decimal]:
    text = first_string(value)
    if text is None:
        return None
    try:
        amount = Decimal(text)
    except InvalidOperation:
        return None
    return amount if amount.is_finite() else None


def session_id_from_custom_field(value: Any) -> Optional[str]:
    """Session id embedded in a JSON custom field (string or already-parsed object)."""
    if isinstance(value, (list, tuple)):
        for entry in value:
            found = session_id_from_custom_field(entry)
            if found:
                return found
        return None

    if isinstance(value, str) and value.strip():
        try:
            value = json.loads(value)
        except ValueError:
            return None

    if isinstance(value, Mapping):
        return clean_session_id(pick(merge_sources(value), FIELD_ALIASES["session_id"]))
    return None


def normalize_notification(
    query: Optional[Mapping[str, Any]] = None,
    body: Optional[Mapping[str, Any]] = None,
    raw_query: Optional[str] = None,
    source: str = "webhook",
) -> NormalizedNotification:
    """Build a NormalizedNotification from up to three payload sources."""
    merged = merge_sources(parse_raw_query(raw_query), _as_mapping(query), _as_mapping(body))

    session_id = clean_session_id(pick(merged, FIELD_ALIASES["session_id"]))
    if not session_id:
        session_id = session_id_from_custom_field(pick(merged, CUSTOM_FIELD_ALIASES))

    result_text = pick_string(merged, "result_text")

    return NormalizedNotification(
        source=source,
        session_id=session_id,
        event_id=pick_string(merged, "event_id"),
        transaction_id=pick_string(merged, "transaction_id"),
        auth_code=pick_string(merged, "auth_code"),
        masked_pan=pick_string(merged, "masked_pan"),
        result_code=pick_string(merged, "result_code"),
        result_text=result_text.lower() if result_text else None,
        success_flag=_parse_bool(pick(merged, FIELD_ALIASES["success_flag"])),
        order_id=pick_string(merged, "order_id"),
        amount=_parse_amount(pick(merged, FIELD_ALIASES["amount"])),
        payload=merged,
    )
