"""HMAC verification of PayMob transaction callbacks.

PayMob signs a transaction callback by concatenating a fixed list of
fields, in lexical key order and with no separators, and computing
HMAC-SHA512 over the result with the merchant's HMAC secret. The list
and its order are dictated by the provider; changing either breaks every
verification.
"""
import hashlib
import hmac
from typing import Any, Mapping, Optional

import structlog

logger = structlog.get_logger(__name__)

SIGNED_FIELDS = (
    "amount_cents",
    "created_at",
    "currency",
    "error_occured",
    "has_parent_transaction",
    "id",
    "integration_id",
    "is_3d_secure",
    "is_auth",
    "is_capture",
    "is_refunded",
    "is_standalone_payment",
    "is_voided",
    "order.id",
    "owner",
    "pending",
    "source_data.pan",
    "source_data.sub_type",
    "source_data.type",
    "success",
)


class _Missing(Exception):
    pass


def _stringify(value: Any) -> str:
    # mirrors how the provider renders values when it builds the string
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else repr(value)
    if isinstance(value, str):
        return value
    raise _Missing(f"unsignable value of type {type(value).__name__}")


def _field_value(payload: Mapping[str, Any], key: str) -> str:
    if key == "order.id":
        order = payload.get("order")
        if not isinstance(order, Mapping) or "id" not in order:
            raise _Missing(key)
        return _stringify(order["id"])
    if key.startswith("source_data."):
        source_data = payload.get("source_data")
        if not isinstance(source_data, Mapping):
            source_data = {}
        value = source_data.get(key.split(".", 1)[1])
        return "false" if value is None else _stringify(value)
    if key not in payload:
        raise _Missing(key)
    return _stringify(payload[key])


def build_signature_string(payload: Mapping[str, Any]) -> Optional[str]:
    """Concatenate the signed fields of ``payload``.

    Returns None when a required field is absent or not a scalar.
    """
    try:
        return "".join(_field_value(payload, key) for key in SIGNED_FIELDS)
    except _Missing as e:
        logger.info("hmac_field_missing", field=str(e))
        return None


def compute_signature(payload: Mapping[str, Any], secret: str) -> Optional[str]:
    message = build_signature_string(payload)
    if message is None:
        return None
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha512).hexdigest()


def verify_signature(payload: Mapping[str, Any], secret: str, signature: Optional[str] = None) -> bool:
    """Check the callback's HMAC; never raises.

    ``signature`` defaults to the payload's own ``hmac`` field.
    """
    try:
        claimed = payload.get("hmac") if signature is None else signature
        if not isinstance(claimed, str) or not claimed:
            return False
        expected = compute_signature(payload, secret)
        if expected is None:
            return False
        return hmac.compare_digest(expected.encode("ascii"), claimed.encode("utf-8"))
    except Exception:
        logger.exception("hmac_verification_error")
        return False
