import hashlib
import hmac
import time
from typing import Optional, Union

from agromart import config


def _hmac_hex(secret: str, message: Union[str, bytes]) -> str:
    if isinstance(message, str):
        message = message.encode("utf-8")
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def _signed_payload(timestamp, payload: Union[str, bytes]) -> bytes:
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return f"{timestamp}.".encode() + payload


def parse_signature_header(header: str) -> dict:
    parts = {}
    for element in header.split(","):
        key, sep, value = element.strip().partition("=")
        if sep:
            parts[key] = value
    return parts


def verify_webhook_signature(payload: Union[str, bytes], signature: str, secret: str,
                             tolerance: Optional[int] = None, now: Optional[int] = None) -> bool:
    """Check a ``t=<unix>,v1=<hex>`` header against HMAC-SHA256 of ``"<t>.<payload>"``."""
    if not signature or not secret:
        return False
    parts = parse_signature_header(signature)
    timestamp = parts.get("t")
    expected = parts.get("v1")
    if not timestamp or not expected:
        return False
    try:
        ts = int(timestamp)
    except ValueError:
        return False

    tolerance = config.WEBHOOK_TOLERANCE_SECONDS if tolerance is None else tolerance
    current = int(time.time()) if now is None else now
    if abs(current - ts) > tolerance:
        return False

    computed = _hmac_hex(secret, _signed_payload(timestamp, payload))
    return hmac.compare_digest(expected.encode(), computed.encode())


def build_signature_header(payload: Union[str, bytes], secret: str, timestamp: Optional[int] = None) -> str:
    ts = int(time.time()) if timestamp is None else timestamp
    return f"t={ts},v1={_hmac_hex(secret, _signed_payload(ts, payload))}"


def payment_signature(order_id: str, payment_id: str, secret: Optional[str] = None) -> str:
    return _hmac_hex(secret or config.PAYMENT_SECRET, f"{order_id}|{payment_id}")


def verify_payment_signature(order_id: str, payment_id: str, signature: str) -> bool:
    return hmac.compare_digest(payment_signature(order_id, payment_id).encode(), (signature or "").encode())
