"""HMAC webhook signatures: header format "ts=<unix seconds>,v1=<hex digest>"

The digest is HMAC-SHA256(secret, "<ts>." + raw_body). Binding the
timestamp into the digest lets receivers reject replays outside a tolerance
window.
"""

import hashlib
import hmac
import time
from typing import Dict, Optional


def compute_signature(payload: bytes, secret: str, timestamp: int) -> str:
    message = f"{timestamp}.".encode() + payload
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def sign_payload(payload: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Build a signature header value (used by the sandbox processor and tests)"""
    ts = int(time.time()) if timestamp is None else timestamp
    return f"ts={ts},v1={compute_signature(payload, secret, ts)}"


def parse_signature_header(signature: str) -> Dict[str, str]:
    parts: Dict[str, str] = {}
    for chunk in (signature or "").split(","):
        key, sep, value = chunk.strip().partition("=")
        if sep and key and value:
            parts[key] = value
    return parts


def verify_signature(
    payload: bytes,
    signature: str,
    secret: str,
    tolerance_seconds: int,
    now: Optional[float] = None,
) -> bool:
    """Constant-time check of the digest plus a freshness check of the timestamp"""
    if not secret or not signature:
        return False

    parts = parse_signature_header(signature)
    if "ts" not in parts or "v1" not in parts:
        return False
    try:
        timestamp = int(parts["ts"])
    except ValueError:
        return False

    current = time.time() if now is None else now
    if tolerance_seconds > 0 and abs(current - timestamp) > tolerance_seconds:
        return False

    expected = compute_signature(payload, secret, timestamp)
    return hmac.compare_digest(expected, parts["v1"])
