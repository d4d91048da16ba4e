"""HMAC-SHA256 signatures for inbound and outbound webhooks."""

import hashlib
import hmac
from typing import Optional


def sign(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of body; empty when no secret is configured."""
    if not secret:
        return ""
    return hmac.new(secret.encode("utf-8"), msg=body, digestmod=hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, signature_header: Optional[str], secret: Optional[str]) -> bool:
    """
    Check signature_header against HMAC-SHA256(secret, raw_body).

    No secret configured means open mode: every request is accepted. The header
    is hex, optionally prefixed with 'sha256='. A length mismatch is rejected
    before the constant-time comparison.
    """
    if not secret:
        return True
    if not signature_header:
        return False
    value = signature_header.strip()
    if value.startswith("sha256="):
        value = value[len("sha256="):]
    try:
        provided = bytes.fromhex(value)
    except ValueError:
        return False
    expected = hmac.new(secret.encode("utf-8"), msg=raw_body, digestmod=hashlib.sha256).digest()
    if len(provided) != len(expected):
        return False
    return hmac.compare_digest(provided, expected)
