"""HMAC-SHA256 signatures of inbound webhook bodies."""

import hashlib
import hmac
from typing import Optional

SIGNATURE_HEADER = "X-Signature"


def compute_signature(secret: str, body: bytes) -> str:
    """Hex encoded HMAC-SHA256 of a request body."""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, signature: Optional[str]) -> bool:
    """
    Check a request signature in constant time.

    Args:
        secret: Shared secret of the webhook source
        body: Raw request body
        signature: Header value, optionally prefixed with ``sha256=``

    Returns:
        True if the signature matches
    """
    if not signature:
        return False
    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]
    return hmac.compare_digest(compute_signature(secret, body), signature.strip().lower())
