"""
auth/signing.py -- HMAC-SHA256 signing and constant-time verification.

Every bearer token in the system is a hex HMAC over a canonical string. This
module is the only place that touches the hmac primitive.

verify() never raises. Malformed input (non-str, empty secret, odd bytes)
simply fails verification, so callers can treat "forged" and "garbage" the
same way.

Layer rule: stdlib only.
"""

from __future__ import annotations

import hashlib
import hmac


def sign(secret: str, message: str) -> str:
    """Return HMAC-SHA256(secret, message) as lowercase hex."""
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def timing_safe_equal(a: str, b: str) -> bool:
    """Compare two strings in time independent of where they first differ.

    hmac.compare_digest short-circuits on a length mismatch, which leaks the
    expected signature length. Both inputs are padded to the longer length
    first so the byte loop always runs over the same span; the real lengths
    are compared separately.
    """
    if not isinstance(a, str) or not isinstance(b, str):
        return False
    a_bytes = a.encode("utf-8", "surrogatepass")
    b_bytes = b.encode("utf-8", "surrogatepass")
    width = max(len(a_bytes), len(b_bytes))
    same_content = hmac.compare_digest(a_bytes.ljust(width, b"\0"), b_bytes.ljust(width, b"\0"))
    same_length = len(a_bytes) == len(b_bytes)
    return same_content & same_length


def verify(signature: str, secret: str, message: str) -> bool:
    """Return True if signature is the HMAC of message under secret.

    An empty or unconfigured secret fails closed. An empty signature can
    never match and fails too.
    """
    if not secret or not isinstance(secret, str):
        return False
    if not signature or not isinstance(message, str):
        return False
    try:
        expected = sign(secret, message)
    except UnicodeEncodeError:
        return False
    return timing_safe_equal(signature, expected)
