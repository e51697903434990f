"""
Svix-style webhook signatures (the scheme Whop uses).

    signed = "<svix-id>.<svix-timestamp>.<raw body>"
    header = "v1,<base64(HMAC-SHA256(secret, signed))>"

The body is signed exactly as received; callers must pass the raw request
bytes, never a re-serialized JSON document.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
from typing import Iterable, Union

SIGNATURE_VERSION = "v1"

Bytesish = Union[str, bytes]


def _b(v: Bytesish) -> bytes:
    return v if isinstance(v, bytes) else str(v).encode("utf-8")


def compute_signature(msg_id: str, timestamp: str, body: Bytesish, secret: Bytesish) -> str:
    """Return the base64 digest (no version prefix)."""
    signed = _b(msg_id) + b"." + _b(timestamp) + b"." + _b(body)
    digest = hmac.new(_b(secret), signed, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def sign_payload(msg_id: str, timestamp: str, body: Bytesish, secret: Bytesish) -> str:
    """Build a signature header value, e.g. for tests or replay tooling."""
    return f"{SIGNATURE_VERSION},{compute_signature(msg_id, timestamp, body, secret)}"


def _candidates(signature_header: str) -> Iterable[str]:
    # Several signatures may be sent space-separated during secret rotation
    for part in (signature_header or "").split():
        version, sep, value = part.partition(",")
        if sep and version == SIGNATURE_VERSION and value:
            yield value


def verify_signature(
    msg_id: str,
    timestamp: str,
    body: Bytesish,
    secret: Bytesish,
    signature_header: str,
) -> bool:
    """
    True when any v1 signature in ``signature_header`` matches.

    Values without the ``v1,`` prefix never match. Comparison is constant time.
    """
    if not secret:
        return False
    expected = compute_signature(msg_id, timestamp, body, secret).encode("ascii")
    ok = False
    for candidate in _candidates(signature_header):
        if hmac.compare_digest(expected, candidate.encode("utf-8", "replace")):
            ok = True
    return ok


__all__ = ["SIGNATURE_VERSION", "compute_signature", "sign_payload", "verify_signature"]
