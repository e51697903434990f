"""
Typed view of Whop webhook payloads.

    {"event": "payment.succeeded",
     "data": {"id": "pay_...", "status": "...", "metadata": {"donationId": "..."}}}

Each recognized tag maps to its own frozen dataclass; anything else becomes
``UnrecognizedEvent`` so dispatch is an exhaustive isinstance chain.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from ibtasim.errors import InvalidPayload

PAYMENT_SUCCEEDED = "payment.succeeded"
PAYMENT_FAILED = "payment.failed"
PAYMENT_REFUNDED = "payment.refunded"


@dataclass(frozen=True)
class _PaymentEvent:
    payment_id: str
    donation_ref: Optional[str]
    provider_status: str = ""

    tag = ""


@dataclass(frozen=True)
class PaymentSucceeded(_PaymentEvent):
    tag = PAYMENT_SUCCEEDED


@dataclass(frozen=True)
class PaymentFailed(_PaymentEvent):
    reason: Optional[str] = None

    tag = PAYMENT_FAILED


@dataclass(frozen=True)
class PaymentRefunded(_PaymentEvent):
    reason: Optional[str] = None

    tag = PAYMENT_REFUNDED


@dataclass(frozen=True)
class UnrecognizedEvent:
    tag: str
    donation_ref: Optional[str]


WhopEvent = Union[PaymentSucceeded, PaymentFailed, PaymentRefunded, UnrecognizedEvent]


def _as_dict(v: Any) -> Dict[str, Any]:
    return v if isinstance(v, dict) else {}


def _donation_ref(data: Dict[str, Any]) -> Optional[str]:
    raw = _as_dict(data.get("metadata")).get("donationId")
    if raw is None:
        return None
    s = str(raw).strip()
    return s or None


def _reason(data: Dict[str, Any], *keys: str) -> Optional[str]:
    for k in keys:
        v = data.get(k)
        if v:
            return str(v)[:500]
    return None


def parse_event(payload: Any) -> WhopEvent:
    """Build the typed event for a decoded JSON body; non-objects are rejected."""
    if not isinstance(payload, dict):
        raise InvalidPayload("webhook body must be a JSON object")

    tag = str(payload.get("event") or "").strip()
    data = _as_dict(payload.get("data"))
    ref = _donation_ref(data)
    payment_id = str(data.get("id") or "")[:120]
    status = str(data.get("status") or "")[:40]

    if tag == PAYMENT_SUCCEEDED:
        return PaymentSucceeded(payment_id=payment_id, donation_ref=ref, provider_status=status)
    if tag == PAYMENT_FAILED:
        return PaymentFailed(
            payment_id=payment_id,
            donation_ref=ref,
            provider_status=status,
            reason=_reason(data, "failure_message", "failure_reason", "error"),
        )
    if tag == PAYMENT_REFUNDED:
        return PaymentRefunded(
            payment_id=payment_id,
            donation_ref=ref,
            provider_status=status,
            reason=_reason(data, "refund_reason", "reason"),
        )
    return UnrecognizedEvent(tag=tag, donation_ref=ref)


__all__ = [
    "PAYMENT_SUCCEEDED",
    "PAYMENT_FAILED",
    "PAYMENT_REFUNDED",
    "PaymentSucceeded",
    "PaymentFailed",
    "PaymentRefunded",
    "UnrecognizedEvent",
    "WhopEvent",
    "parse_event",
]
