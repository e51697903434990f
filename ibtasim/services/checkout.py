# ibtasim/services/checkout.py
"""Whop hosted checkout for card donations."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Tuple

import requests
from flask import current_app
from sqlalchemy import select

from ibtasim.errors import ConfigurationError, InvalidTransition, ProviderError
from ibtasim.extensions import db
from ibtasim.models import Payment, utcnow
from ibtasim.services.donations import DonationId, get_donation, mark_payment_submitted

log = logging.getLogger(__name__)

_CENT = Decimal("1")


# ----------------------------
# Fee math (cents)
# ----------------------------
def _gross_up_cover_fees(base_cents: int, fee_pct: Decimal, fee_flat_cents: int) -> Tuple[int, int]:
    """Total to charge so that ``base_cents`` remains after the processor fee."""
    if base_cents <= 0:
        return base_cents, 0
    total = (Decimal(base_cents) + Decimal(fee_flat_cents)) / (Decimal("1") - fee_pct)
    total_cents = int(total.quantize(_CENT, rounding=ROUND_HALF_UP))
    return total_cents, total_cents - base_cents


@dataclass(frozen=True)
class AmountBreakdown:
    base_cents: int
    total_cents: int
    processing_fee: int
    platform_fee: int

    @property
    def net_amount(self) -> int:
        return self.total_cents - self.processing_fee - self.platform_fee


def compute_amounts(base_cents: int, covers_fees: bool) -> AmountBreakdown:
    cfg = current_app.config
    fee_pct = Decimal(str(cfg.get("WHOP_FEE_PCT", "0.029")))
    fee_flat = int(cfg.get("WHOP_FEE_FLAT_CENTS", 30))
    platform_pct = Decimal(str(cfg.get("PLATFORM_FEE_PCT", "0")))

    if covers_fees:
        total, processing = _gross_up_cover_fees(base_cents, fee_pct, fee_flat)
    else:
        total = base_cents
        processing = int((Decimal(base_cents) * fee_pct + fee_flat).quantize(_CENT, rounding=ROUND_HALF_UP))
    platform = int((Decimal(total) * platform_pct).quantize(_CENT, rounding=ROUND_HALF_UP))
    return AmountBreakdown(base_cents=base_cents, total_cents=total, processing_fee=processing, platform_fee=platform)


# ----------------------------
# Checkout session
# ----------------------------
@dataclass(frozen=True)
class WhopSettings:
    api_base: str
    api_key: str
    product_id: str
    timeout: float
    public_base_url: str

    @classmethod
    def load(cls) -> "WhopSettings":
        cfg = current_app.config
        return cls(
            api_base=str(cfg.get("WHOP_API_BASE") or "https://api.whop.com/api/v2").rstrip("/"),
            api_key=str(cfg.get("WHOP_API_KEY") or "").strip(),
            product_id=str(cfg.get("WHOP_PRODUCT_ID") or "").strip(),
            timeout=float(cfg.get("WHOP_TIMEOUT_SECS", 10.0)),
            public_base_url=str(cfg.get("PUBLIC_BASE_URL") or "").rstrip("/"),
        )


def _request_checkout_session(s: WhopSettings, donation_id: int, total_cents: int, currency: str) -> Dict[str, Any]:
    try:
        resp = requests.post(
            f"{s.api_base}/checkout_sessions",
            headers={"Authorization": f"Bearer {s.api_key}", "Content-Type": "application/json"},
            json={
                "price": {
                    "product_id": s.product_id,
                    "initial_price": total_cents,
                    "plan_type": "one_time",
                    "currency": currency.lower(),
                },
                "redirect_url": f"{s.public_base_url}/donate/success",
                "metadata": {"donationId": str(donation_id)},
            },
            timeout=s.timeout,
        )
        resp.raise_for_status()
        data = resp.json()
    except requests.HTTPError as e:
        status = getattr(e.response, "status_code", "?")
        raise ProviderError(f"Whop checkout failed ({status})") from e
    except (requests.RequestException, ValueError) as e:
        raise ProviderError(f"Whop checkout failed: {e}") from e

    if not isinstance(data, dict) or not data.get("purchase_url"):
        raise ProviderError("No purchase_url in Whop response")
    return data


def create_whop_checkout(donation_id: DonationId) -> str:
    """
    Start a hosted checkout for a card donation and return its purchase URL.
    The donation moves to awaiting_verification; the webhook settles it.
    """
    donation = get_donation(donation_id)
    if not donation.is_card:
        raise InvalidTransition("checkout is only available for card donations")
    if donation.status not in ("pending", "awaiting_verification"):
        raise InvalidTransition(f"donation is {donation.status}")

    s = WhopSettings.load()
    if not s.api_key or not s.product_id:
        raise ConfigurationError("Whop API credentials are not configured")

    amounts = compute_amounts(int(donation.amount), bool(donation.covers_fees))
    data = _request_checkout_session(s, donation.id, amounts.total_cents, donation.currency)

    payment = db.session.execute(select(Payment).where(Payment.donation_id == donation.id)).scalar_one_or_none()
    if payment is None:
        payment = Payment(donation_id=donation.id, user_id=donation.user_id, webhook_events=[])
        db.session.add(payment)
    payment.provider_product_id = s.product_id
    payment.checkout_url = str(data["purchase_url"])[:500]
    payment.amount = amounts.total_cents
    payment.processing_fee = amounts.processing_fee
    payment.platform_fee = amounts.platform_fee
    payment.net_amount = amounts.net_amount
    payment.currency = donation.currency
    payment.status = "processing"
    payment.initiated_at = payment.initiated_at or utcnow()

    mark_payment_submitted(donation.id, commit=False)
    db.session.commit()
    log.info("whop checkout created for donation %s (%s cents)", donation.id, amounts.total_cents)
    return payment.checkout_url


__all__ = ["AmountBreakdown", "compute_amounts", "WhopSettings", "create_whop_checkout"]
