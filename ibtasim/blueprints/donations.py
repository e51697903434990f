"""
Donor-facing donation API (JSON, CSRF-exempt, CORS-enabled)

Mount: /donations

  POST /donations                      create (bank_transfer | card_provider | cash_agency)
  GET  /donations/<id>                 status view
  POST /donations/<id>/receipt         bank transfer receipt upload
  POST /donations/<id>/checkout        Whop hosted checkout for card donations
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from flask import Blueprint

from ibtasim.blueprints import json_error, json_ok, register_domain_errors, request_payload, truthy
from ibtasim.extensions import csrf
from ibtasim.services import checkout, donations

bp = Blueprint("donations", __name__)
csrf.exempt(bp)
register_domain_errors(bp)


def _int_field(data: Dict[str, Any], *keys: str) -> Optional[int]:
    for k in keys:
        v = data.get(k)
        if v is None or str(v).strip() == "":
            continue
        try:
            return int(str(v).strip())
        except ValueError:
            return None
    return None


@bp.post("")
def create_donation():
    data = request_payload()
    user_id = _int_field(data, "userId", "user_id")
    project_id = _int_field(data, "projectId", "project_id")
    amount = _int_field(data, "amount", "amountCents", "amount_cents")
    if user_id is None or project_id is None:
        return json_error("userId and projectId are required", 400)
    if amount is None:
        return json_error("amount (cents) is required", 400)

    donation = donations.create_donation(
        user_id=user_id,
        project_id=project_id,
        amount=amount,
        payment_method=str(data.get("paymentMethod") or data.get("payment_method") or "").strip(),
        covers_fees=truthy(data.get("coversFees") or data.get("covers_fees")),
        is_anonymous=truthy(data.get("isAnonymous") or data.get("is_anonymous")),
        message=data.get("message"),
        bank_name=data.get("bankName") or data.get("bank_name"),
    )
    return json_ok({"donation": donation.as_dict()}, 201)


@bp.get("/<int:donation_id>")
def get_donation(donation_id: int):
    donation = donations.get_donation(donation_id)
    return json_ok({"donation": donation.as_dict()})


@bp.post("/<int:donation_id>/receipt")
def upload_receipt(donation_id: int):
    data = request_payload()
    donation = donations.upload_receipt(
        donation_id,
        str(data.get("receiptUrl") or data.get("receipt_url") or ""),
        transaction_reference=data.get("transactionReference") or data.get("transaction_reference"),
        bank_name=data.get("bankName") or data.get("bank_name"),
    )
    return json_ok({"donation": donation.as_dict()})


@bp.post("/<int:donation_id>/checkout")
def start_checkout(donation_id: int):
    purchase_url = checkout.create_whop_checkout(donation_id)
    return json_ok({"purchaseUrl": purchase_url})
