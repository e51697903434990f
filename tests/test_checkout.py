import pytest
from sqlalchemy import select

from ibtasim.errors import ConfigurationError, InvalidTransition, ProviderError
from ibtasim.extensions import db
from ibtasim.models import Donation, Payment
from ibtasim.services import checkout
from tests.conftest import FakeResponse

PURCHASE_URL = "https://whop.com/checkout/plan_abc"


@pytest.fixture()
def whop_api(app):
    app.config.update(WHOP_API_KEY="whop_key", WHOP_PRODUCT_ID="prod_123")


def test_amounts_without_fee_cover(app):
    a = checkout.compute_amounts(10_000, covers_fees=False)
    assert a.total_cents == 10_000
    assert a.processing_fee == 320
    assert a.platform_fee == 0
    assert a.net_amount == 9_680


def test_amounts_with_fee_cover_keep_base_intact(app):
    a = checkout.compute_amounts(10_000, covers_fees=True)
    assert a.total_cents == 10_330
    assert a.processing_fee == 330
    assert a.net_amount == 10_000


def test_platform_fee(app):
    app.config["PLATFORM_FEE_PCT"] = "0.05"
    a = checkout.compute_amounts(10_000, covers_fees=False)
    assert a.platform_fee == 500
    assert a.net_amount == 10_000 - 320 - 500


def test_checkout_creates_session_and_payment(make_donation, whop_api, fake_post):
    poster = fake_post(FakeResponse(200, {"id": "ch_1", "purchase_url": PURCHASE_URL}))
    d = make_donation(status="pending", amount=10_000, covers_fees=True)

    assert checkout.create_whop_checkout(d.id) == PURCHASE_URL

    call = poster.calls[0]
    assert call["url"] == "https://api.whop.com/api/v2/checkout_sessions"
    assert call["headers"]["Authorization"] == "Bearer whop_key"
    assert call["json"]["metadata"] == {"donationId": str(d.id)}
    assert call["json"]["price"]["initial_price"] == 10_330
    assert call["json"]["price"]["currency"] == "mad"
    assert call["json"]["redirect_url"] == "https://ibtasim.test/donate/success"

    assert db.session.get(Donation, d.id).status == "awaiting_verification"
    payment = db.session.execute(select(Payment).where(Payment.donation_id == d.id)).scalar_one()
    assert payment.status == "processing"
    assert payment.checkout_url == PURCHASE_URL
    assert payment.amount == 10_330
    assert payment.net_amount == 10_000


def test_checkout_via_api(client, make_donation, whop_api, fake_post):
    fake_post(FakeResponse(200, {"purchase_url": PURCHASE_URL}))
    d = make_donation(status="pending")

    resp = client.post(f"/donations/{d.id}/checkout")
    assert resp.status_code == 200
    assert resp.get_json() == {"purchaseUrl": PURCHASE_URL, "ok": True}


def test_checkout_only_for_card_donations(make_donation, whop_api):
    d = make_donation(payment_method="bank_transfer", status="awaiting_receipt")
    with pytest.raises(InvalidTransition):
        checkout.create_whop_checkout(d.id)


def test_checkout_refused_once_settled(make_donation, whop_api):
    d = make_donation(status="verified")
    with pytest.raises(InvalidTransition):
        checkout.create_whop_checkout(d.id)


def test_checkout_requires_credentials(make_donation):
    d = make_donation(status="pending")
    with pytest.raises(ConfigurationError):
        checkout.create_whop_checkout(d.id)


@pytest.mark.parametrize(
    "response",
    [FakeResponse(502, {"error": "bad gateway"}), FakeResponse(200, {"id": "ch_1"})],
)
def test_provider_failures(make_donation, whop_api, fake_post, response):
    fake_post(response)
    d = make_donation(status="pending")
    with pytest.raises(ProviderError):
        checkout.create_whop_checkout(d.id)
    assert db.session.get(Donation, d.id).status == "pending"
