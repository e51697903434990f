import logging

import pytest
from sqlalchemy import select

from ibtasim.extensions import db
from ibtasim.models import Donation, Payment, Project, WebhookEvent
from ibtasim.services import whop_webhooks
from tests.conftest import whop_payload


def _ledger(delivery_id):
    return db.session.execute(select(WebhookEvent).where(WebhookEvent.event_id == delivery_id)).scalar_one()


def _payment(donation_id):
    return db.session.execute(select(Payment).where(Payment.donation_id == donation_id)).scalar_one_or_none()


# ----------------------------
# Authentication + parsing
# ----------------------------
@pytest.mark.parametrize("missing", ["svix-id", "svix-timestamp", "svix-signature"])
def test_missing_svix_header_is_400(post_whop, missing):
    headers = {"svix-id": "msg_1", "svix-timestamp": "1714000000", "svix-signature": "v1,abc"}
    headers.pop(missing)
    resp = post_whop(whop_payload("payment.succeeded", 1), headers=headers)
    assert resp.status_code == 400


def test_unset_secret_is_500_even_when_signed(app, post_whop, make_donation):
    d = make_donation()
    app.config["WHOP_WEBHOOK_SECRET"] = None
    resp = post_whop(whop_payload("payment.succeeded", d.id))
    assert resp.status_code == 500
    assert db.session.get(Donation, d.id).status == "awaiting_verification"


def test_bad_signature_is_401(post_whop, make_donation):
    d = make_donation()
    resp = post_whop(whop_payload("payment.succeeded", d.id), secret="whsec_forged")
    assert resp.status_code == 401
    assert db.session.get(Donation, d.id).status == "awaiting_verification"
    assert db.session.execute(select(WebhookEvent)).first() is None


@pytest.mark.parametrize("raw", [b"not json", b"{\"event\": ", b"[1, 2, 3]", b"\xff\xfe"])
def test_invalid_json_is_400(post_whop, raw):
    assert post_whop(raw=raw).status_code == 400


# ----------------------------
# Event handling
# ----------------------------
def test_succeeded_verifies_card_donation(post_whop, make_donation):
    d = make_donation(amount=20_000)
    resp = post_whop(whop_payload("payment.succeeded", d.id, payment_id="pay_ok"), delivery_id="msg_ok")

    assert resp.status_code == 200
    assert resp.get_data(as_text=True) == "OK"

    donation = db.session.get(Donation, d.id)
    assert donation.status == "verified"
    assert donation.verification_source == "whop"
    assert donation.verified_by_id is None
    assert donation.provider_payment_id == "pay_ok"
    assert donation.provider_status == "completed"
    assert db.session.get(Project, d.project_id).raised_amount == 20_000

    payment = _payment(d.id)
    assert payment.status == "completed"
    assert payment.webhook_events == ["payment.succeeded"]
    assert _ledger("msg_ok").status == "processed"


def test_redelivery_is_acknowledged_without_double_counting(post_whop, make_donation):
    d = make_donation(amount=3_000)
    payload = whop_payload("payment.succeeded", d.id)

    assert post_whop(payload, delivery_id="msg_dup").status_code == 200
    assert post_whop(payload, delivery_id="msg_dup").status_code == 200
    # same event under a fresh delivery id
    assert post_whop(payload, delivery_id="msg_dup_2").status_code == 200

    assert db.session.get(Project, d.project_id).raised_amount == 3_000
    assert len(db.session.execute(select(WebhookEvent)).all()) == 2


def test_failed_payment_rejects(post_whop, make_donation):
    d = make_donation()
    post_whop(whop_payload("payment.failed", d.id, failure_message="insufficient funds"))

    donation = db.session.get(Donation, d.id)
    assert donation.status == "rejected"
    assert "insufficient funds" in donation.verification_notes
    payment = _payment(d.id)
    assert payment.status == "failed"
    assert payment.failure_reason == "insufficient funds"


def test_refund_of_pending_donation_rejects(post_whop, make_donation):
    d = make_donation()
    post_whop(whop_payload("payment.refunded", d.id))
    assert db.session.get(Donation, d.id).status == "rejected"


def test_refund_after_verification_is_recorded_but_not_applied(post_whop, make_donation, caplog):
    caplog.set_level(logging.WARNING)
    d = make_donation(amount=8_000)
    post_whop(whop_payload("payment.succeeded", d.id))
    resp = post_whop(whop_payload("payment.refunded", d.id, refund_reason="duplicate"))

    assert resp.status_code == 200
    donation = db.session.get(Donation, d.id)
    assert donation.status == "verified"
    assert donation.provider_status == "refunded"
    assert db.session.get(Project, d.project_id).raised_amount == 8_000

    payment = _payment(d.id)
    assert payment.status == "refunded"
    assert payment.refund_reason == "duplicate"
    assert payment.webhook_events == ["payment.succeeded", "payment.refunded"]
    assert "reconcile manually" in caplog.text


def test_missing_donation_id_is_ignored(post_whop):
    resp = post_whop(whop_payload("payment.succeeded"), delivery_id="msg_nometa")
    assert resp.status_code == 200
    row = _ledger("msg_nometa")
    assert row.status == "ignored"
    assert row.donation_ref is None


def test_unhandled_event_is_logged(post_whop, make_donation, caplog):
    caplog.set_level(logging.INFO)
    d = make_donation()
    resp = post_whop(whop_payload("membership.went_valid", d.id), delivery_id="msg_other")

    assert resp.status_code == 200
    assert "Unhandled Whop event: membership.went_valid" in caplog.text
    assert _ledger("msg_other").status == "ignored"
    assert db.session.get(Donation, d.id).status == "awaiting_verification"


def test_non_card_donation_is_ignored(post_whop, make_donation):
    d = make_donation(payment_method="bank_transfer")
    resp = post_whop(whop_payload("payment.succeeded", d.id), delivery_id="msg_bank")

    assert resp.status_code == 200
    assert db.session.get(Donation, d.id).status == "awaiting_verification"
    assert _ledger("msg_bank").status == "ignored"


def test_unknown_donation_is_swallowed_and_dead_lettered(post_whop):
    resp = post_whop(whop_payload("payment.succeeded", 424242), delivery_id="msg_ghost")

    assert resp.status_code == 200
    row = _ledger("msg_ghost")
    assert row.status == "failed"
    assert "DonationNotFound" in row.error


def test_processing_error_is_swallowed_then_replayable(post_whop, make_donation, monkeypatch):
    d = make_donation(amount=1_500)
    payload = whop_payload("payment.succeeded", d.id)

    def _boom(*args, **kwargs):
        raise RuntimeError("db went away")

    monkeypatch.setattr(whop_webhooks, "apply_verification", _boom)
    resp = post_whop(payload, delivery_id="msg_flaky")

    assert resp.status_code == 200
    row = _ledger("msg_flaky")
    assert row.status == "failed"
    assert "RuntimeError: db went away" in row.error
    assert db.session.get(Donation, d.id).status == "awaiting_verification"
    assert _payment(d.id) is None

    monkeypatch.undo()
    assert post_whop(payload, delivery_id="msg_flaky").status_code == 200
    assert _ledger("msg_flaky").status == "processed"
    assert db.session.get(Donation, d.id).status == "verified"
    assert db.session.get(Project, d.project_id).raised_amount == 1_500


def test_long_delivery_id_failure_is_still_replayable(post_whop, make_donation, monkeypatch):
    d = make_donation(amount=2_000)
    payload = whop_payload("payment.succeeded", d.id)
    delivery_id = "msg_" + "x" * 150

    def _boom(*args, **kwargs):
        raise RuntimeError("db went away")

    with monkeypatch.context() as m:
        m.setattr(whop_webhooks, "apply_verification", _boom)
        assert post_whop(payload, delivery_id=delivery_id).status_code == 200

    row = _ledger(delivery_id[: whop_webhooks.EVENT_ID_MAX])
    assert row.status == "failed"

    assert post_whop(payload, delivery_id=delivery_id).status_code == 200
    assert _ledger(delivery_id[: whop_webhooks.EVENT_ID_MAX]).status == "processed"
    assert db.session.get(Donation, d.id).status == "verified"
