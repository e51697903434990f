import json

import pytest
import requests
from sqlalchemy import select

from ibtasim.errors import NotFound, ValidationError
from ibtasim.extensions import db, mail
from ibtasim.models import Notification
from ibtasim.services import config_store, donations, notifications
from ibtasim.services.config_store import WHATSAPP_SETTINGS_KEY
from tests.conftest import FakeResponse, days_from_now


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("+212 600-123 456", "+212600123456"),
        ("212600123456", "+212600123456"),
        ("(+33) 6 12 34 56 78", "+33612345678"),
    ],
)
def test_format_phone_number(raw, expected):
    assert notifications.format_phone_number(raw) == expected


def test_build_content_renders_every_language(make_project):
    project = make_project(title={"ar": "بئر", "fr": "Puits", "en": "Well"})
    content = notifications.build_content("project_closing_soon", project=project, days=3)

    assert set(content) == {"ar", "fr", "en"}
    assert "Puits" in content["fr"] and "3" in content["fr"]
    assert "Well" in content["en"]
    assert "بئر" in content["ar"]


# ----------------------------
# WaSender client
# ----------------------------
def test_send_without_token_fails_fast(app, fake_post):
    poster = fake_post()
    result = notifications.send_whatsapp_message("+212600000001", "hi")
    assert result.success is False
    assert result.error == "WaSender API token not configured"
    assert poster.calls == []


def test_send_posts_bearer_request(app, wasender):
    result = notifications.send_whatsapp_message("212 600 000 001", "salam")
    assert result.success is True

    call = wasender.calls[0]
    assert call["url"] == "https://www.wasenderapi.com/api/send-message"
    assert call["headers"]["Authorization"] == "Bearer wa_test_token"
    assert call["json"] == {"to": "+212600000001", "text": "salam"}


def test_rate_limit_is_retried(app, fake_post):
    app.config["WASENDER_API_TOKEN"] = "tok"
    poster = fake_post(FakeResponse(429), FakeResponse(429), FakeResponse(200))
    result = notifications.send_whatsapp_message("+212600000001", "hi")
    assert result.success is True
    assert len(poster.calls) == 3


def test_rate_limit_gives_up_after_max_retries(app, fake_post):
    app.config["WASENDER_API_TOKEN"] = "tok"
    app.config["WASENDER_MAX_RETRIES"] = 2
    poster = fake_post(FakeResponse(429))
    result = notifications.send_whatsapp_message("+212600000001", "hi")
    assert result.success is False
    assert result.error == "Rate limit exceeded. Max retries reached."
    assert len(poster.calls) == 3


def test_api_error_is_reported(app, fake_post):
    app.config["WASENDER_API_TOKEN"] = "tok"
    fake_post(FakeResponse(500, {"message": "boom"}))
    result = notifications.send_whatsapp_message("+212600000001", "hi")
    assert result.success is False
    assert result.error.startswith("API Error (500)")


def test_network_error_is_reported(app, monkeypatch):
    app.config["WASENDER_API_TOKEN"] = "tok"

    def _down(*a, **k):
        raise requests.ConnectionError("connection refused")

    monkeypatch.setattr("requests.post", _down)
    result = notifications.send_whatsapp_message("+212600000001", "hi")
    assert result.success is False
    assert "connection refused" in result.error


def test_session_api_key_overrides_env_token(app, wasender):
    config_store.set_config(WHATSAPP_SETTINGS_KEY, json.dumps({"apiKey": "session_key"}))
    notifications.send_whatsapp_message("+212600000001", "hi")
    assert wasender.calls[0]["headers"]["Authorization"] == "Bearer session_key"


# ----------------------------
# Channels + outcome bookkeeping
# ----------------------------
def test_donor_without_phone_gets_email(make_user, make_donation):
    user = make_user(phone_number=None, email="donor@example.org", preferred_language="fr")
    d = make_donation(user=user, amount=2_500)

    with mail.record_messages() as outbox:
        donations.apply_verification(d.id, True)

    n = db.session.execute(select(Notification).where(Notification.donation_id == d.id)).scalar_one()
    assert n.channel == "email"
    assert n.recipient == "donor@example.org"
    assert n.status == "sent"
    assert n.attempts == 1
    assert len(outbox) == 1
    assert outbox[0].recipients == ["donor@example.org"]
    assert "25.00" in outbox[0].body


def test_failed_delivery_is_recorded(make_donation):
    d = make_donation()
    donations.apply_verification(d.id, False)

    n = db.session.execute(select(Notification).where(Notification.donation_id == d.id)).scalar_one()
    assert n.status == "failed"
    assert n.error_message == "WaSender API token not configured"
    assert n.attempts == 1


def test_dispatch_skips_already_sent(make_donation, wasender):
    d = make_donation()
    result = donations.apply_verification(d.id, True)
    assert notifications.dispatch(result.notification_ids) == {"sent": 0, "failed": 0}
    assert len(wasender.calls) == 1


# ----------------------------
# Closing-soon broadcast
# ----------------------------
def test_closing_soon_reaches_verified_donors_once_a_day(make_user, make_project, wasender):
    closing = make_project(end_date=days_from_now(3))
    make_project(end_date=days_from_now(30))
    make_project(end_date=days_from_now(2), status="funded")

    make_user(is_verified=True)
    make_user(is_verified=True, preferred_language="en")
    make_user(is_verified=False)
    make_user(is_verified=True, notifications_enabled=False)
    make_user(is_verified=True, phone_number=None, email="no-phone@example.org")

    first = notifications.broadcast_closing_soon(days=7)
    assert first == {"projects": 1, "sent": 2, "failed": 0}
    assert len(wasender.calls) == 2
    assert any("closes in 3 days" in c["json"]["text"] for c in wasender.calls)

    rows = db.session.execute(select(Notification).where(Notification.project_id == closing.id)).scalars().all()
    assert {n.type for n in rows} == {"project_closing_soon"}

    again = notifications.broadcast_closing_soon(days=7)
    assert again == {"projects": 1, "sent": 0, "failed": 0}
    assert len(wasender.calls) == 2


def test_closing_soon_without_projects(app):
    assert notifications.broadcast_closing_soon() == {"projects": 0, "sent": 0, "failed": 0}


def test_donation_templates_follow_donation_currency(make_donation):
    d = make_donation(amount=1_000)
    d.currency = "EUR"
    db.session.commit()

    for ntype in ("donation_received", "donation_verified", "donation_rejected", "receipt_reminder"):
        content = notifications.content_for_donation(ntype, d)
        assert all("10.00 EUR" in text for text in content.values()), ntype
        assert "درهم" not in content["ar"]


# ----------------------------
# Project funded
# ----------------------------
def test_crossing_goal_tells_every_counted_donor_once(make_project, make_donation, wasender):
    project = make_project(goal_amount=10_000, raised_amount=6_000)
    earlier = make_donation(project=project, amount=6_000, status="verified")
    make_donation(project=project, amount=3_000, status="rejected")
    last = make_donation(project=project, amount=4_000)

    result = donations.apply_verification(last.id, True)
    assert len(result.notification_ids) == 3

    funded = db.session.execute(select(Notification).where(Notification.type == "project_funded")).scalars().all()
    assert {n.user_id for n in funded} == {earlier.user_id, last.user_id}
    assert {n.project_id for n in funded} == {project.id}
    assert all(n.status == "sent" for n in funded)
    assert sum("بلغ هدفه" in c["json"]["text"] for c in wasender.calls) == 2

    extra = make_donation(project=project, amount=1_000)
    donations.apply_verification(extra.id, True)
    assert len(db.session.execute(select(Notification).where(Notification.type == "project_funded")).all()) == 2


# ----------------------------
# Receipt reminders
# ----------------------------
def test_stale_bank_transfers_are_reminded_once(make_donation, wasender):
    stale = make_donation(payment_method="bank_transfer", status="awaiting_receipt", created_at=days_from_now(-3))
    make_donation(payment_method="bank_transfer", status="awaiting_receipt")
    make_donation(payment_method="bank_transfer", status="awaiting_verification", created_at=days_from_now(-3))

    first = notifications.remind_pending_receipts(hours=48)
    assert first == {"donations": 1, "sent": 1, "failed": 0}
    assert wasender.calls[0]["json"]["to"] == stale.user.phone_number

    again = notifications.remind_pending_receipts(hours=48)
    assert again == {"donations": 1, "sent": 0, "failed": 0}
    assert len(wasender.calls) == 1


# ----------------------------
# Announcements
# ----------------------------
def test_broadcast_reports_each_failure(app, make_user, make_project, fake_post):
    app.config["WASENDER_API_TOKEN"] = "tok"
    poster = fake_post(
        FakeResponse(200, {"success": True}),
        FakeResponse(500, {"message": "boom"}),
        FakeResponse(200, {"success": True}),
    )
    project = make_project()
    make_user(is_verified=True)
    second = make_user(is_verified=True)
    make_user(is_verified=True)
    make_user(is_verified=False)
    make_user(is_verified=True, notifications_enabled=False)
    make_user(is_verified=True, phone_number=None, email="no-phone@example.org")

    result = notifications.broadcast("  Ramadan campaign starts tomorrow  ", project_id=project.id)

    assert (result["total"], result["successful"], result["failed"]) == (3, 2, 1)
    (error,) = result["errors"]
    assert error.startswith(f"Failed to send to {second.phone_number}: API Error (500)")
    assert [c["json"]["text"] for c in poster.calls] == ["Ramadan campaign starts tomorrow"] * 3

    rows = db.session.execute(select(Notification).where(Notification.type == "announcement")).scalars().all()
    assert {n.project_id for n in rows} == {project.id}


def test_broadcast_validates_input(app):
    with pytest.raises(ValidationError):
        notifications.broadcast("   ")
    with pytest.raises(NotFound):
        notifications.broadcast("hello", project_id=4040)
