# tests/conftest.py
"""
Shared fixtures: an app on TestingConfig (in-memory SQLite, inline
notification delivery, no CSRF), model factories and a signed Whop poster.
"""

from __future__ import annotations

import itertools
import json
import time
from datetime import timedelta
from typing import Any, Dict, List, Optional

import pytest

from ibtasim import create_app
from ibtasim.extensions import db
from ibtasim.models import Donation, Project, User, utcnow
from ibtasim.services.signatures import sign_payload

WHOP_SECRET = "whsec_test_secret"

_seq = itertools.count(1)


@pytest.fixture()
def app():
    app = create_app("ibtasim.config.TestingConfig")
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def runner(app):
    return app.test_cli_runner()


# ----------------------------
# Factories
# ----------------------------
@pytest.fixture()
def make_user(app):
    def _make(**kw: Any) -> User:
        n = next(_seq)
        kw.setdefault("full_name", f"Donor {n}")
        kw.setdefault("phone_number", f"+2126000{n:05d}")
        kw.setdefault("preferred_language", "ar")
        password = kw.pop("password", None)
        user = User(**kw)
        if password:
            user.set_password(password)
        db.session.add(user)
        db.session.commit()
        return user

    return _make


@pytest.fixture()
def make_project(app):
    def _make(**kw: Any) -> Project:
        n = next(_seq)
        kw.setdefault("title", {"ar": f"مشروع {n}", "fr": f"Projet {n}", "en": f"Project {n}"})
        kw.setdefault("description", {})
        kw.setdefault("category", "water")
        kw.setdefault("goal_amount", 100_000)
        kw.setdefault("status", "active")
        project = Project(**kw)
        db.session.add(project)
        db.session.commit()
        return project

    return _make


@pytest.fixture()
def make_donation(app, make_user, make_project):
    def _make(user: Optional[User] = None, project: Optional[Project] = None, **kw: Any) -> Donation:
        user = user or make_user()
        project = project or make_project()
        kw.setdefault("amount", 5_000)
        kw.setdefault("payment_method", "card_provider")
        kw.setdefault("status", "awaiting_verification")
        donation = Donation(user_id=user.id, project_id=project.id, currency="MAD", **kw)
        db.session.add(donation)
        db.session.commit()
        return donation

    return _make


# ----------------------------
# Whop deliveries
# ----------------------------
def whop_payload(event: str, donation_id: Any = None, **data: Any) -> Dict[str, Any]:
    body: Dict[str, Any] = {"id": data.pop("payment_id", "pay_123"), "status": data.pop("status", "paid")}
    if donation_id is not None:
        body["metadata"] = {"donationId": str(donation_id)}
    body.update(data)
    return {"event": event, "data": body}


@pytest.fixture()
def post_whop(client):
    def _post(
        payload: Any = None,
        *,
        raw: Optional[bytes] = None,
        delivery_id: Optional[str] = None,
        secret: str = WHOP_SECRET,
        headers: Optional[Dict[str, str]] = None,
    ):
        body = raw if raw is not None else json.dumps(payload).encode("utf-8")
        msg_id = delivery_id or f"msg_{next(_seq)}"
        ts = str(int(time.time()))
        h = {
            "svix-id": msg_id,
            "svix-timestamp": ts,
            "svix-signature": sign_payload(msg_id, ts, body, secret),
            "Content-Type": "application/json",
        }
        if headers is not None:
            h = headers
        return client.post("/webhooks/whop", data=body, headers=h)

    return _post


# ----------------------------
# Outbound HTTP fakes
# ----------------------------
class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, text: str = ""):
        self.status_code = status_code
        self._payload = payload if payload is not None else {"success": True}
        self.text = text or json.dumps(self._payload)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 400

    def json(self) -> Any:
        return self._payload

    def raise_for_status(self) -> None:
        if not self.ok:
            import requests

            raise requests.HTTPError(f"{self.status_code} error", response=self)


class FakePoster:
    """Stands in for requests.post; replays queued responses in order."""

    def __init__(self, *responses: FakeResponse):
        self.responses: List[FakeResponse] = list(responses)
        self.calls: List[Dict[str, Any]] = []

    def __call__(self, url: str, **kw: Any) -> FakeResponse:
        self.calls.append({"url": url, **kw})
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0] if self.responses else FakeResponse()


@pytest.fixture()
def fake_post(monkeypatch):
    def _install(*responses: FakeResponse) -> FakePoster:
        poster = FakePoster(*responses)
        monkeypatch.setattr("requests.post", poster)
        return poster

    return _install


@pytest.fixture()
def wasender(app, fake_post):
    """WhatsApp delivery that succeeds, with every send recorded."""
    app.config["WASENDER_API_TOKEN"] = "wa_test_token"
    return fake_post(FakeResponse(200, {"success": True, "data": {"msgId": 1}}))


def days_from_now(days: float):
    return utcnow() + timedelta(days=days)
