"""
Inbound provider webhooks
────────────────────────────────────────────────────────────────────────────
• POST /webhooks/whop       → Whop payment events (Svix-signed)
• POST /whatsapp-webhook    → WaSender session status

Both are CSRF-exempt third-party posts answering plain-text bodies. Once a
delivery is authenticated and parsed it is always acknowledged with 200,
even when processing fails: the failure is logged (and, for Whop, kept in
the webhook_events ledger) instead of triggering provider retry storms.
"""

from __future__ import annotations

import hmac
import json

from flask import Blueprint, current_app, request

from ibtasim.errors import InvalidPayload
from ibtasim.extensions import csrf, db
from ibtasim.services import whatsapp, whop_webhooks
from ibtasim.services.signatures import verify_signature
from ibtasim.services.whop_events import parse_event

bp = Blueprint("webhooks", __name__)
csrf.exempt(bp)

SVIX_HEADERS = ("svix-id", "svix-timestamp", "svix-signature")


def _text(body: str, status: int):
    return (body, status, {"Content-Type": "text/plain; charset=utf-8"})


# ─────────────────────────────────────────────────────────────
# Whop
# ─────────────────────────────────────────────────────────────
@bp.post("/webhooks/whop")
def whop_webhook():
    msg_id, timestamp, signature = (request.headers.get(h, "").strip() for h in SVIX_HEADERS)
    if not (msg_id and timestamp and signature):
        current_app.logger.warning("whop webhook: missing signature headers")
        return _text("Missing signature headers", 400)

    raw = request.get_data(cache=False, as_text=False)

    secret = str(current_app.config.get("WHOP_WEBHOOK_SECRET") or "")
    if not secret:
        current_app.logger.error("whop webhook: WHOP_WEBHOOK_SECRET is not configured")
        return _text("Webhook secret not configured", 500)

    if not verify_signature(msg_id, timestamp, raw, secret, signature):
        current_app.logger.warning("whop webhook: invalid signature for delivery %s", msg_id)
        return _text("Invalid signature", 401)

    try:
        payload = json.loads(raw.decode("utf-8"))
        event = parse_event(payload)
    except (ValueError, InvalidPayload):
        current_app.logger.warning("whop webhook: invalid JSON body (delivery %s)", msg_id)
        return _text("Invalid JSON", 400)

    try:
        outcome = whop_webhooks.ingest(msg_id, event, payload)
        current_app.logger.info("whop webhook %s (%s): %s", msg_id, event.tag, outcome)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("whop webhook: processing failed for delivery %s (%s)", msg_id, event.tag)

    return _text("OK", 200)


# ─────────────────────────────────────────────────────────────
# WaSender session status
# ─────────────────────────────────────────────────────────────
def _whatsapp_secret_ok() -> bool:
    expected = str(current_app.config.get("WHATSAPP_WEBHOOK_SECRET") or "")
    if not expected:
        return True
    provided = request.headers.get("X-Webhook-Secret", "")
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


@bp.post("/whatsapp-webhook")
def whatsapp_webhook():
    if not _whatsapp_secret_ok():
        current_app.logger.warning("whatsapp webhook: bad X-Webhook-Secret")
        return _text("Unauthorized", 401)

    try:
        body = json.loads(request.get_data(cache=False, as_text=False).decode("utf-8"))
    except ValueError:
        return _text("Invalid JSON", 400)

    if not isinstance(body, dict):
        return _text("OK", 200)

    data = body.get("data") if isinstance(body.get("data"), dict) else {}
    if body.get("event") == "session.status" and data.get("status") == "connected":
        try:
            whatsapp.mark_session_connected()
            current_app.logger.info("whatsapp session connected")
        except Exception:
            db.session.rollback()
            current_app.logger.exception("whatsapp webhook: failed to record connected session")

    return _text("OK", 200)
