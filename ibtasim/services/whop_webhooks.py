"""
Whop webhook ingestion (after the signature check passed).

Every delivery is recorded in ``webhook_events`` keyed by its svix-id before
any state is touched:

  • a redelivery of an already processed/ignored id is acknowledged as-is
  • processing failures leave the row in status=failed with the error text,
    which is the dead-letter record ops replays from
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from ibtasim.extensions import db, retry_on_db_lock, safe_commit
from ibtasim.models import WebhookEvent
from ibtasim.services import notifications
from ibtasim.services.donations import apply_verification, get_donation, record_provider_event
from ibtasim.services.whop_events import (
    PaymentFailed,
    PaymentRefunded,
    PaymentSucceeded,
    UnrecognizedEvent,
    WhopEvent,
)

log = logging.getLogger(__name__)

PROVIDER = "whop"

# ingest() outcomes
PROCESSED = "processed"
IGNORED = "ignored"
DUPLICATE = "duplicate"

# webhook_events.event_id column width
EVENT_ID_MAX = 120


def _find_event_row(delivery_id: str) -> Optional[WebhookEvent]:
    return db.session.execute(
        select(WebhookEvent).where(WebhookEvent.provider == PROVIDER, WebhookEvent.event_id == delivery_id)
    ).scalar_one_or_none()


def _store_event(delivery_id: str, event: WhopEvent, payload: Dict[str, Any]) -> Optional[WebhookEvent]:
    """Insert the ledger row; None when this delivery id was already handled."""

    def _insert() -> WebhookEvent:
        row = WebhookEvent(
            provider=PROVIDER,
            event_id=delivery_id,
            type=(event.tag or "")[:120],
            donation_ref=str(event.donation_ref)[:64] if event.donation_ref else None,
            payload=payload,
            status="received",
        )
        db.session.add(row)
        db.session.commit()
        return row

    try:
        return retry_on_db_lock(_insert)
    except IntegrityError:
        db.session.rollback()

    existing = _find_event_row(delivery_id)
    if existing is None or existing.status in (PROCESSED, IGNORED):
        return None
    # received (crashed mid-flight) or failed: process again, transitions are idempotent
    log.info("whop delivery %s previously %s; reprocessing", delivery_id, existing.status)
    return existing


def _finish(row: WebhookEvent, status: str, error: Optional[str] = None) -> None:
    row.status = status
    row.error = error


def ingest(delivery_id: str, event: WhopEvent, payload: Dict[str, Any]) -> str:
    """
    Apply one verified Whop delivery. Raises on processing errors after the
    failure was recorded; the route turns that into a 200.
    """
    delivery_id = delivery_id[:EVENT_ID_MAX]
    row = _store_event(delivery_id, event, payload)
    if row is None:
        log.info("whop delivery %s already handled; acknowledging", delivery_id)
        return DUPLICATE
    row_id = row.id

    try:
        outcome = _process(row, event)
    except Exception as exc:
        db.session.rollback()
        failed = db.session.get(WebhookEvent, row_id)
        if failed is not None:
            _finish(failed, "failed", f"{type(exc).__name__}: {exc}"[:2000])
            safe_commit()
        raise
    return outcome


def _process(row: WebhookEvent, event: WhopEvent) -> str:
    if not event.donation_ref:
        log.warning("whop %s without data.metadata.donationId (delivery %s); ignoring", event.tag, row.event_id)
        _finish(row, IGNORED, "missing donationId")
        db.session.commit()
        return IGNORED

    if isinstance(event, UnrecognizedEvent):
        log.info("Unhandled Whop event: %s", event.tag or "<empty>")
        _finish(row, IGNORED, f"unhandled event {event.tag!r}")
        db.session.commit()
        return IGNORED

    donation = get_donation(event.donation_ref)
    if not donation.is_card:
        log.warning(
            "whop %s for donation %s paid by %s; provider events only apply to card donations",
            event.tag,
            donation.id,
            donation.payment_method,
        )
        _finish(row, IGNORED, f"payment method {donation.payment_method}")
        db.session.commit()
        return IGNORED

    record_provider_event(donation, event)

    verified = isinstance(event, PaymentSucceeded)
    note = f"Whop {event.tag}: payment {event.payment_id or '?'}"
    if isinstance(event, (PaymentFailed, PaymentRefunded)) and event.reason:
        note = f"{note} ({event.reason})"

    result = apply_verification(donation.id, verified, note, source="whop", commit=False)

    if not result.changed and result.previous_status in ("verified", "completed") and not verified:
        log.warning(
            "donation %s is %s but Whop reports %s; raised amount left unchanged, reconcile manually",
            donation.id,
            result.previous_status,
            event.tag,
        )
    elif not result.changed and result.previous_status == "rejected" and verified:
        log.warning("donation %s was rejected but Whop reports success; needs review", donation.id)

    _finish(row, PROCESSED)
    db.session.commit()
    notifications.schedule_dispatch(result.notification_ids)
    return PROCESSED


__all__ = ["ingest", "PROCESSED", "IGNORED", "DUPLICATE"]
