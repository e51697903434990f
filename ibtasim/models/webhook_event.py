from __future__ import annotations

from typing import Any, Dict, Optional

from sqlalchemy import Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ibtasim.extensions import db
from ibtasim.models.mixins import TimestampMixin

WEBHOOK_EVENT_STATUSES = ("received", "processed", "ignored", "failed")


class WebhookEvent(db.Model, TimestampMixin):
    __tablename__ = "webhook_events"
    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_webhook_events_provider_event"),
        Index("ix_webhook_events_type_created", "type", "created_at"),
        Index("ix_webhook_events_status_created", "status", "created_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    provider: Mapped[str] = mapped_column(db.String(20), nullable=False, default="whop")
    event_id: Mapped[str] = mapped_column(
        db.String(120),
        nullable=False,
        index=True,
        doc="Delivery id (svix-id header)",
    )
    type: Mapped[str] = mapped_column(
        db.String(120),
        nullable=False,
        default="",
        doc="Provider event tag (payment.succeeded, etc)",
    )
    donation_ref: Mapped[Optional[str]] = mapped_column(
        db.String(64),
        nullable=True,
        index=True,
        doc="data.metadata.donationId as delivered",
    )
    payload: Mapped[Optional[Dict[str, Any]]] = mapped_column(db.JSON, nullable=True)

    status: Mapped[str] = mapped_column(db.String(16), nullable=False, default="received", index=True)
    error: Mapped[Optional[str]] = mapped_column(
        db.Text,
        nullable=True,
        doc="Failure detail when processing raised (dead-letter record)",
    )
