"""
Outbound donor notifications (WhatsApp first, email fallback).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ibtasim.extensions import db
from ibtasim.models.mixins import TimestampMixin, iso

NOTIFICATION_TYPES = (
    "donation_received",
    "donation_verified",
    "donation_rejected",
    "project_funded",
    "receipt_reminder",
    "project_closing_soon",
    "announcement",
)
NOTIFICATION_CHANNELS = ("whatsapp", "email")
NOTIFICATION_STATUSES = ("pending", "sent", "delivered", "failed")


class Notification(db.Model, TimestampMixin):
    __tablename__ = "notifications"
    __table_args__ = (
        # one status-change notification per donation; NULL donation_id rows
        # (project broadcasts) are not constrained
        UniqueConstraint("donation_id", "type", name="uq_notifications_donation_type"),
        Index("ix_notifications_status_created", "status", "created_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(
        db.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user = relationship("User", lazy="joined")
    donation_id: Mapped[Optional[int]] = mapped_column(
        db.ForeignKey("donations.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    project_id: Mapped[Optional[int]] = mapped_column(
        db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )

    type: Mapped[str] = mapped_column(db.String(32), nullable=False, index=True)
    channel: Mapped[str] = mapped_column(db.String(16), nullable=False, default="whatsapp")
    status: Mapped[str] = mapped_column(db.String(16), nullable=False, default="pending")
    content: Mapped[Dict[str, str]] = mapped_column(db.JSON, nullable=False, doc="{ar, fr, en}")

    recipient: Mapped[Optional[str]] = mapped_column(db.String(255), nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(db.DateTime, nullable=True)
    attempts: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(db.String(500), nullable=True)

    def text_for(self, lang: str) -> str:
        c = self.content or {}
        return c.get(lang) or c.get("ar") or c.get("fr") or c.get("en") or ""

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "donationId": self.donation_id,
            "projectId": self.project_id,
            "type": self.type,
            "channel": self.channel,
            "status": self.status,
            "sentAt": iso(self.sent_at),
            "errorMessage": self.error_message,
        }
