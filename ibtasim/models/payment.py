from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import CheckConstraint
from sqlalchemy.ext.mutable import MutableList
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ibtasim.extensions import db
from ibtasim.models.mixins import TimestampMixin, iso

PAYMENT_STATUSES = ("pending", "processing", "completed", "failed", "refunded")


class Payment(db.Model, TimestampMixin):
    """
    Provider-side record of a card donation.

    One row per donation; the donation's own status stays the source of truth
    for the verification workflow, this row mirrors what Whop reported.
    """

    __tablename__ = "payments"
    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_payments_amount_nonneg"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    donation_id: Mapped[int] = mapped_column(
        db.ForeignKey("donations.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
        index=True,
    )
    donation = relationship("Donation", lazy="joined")
    user_id: Mapped[int] = mapped_column(db.ForeignKey("users.id"), nullable=False, index=True)

    provider_payment_id: Mapped[Optional[str]] = mapped_column(
        db.String(120),
        nullable=True,
        index=True,
        doc="Whop payment id (filled by the first webhook)",
    )
    provider_product_id: Mapped[Optional[str]] = mapped_column(db.String(120), nullable=True)
    checkout_url: Mapped[Optional[str]] = mapped_column(db.String(500), nullable=True)

    # ---- Amount breakdown (cents) ----
    amount: Mapped[int] = mapped_column(db.Integer, nullable=False, doc="Total charged, cents")
    platform_fee: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    processing_fee: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    net_amount: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(db.String(3), nullable=False, default="MAD")

    status: Mapped[str] = mapped_column(db.String(20), nullable=False, default="pending", index=True)
    initiated_at: Mapped[Optional[datetime]] = mapped_column(db.DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(db.DateTime, nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(db.DateTime, nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(db.String(500), nullable=True)
    refund_reason: Mapped[Optional[str]] = mapped_column(db.String(500), nullable=True)

    last_webhook_at: Mapped[Optional[datetime]] = mapped_column(db.DateTime, nullable=True)
    webhook_events: Mapped[List[str]] = mapped_column(
        MutableList.as_mutable(db.JSON),
        nullable=False,
        default=list,
        doc="Event tags received for this payment, in arrival order",
    )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "donationId": self.donation_id,
            "providerPaymentId": self.provider_payment_id,
            "amount": int(self.amount or 0),
            "platformFee": int(self.platform_fee or 0),
            "processingFee": int(self.processing_fee or 0),
            "netAmount": int(self.net_amount or 0),
            "status": self.status,
            "initiatedAt": iso(self.initiated_at),
            "completedAt": iso(self.completed_at),
            "failedAt": iso(self.failed_at),
            "failureReason": self.failure_reason,
            "refundReason": self.refund_reason,
            "webhookEvents": list(self.webhook_events or []),
        }
