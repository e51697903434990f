from __future__ import annotations

# -----------------------------------------------------------------------------
# Donation Model
# Cents-based pledge tied to exactly one project. Status is moved only by
# ibtasim.services.donations; terminal statuses are never left automatically.
# -----------------------------------------------------------------------------
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, Optional

from sqlalchemy import CheckConstraint, Index, event, inspect as sa_inspect
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ibtasim.extensions import db

from .mixins import TimestampMixin, iso

if TYPE_CHECKING:  # pragma: no cover
    from .project import Project
    from .user import User

PAYMENT_METHODS = ("bank_transfer", "card_provider", "cash_agency")

DONATION_STATUSES = (
    "pending",
    "awaiting_receipt",
    "awaiting_verification",
    "verified",
    "rejected",
    "completed",
)
TERMINAL_STATUSES = frozenset({"verified", "rejected", "completed"})
NON_TERMINAL_STATUSES = tuple(s for s in DONATION_STATUSES if s not in TERMINAL_STATUSES)
# Statuses that count toward a project's raised amount
COUNTED_STATUSES = ("verified", "completed")


class Donation(db.Model, TimestampMixin):
    __tablename__ = "donations"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_donations_amount_positive"),
        Index("ix_donations_status_created", "status", "created_at"),
        Index("ix_donations_project_status", "project_id", "status"),
    )

    # ---- Identifiers ----
    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(
        db.ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    user: Mapped["User"] = relationship("User", back_populates="donations", foreign_keys=[user_id])
    project_id: Mapped[int] = mapped_column(
        db.ForeignKey("projects.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
        doc="Target project (immutable after creation)",
    )
    project: Mapped["Project"] = relationship("Project", lazy="joined")

    # ---- Financials (cents) ----
    amount: Mapped[int] = mapped_column(db.Integer, nullable=False, doc="Donation amount in cents")
    currency: Mapped[str] = mapped_column(db.String(3), nullable=False, default="MAD")
    covers_fees: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    payment_method: Mapped[str] = mapped_column(db.String(20), nullable=False, index=True)

    # ---- Workflow ----
    status: Mapped[str] = mapped_column(db.String(32), nullable=False, default="pending", index=True)
    verified_by_id: Mapped[Optional[int]] = mapped_column(
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        doc="Admin who verified/rejected (null when the provider decided)",
    )
    verified_by: Mapped[Optional["User"]] = relationship("User", foreign_keys=[verified_by_id])
    verification_source: Mapped[Optional[str]] = mapped_column(
        db.String(20),
        nullable=True,
        doc="admin | whop",
    )
    verified_at: Mapped[Optional[datetime]] = mapped_column(db.DateTime, nullable=True)
    verification_notes: Mapped[Optional[str]] = mapped_column(db.Text, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(db.DateTime, nullable=True)

    # ---- Provider linkage (card_provider only) ----
    provider_payment_id: Mapped[Optional[str]] = mapped_column(
        db.String(120),
        nullable=True,
        index=True,
        doc="Whop payment id",
    )
    provider_status: Mapped[Optional[str]] = mapped_column(
        db.String(40),
        nullable=True,
        doc="completed / failed / refunded as last reported by the provider",
    )

    # ---- Bank transfer ----
    receipt_url: Mapped[Optional[str]] = mapped_column(db.String(500), nullable=True)
    receipt_uploaded_at: Mapped[Optional[datetime]] = mapped_column(db.DateTime, nullable=True)
    bank_name: Mapped[Optional[str]] = mapped_column(db.String(120), nullable=True)
    transaction_reference: Mapped[Optional[str]] = mapped_column(db.String(120), nullable=True)

    # ---- Donor extras ----
    is_anonymous: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    message: Mapped[Optional[str]] = mapped_column(db.String(500), nullable=True)

    # ==========================================================
    # Computed Properties
    # ==========================================================
    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_card(self) -> bool:
        return self.payment_method == "card_provider"

    # ==========================================================
    # Serialization
    # ==========================================================
    def as_dict(self, include_donor: bool = False) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "userId": self.user_id,
            "projectId": self.project_id,
            "amount": int(self.amount or 0),
            "currency": self.currency,
            "coversFees": bool(self.covers_fees),
            "paymentMethod": self.payment_method,
            "status": self.status,
            "verificationSource": self.verification_source,
            "verifiedAt": iso(self.verified_at),
            "verificationNotes": self.verification_notes,
            "providerPaymentId": self.provider_payment_id,
            "providerStatus": self.provider_status,
            "receiptUrl": self.receipt_url,
            "transactionReference": self.transaction_reference,
            "isAnonymous": bool(self.is_anonymous),
            "message": self.message,
            "createdAt": iso(self.created_at),
            "updatedAt": iso(self.updated_at),
        }
        if include_donor and self.user is not None:
            data["donor"] = {
                "id": self.user.id,
                "fullName": self.user.full_name,
                "phoneNumber": self.user.phone_number,
                "email": self.user.email,
            }
        return data

    def __repr__(self) -> str:  # pragma: no cover
        return f"<Donation {self.id} {self.status} {self.amount} {self.currency}>"


# ──────────────────────────────────────────────────────────────────────────────
# Event Hooks: project_id is write-once
# ──────────────────────────────────────────────────────────────────────────────
@event.listens_for(Donation, "before_update")
def _donation_project_immutable(mapper, connection, target: Donation) -> None:
    hist = sa_inspect(target).attrs.project_id.history
    if hist.deleted and hist.deleted[0] is not None and hist.added and hist.added[0] != hist.deleted[0]:
        raise ValueError("Donation.project_id is immutable")
