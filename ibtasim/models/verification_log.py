from __future__ import annotations

from typing import Optional

from sqlalchemy.orm import Mapped, mapped_column

from ibtasim.extensions import db
from ibtasim.models.mixins import TimestampMixin


class VerificationLog(db.Model, TimestampMixin):
    __tablename__ = "verification_logs"

    id: Mapped[int] = mapped_column(primary_key=True)
    donation_id: Mapped[int] = mapped_column(
        db.ForeignKey("donations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    admin_id: Mapped[Optional[int]] = mapped_column(
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
        doc="Null when the payment provider made the decision",
    )
    source: Mapped[str] = mapped_column(db.String(20), nullable=False, doc="admin | whop")
    action: Mapped[str] = mapped_column(db.String(10), nullable=False, doc="verify | reject")
    previous_status: Mapped[str] = mapped_column(db.String(32), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(db.Text, nullable=True)
