from __future__ import annotations

"""
User model: donors and back-office admins share one table.
"""
from typing import Any, Dict

from flask_login import UserMixin
from sqlalchemy import CheckConstraint
from werkzeug.security import check_password_hash, generate_password_hash

from ibtasim.extensions import db

from .mixins import TimestampMixin, iso

LANGUAGES = ("ar", "fr", "en")


class User(db.Model, UserMixin, TimestampMixin):
    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("total_donated >= 0", name="ck_users_total_donated_nonneg"),
        CheckConstraint("preferred_language IN ('ar','fr','en')", name="ck_users_language"),
    )

    # ── Identity ────────────────────────────────────────────────
    id = db.Column(db.Integer, primary_key=True)
    full_name = db.Column(db.String(160), nullable=False)
    email = db.Column(
        db.String(255),
        unique=True,
        nullable=True,
        index=True,
        doc="Email address (optional for WhatsApp-only donors)",
    )
    phone_number = db.Column(
        db.String(32),
        unique=True,
        nullable=True,
        index=True,
        doc="E.164 phone number used for WhatsApp notifications",
    )
    preferred_language = db.Column(db.String(2), nullable=False, default="ar")
    notifications_enabled = db.Column(db.Boolean, nullable=False, default=True)
    is_verified = db.Column(db.Boolean, nullable=False, default=False)

    # ── Auth ────────────────────────────────────────────────────
    password_hash = db.Column(
        db.String(255),
        nullable=True,
        doc="Hashed password (admins only; donors log in with OTP)",
    )
    is_admin = db.Column(db.Boolean, default=False, nullable=False, doc="Admin user flag")
    is_active = db.Column(db.Boolean, default=True, nullable=False, doc="Account enabled/disabled")
    last_login_at = db.Column(db.DateTime, nullable=True)

    # ── Aggregates (maintained by the verification workflow) ────
    total_donated = db.Column(db.Integer, nullable=False, default=0, doc="Verified donations, cents")
    donation_count = db.Column(db.Integer, nullable=False, default=0)

    donations = db.relationship(
        "Donation",
        back_populates="user",
        foreign_keys="Donation.user_id",
        lazy="select",
    )

    # ── Auth helpers ────────────────────────────────────────────
    def set_password(self, password: str) -> None:
        """Hash & store the given plaintext password securely."""
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        if not self.password_hash:
            return False
        return check_password_hash(self.password_hash, password)

    def get_id(self) -> str:  # type: ignore[override]
        return str(self.id)

    @property
    def language(self) -> str:
        lang = (self.preferred_language or "ar").lower()
        return lang if lang in LANGUAGES else "ar"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "fullName": self.full_name,
            "email": self.email,
            "phoneNumber": self.phone_number,
            "preferredLanguage": self.language,
            "totalDonated": int(self.total_donated or 0),
            "donationCount": int(self.donation_count or 0),
            "isAdmin": bool(self.is_admin),
            "createdAt": iso(self.created_at),
        }

    def __repr__(self) -> str:  # pragma: no cover
        role = "Admin" if self.is_admin else "Donor"
        return f"<User {self.email or self.phone_number} ({role})>"
