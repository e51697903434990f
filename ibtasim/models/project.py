from __future__ import annotations

# -----------------------------------------------------------------------------
# Project Model
# Cents-based goal/raised totals; multilingual title + description.
# raised_amount is only ever changed through the verification workflow
# (atomic SQL increment) or the reconcile CLI.
# -----------------------------------------------------------------------------
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import CheckConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column

from ibtasim.extensions import db

from .mixins import TimestampMixin, iso

PROJECT_CATEGORIES = ("education", "health", "housing", "emergency", "food", "water", "orphan_care")
PROJECT_STATUSES = ("draft", "active", "funded", "completed", "cancelled")


class Project(db.Model, TimestampMixin):
    __tablename__ = "projects"
    __table_args__ = (
        CheckConstraint("raised_amount >= 0", name="ck_projects_raised_nonneg"),
        CheckConstraint("goal_amount > 0", name="ck_projects_goal_positive"),
        Index("ix_projects_status_featured", "status", "is_featured"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    # ---- Content ({ar, fr, en}) ----
    title: Mapped[Dict[str, str]] = mapped_column(db.JSON, nullable=False, doc="{ar, fr, en}")
    description: Mapped[Dict[str, str]] = mapped_column(db.JSON, nullable=False, default=dict)
    category: Mapped[str] = mapped_column(db.String(40), nullable=False, index=True)
    location: Mapped[Optional[str]] = mapped_column(db.String(160), nullable=True)
    beneficiaries: Mapped[Optional[int]] = mapped_column(db.Integer, nullable=True)

    # ---- Financials (cents) ----
    goal_amount: Mapped[int] = mapped_column(db.Integer, nullable=False, doc="Target in cents")
    raised_amount: Mapped[int] = mapped_column(
        db.Integer,
        nullable=False,
        default=0,
        doc="Sum of verified donations in cents",
    )
    currency: Mapped[str] = mapped_column(db.String(3), nullable=False, default="MAD")

    # ---- Lifecycle ----
    status: Mapped[str] = mapped_column(db.String(20), nullable=False, default="draft", index=True)
    is_featured: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    start_date: Mapped[Optional[datetime]] = mapped_column(db.DateTime, nullable=True)
    end_date: Mapped[Optional[datetime]] = mapped_column(db.DateTime, nullable=True, index=True)

    # ==========================================================
    # Computed Properties
    # ==========================================================
    @property
    def progress_pct(self) -> float:
        goal = int(self.goal_amount or 0)
        if goal <= 0:
            return 0.0
        return round(min(100.0, (int(self.raised_amount or 0) / goal) * 100.0), 1)

    def title_for(self, lang: str) -> str:
        t = self.title or {}
        return t.get(lang) or t.get("ar") or t.get("fr") or t.get("en") or f"#{self.id}"

    # ==========================================================
    # Serialization
    # ==========================================================
    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "category": self.category,
            "goalAmount": int(self.goal_amount or 0),
            "raisedAmount": int(self.raised_amount or 0),
            "currency": self.currency,
            "status": self.status,
            "progressPct": self.progress_pct,
            "endDate": iso(self.end_date),
        }

    def __repr__(self) -> str:  # pragma: no cover
        return f"<Project {self.id} {self.status} {self.raised_amount}/{self.goal_amount}>"
