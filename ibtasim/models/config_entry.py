from __future__ import annotations

from typing import Optional

from sqlalchemy.orm import Mapped, mapped_column

from ibtasim.extensions import db
from ibtasim.models.mixins import TimestampMixin


class ConfigEntry(db.Model, TimestampMixin):
    """Runtime key/value settings edited from the back office."""

    __tablename__ = "config_entries"

    id: Mapped[int] = mapped_column(primary_key=True)
    key: Mapped[str] = mapped_column(db.String(120), unique=True, nullable=False, index=True)
    value: Mapped[Optional[str]] = mapped_column(db.Text, nullable=True)
    version: Mapped[int] = mapped_column(
        db.Integer,
        nullable=False,
        default=1,
        doc="Bumped on every write; conditional updates compare against it",
    )
