from __future__ import annotations

from ibtasim.extensions import db

from .config_entry import ConfigEntry
from .donation import Donation
from .mixins import TimestampMixin, utcnow
from .notification import Notification
from .payment import Payment
from .project import Project
from .user import User
from .verification_log import VerificationLog
from .webhook_event import WebhookEvent

_MODELS = (User, Project, Donation, Payment, VerificationLog, Notification, WebhookEvent, ConfigEntry)

__all__ = ["db", "TimestampMixin", "utcnow", *[m.__name__ for m in _MODELS]]

