import atexit
import logging
import os
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, List, Optional

from flask_cors import CORS
from flask_login import LoginManager
from flask_mail import Mail, Message
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy
from flask_wtf.csrf import CSRFProtect
from sqlalchemy.exc import OperationalError

log = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────
# Core singletons
# ─────────────────────────────────────────────────────────────
db = SQLAlchemy()
migrate = Migrate()
mail = Mail()
login_manager = LoginManager()
csrf = CSRFProtect()
cors = CORS()


# ─────────────────────────────────────────────────────────────
# Background tasks + clean shutdown
# ─────────────────────────────────────────────────────────────
_BG_MAX_WORKERS = int(os.getenv("BG_MAX_WORKERS", "4"))
_EXECUTOR = ThreadPoolExecutor(max_workers=_BG_MAX_WORKERS, thread_name_prefix="ibtasim-bg")


def run_bg(func: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
    return _EXECUTOR.submit(func, *args, **kwargs)


@atexit.register
def _shutdown_executor() -> None:
    _EXECUTOR.shutdown(wait=False, cancel_futures=True)


# ─────────────────────────────────────────────────────────────
# Safe DB helpers
# ─────────────────────────────────────────────────────────────
def safe_commit() -> bool:
    try:
        db.session.commit()
        return True
    except Exception as e:
        log.error("DB commit failed: %s", e, exc_info=True)
        db.session.rollback()
        return False


def _is_db_locked(err: OperationalError) -> bool:
    msg = str(err).lower()
    return ("database is locked" in msg) or ("sqlite_busy" in msg) or ("locked" in msg)


def retry_on_db_lock(fn: Callable[[], Any], *, attempts: int = 6) -> Any:
    """Run ``fn``; on SQLite lock contention roll back and try again."""
    for i in range(attempts):
        try:
            return fn()
        except OperationalError as e:
            db.session.rollback()
            if _is_db_locked(e) and i < attempts - 1:
                time.sleep(0.05 * (i + 1))
                continue
            raise


# ─────────────────────────────────────────────────────────────
# Email helper
# ─────────────────────────────────────────────────────────────
def send_email(
    app: Any,
    subject: str,
    recipients: List[str],
    body: str,
    *,
    sender: Optional[str] = None,
    max_retries: int = 2,
    retry_backoff: float = 0.5,
) -> None:
    """
    Send a plain-text email through Flask-Mail, retrying transient failures.
    Must be called inside an app context; raises after the last attempt.
    """
    logger = getattr(app, "logger", log)
    msg = Message(
        subject=subject,
        recipients=recipients,
        sender=sender or app.config.get("MAIL_DEFAULT_SENDER"),
        body=body,
    )

    attempts = 0
    while True:
        try:
            mail.send(msg)
            return
        except Exception as e:
            attempts += 1
            if attempts > max_retries:
                raise
            logger.warning("Mail send failed (attempt %s/%s): %s", attempts, max_retries, e)
            time.sleep(float(retry_backoff) * attempts)


__all__ = [
    "db",
    "migrate",
    "mail",
    "login_manager",
    "csrf",
    "cors",
    "run_bg",
    "safe_commit",
    "retry_on_db_lock",
    "send_email",
]
