# ibtasim/config/config.py
# Canonical Ibtasim configuration (env-first, production-safe)

from __future__ import annotations

import os
from datetime import timedelta
from typing import Optional


# ----------------------------
# Env helpers
# ----------------------------
_TRUTHY = {"1", "true", "yes", "on", "y"}
_FALSY = {"0", "false", "no", "off", "n"}


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    v = os.getenv(name)
    if v is None:
        return default
    s = str(v).strip()
    return s if s else default


def _bool(name: str, default: bool = False) -> bool:
    v = _env(name)
    if v is None:
        return default
    s = v.strip().lower()
    if s in _TRUTHY:
        return True
    if s in _FALSY:
        return False
    return default


def _int(name: str, default: int) -> int:
    v = _env(name)
    if v is None:
        return default
    try:
        return int(str(v).strip())
    except ValueError:
        return default


def _float(name: str, default: float) -> float:
    v = _env(name)
    if v is None:
        return default
    try:
        return float(str(v).strip())
    except ValueError:
        return default


def _clean_base_url(v: Optional[str]) -> str:
    return (v or "").strip().rstrip("/")


# ----------------------------
# Config classes
# ----------------------------
class BaseConfig:
    """
    Env-first config:
    - every provider secret comes from the environment (never committed)
    - safe defaults for local dev
    - webhook secrets may be absent at boot; the routes answer 500 until set
    """

    ENV = (_env("APP_ENV") or _env("ENV") or _env("FLASK_ENV") or "base").strip().lower()

    DEBUG = _bool("FLASK_DEBUG", False)
    TESTING = _bool("TESTING", False)

    # Security
    SECRET_KEY = _env("SECRET_KEY", "dev-change-me")

    # URLs
    PUBLIC_BASE_URL = _clean_base_url(_env("PUBLIC_BASE_URL", ""))
    PREFERRED_URL_SCHEME = _env("PREFERRED_URL_SCHEME", "https")

    # Cookies (admin session)
    SESSION_COOKIE_NAME = _env("SESSION_COOKIE_NAME", "ibtasim")
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = _env("SESSION_COOKIE_SAMESITE", "Lax")
    SESSION_COOKIE_SECURE = True
    REMEMBER_COOKIE_HTTPONLY = True
    REMEMBER_COOKIE_SECURE = True
    PERMANENT_SESSION_LIFETIME = timedelta(days=_int("SESSION_DAYS", 7))

    # CSRF: JSON admin API reads the token from X-CSRFToken
    WTF_CSRF_TIME_LIMIT = None

    # Logging
    LOG_LEVEL = _env("LOG_LEVEL", "INFO")
    SENTRY_DSN = _env("SENTRY_DSN")
    WERKZEUG_LOG_LEVEL = _env("WERKZEUG_LOG_LEVEL", "WARNING")

    # SQLAlchemy
    SQLALCHEMY_DATABASE_URI = _env("SQLALCHEMY_DATABASE_URI", _env("DATABASE_URL", "sqlite:///ibtasim-dev.db"))
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}
    AUTO_CREATE_SQLITE = _bool("AUTO_CREATE_SQLITE", True)

    # CORS (donor pages are served from a separate origin)
    CORS_ORIGINS = _env("CORS_ORIGINS", "*")

    # Donations
    DONATION_CURRENCY = (_env("DONATION_CURRENCY", "MAD") or "MAD").upper()
    MIN_DONATION_CENTS = _int("MIN_DONATION_CENTS", 100)
    MAX_DONATION_CENTS = _int("MAX_DONATION_CENTS", 10_000_000 * 100)

    # Whop (card payments)
    WHOP_WEBHOOK_SECRET = _env("WHOP_WEBHOOK_SECRET")
    WHOP_API_KEY = _env("WHOP_API_KEY")
    WHOP_PRODUCT_ID = _env("WHOP_PRODUCT_ID")
    WHOP_API_BASE = _clean_base_url(_env("WHOP_API_BASE", "https://api.whop.com/api/v2"))
    WHOP_TIMEOUT_SECS = _float("WHOP_TIMEOUT_SECS", 10.0)
    WHOP_FEE_PCT = _env("WHOP_FEE_PCT", "0.029")
    WHOP_FEE_FLAT_CENTS = _int("WHOP_FEE_FLAT_CENTS", 30)
    PLATFORM_FEE_PCT = _env("PLATFORM_FEE_PCT", "0")

    # WhatsApp (WaSender)
    WHATSAPP_WEBHOOK_SECRET = _env("WHATSAPP_WEBHOOK_SECRET")
    WASENDER_API_URL = _clean_base_url(_env("WASENDER_API_URL", "https://www.wasenderapi.com/api"))
    WASENDER_API_TOKEN = _env("WASENDER_API_TOKEN")
    WASENDER_MASTER_TOKEN = _env("WASENDER_MASTER_TOKEN")
    WASENDER_TIMEOUT_SECS = _float("WASENDER_TIMEOUT_SECS", 10.0)
    WASENDER_MAX_RETRIES = _int("WASENDER_MAX_RETRIES", 3)
    WASENDER_RETRY_DELAY_SECS = _float("WASENDER_RETRY_DELAY_SECS", 1.0)
    WASENDER_RATE_DELAY_SECS = _float("WASENDER_RATE_DELAY_SECS", 0.25)

    # Notifications
    NOTIFICATIONS_ASYNC = _bool("NOTIFICATIONS_ASYNC", True)
    ORG_SIGNATURE = _env("ORG_SIGNATURE", "فريق جمعية الأمل")

    # Mail (email fallback for donors without a phone number)
    MAIL_SERVER = _env("MAIL_SERVER", "localhost")
    MAIL_PORT = _int("MAIL_PORT", 25)
    MAIL_USE_TLS = _bool("MAIL_USE_TLS", False)
    MAIL_USERNAME = _env("MAIL_USERNAME")
    MAIL_PASSWORD = _env("MAIL_PASSWORD")
    MAIL_DEFAULT_SENDER = _env("MAIL_DEFAULT_SENDER", "no-reply@ibtasim.local")
    MAIL_SUPPRESS_SEND = _bool("MAIL_SUPPRESS_SEND", False)

    @classmethod
    def init_app(cls, app) -> None:
        """
        Boot hardening hook, called by create_app() after from_object(...).
        """
        uri = str(app.config.get("SQLALCHEMY_DATABASE_URI") or "")

        # SQLite: webhook deliveries and background sends share the file
        if uri.startswith("sqlite:"):
            opts = dict(app.config.get("SQLALCHEMY_ENGINE_OPTIONS") or {})
            connect_args = dict(opts.get("connect_args") or {})
            connect_args.setdefault("check_same_thread", False)
            opts["connect_args"] = connect_args
            opts.setdefault("pool_pre_ping", True)
            app.config["SQLALCHEMY_ENGINE_OPTIONS"] = opts


class DevelopmentConfig(BaseConfig):
    ENV = "development"
    DEBUG = True

    SESSION_COOKIE_SECURE = False
    REMEMBER_COOKIE_SECURE = False
    PREFERRED_URL_SCHEME = _env("PREFERRED_URL_SCHEME", "http")
    MAIL_SUPPRESS_SEND = _bool("MAIL_SUPPRESS_SEND", True)


class TestingConfig(BaseConfig):
    ENV = "testing"
    TESTING = True
    DEBUG = False

    SECRET_KEY = "testing-secret"
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}
    AUTO_CREATE_SQLITE = False

    SESSION_COOKIE_SECURE = False
    REMEMBER_COOKIE_SECURE = False
    PREFERRED_URL_SCHEME = "http"
    WTF_CSRF_ENABLED = False

    WHOP_WEBHOOK_SECRET = "whsec_test_secret"
    WHATSAPP_WEBHOOK_SECRET = None
    WHOP_API_KEY = None
    WHOP_PRODUCT_ID = None
    WASENDER_API_TOKEN = None
    WASENDER_MASTER_TOKEN = None
    WASENDER_RETRY_DELAY_SECS = 0.0
    WASENDER_RATE_DELAY_SECS = 0.0
    PUBLIC_BASE_URL = "https://ibtasim.test"

    NOTIFICATIONS_ASYNC = False
    MAIL_SUPPRESS_SEND = True


class ProductionConfig(BaseConfig):
    ENV = "production"
    DEBUG = False

    SESSION_COOKIE_SECURE = True
    REMEMBER_COOKIE_SECURE = True
    PREFERRED_URL_SCHEME = _env("PREFERRED_URL_SCHEME", "https")

    @classmethod
    def init_app(cls, app) -> None:
        super().init_app(app)

        # ---- Production guardrails (fail fast) ----
        sk = app.config.get("SECRET_KEY")
        if not sk or sk == "dev-change-me":
            raise RuntimeError("SECRET_KEY must be set to a strong random value in production.")

        base = (app.config.get("PUBLIC_BASE_URL") or "").strip()
        if base and base.startswith("http://"):
            raise RuntimeError("PUBLIC_BASE_URL must be https:// in production.")

        if _bool("FLASK_DEBUG", False):
            raise RuntimeError("FLASK_DEBUG must be 0 in production.")
