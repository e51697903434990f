# ibtasim/__init__.py
# Ibtasim donations backend: Flask app factory
# Goals:
# - deterministic blueprint registration (webhooks always mounted)
# - request-id aware logging
# - JSON error shape for API paths, provider-friendly bodies for webhooks

from __future__ import annotations

import logging
import os
import time
from importlib import import_module
from typing import Any, List, Optional, Tuple, Type, Union
from uuid import uuid4

from dotenv import load_dotenv
from flask import Flask, current_app, g, jsonify, request
from sqlalchemy import text
from werkzeug.exceptions import HTTPException
from werkzeug.utils import import_string

# IMPORTANT: never override real env vars in prod
load_dotenv(override=False)

from ibtasim.config import CONFIG_BY_NAME  # noqa: E402
from ibtasim.extensions import cors, csrf, db, login_manager, mail, migrate  # noqa: E402

ConfigLike = Union[str, Type[Any]]

# Optional Sentry
try:
    import sentry_sdk  # type: ignore
    from sentry_sdk.integrations.flask import FlaskIntegration  # type: ignore
    from sentry_sdk.integrations.logging import LoggingIntegration  # type: ignore
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration  # type: ignore
except ImportError:  # pragma: no cover
    sentry_sdk = None  # type: ignore

__version__ = "0.1.0"

WEBHOOK_PATHS = ("/webhooks/", "/whatsapp-webhook")
JSON_PATHS = ("/donations", "/admin", "/healthz", "/version")


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _env_mode() -> str:
    for key in ("APP_ENV", "ENV", "FLASK_ENV"):
        val = (os.getenv(key) or "").strip().lower()
        if val:
            if val == "prod":
                return "production"
            if val == "dev":
                return "development"
            return val
    return "development"


def _resolve_config(target: Optional[ConfigLike]) -> ConfigLike:
    """
    Choose config class/module path.
    - If explicitly provided, respect it.
    - Else FLASK_CONFIG: a short name like "testing" or a dotted path.
    - Else the class named by APP_ENV/ENV/FLASK_ENV, DevelopmentConfig when unknown.
    """
    if target is not None:
        return target

    explicit = (os.getenv("FLASK_CONFIG") or "").strip()
    if explicit:
        return CONFIG_BY_NAME.get(explicit.lower(), explicit)

    return CONFIG_BY_NAME.get(_env_mode(), CONFIG_BY_NAME["development"])


def _json_error(message: str, status: int, **extra: Any):
    payload = {"ok": False, "error": {"code": int(status), "message": str(message)}}
    rid = extra.pop("request_id", None)
    if rid:
        payload["error"]["request_id"] = rid
    if extra:
        payload["error"].update(extra)

    resp = jsonify(payload)
    resp.status_code = int(status)
    return resp


def _is_webhook_path() -> bool:
    return (request.path or "").startswith(WEBHOOK_PATHS)


def _wants_json_response() -> bool:
    path = request.path or ""
    if path.startswith(JSON_PATHS):
        return True
    accept = (request.headers.get("Accept") or "").lower()
    return ("application/json" in accept) or bool(request.is_json)


def _parse_cors_origins(raw: Optional[str]) -> Union[str, List[str]]:
    raw = (raw or "*").strip()
    if raw in {"", "*"}:
        return "*"
    if "," in raw:
        return [o.strip() for o in raw.split(",") if o.strip()]
    return raw


# -----------------------------------------------------------------------------
# Logging with request_id
# -----------------------------------------------------------------------------
class _RequestIDFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        try:
            record.request_id = getattr(g, "request_id", "-")
        except RuntimeError:
            # outside an app/request context (background pool, CLI)
            record.request_id = "-"
        return True


def _configure_logging(app: Flask) -> None:
    fmt = "%(asctime)s [%(levelname)s] %(name)s [rid=%(request_id)s]: %(message)s"
    root = logging.getLogger()

    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(fmt))
        handler.addFilter(_RequestIDFilter())
        root.addHandler(handler)
    else:
        for h in root.handlers:
            if not any(isinstance(f, _RequestIDFilter) for f in h.filters):
                h.addFilter(_RequestIDFilter())
            if not getattr(h, "formatter", None) or "%(request_id)s" not in getattr(h.formatter, "_fmt", ""):
                h.setFormatter(logging.Formatter(fmt))

    root.setLevel(str(app.config.get("LOG_LEVEL", "INFO")).upper())
    logging.getLogger("werkzeug").setLevel(str(app.config.get("WERKZEUG_LOG_LEVEL", "WARNING")).upper())
    app.logger.info("Loaded config: ENV=%s DEBUG=%s", app.config.get("ENV", "?"), app.debug)


# -----------------------------------------------------------------------------
# Blueprint registration
# -----------------------------------------------------------------------------
_BLUEPRINTS: List[Tuple[str, Optional[str]]] = [
    ("ibtasim.blueprints.webhooks", None),
    ("ibtasim.blueprints.donations", "/donations"),
    ("ibtasim.blueprints.admin", "/admin"),
]


def _register_blueprints(app: Flask) -> None:
    disabled = {p.strip().lower() for p in (os.getenv("DISABLE_BPS", "")).split(",") if p.strip()}
    for dotted, prefix in _BLUEPRINTS:
        mod_key = dotted.split(".")[-1].lower()
        if mod_key in disabled and mod_key != "webhooks":
            app.logger.info("Disabled module: %s", dotted)
            continue
        blueprint = import_module(dotted).bp
        app.register_blueprint(blueprint, url_prefix=prefix)
        app.logger.debug("Registered blueprint: %-12s → %s", blueprint.name, prefix or "/")


# -----------------------------------------------------------------------------
# Integrations
# -----------------------------------------------------------------------------
def _init_sentry(app: Flask) -> None:
    dsn = (app.config.get("SENTRY_DSN") or os.getenv("SENTRY_DSN") or "").strip()
    if not dsn or not sentry_sdk:
        return
    sentry_sdk.init(
        dsn=dsn,
        integrations=[
            FlaskIntegration(),
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
            SqlalchemyIntegration(),
        ],
        traces_sample_rate=float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.0")),
        send_default_pii=False,
        environment=app.config.get("ENV", "development"),
        release=os.getenv("GIT_COMMIT"),
    )
    app.logger.info("Sentry initialized")


def _init_cors(app: Flask) -> None:
    origins = _parse_cors_origins(app.config.get("CORS_ORIGINS"))
    cors.init_app(
        app,
        supports_credentials=origins != "*",
        resources={
            r"/donations*": {"origins": origins},
            r"/admin/*": {"origins": origins},
        },
        expose_headers=["X-Request-ID"],
        allow_headers=["Content-Type", "Authorization", "X-CSRFToken", "X-Request-ID"],
        methods=["GET", "POST", "DELETE", "OPTIONS"],
    )


def _maybe_create_sqlite_tables(app: Flask) -> None:
    uri = (app.config.get("SQLALCHEMY_DATABASE_URI") or "").strip()
    if not uri.startswith("sqlite"):
        return
    if app.config.get("AUTO_CREATE_SQLITE", True) is not True:
        return
    with app.app_context():
        import ibtasim.models  # noqa: F401

        db.create_all()


def _init_login(app: Flask) -> None:
    login_manager.init_app(app)

    from ibtasim.models import User

    @login_manager.user_loader
    def load_user(uid: str):
        try:
            return db.session.get(User, int(uid))
        except (TypeError, ValueError):
            return None

    @login_manager.unauthorized_handler
    def _unauthorized():
        return _json_error("authentication required", 401, request_id=getattr(g, "request_id", "-"))


# -----------------------------------------------------------------------------
# Request lifecycle + errors
# -----------------------------------------------------------------------------
def _register_request_lifecycle(app: Flask) -> None:
    @app.before_request
    def _bootstrap_request():
        g.request_id = request.headers.get("X-Request-ID") or uuid4().hex
        g._start_ts = time.perf_counter()

    @app.after_request
    def _attach_request_headers(resp):
        resp.headers["X-Request-ID"] = getattr(g, "request_id", "-")
        start = getattr(g, "_start_ts", None)
        if start:
            resp.headers["X-Response-Time-ms"] = str(int((time.perf_counter() - start) * 1000))
        return resp


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(HTTPException)
    def _http_err(err: HTTPException):
        if _is_webhook_path():
            return (err.name, err.code or 500)
        if _wants_json_response():
            return _json_error(err.description or err.name, err.code or 500, request_id=getattr(g, "request_id", "-"))
        return err

    @app.errorhandler(Exception)
    def _uncaught(err: Exception):
        app.logger.exception("Unhandled error")
        db.session.rollback()

        if _is_webhook_path():
            return ("", 500)
        return _json_error("Internal Server Error", 500, request_id=getattr(g, "request_id", "-"))


# -----------------------------------------------------------------------------
# Health endpoints
# -----------------------------------------------------------------------------
def _db_ok() -> bool:
    try:
        db.session.execute(text("SELECT 1"))
        return True
    except Exception:
        db.session.rollback()
        current_app.logger.exception("healthz: database check failed")
        return False


def _register_health_endpoints(app: Flask) -> None:
    @app.get("/healthz")
    def _healthz():
        db_ok = _db_ok()
        body = {
            "status": "ok" if db_ok else "degraded",
            "env": app.config.get("ENV", "unknown"),
            "db": db_ok,
            "webhooks": {
                "whop": bool(app.config.get("WHOP_WEBHOOK_SECRET")),
                "whatsapp": bool(app.config.get("WHATSAPP_WEBHOOK_SECRET")),
            },
            "request_id": getattr(g, "request_id", "-"),
        }
        return body, (200 if db_ok else 503)

    @app.get("/version")
    def _version():
        return {
            "version": os.getenv("GIT_COMMIT", __version__),
            "env": app.config.get("ENV"),
            "public_base_url": app.config.get("PUBLIC_BASE_URL") or "",
        }


# -----------------------------------------------------------------------------
# App Factory
# -----------------------------------------------------------------------------
def create_app(config_class: Optional[ConfigLike] = None) -> Flask:
    app = Flask(__name__, static_folder=None, template_folder=None)

    # ---- Config loading
    cfg = _resolve_config(config_class)
    app.config.from_object(cfg)
    cfg_obj = import_string(cfg) if isinstance(cfg, str) else cfg
    init_hook = getattr(cfg_obj, "init_app", None)
    if callable(init_hook):
        init_hook(app)

    app.url_map.strict_slashes = False
    app.json.sort_keys = False
    app.json.ensure_ascii = False

    # ---- Logging / integrations
    _configure_logging(app)
    _init_sentry(app)
    _init_cors(app)

    # ---- Core extensions
    csrf.init_app(app)
    db.init_app(app)
    _maybe_create_sqlite_tables(app)
    migrate.init_app(app, db, compare_type=True, render_as_batch=True)
    mail.init_app(app)
    _init_login(app)

    # ---- Request lifecycle / errors
    _register_request_lifecycle(app)
    _register_error_handlers(app)

    # ---- Blueprints + health
    _register_blueprints(app)
    _register_health_endpoints(app)

    # ---- CLI
    from ibtasim.cli import ibtasim_cli

    app.cli.add_command(ibtasim_cli)

    if not app.config.get("WHOP_WEBHOOK_SECRET"):
        app.logger.warning("WHOP_WEBHOOK_SECRET is not set; /webhooks/whop will answer 500")

    return app


__all__ = ["create_app", "__version__"]
