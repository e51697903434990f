"""
Back-office API (session auth via Flask-Login, CSRF via Flask-WTF)

Mount: /admin

  GET    /admin/session                     who am I + CSRF token
  POST   /admin/login | /admin/logout
  GET    /admin/verifications               verification queue
  POST   /admin/donations/<id>/verify       {verified: bool, notes}
  POST   /admin/donations/<id>/complete
  GET    /admin/whatsapp/session
  POST   /admin/whatsapp/session            {phoneNumber}
  DELETE /admin/whatsapp/session
  POST   /admin/notifications/broadcast {text, projectId}

State-changing requests must send the token from /admin/session in the
X-CSRFToken header.
"""

from __future__ import annotations

from functools import wraps
from typing import Any, Callable

from flask import Blueprint, current_app, request
from flask_login import current_user, login_user, logout_user
from flask_wtf.csrf import generate_csrf
from sqlalchemy import func, select

from ibtasim.blueprints import json_error, json_ok, register_domain_errors, request_payload, truthy
from ibtasim.extensions import db
from ibtasim.models import User, utcnow
from ibtasim.models.donation import NON_TERMINAL_STATUSES
from ibtasim.services import donations, notifications, whatsapp

bp = Blueprint("admin", __name__)
register_domain_errors(bp)


def _require_admin_guard() -> bool:
    if not getattr(current_user, "is_authenticated", False):
        return False
    return bool(getattr(current_user, "is_admin", False)) and bool(getattr(current_user, "is_active", False))


def admin_required(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def _inner(*args: Any, **kwargs: Any):
        if not getattr(current_user, "is_authenticated", False):
            return json_error("authentication required", 401)
        if not _require_admin_guard():
            return json_error("admin access required", 403)
        return fn(*args, **kwargs)

    return _inner


# ─────────────────────────────────────────────────────────────
# Session
# ─────────────────────────────────────────────────────────────
@bp.get("/session")
def session_info():
    user = current_user if getattr(current_user, "is_authenticated", False) else None
    return json_ok({"user": user.as_dict() if user else None, "csrfToken": generate_csrf()})


@bp.post("/login")
def login():
    data = request_payload()
    email = str(data.get("email") or "").strip().lower()
    password = str(data.get("password") or "")
    if not email or not password:
        return json_error("email and password are required", 400)

    user = db.session.execute(select(User).where(func.lower(User.email) == email)).scalar_one_or_none()
    if user is None or not user.is_admin or not user.is_active or not user.check_password(password):
        current_app.logger.warning("admin login failed for %s", email)
        return json_error("invalid credentials", 401)

    login_user(user, remember=truthy(data.get("remember")))
    user.last_login_at = utcnow()
    db.session.commit()
    return json_ok({"user": user.as_dict(), "csrfToken": generate_csrf()})


@bp.post("/logout")
def logout():
    logout_user()
    return json_ok()


# ─────────────────────────────────────────────────────────────
# Verification queue
# ─────────────────────────────────────────────────────────────
@bp.get("/verifications")
@admin_required
def verification_queue():
    status = (request.args.get("status") or "awaiting_verification").strip()
    if status not in NON_TERMINAL_STATUSES:
        return json_error("status must be a non-terminal donation status", 400, {"allowed": list(NON_TERMINAL_STATUSES)})
    try:
        limit = int(request.args.get("limit", "50"))
    except ValueError:
        limit = 50

    items = []
    for d in donations.pending_verifications(status=status, limit=limit):
        row = d.as_dict(include_donor=True)
        row["project"] = {"id": d.project.id, "title": d.project.title, "status": d.project.status}
        items.append(row)
    return json_ok({"items": items, "count": len(items)})


@bp.post("/donations/<int:donation_id>/verify")
@admin_required
def verify(donation_id: int):
    data = request_payload()
    if "verified" not in data:
        return json_error("verified (bool) is required", 400)

    result = donations.apply_verification(
        donation_id,
        truthy(data.get("verified")),
        str(data.get("notes") or "").strip() or None,
        admin_id=current_user.id,
        source="admin",
    )
    return json_ok(result.as_dict())


@bp.post("/donations/<int:donation_id>/complete")
@admin_required
def complete(donation_id: int):
    result = donations.mark_completed(donation_id, admin_id=current_user.id)
    return json_ok(result.as_dict())


# ─────────────────────────────────────────────────────────────
# WhatsApp session
# ─────────────────────────────────────────────────────────────
@bp.get("/whatsapp/session")
@admin_required
def whatsapp_session():
    return json_ok({"session": whatsapp.get_session_settings()})


@bp.post("/whatsapp/session")
@admin_required
def whatsapp_connect():
    data = request_payload()
    session = whatsapp.create_and_connect_session(str(data.get("phoneNumber") or data.get("phone_number") or ""))
    return json_ok({"session": session})


@bp.delete("/whatsapp/session")
@admin_required
def whatsapp_disconnect():
    return json_ok({"session": whatsapp.disconnect_session()})


# ─────────────────────────────────────────────────────────────
# Announcements
# ─────────────────────────────────────────────────────────────
@bp.post("/notifications/broadcast")
@admin_required
def broadcast():
    data = request_payload()
    raw_project = data.get("projectId")
    try:
        project_id = int(raw_project) if raw_project not in (None, "") else None
    except (TypeError, ValueError):
        return json_error("projectId must be an integer", 400)

    result = notifications.broadcast(str(data.get("text") or ""), project_id=project_id)
    current_app.logger.info("admin %s broadcast to %s donors", current_user.id, result["total"])
    return json_ok({"broadcast": result})
