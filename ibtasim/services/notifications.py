"""
Donor notifications: WhatsApp via WaSender, email via Flask-Mail
────────────────────────────────────────────────────────────────────────────
• Rows are written inside the business transaction (status=pending)
• Delivery runs after commit, on the background pool unless
  NOTIFICATIONS_ASYNC is off (tests, CLI)
• WaSender 429 → exponential backoff, bounded retries
• Donors without a phone number fall back to email
• Bulk jobs (closing-soon, receipt reminders, announcements) send paced
"""

from __future__ import annotations

import logging
import math
import re
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional

import requests
from flask import current_app
from sqlalchemy import select

from ibtasim.errors import NotFound, ValidationError
from ibtasim.extensions import db, run_bg, send_email
from ibtasim.models import Donation, Notification, Project, User, utcnow
from ibtasim.models.donation import COUNTED_STATUSES
from ibtasim.models.user import LANGUAGES
from ibtasim.services import config_store
from ibtasim.services.projects import projects_closing_soon

log = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────
# Message templates ({ar, fr, en})
# ─────────────────────────────────────────────────────────────
_TEMPLATES: Dict[str, Dict[str, str]] = {
    "donation_received": {
        "ar": "شكرًا {name}! 🌱\n\nتم تسجيل تبرعك بمبلغ {amount} {currency} لمشروع \"{project}\".\nسنخبرك فور التحقق منه.\n\n{signature}",
        "fr": "Merci {name} ! 🌱\n\nVotre don de {amount} {currency} pour le projet « {project} » a bien été enregistré.\nNous vous préviendrons dès sa vérification.\n\n{signature}",
        "en": "Thank you {name}! 🌱\n\nYour donation of {amount} {currency} to \"{project}\" has been recorded.\nWe will let you know as soon as it is verified.\n\n{signature}",
    },
    "donation_verified": {
        "ar": "بارك الله فيك {name}! ✨\n\nتم تأكيد تبرعك بمبلغ {amount} {currency} لمشروع \"{project}\".\n\nجزاك الله خيرًا على سخائك.\n\n{signature}",
        "fr": "Que Dieu vous bénisse {name} ! ✨\n\nVotre don de {amount} {currency} pour le projet « {project} » est confirmé.\n\nMerci pour votre générosité.\n\n{signature}",
        "en": "Bless you {name}! ✨\n\nYour donation of {amount} {currency} to \"{project}\" is confirmed.\n\nThank you for your generosity.\n\n{signature}",
    },
    "donation_rejected": {
        "ar": "مرحبًا {name}،\n\nلم نتمكن من تأكيد تبرعك بمبلغ {amount} {currency} لمشروع \"{project}\".\nيرجى التواصل معنا للمساعدة.\n\n{signature}",
        "fr": "Bonjour {name},\n\nNous n'avons pas pu confirmer votre don de {amount} {currency} pour le projet « {project} ».\nContactez-nous pour obtenir de l'aide.\n\n{signature}",
        "en": "Hello {name},\n\nWe could not confirm your donation of {amount} {currency} to \"{project}\".\nPlease contact us for help.\n\n{signature}",
    },
    "project_closing_soon": {
        "ar": "⏰ تذكير: مشروع \"{project}\" ينتهي خلال {days} أيام!\n\nساهم الآن قبل إغلاق المشروع.\n\n{signature}",
        "fr": "⏰ Rappel : le projet « {project} » se termine dans {days} jours !\n\nContribuez avant sa clôture.\n\n{signature}",
        "en": "⏰ Reminder: \"{project}\" closes in {days} days!\n\nGive now before the project closes.\n\n{signature}",
    },
    "project_funded": {
        "ar": "🎉 الحمد لله! مشروع \"{project}\" بلغ هدفه.\n\nشكرًا لأنك كنت جزءًا منه.\n\n{signature}",
        "fr": "🎉 Le projet « {project} » a atteint son objectif !\n\nMerci d'en avoir fait partie.\n\n{signature}",
        "en": "🎉 \"{project}\" has reached its goal!\n\nThank you for being part of it.\n\n{signature}",
    },
    "receipt_reminder": {
        "ar": "مرحبًا {name}،\n\nما زلنا ننتظر وصل التحويل لتبرعك بمبلغ {amount} {currency} لمشروع \"{project}\".\n\n{signature}",
        "fr": "Bonjour {name},\n\nNous attendons toujours le reçu du virement pour votre don de {amount} {currency} au projet « {project} ».\n\n{signature}",
        "en": "Hello {name},\n\nWe are still waiting for the transfer receipt for your donation of {amount} {currency} to \"{project}\".\n\n{signature}",
    },
}

_SUBJECTS = {
    "donation_received": "Donation received",
    "donation_verified": "Donation confirmed",
    "donation_rejected": "Donation could not be confirmed",
    "project_closing_soon": "Project closing soon",
    "project_funded": "Project fully funded",
    "receipt_reminder": "Transfer receipt reminder",
    "announcement": "News from Ibtasim",
}


def format_amount(cents: int) -> str:
    return f"{(int(cents or 0) / 100):.2f}"


def build_content(ntype: str, **ctx: Any) -> Dict[str, str]:
    """
    Render a template in every language. ``project`` may be a Project, in
    which case each language gets its own title.
    """
    templates = _TEMPLATES[ntype]
    project = ctx.pop("project", None)
    ctx.setdefault("signature", current_app.config.get("ORG_SIGNATURE", ""))
    ctx.setdefault("currency", current_app.config.get("DONATION_CURRENCY", "MAD"))
    out: Dict[str, str] = {}
    for lang in LANGUAGES:
        title = project.title_for(lang) if isinstance(project, Project) else str(project or "")
        out[lang] = templates[lang].format(project=title, **ctx)
    return out


def content_for_donation(ntype: str, donation: Donation) -> Dict[str, str]:
    return build_content(
        ntype,
        name=donation.user.full_name,
        amount=format_amount(donation.amount),
        currency=donation.currency,
        project=donation.project,
    )


# ─────────────────────────────────────────────────────────────
# WaSender client
# ─────────────────────────────────────────────────────────────
_PHONE_STRIP = re.compile(r"[\s\-\(\)]")


def format_phone_number(phone: str) -> str:
    """E.164: drop spaces, dashes and parentheses, ensure a leading '+'."""
    formatted = _PHONE_STRIP.sub("", phone or "")
    if not formatted.startswith("+"):
        formatted = "+" + formatted
    return formatted


@dataclass(frozen=True)
class WaSenderSettings:
    base_url: str
    token: str
    timeout: float
    max_retries: int
    retry_delay: float
    rate_delay: float

    @classmethod
    def load(cls) -> "WaSenderSettings":
        cfg = current_app.config
        # A session created from the back office carries its own API key
        stored = config_store.get_json(config_store.WHATSAPP_SETTINGS_KEY)
        token = str(stored.get("apiKey") or "").strip() or str(cfg.get("WASENDER_API_TOKEN") or "").strip()
        return cls(
            base_url=str(cfg.get("WASENDER_API_URL") or "https://www.wasenderapi.com/api").rstrip("/"),
            token=token,
            timeout=float(cfg.get("WASENDER_TIMEOUT_SECS", 10.0)),
            max_retries=int(cfg.get("WASENDER_MAX_RETRIES", 3)),
            retry_delay=float(cfg.get("WASENDER_RETRY_DELAY_SECS", 1.0)),
            rate_delay=float(cfg.get("WASENDER_RATE_DELAY_SECS", 0.25)),
        )


@dataclass(frozen=True)
class SendResult:
    success: bool
    error: Optional[str] = None
    response: Optional[Dict[str, Any]] = None


def send_whatsapp_message(to: str, text: str, settings: Optional[WaSenderSettings] = None) -> SendResult:
    s = settings or WaSenderSettings.load()
    if not s.token:
        return SendResult(False, "WaSender API token not configured")

    url = f"{s.base_url}/send-message"
    headers = {"Authorization": f"Bearer {s.token}", "Content-Type": "application/json"}
    body = {"to": format_phone_number(to), "text": text}

    attempt = 0
    while True:
        try:
            resp = requests.post(url, json=body, headers=headers, timeout=s.timeout)
        except requests.RequestException as e:
            return SendResult(False, str(e)[:500])

        if resp.status_code == 429:
            if attempt < s.max_retries:
                time.sleep(s.retry_delay * (2 ** attempt))
                attempt += 1
                continue
            return SendResult(False, "Rate limit exceeded. Max retries reached.")

        if not resp.ok:
            return SendResult(False, f"API Error ({resp.status_code}): {resp.text[:300]}")

        try:
            data = resp.json()
        except ValueError:
            data = None
        return SendResult(True, response=data if isinstance(data, dict) else None)


# ─────────────────────────────────────────────────────────────
# Persistence
# ─────────────────────────────────────────────────────────────
def enqueue(
    user: User,
    ntype: str,
    content: Dict[str, str],
    *,
    donation: Optional[Donation] = None,
    project: Optional[Project] = None,
) -> Optional[Notification]:
    """
    Add a pending notification to the current transaction. Returns None when
    the donor opted out or the (donation, type) pair was already recorded.
    """
    if not user.notifications_enabled:
        return None

    if donation is not None:
        existing = db.session.execute(
            select(Notification.id).where(Notification.donation_id == donation.id, Notification.type == ntype)
        ).first()
        if existing is not None:
            return None

    channel = "whatsapp" if user.phone_number or not user.email else "email"
    n = Notification(
        user_id=user.id,
        donation_id=donation.id if donation is not None else None,
        project_id=project.id if project is not None else (donation.project_id if donation is not None else None),
        type=ntype,
        channel=channel,
        status="pending",
        content=content,
        recipient=user.phone_number if channel == "whatsapp" else user.email,
    )
    db.session.add(n)
    db.session.flush()
    return n


def enqueue_for_donation(ntype: str, donation: Donation) -> Optional[Notification]:
    return enqueue(donation.user, ntype, content_for_donation(ntype, donation), donation=donation)


# ─────────────────────────────────────────────────────────────
# Delivery
# ─────────────────────────────────────────────────────────────
def _deliver(n: Notification, settings: Optional[WaSenderSettings] = None) -> SendResult:
    user = n.user
    text = n.text_for(user.language if user is not None else "ar")

    if n.channel == "whatsapp":
        if not n.recipient:
            return SendResult(False, "User has no phone number")
        return send_whatsapp_message(n.recipient, text, settings)

    if not n.recipient:
        return SendResult(False, "User has no email address")
    try:
        send_email(current_app._get_current_object(), _SUBJECTS.get(n.type, "Notification"), [n.recipient], text)
    except Exception as e:
        return SendResult(False, str(e)[:500])
    return SendResult(True)


def dispatch(notification_ids: Iterable[int]) -> Dict[str, int]:
    """Send pending notifications and record the outcome of each one."""
    sent = failed = 0
    settings: Optional[WaSenderSettings] = None
    for nid in notification_ids:
        n = db.session.get(Notification, nid)
        if n is None or n.status != "pending":
            continue
        if n.channel == "whatsapp" and settings is None:
            settings = WaSenderSettings.load()

        result = _deliver(n, settings)
        n.attempts = int(n.attempts or 0) + 1
        if result.success:
            n.status = "sent"
            n.sent_at = utcnow()
            n.error_message = None
            sent += 1
        else:
            n.status = "failed"
            n.error_message = (result.error or "unknown error")[:500]
            failed += 1
            log.warning("notification %s (%s) failed: %s", n.id, n.type, n.error_message)
        db.session.commit()
    return {"sent": sent, "failed": failed}


def _dispatch_in_app(app: Any, ids: List[int]) -> None:
    with app.app_context():
        try:
            dispatch(ids)
        except Exception:
            db.session.rollback()
            app.logger.exception("notification dispatch crashed for %s", ids)
        finally:
            db.session.remove()


def schedule_dispatch(notification_ids: Iterable[Optional[int]]) -> None:
    """Deliver after the surrounding transaction committed."""
    ids = [int(i) for i in notification_ids if i]
    if not ids:
        return
    app = current_app._get_current_object()
    if app.config.get("NOTIFICATIONS_ASYNC", True):
        run_bg(_dispatch_in_app, app, ids)
    else:
        dispatch(ids)


# ─────────────────────────────────────────────────────────────
# Closing-soon broadcast (daily job)
# ─────────────────────────────────────────────────────────────
def _recently_reminded(user_id: int, project_id: int, since) -> bool:
    return (
        db.session.execute(
            select(Notification.id).where(
                Notification.user_id == user_id,
                Notification.project_id == project_id,
                Notification.type == "project_closing_soon",
                Notification.created_at >= since,
            )
        ).first()
        is not None
    )


def broadcast_closing_soon(days: int = 7) -> Dict[str, int]:
    """
    Remind every verified donor with a phone number about each active
    project ending within ``days`` days. At most one reminder per donor and
    project per day; sends are paced by WASENDER_RATE_DELAY_SECS.
    """
    now = utcnow()
    projects = projects_closing_soon(days, now=now)
    if not projects:
        return {"projects": 0, "sent": 0, "failed": 0}

    users = list(
        db.session.execute(
            select(User)
            .where(
                User.is_verified.is_(True),
                User.is_active.is_(True),
                User.notifications_enabled.is_(True),
                User.phone_number.is_not(None),
            )
            .order_by(User.id)
        ).scalars()
    )

    queued: List[int] = []
    since = now - timedelta(hours=20)
    for project in projects:
        days_remaining = max(1, math.ceil((project.end_date - now).total_seconds() / 86400))
        content = build_content("project_closing_soon", project=project, days=days_remaining)
        for user in users:
            if _recently_reminded(user.id, project.id, since):
                continue
            n = enqueue(user, "project_closing_soon", content, project=project)
            if n is not None:
                queued.append(n.id)
    db.session.commit()

    outcome = dispatch_paced(queued)
    return {"projects": len(projects), "sent": outcome["sent"], "failed": outcome["failed"]}


def dispatch_paced(notification_ids: List[int]) -> Dict[str, Any]:
    """
    Deliver one notification at a time, sleeping WASENDER_RATE_DELAY_SECS
    between sends so bulk jobs stay under the WaSender rate limit.
    """
    settings = WaSenderSettings.load()
    sent = failed = 0
    errors: List[str] = []
    for i, nid in enumerate(notification_ids):
        if i and settings.rate_delay:
            time.sleep(settings.rate_delay)
        outcome = dispatch([nid])
        sent += outcome["sent"]
        if outcome["failed"]:
            failed += outcome["failed"]
            n = db.session.get(Notification, nid)
            errors.append(f"Failed to send to {n.recipient}: {n.error_message}")
    return {"sent": sent, "failed": failed, "errors": errors}


# ─────────────────────────────────────────────────────────────
# Project funded / receipt reminders
# ─────────────────────────────────────────────────────────────
def enqueue_project_funded(project_id: int) -> List[int]:
    """
    Tell every donor whose gift counts toward the project that it reached
    its goal. Runs inside the transaction that flipped it to funded.
    """
    project = db.session.get(Project, project_id)
    if project is None:
        return []
    donors = db.session.execute(
        select(User)
        .where(
            User.id.in_(
                select(Donation.user_id).where(
                    Donation.project_id == project_id,
                    Donation.status.in_(COUNTED_STATUSES),
                )
            )
        )
        .order_by(User.id)
    ).scalars()

    content = build_content("project_funded", project=project)
    ids: List[int] = []
    for user in donors:
        n = enqueue(user, "project_funded", content, project=project)
        if n is not None:
            ids.append(n.id)
    return ids


def remind_pending_receipts(hours: int = 48) -> Dict[str, int]:
    """
    Nudge bank-transfer donors who still have not uploaded a receipt
    ``hours`` after pledging. Each donation is reminded at most once.
    """
    cutoff = utcnow() - timedelta(hours=int(hours))
    stale = list(
        db.session.execute(
            select(Donation)
            .where(
                Donation.payment_method == "bank_transfer",
                Donation.status == "awaiting_receipt",
                Donation.created_at <= cutoff,
            )
            .order_by(Donation.created_at)
        ).scalars()
    )

    queued: List[int] = []
    for donation in stale:
        n = enqueue_for_donation("receipt_reminder", donation)
        if n is not None:
            queued.append(n.id)
    db.session.commit()

    outcome = dispatch_paced(queued)
    return {"donations": len(stale), "sent": outcome["sent"], "failed": outcome["failed"]}


# ─────────────────────────────────────────────────────────────
# Admin announcements
# ─────────────────────────────────────────────────────────────
def broadcast(text: str, project_id: Optional[int] = None) -> Dict[str, Any]:
    """
    Send a free-text announcement to every verified donor with a phone
    number, optionally tagged with the project it is about.
    """
    text = (text or "").strip()
    if not text:
        raise ValidationError("text is required", field="text")

    project = None
    if project_id is not None:
        project = db.session.get(Project, project_id)
        if project is None:
            raise NotFound("project", project_id)

    users = db.session.execute(
        select(User)
        .where(
            User.is_verified.is_(True),
            User.is_active.is_(True),
            User.notifications_enabled.is_(True),
            User.phone_number.is_not(None),
        )
        .order_by(User.id)
    ).scalars()

    content = {lang: text for lang in LANGUAGES}
    queued: List[int] = []
    for user in users:
        n = enqueue(user, "announcement", content, project=project)
        if n is not None:
            queued.append(n.id)
    db.session.commit()

    outcome = dispatch_paced(queued)
    log.info("announcement sent to %d/%d donors", outcome["sent"], len(queued))
    return {"total": len(queued), "successful": outcome["sent"], "failed": outcome["failed"], "errors": outcome["errors"]}


__all__ = [
    "build_content",
    "content_for_donation",
    "format_amount",
    "format_phone_number",
    "WaSenderSettings",
    "SendResult",
    "send_whatsapp_message",
    "enqueue",
    "enqueue_for_donation",
    "dispatch",
    "schedule_dispatch",
    "dispatch_paced",
    "broadcast_closing_soon",
    "enqueue_project_funded",
    "remind_pending_receipts",
    "broadcast",
]
