"""
Donation lifecycle + verification state machine.

    pending ──checkout──▶ awaiting_verification ──┬──▶ verified ──▶ completed
    awaiting_receipt ──receipt──▶ awaiting_verification └──▶ rejected

verified / rejected / completed are terminal: once a donation reaches one of
them, no verify/reject call changes it again, whoever the caller is (admin
or provider webhook). Every status write is a conditional UPDATE on the
expected source statuses, so of two racing callers exactly one wins and only
the winner applies the side effects:

  • verified → project.raised_amount += amount, donor totals += amount
  • goal crossed → project funded, every counted donor notified
  • verified | rejected → one VerificationLog row, one notification
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence, Union

from flask import current_app
from sqlalchemy import select, update as sa_update

from ibtasim.errors import DonationNotFound, InvalidTransition, NotFound, ValidationError
from ibtasim.extensions import db
from ibtasim.models import Donation, Payment, Project, User, VerificationLog, utcnow
from ibtasim.models.donation import NON_TERMINAL_STATUSES, PAYMENT_METHODS, TERMINAL_STATUSES
from ibtasim.services import notifications
from ibtasim.services.projects import credit_raised_amount
from ibtasim.services.whop_events import PaymentFailed, PaymentRefunded, PaymentSucceeded

log = logging.getLogger(__name__)

DonationId = Union[int, str]

ACCEPTING_PROJECT_STATUSES = ("active", "funded")

# What an admin may review: a submitted receipt or checkout, or cash handed in at an agency
ADMIN_REVIEWABLE_STATUSES = ("awaiting_verification",)
CASH_REVIEWABLE_STATUSES = ("pending", "awaiting_verification")

# Whop tag → Payment.status / Donation.provider_status
_PROVIDER_STATUS = {
    PaymentSucceeded: "completed",
    PaymentFailed: "failed",
    PaymentRefunded: "refunded",
}


@dataclass(frozen=True)
class VerificationResult:
    donation: Donation
    changed: bool
    previous_status: str
    notification_ids: List[int] = field(default_factory=list)

    @property
    def status(self) -> str:
        return self.donation.status

    def as_dict(self) -> dict:
        return {
            "changed": self.changed,
            "previousStatus": self.previous_status,
            "donation": self.donation.as_dict(),
        }


# ----------------------------
# Lookups
# ----------------------------
def _coerce_id(donation_id: DonationId) -> int:
    try:
        return int(str(donation_id).strip())
    except (TypeError, ValueError):
        raise DonationNotFound(donation_id) from None


def get_donation(donation_id: DonationId) -> Donation:
    donation = db.session.get(Donation, _coerce_id(donation_id))
    if donation is None:
        raise DonationNotFound(donation_id)
    return donation


def pending_verifications(status: str = "awaiting_verification", limit: int = 50) -> List[Donation]:
    """Verification queue, oldest first."""
    return list(
        db.session.execute(
            select(Donation)
            .where(Donation.status == status)
            .order_by(Donation.created_at.asc(), Donation.id.asc())
            .limit(max(1, min(int(limit), 500)))
        ).scalars()
    )


def _transition(donation_id: int, from_statuses: Sequence[str], **values: Any) -> bool:
    """Compare-and-set on status; True when this caller's update won."""
    values.setdefault("updated_at", utcnow())
    res = db.session.execute(
        sa_update(Donation)
        .where(Donation.id == donation_id, Donation.status.in_(tuple(from_statuses)))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return bool(getattr(res, "rowcount", 0))


def _reviewable_statuses(donation: Donation, source: str) -> Sequence[str]:
    if source != "admin":
        return NON_TERMINAL_STATUSES
    if donation.payment_method == "cash_agency":
        return CASH_REVIEWABLE_STATUSES
    return ADMIN_REVIEWABLE_STATUSES


def _append_notes(existing: Optional[str], notes: Optional[str]) -> Optional[str]:
    notes = (notes or "").strip()
    if not notes:
        return existing
    if not existing:
        return notes
    return f"{existing}\n{notes}"


def _commit_and_dispatch(ids: List[int]) -> None:
    db.session.commit()
    notifications.schedule_dispatch(ids)


# ----------------------------
# Creation + donor-side steps
# ----------------------------
def create_donation(
    *,
    user_id: int,
    project_id: int,
    amount: int,
    payment_method: str,
    covers_fees: bool = False,
    is_anonymous: bool = False,
    message: Optional[str] = None,
    bank_name: Optional[str] = None,
) -> Donation:
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError("unsupported payment method", field="paymentMethod", allowed=list(PAYMENT_METHODS))

    try:
        amount = int(amount)
    except (TypeError, ValueError):
        raise ValidationError("amount must be an integer number of cents", field="amount") from None

    cfg = current_app.config
    min_cents = int(cfg.get("MIN_DONATION_CENTS", 100))
    max_cents = int(cfg.get("MAX_DONATION_CENTS", 10_000_000 * 100))
    if amount < min_cents or amount > max_cents:
        raise ValidationError(f"amount must be between {min_cents} and {max_cents} cents", field="amount")

    user = db.session.get(User, user_id)
    if user is None:
        raise NotFound("user", user_id)
    project = db.session.get(Project, project_id)
    if project is None:
        raise NotFound("project", project_id)
    if project.status not in ACCEPTING_PROJECT_STATUSES:
        raise InvalidTransition(f"project is {project.status} and not accepting donations")

    donation = Donation(
        user_id=user.id,
        project_id=project.id,
        amount=amount,
        currency=str(cfg.get("DONATION_CURRENCY", "MAD")),
        covers_fees=bool(covers_fees),
        payment_method=payment_method,
        status="awaiting_receipt" if payment_method == "bank_transfer" else "pending",
        is_anonymous=bool(is_anonymous),
        message=(message or "").strip()[:500] or None,
        bank_name=(bank_name or "").strip()[:120] or None,
    )
    db.session.add(donation)
    db.session.flush()

    n = notifications.enqueue_for_donation("donation_received", donation)
    _commit_and_dispatch([n.id] if n else [])
    log.info("donation %s created (%s, %s cents)", donation.id, payment_method, amount)
    return donation


def upload_receipt(
    donation_id: DonationId,
    receipt_url: str,
    *,
    transaction_reference: Optional[str] = None,
    bank_name: Optional[str] = None,
) -> Donation:
    """Bank transfer: attach the receipt and queue the donation for review."""
    donation = get_donation(donation_id)
    receipt_url = (receipt_url or "").strip()
    if not receipt_url:
        raise ValidationError("receiptUrl is required", field="receiptUrl")

    values: dict = {
        "status": "awaiting_verification",
        "receipt_url": receipt_url[:500],
        "receipt_uploaded_at": utcnow(),
    }
    if transaction_reference:
        values["transaction_reference"] = str(transaction_reference).strip()[:120]
    if bank_name:
        values["bank_name"] = str(bank_name).strip()[:120]

    if not _transition(donation.id, ("awaiting_receipt",), **values):
        db.session.rollback()
        raise InvalidTransition(f"donation is {donation.status}, not awaiting a receipt")

    db.session.commit()
    db.session.refresh(donation)
    return donation


def mark_payment_submitted(donation_id: DonationId, *, commit: bool = True) -> bool:
    """Card checkout started: pending → awaiting_verification (no-op otherwise)."""
    donation = get_donation(donation_id)
    moved = _transition(donation.id, ("pending",), status="awaiting_verification")
    if commit:
        db.session.commit()
    if moved:
        db.session.expire(donation)
    return moved


# ----------------------------
# Verification
# ----------------------------
def apply_verification(
    donation_id: DonationId,
    verified: bool,
    notes: Optional[str] = None,
    *,
    admin_id: Optional[int] = None,
    source: str = "admin",
    commit: bool = True,
) -> VerificationResult:
    """
    Move a donation to verified/rejected exactly once.

    A donation already in a terminal status is left untouched and the call
    returns ``changed=False`` without side effects. Admins only review
    donations awaiting verification (cash_agency ones also while pending);
    anything earlier raises InvalidTransition. With ``commit=False`` the
    caller owns the transaction and must pass ``notification_ids`` to
    ``notifications.schedule_dispatch`` after committing.
    """
    donation = get_donation(donation_id)
    previous = donation.status
    new_status = "verified" if verified else "rejected"

    if previous in TERMINAL_STATUSES:
        log.info(
            "donation %s already %s; ignoring %s from %s",
            donation.id,
            previous,
            new_status,
            source,
        )
        return VerificationResult(donation, False, previous)

    from_statuses = _reviewable_statuses(donation, source)
    if previous not in from_statuses:
        raise InvalidTransition(f"donation is {previous}; nothing to review yet")

    now = utcnow()
    won = _transition(
        donation.id,
        from_statuses,
        status=new_status,
        verified_at=now,
        verified_by_id=admin_id,
        verification_source=source,
        verification_notes=_append_notes(donation.verification_notes, notes),
        updated_at=now,
    )
    db.session.expire(donation)

    if not won:
        # Another caller reached a terminal status first
        log.info("donation %s changed concurrently; %s from %s not applied", donation.id, new_status, source)
        return VerificationResult(donation, False, donation.status)

    funded = False
    if verified:
        funded = credit_raised_amount(donation.project_id, donation.amount)
        db.session.execute(
            sa_update(User)
            .where(User.id == donation.user_id)
            .values(
                total_donated=User.total_donated + donation.amount,
                donation_count=User.donation_count + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

    db.session.add(
        VerificationLog(
            donation_id=donation.id,
            admin_id=admin_id,
            source=source,
            action="verify" if verified else "reject",
            previous_status=previous,
            notes=(notes or "").strip() or None,
        )
    )

    n = notifications.enqueue_for_donation("donation_verified" if verified else "donation_rejected", donation)
    ids = [n.id] if n else []
    if funded:
        ids.extend(notifications.enqueue_project_funded(donation.project_id))

    if commit:
        _commit_and_dispatch(ids)

    log.info("donation %s %s → %s (%s)", donation.id, previous, new_status, source)
    return VerificationResult(donation, True, previous, ids)


def verify_donation(donation_id: DonationId, verified: bool, notes: Optional[str] = None, **kwargs: Any) -> VerificationResult:
    return apply_verification(donation_id, verified, notes, **kwargs)


def mark_completed(donation_id: DonationId, *, admin_id: Optional[int] = None) -> VerificationResult:
    """verified → completed; aggregates were already counted on verification."""
    donation = get_donation(donation_id)
    previous = donation.status
    if previous == "completed":
        return VerificationResult(donation, False, previous)

    if not _transition(donation.id, ("verified",), status="completed", completed_at=utcnow()):
        db.session.rollback()
        raise InvalidTransition(f"donation is {previous}; only verified donations can be completed")

    db.session.commit()
    db.session.expire(donation)
    log.info("donation %s completed (admin=%s)", donation.id, admin_id)
    return VerificationResult(donation, True, previous)


# ----------------------------
# Provider linkage (card donations)
# ----------------------------
def record_provider_event(donation: Donation, event: Union[PaymentSucceeded, PaymentFailed, PaymentRefunded]) -> Payment:
    """
    Mirror a Whop payment event onto the donation and its Payment row.
    Flushes only; the webhook transaction commits.
    """
    now = utcnow()
    status = _PROVIDER_STATUS[type(event)]

    payment = db.session.execute(select(Payment).where(Payment.donation_id == donation.id)).scalar_one_or_none()
    if payment is None:
        payment = Payment(
            donation_id=donation.id,
            user_id=donation.user_id,
            amount=int(donation.amount),
            net_amount=int(donation.amount),
            currency=donation.currency,
            initiated_at=now,
            webhook_events=[],
        )
        db.session.add(payment)

    if event.payment_id:
        payment.provider_payment_id = event.payment_id
        donation.provider_payment_id = event.payment_id
    donation.provider_status = status

    payment.status = status
    payment.last_webhook_at = now
    payment.webhook_events.append(event.tag)
    if isinstance(event, PaymentSucceeded):
        payment.completed_at = now
    elif isinstance(event, PaymentFailed):
        payment.failed_at = now
        payment.failure_reason = event.reason
    elif isinstance(event, PaymentRefunded):
        payment.refund_reason = event.reason

    db.session.flush()
    return payment


__all__ = [
    "VerificationResult",
    "get_donation",
    "pending_verifications",
    "create_donation",
    "upload_receipt",
    "mark_payment_submitted",
    "apply_verification",
    "verify_donation",
    "mark_completed",
    "record_provider_event",
]
