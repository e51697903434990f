import pytest
from sqlalchemy import func, select, update as sa_update

from ibtasim.errors import DonationNotFound, InvalidTransition, NotFound, ValidationError
from ibtasim.extensions import db
from ibtasim.models import Donation, Notification, Project, User, VerificationLog
from ibtasim.services import donations


def _count(model, *where):
    return db.session.execute(select(func.count()).select_from(model).where(*where)).scalar_one()


def _notifications(donation_id, ntype=None):
    q = select(Notification).where(Notification.donation_id == donation_id)
    if ntype:
        q = q.where(Notification.type == ntype)
    return list(db.session.execute(q).scalars())


# ----------------------------
# apply_verification
# ----------------------------
def test_verify_credits_project_and_donor_once(make_donation):
    d = make_donation(amount=5_000)
    project_id, user_id = d.project_id, d.user_id

    first = donations.apply_verification(d.id, True, "receipt matches statement")
    assert first.changed is True
    assert first.previous_status == "awaiting_verification"
    assert first.status == "verified"

    second = donations.apply_verification(d.id, True)
    assert second.changed is False
    assert second.status == "verified"

    assert db.session.get(Project, project_id).raised_amount == 5_000
    user = db.session.get(User, user_id)
    assert user.total_donated == 5_000
    assert user.donation_count == 1
    assert len(_notifications(d.id, "donation_verified")) == 1
    assert _count(VerificationLog, VerificationLog.donation_id == d.id) == 1


def test_reject_leaves_aggregates_alone(make_donation):
    d = make_donation(amount=5_000)
    result = donations.apply_verification(d.id, False, "amount mismatch")

    assert result.changed is True
    assert result.status == "rejected"
    assert db.session.get(Project, d.project_id).raised_amount == 0
    assert db.session.get(Donation, d.id).verification_notes == "amount mismatch"
    assert len(_notifications(d.id, "donation_rejected")) == 1


@pytest.mark.parametrize("terminal", ["verified", "rejected", "completed"])
def test_terminal_statuses_are_sticky(make_donation, terminal):
    d = make_donation(status=terminal)

    for verified in (True, False):
        result = donations.apply_verification(d.id, verified, "late call")
        assert result.changed is False
        assert result.status == terminal

    assert db.session.get(Project, d.project_id).raised_amount == 0
    assert _notifications(d.id) == []
    assert db.session.get(Donation, d.id).verification_notes is None


def test_rejected_then_verified_stays_rejected(make_donation):
    d = make_donation()
    donations.apply_verification(d.id, False)
    result = donations.apply_verification(d.id, True)

    assert result.changed is False
    assert db.session.get(Donation, d.id).status == "rejected"
    assert db.session.get(Project, d.project_id).raised_amount == 0


def test_lost_race_applies_no_side_effects(make_donation):
    d = make_donation(amount=7_500)
    assert d.status == "awaiting_verification"  # loaded; the row changes underneath it below

    db.session.execute(
        sa_update(Donation)
        .where(Donation.id == d.id)
        .values(status="rejected")
        .execution_options(synchronize_session=False)
    )

    result = donations.apply_verification(d.id, True)
    assert result.changed is False
    assert result.status == "rejected"
    assert db.session.get(Project, d.project_id).raised_amount == 0
    assert _notifications(d.id) == []


def test_notes_are_appended(make_donation):
    d = make_donation(verification_notes="called donor")
    donations.apply_verification(d.id, True, "bank confirmed")
    assert db.session.get(Donation, d.id).verification_notes == "called donor\nbank confirmed"


def test_admin_and_provider_sources_are_recorded(make_donation, make_user):
    admin = make_user(email="admin@example.org", is_admin=True)
    by_admin = make_donation()
    by_whop = make_donation()

    donations.apply_verification(by_admin.id, True, admin_id=admin.id, source="admin")
    donations.apply_verification(by_whop.id, True, source="whop")

    a = db.session.get(Donation, by_admin.id)
    assert (a.verified_by_id, a.verification_source) == (admin.id, "admin")
    w = db.session.get(Donation, by_whop.id)
    assert (w.verified_by_id, w.verification_source) == (None, "whop")

    log = db.session.execute(select(VerificationLog).where(VerificationLog.donation_id == by_whop.id)).scalar_one()
    assert log.admin_id is None
    assert log.action == "verify"
    assert log.previous_status == "awaiting_verification"


@pytest.mark.parametrize("bad_id", [999_999, "abc", "", None])
def test_unknown_donation_raises_not_found(app, bad_id):
    with pytest.raises(DonationNotFound) as exc:
        donations.apply_verification(bad_id, True)
    assert isinstance(exc.value, NotFound)
    assert exc.value.status_code == 404


def test_crossing_goal_marks_project_funded(make_project, make_donation):
    project = make_project(goal_amount=10_000)
    first = make_donation(project=project, amount=6_000)
    second = make_donation(project=project, amount=4_000)

    donations.apply_verification(first.id, True)
    assert db.session.get(Project, project.id).status == "active"

    donations.apply_verification(second.id, True)
    p = db.session.get(Project, project.id)
    assert p.raised_amount == 10_000
    assert p.status == "funded"


def test_opted_out_donor_gets_no_notification(make_user, make_donation):
    quiet = make_user(notifications_enabled=False)
    d = make_donation(user=quiet)
    result = donations.apply_verification(d.id, True)
    assert result.changed is True
    assert result.notification_ids == []
    assert _notifications(d.id) == []


def test_verified_notification_is_delivered_over_whatsapp(make_donation, wasender):
    d = make_donation(amount=12_345)
    donations.apply_verification(d.id, True)

    (n,) = _notifications(d.id, "donation_verified")
    assert n.channel == "whatsapp"
    assert n.status == "sent"
    assert len(wasender.calls) == 1
    sent = wasender.calls[0]
    assert sent["url"].endswith("/send-message")
    assert sent["json"]["to"] == d.user.phone_number
    assert "123.45" in sent["json"]["text"]


def test_mark_completed_keeps_totals(make_donation):
    d = make_donation(amount=2_000)
    donations.apply_verification(d.id, True)

    result = donations.mark_completed(d.id)
    assert result.changed is True
    assert result.status == "completed"
    assert db.session.get(Project, d.project_id).raised_amount == 2_000

    assert donations.mark_completed(d.id).changed is False


def test_only_verified_donations_complete(make_donation):
    d = make_donation()
    with pytest.raises(InvalidTransition):
        donations.mark_completed(d.id)


# ----------------------------
# create / receipt / queue
# ----------------------------
def test_create_sets_initial_status_per_method(make_user, make_project):
    user, project = make_user(), make_project()

    bank = donations.create_donation(user_id=user.id, project_id=project.id, amount=10_000, payment_method="bank_transfer")
    card = donations.create_donation(user_id=user.id, project_id=project.id, amount=10_000, payment_method="card_provider")

    assert bank.status == "awaiting_receipt"
    assert card.status == "pending"
    assert bank.currency == "MAD"
    assert len(_notifications(bank.id, "donation_received")) == 1


@pytest.mark.parametrize(
    "kwargs, error",
    [
        ({"payment_method": "paypal"}, ValidationError),
        ({"amount": 50}, ValidationError),
        ({"amount": "ten"}, ValidationError),
        ({"project_id": 999_999}, NotFound),
        ({"user_id": 999_999}, NotFound),
    ],
)
def test_create_validation(make_user, make_project, kwargs, error):
    user, project = make_user(), make_project()
    args = {"user_id": user.id, "project_id": project.id, "amount": 10_000, "payment_method": "bank_transfer"}
    args.update(kwargs)
    with pytest.raises(error):
        donations.create_donation(**args)


def test_closed_projects_refuse_donations(make_user, make_project):
    user, project = make_user(), make_project(status="completed")
    with pytest.raises(InvalidTransition):
        donations.create_donation(user_id=user.id, project_id=project.id, amount=10_000, payment_method="cash_agency")


def test_receipt_moves_bank_transfer_to_review(make_donation):
    d = make_donation(payment_method="bank_transfer", status="awaiting_receipt")
    updated = donations.upload_receipt(d.id, "https://files.example/r.jpg", transaction_reference="TRX-1")

    assert updated.status == "awaiting_verification"
    assert updated.receipt_url == "https://files.example/r.jpg"
    assert updated.transaction_reference == "TRX-1"
    assert updated.receipt_uploaded_at is not None

    with pytest.raises(InvalidTransition):
        donations.upload_receipt(d.id, "https://files.example/again.jpg")


def test_pending_queue_is_oldest_first(make_donation):
    a = make_donation()
    b = make_donation()
    make_donation(status="verified")

    queue = donations.pending_verifications()
    assert [d.id for d in queue] == [a.id, b.id]


def test_project_is_write_once(make_donation, make_project):
    d = make_donation()
    other = make_project()
    assert d.project_id != other.id
    d.project_id = other.id
    with pytest.raises(ValueError):
        db.session.flush()
    db.session.rollback()


# ----------------------------
# What an admin may review
# ----------------------------
def test_admin_cannot_verify_before_receipt(make_donation):
    d = make_donation(payment_method="bank_transfer", status="awaiting_receipt")

    with pytest.raises(InvalidTransition):
        donations.apply_verification(d.id, True, "looks fine")

    assert db.session.get(Donation, d.id).status == "awaiting_receipt"
    assert db.session.get(Project, d.project_id).raised_amount == 0
    assert _notifications(d.id) == []
    assert _count(VerificationLog, VerificationLog.donation_id == d.id) == 0


def test_admin_confirms_cash_while_pending(make_donation):
    d = make_donation(payment_method="cash_agency", status="pending", amount=3_000)
    result = donations.apply_verification(d.id, True, "cash counted at agency")
    assert result.changed is True
    assert db.session.get(Project, d.project_id).raised_amount == 3_000


def test_unpaid_card_donation_is_left_to_the_provider(make_donation):
    d = make_donation(status="pending")
    with pytest.raises(InvalidTransition):
        donations.apply_verification(d.id, True)

    result = donations.apply_verification(d.id, True, source="whop")
    assert result.changed is True
    assert result.status == "verified"
