"""initial schema

Revision ID: 3b9e2f4c7a10
Revises:
Create Date: 2026-10-19 09:12:41.208316
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "3b9e2f4c7a10"
down_revision = None
branch_labels = None
depends_on = None


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _jsonb(sa_json):
    # Portable: JSON on SQLite, JSONB on Postgres
    return sa_json.with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def _timestamp_indexes(batch_op, table: str):
    batch_op.create_index(batch_op.f(f"ix_{table}_created_at"), ["created_at"], unique=False)
    batch_op.create_index(batch_op.f(f"ix_{table}_updated_at"), ["updated_at"], unique=False)


def upgrade():
    # --- users ---
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("full_name", sa.String(length=160), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("phone_number", sa.String(length=32), nullable=True),
        sa.Column("preferred_language", sa.String(length=2), nullable=False),
        sa.Column("notifications_enabled", sa.Boolean(), nullable=False),
        sa.Column("is_verified", sa.Boolean(), nullable=False),
        sa.Column("password_hash", sa.String(length=255), nullable=True),
        sa.Column("is_admin", sa.Boolean(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("last_login_at", sa.DateTime(), nullable=True),
        sa.Column("total_donated", sa.Integer(), nullable=False),
        sa.Column("donation_count", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("total_donated >= 0", name="ck_users_total_donated_nonneg"),
        sa.CheckConstraint("preferred_language IN ('ar','fr','en')", name="ck_users_language"),
    )
    with op.batch_alter_table("users") as batch_op:
        batch_op.create_index(batch_op.f("ix_users_email"), ["email"], unique=True)
        batch_op.create_index(batch_op.f("ix_users_phone_number"), ["phone_number"], unique=True)
        _timestamp_indexes(batch_op, "users")

    # --- projects ---
    op.create_table(
        "projects",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("title", _jsonb(sa.JSON()), nullable=False),
        sa.Column("description", _jsonb(sa.JSON()), nullable=False),
        sa.Column("category", sa.String(length=40), nullable=False),
        sa.Column("location", sa.String(length=160), nullable=True),
        sa.Column("beneficiaries", sa.Integer(), nullable=True),
        sa.Column("goal_amount", sa.Integer(), nullable=False),
        sa.Column("raised_amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("is_featured", sa.Boolean(), nullable=False),
        sa.Column("start_date", sa.DateTime(), nullable=True),
        sa.Column("end_date", sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("raised_amount >= 0", name="ck_projects_raised_nonneg"),
        sa.CheckConstraint("goal_amount > 0", name="ck_projects_goal_positive"),
    )
    with op.batch_alter_table("projects") as batch_op:
        batch_op.create_index(batch_op.f("ix_projects_category"), ["category"], unique=False)
        batch_op.create_index(batch_op.f("ix_projects_status"), ["status"], unique=False)
        batch_op.create_index(batch_op.f("ix_projects_end_date"), ["end_date"], unique=False)
        batch_op.create_index("ix_projects_status_featured", ["status", "is_featured"], unique=False)
        _timestamp_indexes(batch_op, "projects")

    # --- donations ---
    op.create_table(
        "donations",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("project_id", sa.Integer(), sa.ForeignKey("projects.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("covers_fees", sa.Boolean(), nullable=False),
        sa.Column("payment_method", sa.String(length=20), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("verified_by_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("verification_source", sa.String(length=20), nullable=True),
        sa.Column("verified_at", sa.DateTime(), nullable=True),
        sa.Column("verification_notes", sa.Text(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("provider_payment_id", sa.String(length=120), nullable=True),
        sa.Column("provider_status", sa.String(length=40), nullable=True),
        sa.Column("receipt_url", sa.String(length=500), nullable=True),
        sa.Column("receipt_uploaded_at", sa.DateTime(), nullable=True),
        sa.Column("bank_name", sa.String(length=120), nullable=True),
        sa.Column("transaction_reference", sa.String(length=120), nullable=True),
        sa.Column("is_anonymous", sa.Boolean(), nullable=False),
        sa.Column("message", sa.String(length=500), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("amount > 0", name="ck_donations_amount_positive"),
    )
    with op.batch_alter_table("donations") as batch_op:
        batch_op.create_index(batch_op.f("ix_donations_user_id"), ["user_id"], unique=False)
        batch_op.create_index(batch_op.f("ix_donations_project_id"), ["project_id"], unique=False)
        batch_op.create_index(batch_op.f("ix_donations_payment_method"), ["payment_method"], unique=False)
        batch_op.create_index(batch_op.f("ix_donations_status"), ["status"], unique=False)
        batch_op.create_index(batch_op.f("ix_donations_provider_payment_id"), ["provider_payment_id"], unique=False)
        batch_op.create_index("ix_donations_status_created", ["status", "created_at"], unique=False)
        batch_op.create_index("ix_donations_project_status", ["project_id", "status"], unique=False)
        _timestamp_indexes(batch_op, "donations")

    # --- payments ---
    op.create_table(
        "payments",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("donation_id", sa.Integer(), sa.ForeignKey("donations.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("provider_payment_id", sa.String(length=120), nullable=True),
        sa.Column("provider_product_id", sa.String(length=120), nullable=True),
        sa.Column("checkout_url", sa.String(length=500), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("platform_fee", sa.Integer(), nullable=False),
        sa.Column("processing_fee", sa.Integer(), nullable=False),
        sa.Column("net_amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("initiated_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("failed_at", sa.DateTime(), nullable=True),
        sa.Column("failure_reason", sa.String(length=500), nullable=True),
        sa.Column("refund_reason", sa.String(length=500), nullable=True),
        sa.Column("last_webhook_at", sa.DateTime(), nullable=True),
        sa.Column("webhook_events", _jsonb(sa.JSON()), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("amount >= 0", name="ck_payments_amount_nonneg"),
    )
    with op.batch_alter_table("payments") as batch_op:
        batch_op.create_index(batch_op.f("ix_payments_donation_id"), ["donation_id"], unique=True)
        batch_op.create_index(batch_op.f("ix_payments_user_id"), ["user_id"], unique=False)
        batch_op.create_index(batch_op.f("ix_payments_provider_payment_id"), ["provider_payment_id"], unique=False)
        batch_op.create_index(batch_op.f("ix_payments_status"), ["status"], unique=False)
        _timestamp_indexes(batch_op, "payments")

    # --- verification_logs ---
    op.create_table(
        "verification_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("donation_id", sa.Integer(), sa.ForeignKey("donations.id", ondelete="CASCADE"), nullable=False),
        sa.Column("admin_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("source", sa.String(length=20), nullable=False),
        sa.Column("action", sa.String(length=10), nullable=False),
        sa.Column("previous_status", sa.String(length=32), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        *_timestamps(),
    )
    with op.batch_alter_table("verification_logs") as batch_op:
        batch_op.create_index(batch_op.f("ix_verification_logs_donation_id"), ["donation_id"], unique=False)
        batch_op.create_index(batch_op.f("ix_verification_logs_admin_id"), ["admin_id"], unique=False)
        _timestamp_indexes(batch_op, "verification_logs")

    # --- notifications ---
    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("donation_id", sa.Integer(), sa.ForeignKey("donations.id", ondelete="CASCADE"), nullable=True),
        sa.Column("project_id", sa.Integer(), sa.ForeignKey("projects.id", ondelete="CASCADE"), nullable=True),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("channel", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("content", _jsonb(sa.JSON()), nullable=False),
        sa.Column("recipient", sa.String(length=255), nullable=True),
        sa.Column("sent_at", sa.DateTime(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("error_message", sa.String(length=500), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("donation_id", "type", name="uq_notifications_donation_type"),
    )
    with op.batch_alter_table("notifications") as batch_op:
        batch_op.create_index(batch_op.f("ix_notifications_user_id"), ["user_id"], unique=False)
        batch_op.create_index(batch_op.f("ix_notifications_donation_id"), ["donation_id"], unique=False)
        batch_op.create_index(batch_op.f("ix_notifications_project_id"), ["project_id"], unique=False)
        batch_op.create_index(batch_op.f("ix_notifications_type"), ["type"], unique=False)
        batch_op.create_index("ix_notifications_status_created", ["status", "created_at"], unique=False)
        _timestamp_indexes(batch_op, "notifications")

    # --- webhook_events ---
    op.create_table(
        "webhook_events",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("provider", sa.String(length=20), nullable=False),
        sa.Column("event_id", sa.String(length=120), nullable=False),
        sa.Column("type", sa.String(length=120), nullable=False),
        sa.Column("donation_ref", sa.String(length=64), nullable=True),
        sa.Column("payload", _jsonb(sa.JSON()), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("provider", "event_id", name="uq_webhook_events_provider_event"),
    )
    with op.batch_alter_table("webhook_events") as batch_op:
        batch_op.create_index(batch_op.f("ix_webhook_events_event_id"), ["event_id"], unique=False)
        batch_op.create_index(batch_op.f("ix_webhook_events_donation_ref"), ["donation_ref"], unique=False)
        batch_op.create_index(batch_op.f("ix_webhook_events_status"), ["status"], unique=False)
        batch_op.create_index("ix_webhook_events_type_created", ["type", "created_at"], unique=False)
        batch_op.create_index("ix_webhook_events_status_created", ["status", "created_at"], unique=False)
        _timestamp_indexes(batch_op, "webhook_events")

    # --- config_entries ---
    op.create_table(
        "config_entries",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("key", sa.String(length=120), nullable=False),
        sa.Column("value", sa.Text(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
    )
    with op.batch_alter_table("config_entries") as batch_op:
        batch_op.create_index(batch_op.f("ix_config_entries_key"), ["key"], unique=True)
        _timestamp_indexes(batch_op, "config_entries")


def downgrade():
    for table in (
        "config_entries",
        "webhook_events",
        "notifications",
        "verification_logs",
        "payments",
        "donations",
        "projects",
        "users",
    ):
        op.drop_table(table)
