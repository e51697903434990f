# ibtasim/cli.py
# =============================================================================
# Maintenance commands: `flask ibtasim <command>`
# - reconcile-raised       recompute project totals from verified donations
# - notify-closing-soon    daily WhatsApp reminder job (cron at 09:00 UTC)
# - remind-receipts        nudge bank-transfer donors missing a receipt
# - broadcast              free-text announcement to verified donors
# - create-admin           bootstrap a back-office account
# =============================================================================

import click
from flask.cli import AppGroup
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from ibtasim.errors import IbtasimError
from ibtasim.extensions import db
from ibtasim.models import User
from ibtasim.services.notifications import broadcast, broadcast_closing_soon, remind_pending_receipts
from ibtasim.services.projects import reconcile_raised_amounts

ibtasim_cli = AppGroup("ibtasim", help="Ibtasim maintenance commands.")


@ibtasim_cli.command("reconcile-raised")
@click.option("--dry-run", is_flag=True, help="Report drift without writing.")
def reconcile_raised_cmd(dry_run: bool) -> None:
    """Recompute each project's raised amount from verified/completed donations."""
    drift = reconcile_raised_amounts(apply=not dry_run)
    if not drift:
        click.secho("All project totals match verified donations.", fg="green")
        return

    for r in drift:
        click.secho(
            f"  project {r.project_id}: stored={r.stored} computed={r.computed} (drift {r.drift:+d})",
            fg="yellow",
        )
    verb = "Would fix" if dry_run else "Fixed"
    click.secho(f"{verb} {len(drift)} project(s).", fg="bright_green" if not dry_run else "yellow", bold=True)


@ibtasim_cli.command("notify-closing-soon")
@click.option("--days", default=7, show_default=True, help="Look-ahead window in days.")
def notify_closing_soon_cmd(days: int) -> None:
    """Send reminders for active projects ending within DAYS days."""
    result = broadcast_closing_soon(days=days)
    click.secho(
        f"Projects: {result['projects']}  sent: {result['sent']}  failed: {result['failed']}",
        fg="green" if not result["failed"] else "yellow",
    )


@ibtasim_cli.command("remind-receipts")
@click.option("--hours", default=48, show_default=True, help="Minimum pledge age in hours.")
def remind_receipts_cmd(hours: int) -> None:
    """Remind bank-transfer donors who have not uploaded a receipt yet."""
    result = remind_pending_receipts(hours=hours)
    click.secho(
        f"Donations: {result['donations']}  sent: {result['sent']}  failed: {result['failed']}",
        fg="green" if not result["failed"] else "yellow",
    )


@ibtasim_cli.command("broadcast")
@click.argument("text")
@click.option("--project-id", type=int, default=None, help="Project the announcement is about.")
def broadcast_cmd(text: str, project_id: int) -> None:
    """Send TEXT to every verified donor over WhatsApp."""
    try:
        result = broadcast(text, project_id=project_id)
    except IbtasimError as e:
        click.secho(f"Broadcast refused: {e.message}", fg="red", bold=True)
        raise SystemExit(1)

    click.secho(
        f"Total: {result['total']}  successful: {result['successful']}  failed: {result['failed']}",
        fg="green" if not result["failed"] else "yellow",
    )
    for err in result["errors"]:
        click.secho(f"  {err}", fg="red")


@ibtasim_cli.command("create-admin")
@click.argument("email")
@click.option("--password", prompt=True, hide_input=True, confirmation_prompt=True)
@click.option("--name", default="Admin", show_default=True)
def create_admin_cmd(email: str, password: str, name: str) -> None:
    """Create (or promote) a back-office admin."""
    email = email.strip().lower()
    try:
        user = db.session.execute(select(User).where(func.lower(User.email) == email)).scalar_one_or_none()
        if user is None:
            user = User(email=email, full_name=name, preferred_language="ar")
            db.session.add(user)
        user.is_admin = True
        user.is_active = True
        user.set_password(password)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        click.secho(f"Failed to create admin: {e}", fg="red", bold=True)
        raise SystemExit(1)
    click.secho(f"Admin ready: {email}", fg="bright_green", bold=True)
