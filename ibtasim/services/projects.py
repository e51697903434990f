"""Project aggregate maintenance (raised totals, funded transition, closing-soon lookup)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import and_, func, select, update as sa_update

from ibtasim.extensions import db
from ibtasim.models import Donation, Project, utcnow
from ibtasim.models.donation import COUNTED_STATUSES

log = logging.getLogger(__name__)


def credit_raised_amount(project_id: int, amount: int) -> bool:
    """
    Add ``amount`` cents to the project's raised total inside the caller's
    transaction. Returns True when the project just crossed its goal.
    """
    now = utcnow()
    db.session.execute(
        sa_update(Project)
        .where(Project.id == project_id)
        .values(raised_amount=Project.raised_amount + int(amount), updated_at=now)
    )
    res = db.session.execute(
        sa_update(Project)
        .where(
            and_(
                Project.id == project_id,
                Project.status == "active",
                Project.raised_amount >= Project.goal_amount,
            )
        )
        .values(status="funded", updated_at=now)
    )
    funded = bool(getattr(res, "rowcount", 0))
    if funded:
        log.info("project %s reached its goal", project_id)
    return funded


@dataclass(frozen=True)
class ReconcileResult:
    project_id: int
    stored: int
    computed: int

    @property
    def drift(self) -> int:
        return self.computed - self.stored


def reconcile_raised_amounts(apply: bool = True) -> List[ReconcileResult]:
    """
    Recompute every project's raised_amount from its verified/completed
    donations; returns the projects whose stored total disagreed.
    """
    totals = dict(
        db.session.execute(
            select(Donation.project_id, func.coalesce(func.sum(Donation.amount), 0))
            .where(Donation.status.in_(COUNTED_STATUSES))
            .group_by(Donation.project_id)
        ).all()
    )

    out: List[ReconcileResult] = []
    for project in db.session.execute(select(Project).order_by(Project.id)).scalars():
        computed = int(totals.get(project.id, 0) or 0)
        stored = int(project.raised_amount or 0)
        if computed == stored:
            continue
        out.append(ReconcileResult(project_id=project.id, stored=stored, computed=computed))
        if apply:
            project.raised_amount = computed

    if apply and out:
        db.session.commit()
        log.warning("reconciled raised_amount on %d project(s)", len(out))
    return out


def projects_closing_soon(days: int = 7, now: Optional[datetime] = None) -> List[Project]:
    now = now or utcnow()
    horizon = now + timedelta(days=int(days))
    return list(
        db.session.execute(
            select(Project)
            .where(
                Project.status == "active",
                Project.end_date.is_not(None),
                Project.end_date > now,
                Project.end_date <= horizon,
            )
            .order_by(Project.end_date)
        ).scalars()
    )


__all__ = ["credit_raised_amount", "reconcile_raised_amounts", "projects_closing_soon", "ReconcileResult"]
