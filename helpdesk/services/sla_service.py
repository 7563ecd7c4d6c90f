"""SLA engine: per-ticket timers, pause/resume, breach grading and sweeps.

Every timer-dependent operation is a silent no-op when the ticket has no
timer (no active policy matched at creation) or its timer was cancelled by a
merge. Breach flags only ever move from False to True.

Mutating helpers flush but do not commit; the calling lifecycle operation owns
the transaction. ``check_breaches`` is the exception: it runs standalone from
the scheduler and commits its own work.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from helpdesk.core.config import settings
from helpdesk.core.structured_logging import build_log_context
from helpdesk.db.enums import JobType, SlaState, TicketPriority, TicketStatus
from helpdesk.db.models import SlaPolicy, SlaTimer, Ticket
from helpdesk.schemas.ticketing import SlaStatus, SlaTargetStatus
from helpdesk.services import job_service

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _hours(value: Decimal | float | int) -> timedelta:
    return timedelta(seconds=float(Decimal(str(value)) * 3600))


def is_paused_status(status: TicketStatus | str) -> bool:
    """True for statuses that stop the SLA clock (pending, on hold)."""
    return TicketStatus(status) in TicketStatus.paused_statuses()


def get_active_policy(db: Session, priority: TicketPriority) -> SlaPolicy | None:
    """The active policy for ``priority``, if any."""
    return (
        db.query(SlaPolicy)
        .filter(SlaPolicy.priority == priority, SlaPolicy.is_active.is_(True))
        .order_by(SlaPolicy.created_at, SlaPolicy.id)
        .first()
    )


def get_timer(ticket: Ticket) -> SlaTimer | None:
    """The ticket's live timer; cancelled timers count as absent."""
    timer = ticket.sla_timer
    if timer is None or timer.cancelled_at is not None:
        return None
    return timer


def initialize_timer(db: Session, ticket: Ticket) -> SlaTimer | None:
    """
    Start the SLA clock for a new ticket.

    Due dates are computed from the policy active for the ticket's priority
    right now; later policy edits do not move them.
    """
    if ticket.sla_timer is not None:
        return ticket.sla_timer

    policy = get_active_policy(db, ticket.priority)
    if policy is None:
        logger.debug("No active SLA policy for priority %s", ticket.priority.value)
        return None

    now = _now_utc()
    timer = SlaTimer(
        ticket=ticket,
        policy=policy,
        first_response_due_at=now + _hours(policy.first_response_hours),
        resolution_due_at=now + _hours(policy.resolution_hours),
        first_response_breached=False,
        resolution_breached=False,
        total_paused_seconds=0,
        created_at=now,
    )
    db.add(timer)
    db.flush()
    logger.info(
        "SLA timer initialized from policy %s",
        policy.name,
        extra=build_log_context(ticket_id=str(ticket.id)),
    )
    return timer


def record_first_response(db: Session, ticket: Ticket) -> SlaTimer | None:
    """Stamp the first agent response once; grade it against the due date."""
    timer = get_timer(ticket)
    if timer is None or timer.first_responded_at is not None:
        return timer

    now = _now_utc()
    timer.first_responded_at = now
    if timer.first_response_due_at is not None and now > timer.first_response_due_at:
        timer.first_response_breached = True
    db.flush()
    return timer


def _effective_time(timer: SlaTimer, now: datetime) -> datetime:
    # A paused clock reads the moment it was stopped.
    return timer.paused_at or now


def record_resolution(db: Session, ticket: Ticket) -> SlaTimer | None:
    """
    Stamp resolution once.

    The breach check uses the SLA clock's time, so a ticket resolved while
    paused is graded against ``paused_at`` rather than wall-clock now.
    """
    timer = get_timer(ticket)
    if timer is None or timer.resolved_at is not None:
        return timer

    now = _now_utc()
    effective = _effective_time(timer, now)
    timer.resolved_at = now
    if timer.resolution_due_at is not None and effective > timer.resolution_due_at:
        timer.resolution_breached = True
    db.flush()
    return timer


def handle_status_change(
    db: Session,
    ticket: Ticket,
    old_status: TicketStatus,
    new_status: TicketStatus,
) -> SlaTimer | None:
    """Pause or resume the clock when the ticket crosses the paused-status boundary."""
    timer = get_timer(ticket)
    if timer is None:
        return None

    was_paused = is_paused_status(old_status)
    should_pause = is_paused_status(new_status)
    now = _now_utc()

    if not was_paused and should_pause:
        if timer.paused_at is None:
            timer.paused_at = now
    elif was_paused and not should_pause and timer.paused_at is not None:
        paused_seconds = max(0, int((now - timer.paused_at).total_seconds()))
        shift = timedelta(seconds=paused_seconds)
        timer.total_paused_seconds = (timer.total_paused_seconds or 0) + paused_seconds
        timer.paused_at = None
        # Outstanding targets slide forward by exactly the paused time.
        if timer.first_response_due_at is not None and timer.first_responded_at is None:
            timer.first_response_due_at = timer.first_response_due_at + shift
        if timer.resolution_due_at is not None and timer.resolved_at is None:
            timer.resolution_due_at = timer.resolution_due_at + shift

    db.flush()
    return timer


@dataclass
class BreachSweepResult:
    first_response_breached: int = 0
    resolution_breached: int = 0

    @property
    def total(self) -> int:
        return self.first_response_breached + self.resolution_breached


def check_breaches(db: Session) -> BreachSweepResult:
    """
    Flag overdue, unpaused, live timers as breached.

    Safe to run repeatedly; rows already flagged are not touched again.
    """
    now = _now_utc()
    live = (
        SlaTimer.paused_at.is_(None),
        SlaTimer.cancelled_at.is_(None),
    )

    first_response = db.execute(
        update(SlaTimer)
        .where(
            SlaTimer.first_responded_at.is_(None),
            SlaTimer.first_response_breached.is_(False),
            SlaTimer.first_response_due_at < now,
            *live,
        )
        .values(first_response_breached=True)
        .execution_options(synchronize_session=False)
    )
    resolution = db.execute(
        update(SlaTimer)
        .where(
            SlaTimer.resolved_at.is_(None),
            SlaTimer.resolution_breached.is_(False),
            SlaTimer.resolution_due_at < now,
            *live,
        )
        .values(resolution_breached=True)
        .execution_options(synchronize_session=False)
    )
    db.commit()

    result = BreachSweepResult(
        first_response_breached=first_response.rowcount or 0,
        resolution_breached=resolution.rowcount or 0,
    )
    if result.total:
        logger.info(
            "SLA sweep flagged %s first-response and %s resolution breaches",
            result.first_response_breached,
            result.resolution_breached,
        )
    return result


def _target_status(
    *,
    due_at: datetime | None,
    completed_at: datetime | None,
    breached: bool,
    paused_at: datetime | None,
    window: timedelta,
    now: datetime,
    approaching_percent: int,
) -> SlaTargetStatus:
    if due_at is None:
        return SlaTargetStatus.of(SlaState.NONE)
    if completed_at is not None:
        return SlaTargetStatus.of(SlaState.BREACHED if breached else SlaState.MET, due_at)
    if breached:
        return SlaTargetStatus.of(SlaState.BREACHED, due_at)
    if paused_at is not None:
        return SlaTargetStatus.of(SlaState.PAUSED, due_at)

    remaining = due_at - now
    if remaining <= timedelta(0):
        return SlaTargetStatus.of(SlaState.BREACHED, due_at)

    total_seconds = window.total_seconds()
    percent_remaining = (
        remaining.total_seconds() / total_seconds * 100 if total_seconds > 0 else 100
    )
    if percent_remaining <= approaching_percent:
        return SlaTargetStatus.of(SlaState.APPROACHING, due_at)
    return SlaTargetStatus.of(SlaState.ON_TRACK, due_at)


def get_sla_status(
    timer: SlaTimer | None,
    *,
    now: datetime | None = None,
    approaching_percent: int | None = None,
) -> SlaStatus:
    """
    Display status for both SLA targets. Read-only.

    The remaining fraction is measured against the target's original window
    (due date minus clock start, less any time spent paused).
    """
    if timer is None or timer.cancelled_at is not None:
        none = SlaTargetStatus.of(SlaState.NONE)
        return SlaStatus(first_response=none, resolution=none)

    now = now or _now_utc()
    threshold = settings.SLA_APPROACHING_PERCENT if approaching_percent is None else approaching_percent
    paused = timedelta(seconds=timer.total_paused_seconds or 0)

    def window(due_at: datetime | None) -> timedelta:
        if due_at is None or timer.created_at is None:
            return timedelta(0)
        return due_at - timer.created_at - paused

    return SlaStatus(
        first_response=_target_status(
            due_at=timer.first_response_due_at,
            completed_at=timer.first_responded_at,
            breached=timer.first_response_breached,
            paused_at=timer.paused_at,
            window=window(timer.first_response_due_at),
            now=now,
            approaching_percent=threshold,
        ),
        resolution=_target_status(
            due_at=timer.resolution_due_at,
            completed_at=timer.resolved_at,
            breached=timer.resolution_breached,
            paused_at=timer.paused_at,
            window=window(timer.resolution_due_at),
            now=now,
            approaching_percent=threshold,
        ),
    )


def cancel_timer(db: Session, ticket: Ticket) -> SlaTimer | None:
    """Retire the ticket's timer so sweeps and grading ignore it from now on."""
    timer = get_timer(ticket)
    if timer is None:
        return None
    timer.cancelled_at = _now_utc()
    db.flush()
    return timer


def schedule_breach_sweep(db: Session) -> bool:
    """Queue one breach sweep per minute. Returns False when already queued."""
    now = _now_utc()
    try:
        job_service.schedule_job(
            db,
            JobType.SLA_BREACH_SWEEP,
            {},
            idempotency_key=f"{JobType.SLA_BREACH_SWEEP.value}:{now:%Y%m%d%H%M}",
        )
    except IntegrityError:
        db.rollback()
        return False
    return True
