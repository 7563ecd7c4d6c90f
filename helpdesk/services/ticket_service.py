"""Ticket lifecycle: creation, messages, status/priority/assignment changes, merge."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterable

from sqlalchemy import update
from sqlalchemy.orm import Session

from helpdesk.core.config import settings
from helpdesk.core.structured_logging import build_log_context
from helpdesk.db.enums import MessageType, SenderType, TicketPriority, TicketStatus
from helpdesk.db.models import Customer, Message, Tag, Ticket, User
from helpdesk.db.transactions import run_with_unique_retry
from helpdesk.schemas.ticketing import MessageCreate, TicketCreate
from helpdesk.services import sla_service
from helpdesk.services.sequence_service import TicketNumberGenerator, default_generator
from helpdesk.types import AgentSender, CustomerSender
from helpdesk.utils.normalization import html_to_text

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _log_context(ticket: Ticket) -> dict:
    return build_log_context(ticket_id=str(ticket.id), ticket_number=ticket.ticket_number)


# =============================================================================
# Creation
# =============================================================================


def create_ticket(
    db: Session,
    data: TicketCreate,
    customer: Customer,
    *,
    mailbox_id=None,
    assigned_to=None,
    number_generator: TicketNumberGenerator | None = None,
) -> Ticket:
    """
    Create a ticket, its first customer message and its SLA timer in one transaction.

    The whole transaction is retried on uniqueness violations; each attempt
    draws a fresh ticket number. Any other failure propagates immediately.
    """
    generator = number_generator or default_generator(db)
    body_html = data.body_html
    body_text = data.body_text or html_to_text(body_html)

    def _create(attempt: int) -> Ticket:
        now = _now_utc()
        ticket = Ticket(
            ticket_number=generator.next(),
            subject=data.subject,
            status=TicketStatus.OPEN,
            priority=data.priority,
            customer_id=customer.id,
            assigned_to=assigned_to,
            mailbox_id=mailbox_id,
            last_activity_at=now,
            created_at=now,
            updated_at=now,
        )
        db.add(ticket)
        db.flush()

        if body_text or body_html:
            _insert_message(
                db,
                ticket,
                MessageCreate(
                    sender=CustomerSender(customer_id=customer.id),
                    type=MessageType.REPLY,
                    body_text=body_text,
                    body_html=body_html,
                ),
                now=now,
            )

        sla_service.initialize_timer(db, ticket)
        if attempt > 1:
            logger.info("Ticket created on attempt %s", attempt, extra=_log_context(ticket))
        return ticket

    ticket = run_with_unique_retry(
        db, _create, attempts=settings.TICKET_CREATE_MAX_ATTEMPTS
    )
    db.refresh(ticket)
    logger.info("Ticket %s created", ticket.ticket_number, extra=_log_context(ticket))
    return ticket


# =============================================================================
# Messages
# =============================================================================


def _insert_message(
    db: Session,
    ticket: Ticket,
    data: MessageCreate,
    *,
    now: datetime,
) -> Message:
    message = Message(
        ticket=ticket,
        type=data.type,
        body_text=data.body_text or "",
        body_html=data.body_html,
        message_id=data.message_id,
        in_reply_to=data.in_reply_to,
        references=data.references,
        created_at=now,
    )
    message.sender = data.sender
    db.add(message)
    ticket.last_activity_at = now
    db.flush()
    return message


def add_message(
    db: Session,
    ticket: Ticket,
    data: MessageCreate,
    *,
    commit: bool = True,
) -> Message:
    """
    Append a message to a ticket and bump its activity time.

    An agent reply records the SLA first response; internal notes and customer
    messages never touch SLA state.
    """
    message = _insert_message(db, ticket, data, now=_now_utc())

    if message.type == MessageType.REPLY and isinstance(data.sender, AgentSender):
        timer = sla_service.get_timer(ticket)
        if timer is not None and timer.first_responded_at is None:
            sla_service.record_first_response(db, ticket)

    if commit:
        db.commit()
        db.refresh(message)
    return message


def latest_customer_message(db: Session, ticket: Ticket) -> Message | None:
    """Most recent customer message on the ticket that carries a Message-ID."""
    return (
        db.query(Message)
        .filter(
            Message.ticket_id == ticket.id,
            Message.sender_type == SenderType.CUSTOMER,
            Message.message_id.isnot(None),
        )
        .order_by(Message.created_at.desc(), Message.id.desc())
        .first()
    )


# =============================================================================
# Field updates
# =============================================================================


def update_status(
    db: Session,
    ticket: Ticket,
    new_status: TicketStatus,
    *,
    commit: bool = True,
) -> Ticket:
    """Change status, pause/resume the SLA clock, and stamp resolution on Resolved/Closed."""
    old_status = ticket.status
    ticket.status = new_status
    ticket.last_activity_at = _now_utc()
    db.flush()

    sla_service.handle_status_change(db, ticket, old_status, new_status)
    if new_status in TicketStatus.terminal_statuses():
        sla_service.record_resolution(db, ticket)

    if commit:
        db.commit()
        db.refresh(ticket)
    logger.info(
        "Ticket status %s -> %s",
        old_status.value,
        new_status.value,
        extra=_log_context(ticket),
    )
    return ticket


def update_priority(db: Session, ticket: Ticket, priority: TicketPriority) -> Ticket:
    """Change priority. The SLA timer keeps the targets it started with."""
    ticket.priority = priority
    ticket.last_activity_at = _now_utc()
    db.commit()
    db.refresh(ticket)
    return ticket


def assign_ticket(db: Session, ticket: Ticket, agent: User | None) -> Ticket:
    ticket.assigned_to = agent.id if agent else None
    ticket.last_activity_at = _now_utc()
    db.commit()
    db.refresh(ticket)
    return ticket


def _find_or_create_tags(db: Session, names: Iterable[str]) -> list[Tag]:
    wanted: list[str] = []
    for name in names:
        cleaned = " ".join((name or "").split())
        if cleaned and cleaned not in wanted:
            wanted.append(cleaned)
    if not wanted:
        return []

    existing = {tag.name: tag for tag in db.query(Tag).filter(Tag.name.in_(wanted)).all()}
    tags: list[Tag] = []
    for name in wanted:
        tag = existing.get(name)
        if tag is None:
            tag = Tag(name=name)
            db.add(tag)
        tags.append(tag)
    db.flush()
    return tags


def add_tags(db: Session, ticket: Ticket, names: Iterable[str]) -> Ticket:
    """Attach tags by name, creating unknown ones. Already-attached tags are skipped."""
    attached = {tag.id for tag in ticket.tags}
    for tag in _find_or_create_tags(db, names):
        if tag.id not in attached:
            ticket.tags.append(tag)
            attached.add(tag.id)
    db.commit()
    db.refresh(ticket)
    return ticket


# =============================================================================
# Merge
# =============================================================================


def merge_tickets(db: Session, primary: Ticket, secondary: Ticket) -> Ticket:
    """
    Fold ``secondary`` into ``primary``.

    Messages move over, tags are unioned, the secondary is closed and its SLA
    timer cancelled. Self-merge must be rejected by the caller.
    """
    now = _now_utc()
    try:
        db.execute(
            update(Message)
            .where(Message.ticket_id == secondary.id)
            .values(ticket_id=primary.id)
            .execution_options(synchronize_session=False)
        )

        attached = {tag.id for tag in primary.tags}
        for tag in secondary.tags:
            if tag.id not in attached:
                primary.tags.append(tag)
                attached.add(tag.id)

        secondary.status = TicketStatus.CLOSED
        sla_service.cancel_timer(db, secondary)
        primary.last_activity_at = now
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(primary)
    logger.info(
        "Merged ticket %s into %s",
        secondary.ticket_number,
        primary.ticket_number,
        extra=_log_context(primary),
    )
    return primary
