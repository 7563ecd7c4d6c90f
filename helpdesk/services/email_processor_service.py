"""Inbound email correlation and outbound threading headers.

An inbound email is appended to an existing ticket when it can be tied to one,
trying in order:

1. ``In-Reply-To`` equals a stored ``Message.message_id``.
2. Any ``References`` token equals a stored ``Message.message_id``.
3. The subject carries ``[PREFIX-n]`` and ticket ``PREFIX-n`` exists.

Otherwise a new ticket is opened. Threading ids are matched byte-for-byte.
"""

from __future__ import annotations

import logging
import re

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from helpdesk.core.structured_logging import build_log_context
from helpdesk.db.enums import MessageType, TicketStatus
from helpdesk.db.models import Customer, Mailbox, Message, Ticket
from helpdesk.schemas.ticketing import EmailRecord, MessageCreate, TicketCreate
from helpdesk.services import attachment_service, settings_service, ticket_service
from helpdesk.services.sequence_service import TicketNumberGenerator, default_generator
from helpdesk.types import CustomerSender
from helpdesk.utils.normalization import (
    email_local_part,
    html_to_text,
    normalize_email,
    normalize_name,
)

logger = logging.getLogger(__name__)

NO_SUBJECT = "(No Subject)"


# =============================================================================
# Customers
# =============================================================================


def find_or_create_customer(db: Session, record: EmailRecord) -> Customer:
    """Resolve the sender by lowercased address, creating the customer if new."""
    email = normalize_email(record.from_email)
    if not email:
        raise ValueError("Inbound email has no sender address")

    customer = db.query(Customer).filter(Customer.email == email).first()
    if customer:
        return customer

    customer = Customer(
        email=email,
        name=normalize_name(record.from_name) or email_local_part(email),
    )
    db.add(customer)
    try:
        db.commit()
    except IntegrityError:
        # Another ingest created the same customer first.
        db.rollback()
        customer = db.query(Customer).filter(Customer.email == email).first()
        if customer is None:
            raise
        return customer
    db.refresh(customer)
    return customer


# =============================================================================
# Correlation
# =============================================================================


def _ticket_for_message_id(db: Session, message_id: str) -> Ticket | None:
    message = (
        db.query(Message)
        .filter(Message.message_id == message_id)
        .order_by(Message.created_at)
        .first()
    )
    return message.ticket if message else None


def subject_ticket_number(subject: str | None, prefix: str) -> str | None:
    """Ticket number from a ``[PREFIX-n]`` token in the subject, if present."""
    match = re.search(rf"\[{re.escape(prefix)}-(\d+)\]", subject or "")
    if not match:
        return None
    return f"{prefix}-{match.group(1)}"


def find_existing_ticket(db: Session, record: EmailRecord, *, prefix: str) -> Ticket | None:
    """First ticket matched by the three strategies, in order."""
    if record.in_reply_to:
        ticket = _ticket_for_message_id(db, record.in_reply_to)
        if ticket:
            logger.debug("Matched ticket by In-Reply-To")
            return ticket

    for ref in record.reference_ids():
        ticket = _ticket_for_message_id(db, ref.strip())
        if ticket:
            logger.debug("Matched ticket by References")
            return ticket

    ticket_number = subject_ticket_number(record.subject, prefix)
    if ticket_number:
        ticket = db.query(Ticket).filter(Ticket.ticket_number == ticket_number).first()
        if ticket:
            logger.debug("Matched ticket by subject tag")
            return ticket

    return None


# =============================================================================
# Processing
# =============================================================================


def process_inbound_email(
    db: Session,
    record: EmailRecord,
    mailbox: Mailbox,
    *,
    prefix: str | None = None,
    number_generator: TicketNumberGenerator | None = None,
) -> Ticket:
    """
    Turn one fetched email into ticket state.

    Failures propagate to the caller; batch ingestion decides whether to skip.
    """
    prefix = prefix or settings_service.get_ticket_prefix(db)
    customer = find_or_create_customer(db, record)
    ticket = find_existing_ticket(db, record, prefix=prefix)

    if ticket is not None:
        return _append_to_ticket(db, ticket, record, customer)

    generator = number_generator or default_generator(db, prefix=prefix)
    return _create_from_email(db, record, customer, mailbox, generator)


def _create_from_email(
    db: Session,
    record: EmailRecord,
    customer: Customer,
    mailbox: Mailbox,
    generator: TicketNumberGenerator,
) -> Ticket:
    ticket = ticket_service.create_ticket(
        db,
        TicketCreate(
            subject=record.subject or NO_SUBJECT,
            body_text=record.body_text,
            body_html=record.body_html,
        ),
        customer,
        mailbox_id=mailbox.id,
        number_generator=generator,
    )

    message = (
        db.query(Message)
        .filter(Message.ticket_id == ticket.id)
        .order_by(Message.created_at)
        .first()
    )
    if message is not None:
        # Threading ids are only known here, after the generic first message exists.
        message.message_id = record.message_id or None
        message.in_reply_to = record.in_reply_to or None
        message.references = record.references_header()
    elif record.message_id or record.attachments:
        # Bodyless email: keep a message so its id and files are not lost.
        message = ticket_service.add_message(
            db,
            ticket,
            _customer_message(record, customer),
            commit=False,
        )

    if message is not None:
        attachment_service.store_message_attachments(db, message, record.attachments)
    db.commit()
    db.refresh(ticket)
    logger.info(
        "Opened ticket %s from inbound email",
        ticket.ticket_number,
        extra=build_log_context(
            ticket_id=str(ticket.id),
            ticket_number=ticket.ticket_number,
            mailbox_id=str(mailbox.id),
        ),
    )
    return ticket


def _customer_message(record: EmailRecord, customer: Customer) -> MessageCreate:
    return MessageCreate(
        sender=CustomerSender(customer_id=customer.id),
        type=MessageType.REPLY,
        body_text=record.body_text or html_to_text(record.body_html),
        body_html=record.body_html,
        message_id=record.message_id or None,
        in_reply_to=record.in_reply_to or None,
        references=record.references_header(),
    )


def _append_to_ticket(
    db: Session,
    ticket: Ticket,
    record: EmailRecord,
    customer: Customer,
) -> Ticket:
    context = build_log_context(ticket_id=str(ticket.id), ticket_number=ticket.ticket_number)
    try:
        # Reopen, message and attachments land together or not at all.
        if ticket.status in TicketStatus.terminal_statuses():
            logger.info("Customer reply reopens ticket %s", ticket.ticket_number, extra=context)
            ticket_service.update_status(db, ticket, TicketStatus.OPEN, commit=False)

        message = ticket_service.add_message(
            db,
            ticket,
            _customer_message(record, customer),
            commit=False,
        )
        attachment_service.store_message_attachments(db, message, record.attachments)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(ticket)
    logger.info("Appended inbound email to ticket %s", ticket.ticket_number, extra=context)
    return ticket


# =============================================================================
# Outbound
# =============================================================================


def build_outbound_headers(
    db: Session,
    ticket: Ticket,
    last_message: Message | None = None,
) -> dict[str, str]:
    """
    Subject, In-Reply-To and References for an outgoing reply on ``ticket``.

    ``last_message`` defaults to the latest customer message with a Message-ID.
    """
    headers = {"Subject": f"[{ticket.ticket_number}] {ticket.subject}"}

    if last_message is None:
        last_message = ticket_service.latest_customer_message(db, ticket)
    if last_message is not None and last_message.message_id:
        headers["In-Reply-To"] = last_message.message_id

    references = db.scalars(
        select(Message.message_id)
        .where(Message.ticket_id == ticket.id, Message.message_id.isnot(None))
        .order_by(Message.created_at, Message.id)
    ).all()
    if references:
        headers["References"] = " ".join(references)

    return headers
