"""Mailbox polling, inbound ingestion batches and outbound ticket replies.

Connectors are the only place that talks to a mail provider. They are looked
up by mailbox type from a registry populated at startup.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Protocol
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from helpdesk.core.config import settings
from helpdesk.core.structured_logging import build_log_context
from helpdesk.db.enums import JobStatus, JobType, MailboxType, SenderType
from helpdesk.db.models import Job, Mailbox, Message, Ticket
from helpdesk.jobs.utils import mask_email
from helpdesk.schemas.ticketing import EmailRecord, MessageCreate
from helpdesk.services import (
    email_processor_service,
    job_service,
    settings_service,
    ticket_service,
)

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Connectors
# =============================================================================


class MailConnector(Protocol):
    def connect(self, mailbox: Mailbox) -> bool:
        ...

    def fetch_new_emails(self, since: datetime | None) -> list[EmailRecord | dict]:
        ...

    def send_email(
        self,
        *,
        to: str,
        subject: str,
        text: str | None,
        html: str | None,
        headers: dict[str, str],
    ) -> bool:
        ...


ConnectorFactory = Callable[[], MailConnector]

_CONNECTORS: dict[MailboxType, ConnectorFactory] = {}


def register_connector(mailbox_type: MailboxType, factory: ConnectorFactory) -> None:
    _CONNECTORS[MailboxType(mailbox_type)] = factory


def get_connector(mailbox: Mailbox) -> MailConnector | None:
    factory = _CONNECTORS.get(MailboxType(mailbox.type))
    return factory() if factory else None


def _connected(mailbox: Mailbox) -> MailConnector | None:
    context = build_log_context(mailbox_id=str(mailbox.id))
    connector = get_connector(mailbox)
    if connector is None:
        logger.error(
            "No connector available for mailbox type %s",
            MailboxType(mailbox.type).value,
            extra=context,
        )
        return None
    if not connector.connect(mailbox):
        logger.error("Failed to connect to mailbox", extra=context)
        return None
    return connector


# =============================================================================
# Polling
# =============================================================================


def is_polling_due(mailbox: Mailbox, now: datetime) -> bool:
    """Never checked, or the polling interval has elapsed since the last check."""
    if mailbox.last_checked_at is None:
        return True
    interval = mailbox.polling_interval or settings.DEFAULT_POLLING_INTERVAL_MINUTES
    return mailbox.last_checked_at + timedelta(minutes=interval) < now


def _fetch_job_key_prefix(mailbox_id: UUID) -> str:
    return f"{JobType.MAILBOX_FETCH.value}:{mailbox_id}:"


def _has_active_fetch_job(db: Session, mailbox_id: UUID) -> bool:
    return (
        db.query(Job.id)
        .filter(
            Job.job_type == JobType.MAILBOX_FETCH.value,
            Job.idempotency_key.like(f"{_fetch_job_key_prefix(mailbox_id)}%"),
            Job.status.in_([JobStatus.PENDING.value, JobStatus.RUNNING.value]),
        )
        .first()
        is not None
    )


def schedule_mailbox_polling(db: Session) -> dict[str, int]:
    """Queue a fetch job for every active mailbox whose polling interval has elapsed."""
    now = _now_utc()
    mailboxes = (
        db.query(Mailbox)
        .filter(Mailbox.is_active.is_(True))
        .order_by(Mailbox.created_at)
        .all()
    )
    mailbox_ids = [(mailbox.id, is_polling_due(mailbox, now)) for mailbox in mailboxes]

    counts = {"mailboxes_checked": 0, "jobs_created": 0, "duplicates_skipped": 0}
    for mailbox_id, due in mailbox_ids:
        counts["mailboxes_checked"] += 1
        if not due:
            continue
        if _has_active_fetch_job(db, mailbox_id):
            counts["duplicates_skipped"] += 1
            continue
        try:
            job_service.schedule_job(
                db,
                JobType.MAILBOX_FETCH,
                {"mailbox_id": str(mailbox_id)},
                idempotency_key=f"{_fetch_job_key_prefix(mailbox_id)}{now:%Y%m%d%H%M}",
            )
            counts["jobs_created"] += 1
        except IntegrityError:
            db.rollback()
            counts["duplicates_skipped"] += 1
    return counts


# =============================================================================
# Ingestion
# =============================================================================


@dataclass
class MailboxFetchResult:
    fetched: int = 0
    processed: int = 0
    failed: int = 0


def fetch_mailbox(db: Session, mailbox_id: UUID) -> MailboxFetchResult:
    """
    Pull new mail for one mailbox and feed each email to the correlator.

    A failing email is rolled back, logged and skipped so the rest of the
    batch still lands. ``last_checked_at`` is stamped with the fetch start.
    """
    result = MailboxFetchResult()
    mailbox = db.get(Mailbox, mailbox_id)
    if mailbox is None or not mailbox.is_active:
        return result

    connector = _connected(mailbox)
    if connector is None:
        return result

    started_at = _now_utc()
    emails = connector.fetch_new_emails(mailbox.last_checked_at)
    result.fetched = len(emails)
    prefix = settings_service.get_ticket_prefix(db)
    context = build_log_context(mailbox_id=str(mailbox_id))

    for raw in emails:
        try:
            record = raw if isinstance(raw, EmailRecord) else EmailRecord.model_validate(raw)
            email_processor_service.process_inbound_email(db, record, mailbox, prefix=prefix)
            result.processed += 1
        except Exception:
            db.rollback()
            result.failed += 1
            sender = raw.from_email if isinstance(raw, EmailRecord) else (raw or {}).get("from_email")
            logger.exception(
                "Failed to process inbound email from %s", mask_email(sender), extra=context
            )

    mailbox.last_checked_at = started_at
    db.commit()
    logger.info(
        "Mailbox fetch done: %s fetched, %s processed, %s failed",
        result.fetched,
        result.processed,
        result.failed,
        extra=context,
    )
    return result


# =============================================================================
# Outbound replies
# =============================================================================


def _reply_job_key(message_id: UUID) -> str:
    return f"{JobType.TICKET_REPLY_SEND.value}:{message_id}"


def enqueue_ticket_reply(
    db: Session,
    ticket: Ticket,
    message: Message,
    *,
    commit: bool = True,
) -> Job | None:
    """Queue delivery of an agent reply. Internal notes are never queued."""
    if message.is_internal or message.sender_type != SenderType.AGENT:
        return None
    return job_service.schedule_job(
        db,
        JobType.TICKET_REPLY_SEND,
        {"ticket_id": str(ticket.id), "message_id": str(message.id)},
        idempotency_key=_reply_job_key(message.id),
        commit=commit,
    )


def reply_to_ticket(db: Session, ticket: Ticket, data: MessageCreate) -> Message:
    """Add an agent message and, for replies, queue it for delivery in the same commit."""
    try:
        message = ticket_service.add_message(db, ticket, data, commit=False)
        enqueue_ticket_reply(db, ticket, message, commit=False)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(message)
    return message


def send_ticket_reply(db: Session, ticket_id: UUID, message_id: UUID) -> bool:
    """Deliver one stored reply to the ticket's customer, threaded onto the conversation."""
    context = build_log_context(ticket_id=str(ticket_id))
    ticket = db.get(Ticket, ticket_id)
    message = db.get(Message, message_id)
    if ticket is None or message is None or message.ticket_id != ticket.id:
        logger.error("Missing ticket or message for email reply", extra=context)
        return False
    if message.is_internal:
        logger.warning("Refusing to send internal note", extra=context)
        return False
    if ticket.mailbox is None:
        logger.error("Ticket has no mailbox to send from", extra=context)
        return False

    connector = _connected(ticket.mailbox)
    if connector is None:
        return False

    last_customer_message = ticket_service.latest_customer_message(db, ticket)
    headers = email_processor_service.build_outbound_headers(db, ticket, last_customer_message)
    sent = connector.send_email(
        to=ticket.customer.email,
        subject=headers["Subject"],
        text=message.body_text,
        html=message.body_html,
        headers=headers,
    )
    if not sent:
        logger.error("Failed to send email reply", extra=context)
    return sent
