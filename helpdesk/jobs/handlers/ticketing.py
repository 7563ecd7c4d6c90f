"""Ticketing + mailbox ingestion job handlers."""

from __future__ import annotations

import logging
from uuid import UUID

from helpdesk.services import mailbox_service, sla_service

logger = logging.getLogger(__name__)


def _uuid_from_payload(payload: dict, key: str) -> UUID:
    value = payload.get(key)
    if not value:
        raise ValueError(f"Missing {key} in job payload")
    return UUID(str(value))


async def process_mailbox_fetch(db, job) -> None:
    """Fetch and ingest new mail for one mailbox."""
    payload = job.payload or {}
    mailbox_id = _uuid_from_payload(payload, "mailbox_id")
    mailbox_service.fetch_mailbox(db, mailbox_id)


async def process_ticket_reply_send(db, job) -> None:
    """Deliver an agent reply through the ticket's mailbox."""
    payload = job.payload or {}
    ticket_id = _uuid_from_payload(payload, "ticket_id")
    message_id = _uuid_from_payload(payload, "message_id")
    if not mailbox_service.send_ticket_reply(db, ticket_id, message_id):
        raise RuntimeError("Ticket reply was not sent")


async def process_sla_breach_sweep(db, job) -> None:
    """Flag overdue SLA timers."""
    sla_service.check_breaches(db)
