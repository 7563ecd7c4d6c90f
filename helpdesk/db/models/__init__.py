"""SQLAlchemy ORM models."""

from helpdesk.db.models.auth import User
from helpdesk.db.models.jobs import Job
from helpdesk.db.models.settings import Setting
from helpdesk.db.models.ticketing import (
    Attachment,
    Customer,
    Mailbox,
    Message,
    SlaPolicy,
    SlaTimer,
    Tag,
    Ticket,
    TicketCounter,
    ticket_tags,
)

__all__ = [
    "Attachment",
    "Customer",
    "Job",
    "Mailbox",
    "Message",
    "Setting",
    "SlaPolicy",
    "SlaTimer",
    "Tag",
    "Ticket",
    "TicketCounter",
    "User",
    "ticket_tags",
]
