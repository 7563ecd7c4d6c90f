"""Enum definitions for application constants."""

from helpdesk.db.enums.jobs import JobStatus, JobType
from helpdesk.db.enums.ticketing import (
    MailboxType,
    MessageType,
    SenderType,
    SlaState,
    TicketPriority,
    TicketStatus,
)

DEFAULT_JOB_STATUS = JobStatus.PENDING

__all__ = [
    "DEFAULT_JOB_STATUS",
    "JobStatus",
    "JobType",
    "MailboxType",
    "MessageType",
    "SenderType",
    "SlaState",
    "TicketPriority",
    "TicketStatus",
]
