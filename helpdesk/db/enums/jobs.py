"""Job-related enums."""

from enum import Enum


class JobType(str, Enum):
    """Types of background jobs."""

    MAILBOX_FETCH = "mailbox_fetch"
    TICKET_REPLY_SEND = "ticket_reply_send"
    SLA_BREACH_SWEEP = "sla_breach_sweep"


class JobStatus(str, Enum):
    """Background job status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
