"""Job handler registry."""

from __future__ import annotations

from typing import Awaitable, Callable, Mapping

from helpdesk.db.enums import JobType
from helpdesk.jobs.handlers import ticketing

JobHandler = Callable[[object, object], Awaitable[None]]

JOB_HANDLERS: Mapping[str, JobHandler] = {
    JobType.MAILBOX_FETCH.value: ticketing.process_mailbox_fetch,
    JobType.TICKET_REPLY_SEND.value: ticketing.process_ticket_reply_send,
    JobType.SLA_BREACH_SWEEP.value: ticketing.process_sla_breach_sweep,
}


def resolve_job_handler(job_type: str) -> JobHandler:
    handler = JOB_HANDLERS.get(job_type)
    if not handler:
        raise ValueError(f"Unknown job type: {job_type}")
    return handler
