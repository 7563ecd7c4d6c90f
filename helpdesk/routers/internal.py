"""
Internal endpoints for scheduled/cron operations.

Protected by X-Internal-Secret header.
Call from an external cron when the worker's own scheduler is not used.
"""

import logging

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from helpdesk.core.config import settings
from helpdesk.core.deps import get_db
from helpdesk.core.security import verify_secret
from helpdesk.core.structured_logging import build_log_context
from helpdesk.schemas.ticketing import BreachSweepResponse, MailPollResponse
from helpdesk.services import mailbox_service, sla_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/internal/scheduled", tags=["internal"])


def verify_internal_secret(x_internal_secret: str = Header(...)) -> None:
    """Verify the internal secret header."""
    if not settings.INTERNAL_SECRET:
        raise HTTPException(status_code=501, detail="INTERNAL_SECRET not configured")
    if not verify_secret(x_internal_secret, settings.INTERNAL_SECRET):
        raise HTTPException(status_code=403, detail="Invalid internal secret")


@router.post(
    "/sla-breaches",
    response_model=BreachSweepResponse,
    dependencies=[Depends(verify_internal_secret)],
)
def sweep_sla_breaches(db: Session = Depends(get_db)):
    """Flag every overdue, unpaused SLA target. Safe to call every minute."""
    result = sla_service.check_breaches(db)
    logger.info(
        "Scheduled SLA sweep: %s breaches flagged",
        result.total,
        extra=build_log_context(route="/internal/scheduled/sla-breaches", method="POST"),
    )
    return BreachSweepResponse(
        first_response_breached=result.first_response_breached,
        resolution_breached=result.resolution_breached,
    )


@router.post(
    "/mail-poll",
    response_model=MailPollResponse,
    dependencies=[Depends(verify_internal_secret)],
)
def poll_mailboxes(db: Session = Depends(get_db)):
    """Queue fetch jobs for active mailboxes whose polling interval has elapsed."""
    counts = mailbox_service.schedule_mailbox_polling(db)
    return MailPollResponse(**counts)
