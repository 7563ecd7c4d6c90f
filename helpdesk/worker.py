"""
Background worker for processing scheduled jobs.

Usage:
    python -m helpdesk.worker

The worker polls for pending jobs and processes them. Every
SCHEDULER_INTERVAL_SECONDS it also queues the SLA breach sweep and fetch jobs
for mailboxes whose polling interval has elapsed.
"""

import asyncio
import logging
import time

from sqlalchemy.orm import Session

from helpdesk.core.config import settings
from helpdesk.core.structured_logging import build_log_context
from helpdesk.db.session import SessionLocal
from helpdesk.jobs.registry import resolve_job_handler
from helpdesk.services import job_service, mailbox_service, sla_service

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# Worker configuration
POLL_INTERVAL_SECONDS = settings.WORKER_POLL_INTERVAL
BATCH_SIZE = settings.WORKER_BATCH_SIZE
SCHEDULER_INTERVAL_SECONDS = settings.SCHEDULER_INTERVAL_SECONDS


async def process_job(db: Session, job) -> None:
    """Process a single job based on its type."""
    logger.info(
        "Processing job %s (type=%s, attempt=%s)", job.id, job.job_type, job.attempts
    )
    handler = resolve_job_handler(job.job_type)
    await handler(db, job)


async def run_pending_jobs(db: Session, limit: int = BATCH_SIZE) -> int:
    """Run one batch of due jobs. Returns how many were picked up."""
    jobs = job_service.get_pending_jobs(db, limit=limit)
    if jobs:
        logger.info("Found %s pending jobs", len(jobs))

    for job in jobs:
        try:
            job_service.mark_job_running(db, job)
            await process_job(db, job)
            job_service.mark_job_completed(db, job)
            logger.info("Job %s completed successfully", job.id)
        except Exception as e:
            db.rollback()
            job_service.mark_job_failed(db, job, str(e))
            logger.error(
                "Job %s failed: %s",
                job.id,
                type(e).__name__,
                extra=build_log_context(job_id=str(job.id)),
            )
    return len(jobs)


def run_scheduler_tick(db: Session) -> dict[str, int]:
    """Queue the periodic breach sweep and due mailbox fetches."""
    counts = mailbox_service.schedule_mailbox_polling(db)
    counts["sla_sweeps_queued"] = int(sla_service.schedule_breach_sweep(db))
    return counts


async def worker_loop() -> None:
    """Main worker loop - polls for and processes pending jobs."""
    logger.info(
        "Worker starting (poll interval: %ss, batch size: %s)",
        POLL_INTERVAL_SECONDS,
        BATCH_SIZE,
    )

    last_tick: float | None = None
    while True:
        with SessionLocal() as db:
            try:
                if last_tick is None or time.monotonic() - last_tick >= SCHEDULER_INTERVAL_SECONDS:
                    run_scheduler_tick(db)
                    last_tick = time.monotonic()
                await run_pending_jobs(db)
            except Exception as e:
                logger.error("Error in worker loop: %s", type(e).__name__)

        await asyncio.sleep(POLL_INTERVAL_SECONDS)


def main() -> None:
    """Entry point for the worker."""
    try:
        asyncio.run(worker_loop())
    except KeyboardInterrupt:
        logger.info("Worker shutting down")
    except Exception:
        logger.exception(
            "Worker crashed",
            extra=build_log_context(route="worker", method="background"),
        )
        raise


if __name__ == "__main__":
    main()
