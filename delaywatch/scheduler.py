import enum
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from delaywatch.business_days import difference_in_calendar_days, utcnow
from delaywatch.queue import JobOptions, JobQueue
from delaywatch.services import iter_due_shipment_batches

logger = logging.getLogger(__name__)


CARRIER_POLL_QUEUE = "carrier-poll"

POLL_SCHEDULER_QUEUE = "poll-scheduler"
POLL_SCHEDULER_JOB_ID = "poll-scheduler"

POLL_SCHEDULER_BATCH_SIZE = 500
POLL_SCHEDULER_MAX_JOBS_PER_RUN = 10000


class PollPriority(enum.IntEnum):
    """Lower value is polled first."""

    URGENT = 1
    HIGH = 2
    NORMAL = 3
    LOW = 4


@dataclass
class PollSchedulerResult:
    shipments_found: int = 0
    jobs_enqueued: int = 0
    jobs_skipped: int = 0
    duration_ms: int = 0
    truncated: bool = False
    errors: List[str] = field(default_factory=list)


def calculate_poll_priority(expected_delivery_date: Optional[datetime], now: Optional[datetime] = None) -> PollPriority:
    if expected_delivery_date is None:
        return PollPriority.NORMAL

    days_until = difference_in_calendar_days(expected_delivery_date, now or utcnow())
    if days_until < 0:
        return PollPriority.URGENT
    if days_until <= 1:
        return PollPriority.HIGH
    if days_until <= 5:
        return PollPriority.NORMAL
    return PollPriority.LOW


def create_poll_job_id(shipment_id: int) -> str:
    return f"poll-{shipment_id}"


def poll_job_options(shipment_id: int, priority: int, attempts: int = 3, backoff_seconds: float = 2.0) -> JobOptions:
    return JobOptions(
        job_id=create_poll_job_id(shipment_id),
        priority=priority,
        attempts=attempts,
        backoff_seconds=backoff_seconds,
    )


async def run_poll_scheduler(db: Session, queue: JobQueue, now: Optional[datetime] = None,
                             batch_size: int = POLL_SCHEDULER_BATCH_SIZE,
                             max_jobs: int = POLL_SCHEDULER_MAX_JOBS_PER_RUN,
                             attempts: int = 3, backoff_seconds: float = 2.0) -> PollSchedulerResult:
    """
    Enqueue a poll job for every shipment that is due.

    Stops at ``max_jobs`` and marks the run truncated; whatever is left is
    still due on the next tick. A shipment whose poll job is already queued
    or running is counted as skipped, and one the queue refuses is recorded
    in ``errors`` without stopping the run.
    """
    started = time.monotonic()
    now = now or utcnow()
    result = PollSchedulerResult()

    logger.info(f"🔄 Poll scheduler tick at {now.isoformat()}")

    for batch in iter_due_shipment_batches(db, now, batch_size):
        for shipment_id, expected_delivery_date in batch:
            if result.jobs_enqueued >= max_jobs:
                result.truncated = True
                break

            result.shipments_found += 1
            priority = calculate_poll_priority(expected_delivery_date, now)
            try:
                job = await queue.enqueue(
                    CARRIER_POLL_QUEUE,
                    {"shipment_id": shipment_id},
                    poll_job_options(shipment_id, priority, attempts, backoff_seconds),
                )
            except Exception as e:
                logger.error(f"❌ Could not enqueue poll for shipment {shipment_id}: {e}")
                result.errors.append(f"Enqueue error for shipment {shipment_id}: {e}")
                continue

            if job is None:
                result.jobs_skipped += 1
            else:
                result.jobs_enqueued += 1

        if result.truncated:
            logger.warning(f"⚠️ Poll scheduler hit the {max_jobs} job cap, the rest waits for the next tick")
            break

    result.duration_ms = int((time.monotonic() - started) * 1000)
    logger.info(
        f"✅ Poll scheduler done in {result.duration_ms}ms: found={result.shipments_found}, "
        f"enqueued={result.jobs_enqueued}, skipped={result.jobs_skipped}, truncated={result.truncated}, "
        f"errors={len(result.errors)}"
    )
    return result
