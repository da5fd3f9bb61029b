"""
Carrier poll worker.

Each job polls one shipment: call the carrier, store new events, re-evaluate
delay and pick the next poll time. Two retry mechanisms exist side by side.
Retryable carrier errors are re-raised so the queue retries the job with
backoff. Independently, every finished poll, failed or not, writes a
``next_poll_at`` so the shipment stays on its polling cadence.
"""
import enum
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from delaywatch.business_days import difference_in_calendar_days, utcnow
from delaywatch.carriers.registry import CarrierRegistry
from delaywatch.exceptions import CarrierError
from delaywatch.models import Carrier, Shipment
from delaywatch.queue import Job
from delaywatch.services import apply_tracking_result, get_shipment, record_poll_failure

logger = logging.getLogger(__name__)


class PollInterval:
    """Hours until the next poll."""

    IMMINENT = 4
    UPCOMING = 6
    FUTURE = 8
    PAST_DUE = 2
    RESCHEDULED = 4
    UNKNOWN = 8


MAX_RETRY_WIDENING_HOURS = 24

# Consecutive failures after which a shipment shows up as stale on the dashboard
MAX_POLL_ERROR_COUNT = 2


class PollingState(str, enum.Enum):
    PENDING_FIRST_SCAN = "PENDING_FIRST_SCAN"
    ON_TIME = "ON_TIME"
    DELAYED = "DELAYED"
    DELIVERED = "DELIVERED"
    ARCHIVED = "ARCHIVED"


@dataclass
class PollJobResult:
    shipment_id: int
    success: bool
    is_delayed: bool = False
    is_delivered: bool = False
    new_events_count: int = 0
    duration_ms: int = 0
    error: Optional[str] = None
    skipped: bool = False
    skip_reason: Optional[str] = None


def calculate_next_poll_at(shipment: Any, merchant: Any, now: Optional[datetime] = None) -> Optional[datetime]:
    """
    Next poll time from the distance to the expected delivery date.

    Returns ``None`` once the shipment is delivered or archived. The
    merchant's fixed offset is added to every interval so merchants do not
    all poll at the same minute.
    """
    if shipment.is_delivered or shipment.is_archived:
        return None

    now = now or utcnow()
    expected = shipment.expected_delivery_date

    if expected is None:
        interval_hours = PollInterval.UNKNOWN
    else:
        days_until = difference_in_calendar_days(expected, now)
        if days_until < 0:
            rescheduled = shipment.rescheduled_delivery_date
            if rescheduled is not None and rescheduled > now:
                interval_hours = PollInterval.RESCHEDULED
            else:
                interval_hours = PollInterval.PAST_DUE
        elif days_until <= 1:
            interval_hours = PollInterval.IMMINENT
        elif days_until <= 5:
            interval_hours = PollInterval.UPCOMING
        else:
            interval_hours = PollInterval.FUTURE

    offset_minutes = merchant.random_poll_offset or 0
    return now + timedelta(hours=interval_hours, minutes=offset_minutes)


def calculate_retry_poll_at(shipment: Any, merchant: Any, now: Optional[datetime] = None,
                            error_count: int = 1) -> Optional[datetime]:
    next_poll_at = calculate_next_poll_at(shipment, merchant, now)
    if next_poll_at is None:
        return None

    widening = min(2 ** max(error_count - 1, 0), MAX_RETRY_WIDENING_HOURS)
    return next_poll_at + timedelta(hours=widening)


def polling_state(shipment: Shipment) -> PollingState:
    if shipment.is_archived:
        return PollingState.ARCHIVED
    if shipment.is_delivered:
        return PollingState.DELIVERED
    if not shipment.has_carrier_scan:
        return PollingState.PENDING_FIRST_SCAN
    if shipment.is_delayed:
        return PollingState.DELAYED
    return PollingState.ON_TIME


class PollWorker:
    def __init__(self, session_factory: Callable[[], Session], registry: CarrierRegistry,
                 now_fn: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self.registry = registry
        self.now_fn = now_fn

    async def __call__(self, job: Job) -> PollJobResult:
        return await self.process(job)

    async def process(self, job: Job) -> PollJobResult:
        shipment_id = int(job.payload["shipment_id"])
        started = time.monotonic()

        logger.info(f"📦 Poll job {job.id} for shipment {shipment_id} (attempt {job.attempts_made}/{job.max_attempts})")

        with self.session_factory() as db:
            shipment = get_shipment(db, shipment_id)

            skip_reason = self._skip_reason(shipment)
            if skip_reason:
                logger.info(f"Skipping shipment {shipment_id}: {skip_reason}")
                return PollJobResult(
                    shipment_id=shipment_id,
                    success=True,
                    is_delayed=bool(shipment and shipment.is_delayed),
                    is_delivered=bool(shipment and shipment.is_delivered),
                    duration_ms=_elapsed_ms(started),
                    skipped=True,
                    skip_reason=skip_reason,
                )

            adapter = self.registry.get(shipment.carrier)
            try:
                result = await adapter.track(shipment.tracking_number)
            except CarrierError as e:
                if e.retryable and not job.is_final_attempt:
                    logger.warning(f"⚠️ {e.code} polling shipment {shipment_id}, the queue will retry: {e.message}")
                    raise
                return self._fail(db, shipment, f"{e.code}: {e.message}", started)
            except SQLAlchemyError:
                raise
            except Exception as e:
                logger.exception(f"❌ Unexpected error polling shipment {shipment_id}")
                return self._fail(db, shipment, f"UNKNOWN_ERROR: {type(e).__name__}: {e}", started)

            if result.is_empty:
                return self._fail(db, shipment, "EMPTY_RESPONSE: carrier returned no usable tracking data", started)

            now = self.now_fn()
            new_events, evaluation = apply_tracking_result(db, shipment, result, now)
            shipment.next_poll_at = calculate_next_poll_at(shipment, shipment.merchant, now)
            db.commit()

            duration_ms = _elapsed_ms(started)
            logger.info(
                f"✅ Polled shipment {shipment_id} in {duration_ms}ms: new_events={new_events}, "
                f"delayed={evaluation.is_delayed}, delivered={shipment.is_delivered}, "
                f"next_poll_at={shipment.next_poll_at}"
            )
            return PollJobResult(
                shipment_id=shipment_id,
                success=True,
                is_delayed=evaluation.is_delayed,
                is_delivered=bool(shipment.is_delivered),
                new_events_count=new_events,
                duration_ms=duration_ms,
            )

    def _skip_reason(self, shipment: Optional[Shipment]) -> Optional[str]:
        if shipment is None:
            return "Shipment not found"
        if shipment.is_delivered:
            return "Already delivered"
        if shipment.is_archived:
            return "Archived"
        if shipment.carrier == Carrier.UNKNOWN:
            return "Unknown carrier, needs merchant review"
        if not shipment.merchant.is_active:
            return "Merchant inactive"
        if self.registry.get(shipment.carrier) is None:
            return f"No adapter for {shipment.carrier.value}"
        return None

    def _fail(self, db: Session, shipment: Shipment, error: str, started: float) -> PollJobResult:
        now = self.now_fn()
        error_count = (shipment.poll_error_count or 0) + 1
        next_poll_at = calculate_retry_poll_at(shipment, shipment.merchant, now, error_count)

        record_poll_failure(shipment, now, next_poll_at)
        db.commit()

        logger.error(f"❌ Poll failed for shipment {shipment.id}: {error}, next poll at {next_poll_at}")
        if error_count >= MAX_POLL_ERROR_COUNT:
            logger.warning(f"⚠️ Shipment {shipment.id} has {error_count} consecutive poll errors")

        return PollJobResult(
            shipment_id=shipment.id,
            success=False,
            is_delayed=bool(shipment.is_delayed),
            is_delivered=False,
            duration_ms=_elapsed_ms(started),
            error=error,
        )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
