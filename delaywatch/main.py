import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any, Dict

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from delaywatch import services
from delaywatch.carriers.registry import CarrierRegistry, build_tracking_url
from delaywatch.carriers.token_cache import TokenCache
from delaywatch.cleanup import (
    DATA_CLEANUP_INTERVAL_SECONDS,
    DATA_CLEANUP_JOB_ID,
    DATA_CLEANUP_QUEUE,
    archive_delivered_shipments,
)
from delaywatch.config import settings
from delaywatch.database import SessionLocal, get_db, init_db
from delaywatch.exceptions import ShipmentNotFoundError
from delaywatch.logging_config import setup_logging
from delaywatch.models import Shipment
from delaywatch.queue import InMemoryJobQueue, Job, JobOptions, JobQueue
from delaywatch.scheduler import (
    CARRIER_POLL_QUEUE,
    POLL_SCHEDULER_JOB_ID,
    POLL_SCHEDULER_QUEUE,
    calculate_poll_priority,
    poll_job_options,
    run_poll_scheduler,
)
from delaywatch.worker import PollWorker, polling_state

setup_logging(log_level=settings.log_level, log_file=settings.log_file)

logger = logging.getLogger(__name__)


async def run_scheduler_job(job: Job, queue: JobQueue) -> Dict[str, Any]:
    with SessionLocal() as db:
        result = await run_poll_scheduler(
            db,
            queue,
            batch_size=settings.poll_scheduler_batch_size,
            max_jobs=settings.poll_scheduler_max_jobs,
            attempts=settings.carrier_poll_attempts,
            backoff_seconds=settings.carrier_poll_backoff_seconds,
        )
    return asdict(result)


async def run_cleanup_job(job: Job) -> Dict[str, Any]:
    with SessionLocal() as db:
        archived = archive_delivered_shipments(db)
    return {"shipments_archived": archived}


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()

    token_cache = TokenCache()
    http = httpx.AsyncClient()
    registry = CarrierRegistry.from_settings(http, token_cache, settings)
    queue = InMemoryJobQueue()

    worker = PollWorker(SessionLocal, registry)
    await queue.consume(CARRIER_POLL_QUEUE, worker, concurrency=settings.carrier_poll_concurrency)
    await queue.consume(POLL_SCHEDULER_QUEUE, lambda job: run_scheduler_job(job, queue), concurrency=1)
    await queue.consume(DATA_CLEANUP_QUEUE, run_cleanup_job, concurrency=1)

    await queue.add_repeatable(
        POLL_SCHEDULER_QUEUE, {}, settings.poll_scheduler_interval_minutes * 60, POLL_SCHEDULER_JOB_ID
    )
    await queue.add_repeatable(DATA_CLEANUP_QUEUE, {}, DATA_CLEANUP_INTERVAL_SECONDS, DATA_CLEANUP_JOB_ID)

    app.state.queue = queue
    app.state.registry = registry

    logger.info("🚀 Delivery tracking engine started")
    try:
        yield
    finally:
        await queue.close()
        await http.aclose()
        token_cache.clear()
        logger.info("👋 Delivery tracking engine stopped")


app = FastAPI(title="Delivery Delay Monitoring", lifespan=lifespan)


def get_queue(request: Request) -> JobQueue:
    return request.app.state.queue


@app.exception_handler(ShipmentNotFoundError)
async def shipment_not_found_handler(request: Request, exc: ShipmentNotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


def shipment_details(shipment: Shipment) -> Dict[str, Any]:
    return {
        "id": shipment.id,
        "order_id": shipment.order_id,
        "order_number": shipment.order_number,
        "carrier": shipment.carrier.value,
        "tracking_number": shipment.tracking_number,
        "tracking_url": build_tracking_url(shipment.carrier, shipment.tracking_number),
        "service_level": shipment.service_level,
        "state": polling_state(shipment).value,
        "current_status": shipment.current_status,
        "ship_date": shipment.ship_date,
        "expected_delivery_date": shipment.expected_delivery_date,
        "expected_delivery_source": shipment.expected_delivery_source.value if shipment.expected_delivery_source else None,
        "rescheduled_delivery_date": shipment.rescheduled_delivery_date,
        "is_delivered": shipment.is_delivered,
        "delivered_at": shipment.delivered_at,
        "is_delayed": shipment.is_delayed,
        "delay_reason": shipment.delay_reason.value if shipment.delay_reason else None,
        "delay_flagged_at": shipment.delay_flagged_at,
        "days_delayed": shipment.days_delayed,
        "carrier_exception_code": shipment.carrier_exception_code,
        "carrier_exception_reason": shipment.carrier_exception_reason,
        "last_scan_location": shipment.last_scan_location,
        "last_scan_time": shipment.last_scan_time,
        "last_polled_at": shipment.last_polled_at,
        "next_poll_at": shipment.next_poll_at,
        "poll_error_count": shipment.poll_error_count,
        "events": [
            {
                "timestamp": event.event_timestamp,
                "type": event.event_type,
                "description": event.description,
                "city": event.city,
                "state": event.state,
                "country": event.country,
            }
            for event in shipment.tracking_events
        ],
    }


@app.get("/api/shipments/{shipment_id}")
async def get_shipment(shipment_id: int, db: Session = Depends(get_db)) -> Dict[str, Any]:
    shipment = services.get_shipment_or_raise(db, shipment_id)
    return shipment_details(shipment)


@app.post("/api/shipments/{shipment_id}/poll")
async def poll_shipment(shipment_id: int, db: Session = Depends(get_db),
                        queue: JobQueue = Depends(get_queue)) -> Dict[str, Any]:
    shipment = services.get_shipment_or_raise(db, shipment_id)

    options = poll_job_options(
        shipment.id,
        calculate_poll_priority(shipment.expected_delivery_date),
        settings.carrier_poll_attempts,
        settings.carrier_poll_backoff_seconds,
    )
    job = await queue.enqueue(CARRIER_POLL_QUEUE, {"shipment_id": shipment.id}, options)

    if job is None:
        logger.info(f"Poll for shipment {shipment.id} already queued")
        return {"enqueued": False, "job_id": options.job_id}

    logger.info(f"🔄 Manual poll queued for shipment {shipment.id}")
    return {"enqueued": True, "job_id": job.id}


@app.post("/api/scheduler/run")
async def run_scheduler(queue: JobQueue = Depends(get_queue)) -> Dict[str, Any]:
    job = await queue.enqueue(POLL_SCHEDULER_QUEUE, {}, JobOptions(job_id=POLL_SCHEDULER_JOB_ID))

    if job is None:
        logger.info("Poll scheduler tick already queued or running")
        return {"enqueued": False, "job_id": POLL_SCHEDULER_JOB_ID}

    logger.info("🔄 Manual poll scheduler run queued")
    return {"enqueued": True, "job_id": job.id}


@app.get("/health")
async def health_check():
    return {"status": "ok"}
