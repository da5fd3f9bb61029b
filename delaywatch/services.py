import logging
from datetime import datetime, timedelta
from typing import Iterator, List, Optional, Sequence, Set, Tuple

from sqlalchemy.orm import Session, joinedload

from delaywatch.business_days import utcnow
from delaywatch.carriers.base import TrackingEventData, TrackingResult
from delaywatch.carriers.registry import detect_carrier, extract_service_level_from_company
from delaywatch.delay_detection import (
    DelayEvaluationResult,
    calculate_default_expected_delivery,
    evaluate_delay,
    get_delay_update_fields,
)
from delaywatch.exceptions import ShipmentNotFoundError
from delaywatch.models import (
    INACTIVE_BILLING_STATUSES,
    Carrier,
    DeliverySource,
    Merchant,
    Shipment,
    TrackingEvent,
)

logger = logging.getLogger(__name__)


EVENT_TYPE_MAX_LENGTH = 50
EVENT_DESCRIPTION_MAX_LENGTH = 500

INITIAL_POLL_DELAY_MINUTES = 30

EventKey = Tuple[datetime, str, str]


def get_shipment(db: Session, shipment_id: int) -> Optional[Shipment]:
    return (
        db.query(Shipment)
        .options(joinedload(Shipment.merchant))
        .filter(Shipment.id == shipment_id)
        .first()
    )


def get_shipment_or_raise(db: Session, shipment_id: int) -> Shipment:
    shipment = get_shipment(db, shipment_id)
    if not shipment:
        raise ShipmentNotFoundError(shipment_id)
    return shipment


def create_shipment(db: Session, merchant: Merchant, order_id: str, fulfillment_id: str,
                    tracking_number: Optional[str], tracking_company: Optional[str] = None,
                    service_level: Optional[str] = None, ship_date: Optional[datetime] = None,
                    order_number: Optional[str] = None, now: Optional[datetime] = None) -> Tuple[Shipment, bool]:
    """Register a fulfillment for tracking; returns ``(shipment, created)``."""
    existing = db.query(Shipment).filter(
        Shipment.merchant_id == merchant.id,
        Shipment.fulfillment_id == fulfillment_id,
    ).first()
    if existing:
        return existing, False

    now = now or utcnow()
    ship_date = ship_date or now
    carrier = detect_carrier(tracking_company, tracking_number) if tracking_number else Carrier.UNKNOWN
    service_level = service_level or extract_service_level_from_company(tracking_company)

    shipment = Shipment(
        merchant_id=merchant.id,
        order_id=order_id,
        order_number=order_number,
        fulfillment_id=fulfillment_id,
        carrier=carrier,
        tracking_number=tracking_number or "",
        service_level=service_level,
        ship_date=ship_date,
        expected_delivery_date=calculate_default_expected_delivery(
            ship_date, service_level, carrier, merchant.get_settings().delivery_windows
        ),
        expected_delivery_source=DeliverySource.DEFAULT,
        # Shipments without a tracking number wait until one is added
        next_poll_at=now + timedelta(minutes=INITIAL_POLL_DELAY_MINUTES) if tracking_number else None,
    )
    db.add(shipment)
    db.commit()
    db.refresh(shipment)

    logger.info(f"📦 Shipment {shipment.id} created: {carrier.value} {tracking_number}, service={service_level}")
    return shipment, True


def iter_due_shipment_batches(db: Session, now: datetime, batch_size: int = 500) -> Iterator[List[Tuple[int, Optional[datetime]]]]:
    """
    Yield ``(shipment_id, expected_delivery_date)`` rows due for polling.

    Rows come in id order, one keyset page at a time, so shipments updated
    while the caller works through a page are neither skipped nor repeated.
    """
    last_id = 0
    while True:
        batch = (
            db.query(Shipment.id, Shipment.expected_delivery_date)
            .join(Merchant, Shipment.merchant_id == Merchant.id)
            .filter(
                Shipment.next_poll_at.isnot(None),
                Shipment.next_poll_at <= now,
                Shipment.is_archived.is_(False),
                Shipment.is_delivered.is_(False),
                Merchant.uninstalled_at.is_(None),
                Merchant.billing_status.notin_(INACTIVE_BILLING_STATUSES),
                Shipment.id > last_id,
            )
            .order_by(Shipment.id)
            .limit(batch_size)
            .all()
        )
        if not batch:
            return

        yield [(row.id, row.expected_delivery_date) for row in batch]

        if len(batch) < batch_size:
            return
        last_id = batch[-1].id


def _event_key(timestamp: datetime, event_type: str, description: str) -> EventKey:
    return (
        timestamp,
        event_type[:EVENT_TYPE_MAX_LENGTH],
        description[:EVENT_DESCRIPTION_MAX_LENGTH],
    )


def upsert_tracking_events(db: Session, shipment_id: int, events: Sequence[TrackingEventData]) -> int:
    """Insert events not already stored for the shipment; returns how many were new."""
    if not events:
        return 0

    existing: Set[EventKey] = {
        _event_key(row.event_timestamp, row.event_type, row.description)
        for row in db.query(
            TrackingEvent.event_timestamp, TrackingEvent.event_type, TrackingEvent.description
        ).filter(TrackingEvent.shipment_id == shipment_id)
    }

    new_count = 0
    for event in events:
        key = _event_key(event.timestamp, event.event_type, event.description)
        if key in existing:
            continue

        db.add(TrackingEvent(
            shipment_id=shipment_id,
            event_timestamp=key[0],
            event_type=key[1],
            description=key[2],
            city=event.city,
            state=event.state,
            country=event.country,
            raw_data=event.raw_data,
        ))
        existing.add(key)
        new_count += 1

    if new_count:
        db.flush()

    return new_count


def apply_tracking_result(db: Session, shipment: Shipment, result: TrackingResult,
                          now: datetime) -> Tuple[int, DelayEvaluationResult]:
    """
    Write a successful poll onto the shipment.

    Stores new events, the carrier's view of the shipment and the delay
    verdict. ``next_poll_at`` is left to the caller. Nothing is committed.
    """
    new_events = upsert_tracking_events(db, shipment.id, result.events)

    evaluation = evaluate_delay(shipment, result, shipment.merchant.get_settings(), now)
    was_delayed = bool(shipment.is_delayed)

    shipment.current_status = result.current_status
    shipment.last_polled_at = now
    shipment.poll_error_count = 0

    if result.last_scan_time:
        shipment.last_scan_time = result.last_scan_time
        shipment.last_scan_location = result.last_scan_location
    if new_events and not shipment.has_carrier_scan:
        shipment.has_carrier_scan = True
        logger.info(f"📦 First carrier scan for shipment {shipment.id}")

    shipment.carrier_exception_code = result.exception_code
    shipment.carrier_exception_reason = result.exception_reason
    shipment.rescheduled_delivery_date = result.rescheduled_delivery_date

    if result.is_delivered:
        shipment.is_delivered = True
        shipment.delivered_at = result.delivered_at or now

    for field, value in get_delay_update_fields(evaluation, was_delayed, now).items():
        setattr(shipment, field, value)

    if evaluation.is_delayed and not was_delayed:
        logger.warning(
            f"⚠️ Shipment {shipment.id} flagged as delayed: {evaluation.delay_reason.value}, "
            f"{evaluation.days_delayed} day(s) late"
        )
    elif was_delayed and not evaluation.is_delayed:
        logger.info(f"✅ Shipment {shipment.id} is no longer delayed")

    return new_events, evaluation


def record_poll_failure(shipment: Shipment, now: datetime, next_poll_at: Optional[datetime]) -> None:
    """Count a failed poll; delay state is left as it was."""
    shipment.poll_error_count = (shipment.poll_error_count or 0) + 1
    shipment.last_polled_at = now
    shipment.next_poll_at = next_poll_at
