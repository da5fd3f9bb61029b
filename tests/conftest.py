"""Shared fixtures: an in-memory database and shipment factories."""
from datetime import datetime
from typing import Any, Dict, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from delaywatch.carriers.base import CarrierAdapter, TrackingEventData, TrackingResult
from delaywatch.database import Base
from delaywatch.models import BillingStatus, Carrier, DeliverySource, Merchant, Shipment


NOW = datetime(2026, 2, 4, 12, 0, 0)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


_shop_counter = iter(range(1, 10_000))
_fulfillment_counter = iter(range(1, 100_000))


def make_merchant(db, **overrides: Any) -> Merchant:
    fields: Dict[str, Any] = {
        "shop_domain": f"shop-{next(_shop_counter)}.myshopify.com",
        "random_poll_offset": 0,
        "billing_status": BillingStatus.ACTIVE,
        "settings": {},
    }
    fields.update(overrides)
    merchant = Merchant(**fields)
    db.add(merchant)
    db.commit()
    db.refresh(merchant)
    return merchant


def make_shipment(db, merchant: Merchant, **overrides: Any) -> Shipment:
    number = next(_fulfillment_counter)
    fields: Dict[str, Any] = {
        "merchant_id": merchant.id,
        "order_id": f"order-{number}",
        "fulfillment_id": f"fulfillment-{number}",
        "carrier": Carrier.UPS,
        "tracking_number": f"1Z999AA1{number:010d}",
        "service_level": "UPS Ground",
        "ship_date": datetime(2026, 2, 2),
        "expected_delivery_date": datetime(2026, 2, 9),
        "expected_delivery_source": DeliverySource.DEFAULT,
        "next_poll_at": datetime(2026, 2, 4, 11, 0),
    }
    fields.update(overrides)
    shipment = Shipment(**fields)
    db.add(shipment)
    db.commit()
    db.refresh(shipment)
    return shipment


@pytest.fixture
def merchant(db):
    return make_merchant(db)


@pytest.fixture
def shipment(db, merchant):
    return make_shipment(db, merchant)


def make_event(timestamp: datetime, description: str = "Departed Facility", event_type: str = "I",
               city: Optional[str] = "Louisville") -> TrackingEventData:
    return TrackingEventData(
        timestamp=timestamp,
        event_type=event_type,
        description=description,
        city=city,
        state="KY",
        country="US",
    )


class FakeAdapter(CarrierAdapter):
    """Adapter returning canned results, or raising a canned error."""

    carrier = Carrier.UPS

    def __init__(self, result: Optional[TrackingResult] = None, error: Optional[Exception] = None):
        super().__init__(http=None)
        self.result = result
        self.error = error
        self.calls = 0

    async def track(self, tracking_number: str) -> TrackingResult:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.result or TrackingResult.empty(tracking_number, self.carrier)

    async def authenticate(self):
        return None

    async def fetch_raw_tracking(self, tracking_number, credential):
        return None

    def parse_tracking(self, tracking_number, raw):
        return TrackingResult.empty(tracking_number, self.carrier)
