import enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, ValidationError
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from delaywatch.business_days import utcnow
from delaywatch.database import Base


class Carrier(str, enum.Enum):
    UPS = "UPS"
    FEDEX = "FEDEX"
    USPS = "USPS"
    UNKNOWN = "UNKNOWN"


class DeliverySource(str, enum.Enum):
    CARRIER = "CARRIER"
    MERCHANT_OVERRIDE = "MERCHANT_OVERRIDE"
    DEFAULT = "DEFAULT"


class DelayReason(str, enum.Enum):
    CARRIER_EXCEPTION = "CARRIER_EXCEPTION"
    PAST_EXPECTED_DELIVERY = "PAST_EXPECTED_DELIVERY"


class BillingStatus(str, enum.Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"
    FROZEN = "FROZEN"


INACTIVE_BILLING_STATUSES = (BillingStatus.CANCELLED, BillingStatus.FROZEN)


class MerchantSettings(BaseModel):
    delay_threshold_hours: float = Field(default=8, ge=0, le=72)
    auto_archive_days: int = Field(default=30, ge=1, le=365)
    delivery_windows: Dict[str, int] = Field(default_factory=dict)


class Merchant(Base):
    __tablename__ = "merchants"

    id = Column(Integer, primary_key=True, index=True)
    shop_domain = Column(String(255), unique=True, nullable=False)
    random_poll_offset = Column(Integer, nullable=False, default=0)
    billing_status = Column(Enum(BillingStatus), nullable=False, default=BillingStatus.PENDING)
    settings = Column(JSON, nullable=False, default=dict)
    installed_at = Column(DateTime, default=utcnow, nullable=False)
    uninstalled_at = Column(DateTime, nullable=True)

    shipments = relationship("Shipment", back_populates="merchant")

    @property
    def is_active(self) -> bool:
        return self.uninstalled_at is None and self.billing_status not in INACTIVE_BILLING_STATUSES

    def get_settings(self) -> MerchantSettings:
        raw: Optional[Dict[str, Any]] = self.settings
        try:
            return MerchantSettings.model_validate(raw or {})
        except ValidationError:
            return MerchantSettings()


class Shipment(Base):
    __tablename__ = "shipments"
    __table_args__ = (
        UniqueConstraint("merchant_id", "fulfillment_id", name="uq_shipments_merchant_fulfillment"),
        Index("ix_shipments_due", "next_poll_at", "is_archived", "is_delivered"),
    )

    id = Column(Integer, primary_key=True, index=True)
    merchant_id = Column(Integer, ForeignKey("merchants.id"), nullable=False, index=True)
    order_id = Column(String(100), nullable=False)
    order_number = Column(String(100), nullable=True)
    fulfillment_id = Column(String(100), nullable=False)

    carrier = Column(Enum(Carrier), nullable=False, default=Carrier.UNKNOWN)
    tracking_number = Column(String(100), nullable=False, index=True)
    service_level = Column(String(255), nullable=True)

    next_poll_at = Column(DateTime, nullable=True)
    last_polled_at = Column(DateTime, nullable=True)
    poll_error_count = Column(Integer, nullable=False, default=0)
    has_carrier_scan = Column(Boolean, nullable=False, default=False)

    ship_date = Column(DateTime, nullable=False)
    expected_delivery_date = Column(DateTime, nullable=True)
    expected_delivery_source = Column(Enum(DeliverySource), nullable=False, default=DeliverySource.DEFAULT)
    rescheduled_delivery_date = Column(DateTime, nullable=True)
    is_delivered = Column(Boolean, nullable=False, default=False)
    delivered_at = Column(DateTime, nullable=True)

    is_delayed = Column(Boolean, nullable=False, default=False)
    delay_flagged_at = Column(DateTime, nullable=True)
    days_delayed = Column(Integer, nullable=False, default=0)
    delay_reason = Column(Enum(DelayReason), nullable=True)
    carrier_exception_code = Column(String(100), nullable=True)
    carrier_exception_reason = Column(Text, nullable=True)

    current_status = Column(String(255), nullable=True)
    last_scan_location = Column(String(255), nullable=True)
    last_scan_time = Column(DateTime, nullable=True)

    is_archived = Column(Boolean, nullable=False, default=False)
    archived_at = Column(DateTime, nullable=True)
    is_resolved = Column(Boolean, nullable=False, default=False)
    is_test_data = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    merchant = relationship("Merchant", back_populates="shipments")
    tracking_events = relationship(
        "TrackingEvent",
        back_populates="shipment",
        cascade="all, delete-orphan",
        order_by="TrackingEvent.event_timestamp.desc()",
    )


class TrackingEvent(Base):
    __tablename__ = "tracking_events"
    __table_args__ = (
        UniqueConstraint(
            "shipment_id", "event_timestamp", "event_type", "description",
            name="uq_tracking_events_natural_key",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    shipment_id = Column(Integer, ForeignKey("shipments.id"), nullable=False, index=True)
    event_timestamp = Column(DateTime, nullable=False)
    event_type = Column(String(50), nullable=False)
    description = Column(String(500), nullable=False)
    city = Column(String(100), nullable=True)
    state = Column(String(100), nullable=True)
    country = Column(String(100), nullable=True)
    raw_data = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    shipment = relationship("Shipment", back_populates="tracking_events")
