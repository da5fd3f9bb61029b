"""
Delay detection.

A shipment is delayed when the carrier reports an exception, or when the
current time is past its expected delivery date plus the merchant's grace
period. The expected date comes from, in order: the carrier's date in this
poll, the stored date when it came from the carrier or a merchant override,
and finally ship date plus a business-day window for the service level.
"""
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from delaywatch.business_days import (
    calculate_days_delayed,
    calculate_expected_delivery_date,
    is_past_deadline,
    utcnow,
)
from delaywatch.carriers.base import TrackingResult
from delaywatch.models import Carrier, DelayReason, DeliverySource, MerchantSettings


# Business days per normalized service level
DEFAULT_DELIVERY_WINDOWS: Dict[str, int] = {
    "ups_next_day_air": 1,
    "ups_next_day_air_early": 1,
    "ups_next_day_air_saver": 1,
    "ups_2nd_day_air": 2,
    "ups_2nd_day_air_am": 2,
    "ups_3_day_select": 3,
    "ups_ground": 5,
    "ups_standard": 5,
    "fedex_first_overnight": 1,
    "fedex_priority_overnight": 1,
    "fedex_standard_overnight": 1,
    "fedex_overnight": 1,
    "fedex_2day": 2,
    "fedex_2day_am": 2,
    "fedex_express_saver": 3,
    "fedex_ground": 5,
    "fedex_home_delivery": 5,
    "usps_priority_mail_express": 2,
    "usps_priority_express": 2,
    "usps_priority_mail": 3,
    "usps_priority": 3,
    "usps_ground_advantage": 7,
    "usps_first_class": 5,
    "usps_parcel_select": 7,
    "usps_retail_ground": 7,
    "overnight": 1,
    "express": 2,
    "priority": 3,
    "standard": 5,
    "ground": 5,
    "economy": 7,
}

DEFAULT_CARRIER_WINDOWS: Dict[Carrier, int] = {
    Carrier.UPS: 5,
    Carrier.FEDEX: 5,
    Carrier.USPS: 7,
    Carrier.UNKNOWN: 7,
}

_TRADEMARKS = re.compile(r"[®™©]")
_PUNCTUATION = re.compile(r"[^\w\s]", re.ASCII)
_WHITESPACE = re.compile(r"\s+")


@dataclass
class ShipmentState:
    """The stored shipment fields the evaluator reads."""

    ship_date: datetime
    carrier: Carrier = Carrier.UNKNOWN
    service_level: Optional[str] = None
    expected_delivery_date: Optional[datetime] = None
    expected_delivery_source: DeliverySource = DeliverySource.DEFAULT
    is_delivered: bool = False

    @classmethod
    def from_shipment(cls, shipment: Any) -> "ShipmentState":
        return cls(
            ship_date=shipment.ship_date,
            carrier=shipment.carrier,
            service_level=shipment.service_level,
            expected_delivery_date=shipment.expected_delivery_date,
            expected_delivery_source=shipment.expected_delivery_source or DeliverySource.DEFAULT,
            is_delivered=bool(shipment.is_delivered),
        )


@dataclass
class DelayEvaluationResult:
    is_delayed: bool
    delay_reason: Optional[DelayReason]
    days_delayed: int
    expected_delivery_date: Optional[datetime]
    expected_delivery_source: DeliverySource


def normalize_service_level(service_level: Optional[str], carrier: Carrier) -> Optional[str]:
    """
    Turn a free-text service level into a lookup key.

    "UPS GROUND", "UPS® Ground" and "Ground" (for UPS) all become "ups_ground".
    Normalizing an already normalized key returns it unchanged.
    """
    if not service_level:
        return None

    normalized = service_level.lower()
    normalized = _TRADEMARKS.sub("", normalized)
    normalized = _PUNCTUATION.sub(" ", normalized)
    normalized = _WHITESPACE.sub(" ", normalized).strip()
    if not normalized:
        return None

    prefix = carrier.value.lower()
    if carrier != Carrier.UNKNOWN and not normalized.startswith(prefix):
        normalized = f"{prefix} {normalized}"

    return normalized.replace(" ", "_")


def get_delivery_window(service_level: Optional[str], carrier: Carrier,
                        merchant_overrides: Optional[Dict[str, int]] = None) -> int:
    key = normalize_service_level(service_level, carrier)

    if key and merchant_overrides and key in merchant_overrides:
        return merchant_overrides[key]
    if key and key in DEFAULT_DELIVERY_WINDOWS:
        return DEFAULT_DELIVERY_WINDOWS[key]

    return DEFAULT_CARRIER_WINDOWS.get(carrier, DEFAULT_CARRIER_WINDOWS[Carrier.UNKNOWN])


def calculate_default_expected_delivery(ship_date: datetime, service_level: Optional[str], carrier: Carrier,
                                        merchant_overrides: Optional[Dict[str, int]] = None) -> datetime:
    business_days = get_delivery_window(service_level, carrier, merchant_overrides)
    return calculate_expected_delivery_date(ship_date, business_days)


def resolve_expected_delivery(shipment: ShipmentState, tracking_result: Optional[TrackingResult],
                              merchant_settings: MerchantSettings) -> Tuple[datetime, DeliverySource]:
    if tracking_result and tracking_result.expected_delivery_date:
        return tracking_result.expected_delivery_date, DeliverySource.CARRIER

    # A stored DEFAULT date is only a guess; recompute it instead of trusting it
    if shipment.expected_delivery_date and shipment.expected_delivery_source in (
        DeliverySource.CARRIER,
        DeliverySource.MERCHANT_OVERRIDE,
    ):
        return shipment.expected_delivery_date, shipment.expected_delivery_source

    expected = calculate_default_expected_delivery(
        shipment.ship_date,
        shipment.service_level,
        shipment.carrier,
        merchant_settings.delivery_windows,
    )
    return expected, DeliverySource.DEFAULT


def evaluate_delay(shipment: Any, tracking_result: Optional[TrackingResult],
                   merchant_settings: MerchantSettings, now: Optional[datetime] = None) -> DelayEvaluationResult:
    now = now or utcnow()
    state = shipment if isinstance(shipment, ShipmentState) else ShipmentState.from_shipment(shipment)

    if state.is_delivered or (tracking_result and tracking_result.is_delivered):
        return DelayEvaluationResult(
            is_delayed=False,
            delay_reason=None,
            days_delayed=0,
            expected_delivery_date=state.expected_delivery_date,
            expected_delivery_source=state.expected_delivery_source,
        )

    expected, source = resolve_expected_delivery(state, tracking_result, merchant_settings)

    if tracking_result and tracking_result.is_exception:
        return DelayEvaluationResult(
            is_delayed=True,
            delay_reason=DelayReason.CARRIER_EXCEPTION,
            days_delayed=calculate_days_delayed(expected, now) if expected else 0,
            expected_delivery_date=expected,
            expected_delivery_source=source,
        )

    # A carrier reschedule moves the deadline, but lateness is still measured
    # against the original promise
    rescheduled = tracking_result.rescheduled_delivery_date if tracking_result else None
    deadline = rescheduled or expected

    if is_past_deadline(deadline, merchant_settings.delay_threshold_hours, now):
        return DelayEvaluationResult(
            is_delayed=True,
            delay_reason=DelayReason.PAST_EXPECTED_DELIVERY,
            days_delayed=calculate_days_delayed(expected, now),
            expected_delivery_date=expected,
            expected_delivery_source=source,
        )

    return DelayEvaluationResult(
        is_delayed=False,
        delay_reason=None,
        days_delayed=0,
        expected_delivery_date=expected,
        expected_delivery_source=source,
    )


def get_delay_update_fields(result: DelayEvaluationResult, was_delayed: bool,
                            now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Shipment column updates for an evaluation result.

    ``delay_flagged_at`` is stamped when a shipment becomes delayed and
    cleared when a later evaluation resolves the delay.
    """
    now = now or utcnow()
    update: Dict[str, Any] = {
        "is_delayed": result.is_delayed,
        "days_delayed": result.days_delayed,
        "delay_reason": result.delay_reason,
    }

    if result.expected_delivery_date:
        update["expected_delivery_date"] = result.expected_delivery_date
        update["expected_delivery_source"] = result.expected_delivery_source

    if result.is_delayed and not was_delayed:
        update["delay_flagged_at"] = now
    elif not result.is_delayed and was_delayed:
        update["delay_flagged_at"] = None

    return update


def get_carrier_service_levels(carrier: Carrier) -> List[str]:
    prefix = f"{carrier.value.lower()}_"
    return [key for key in DEFAULT_DELIVERY_WINDOWS if key.startswith(prefix)]


def get_service_level_label(key: str) -> str:
    return " ".join(word[:1].upper() + word[1:] for word in key.split("_"))
