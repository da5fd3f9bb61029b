"""
USPS Web Tools TrackV2 adapter.

USPS still speaks XML over a GET request and authenticates with a plain
User ID, so there is no token to cache. Status detection is substring based
("Arriving Late", "Delivered") against free text USPS controls; wording
changes on their side will silently change what we detect.
"""
import logging
import xml.etree.ElementTree as ET
from datetime import datetime
from typing import Any, List, Optional

import httpx

from delaywatch.carriers.base import (
    CarrierAdapter,
    TrackingEventData,
    TrackingResult,
    parse_carrier_date,
    parse_carrier_datetime,
)
from delaywatch.exceptions import CarrierAuthError
from delaywatch.models import Carrier

logger = logging.getLogger(__name__)


USPS_EXCEPTION_PHRASE = "Arriving Late"
USPS_DELIVERED_PHRASE = "Delivered"
USPS_DELIVERED_CATEGORY = "Delivered"

USPS_NOT_FOUND_ERROR = "-2147219302"
USPS_AUTH_FAILURE = "Authorization failure"


class UspsAdapter(CarrierAdapter):
    carrier = Carrier.USPS
    parse_errors = CarrierAdapter.parse_errors + (ET.ParseError,)

    def __init__(self, http: httpx.AsyncClient, api_url: str, user_id: Optional[str], timeout: float = 30.0):
        super().__init__(http, timeout)
        self.api_url = api_url.rstrip("/")
        self.user_id = user_id

    async def authenticate(self) -> str:
        if not self.user_id:
            logger.error("❌ USPS user id is not configured")
            raise CarrierAuthError(self.carrier.value, "USPS user id is not configured")
        return self.user_id

    def build_request_xml(self, tracking_number: str, user_id: str) -> str:
        root = ET.Element("TrackFieldRequest", USERID=user_id)
        ET.SubElement(root, "Revision").text = "1"
        ET.SubElement(root, "ClientIp").text = "127.0.0.1"
        ET.SubElement(root, "SourceId").text = "delaywatch"
        ET.SubElement(root, "TrackID", ID=tracking_number)
        return ET.tostring(root, encoding="unicode")

    async def fetch_raw_tracking(self, tracking_number: str, credential: Optional[str]) -> Optional[Any]:
        response = await self._send(
            "GET",
            f"{self.api_url}/ShippingAPI.dll",
            params={"API": "TrackV2", "XML": self.build_request_xml(tracking_number, credential)},
            headers={"Accept": "application/xml"},
        )
        self._raise_for_status(response)

        body = response.text
        if not body.strip():
            return None
        return body

    def parse_tracking(self, tracking_number: str, raw: Any) -> TrackingResult:
        root = ET.fromstring(raw)

        if root.tag == "Error":
            self._handle_error(tracking_number, root)
            return TrackingResult.empty(tracking_number, self.carrier)

        info = root.find("TrackInfo")
        if info is None:
            logger.warning(f"⚠️ USPS returned no TrackInfo for {tracking_number}")
            return TrackingResult.empty(tracking_number, self.carrier)

        error = info.find("Error")
        if error is not None:
            logger.warning(f"⚠️ USPS error for {tracking_number}: {_text(error, 'Description')}")
            return TrackingResult.empty(tracking_number, self.carrier)

        events = parse_track_events(info)
        status = extract_current_status(info)
        category = _text(info, "StatusCategory")

        is_exception = bool(status and USPS_EXCEPTION_PHRASE in status)
        is_delivered = bool(status and USPS_DELIVERED_PHRASE in status) or category == USPS_DELIVERED_CATEGORY

        last_event = events[0] if events else None

        return TrackingResult(
            tracking_number=tracking_number,
            carrier=self.carrier,
            current_status=status,
            is_delivered=is_delivered,
            delivered_at=extract_delivered_at(info, events) if is_delivered else None,
            is_exception=is_exception,
            exception_code=category if is_exception else None,
            exception_reason=status if is_exception else None,
            expected_delivery_date=extract_expected_delivery_date(info),
            rescheduled_delivery_date=None,
            last_scan_location=last_event.location if last_event else None,
            last_scan_time=last_event.timestamp if last_event else None,
            events=events,
        )

    def _handle_error(self, tracking_number: str, error: ET.Element) -> None:
        number = _text(error, "Number")
        description = _text(error, "Description") or "Unknown error"

        if USPS_AUTH_FAILURE.lower() in description.lower():
            logger.error(f"❌ USPS rejected user id: {description}")
            raise CarrierAuthError(self.carrier.value, description, {"number": number})

        if number == USPS_NOT_FOUND_ERROR or "not found" in description.lower():
            logger.warning(f"⚠️ USPS does not know {tracking_number}: {description}")
        else:
            logger.warning(f"⚠️ USPS error {number} for {tracking_number}: {description}")


def _text(element: Optional[ET.Element], tag: str) -> Optional[str]:
    if element is None:
        return None
    child = element.find(tag)
    if child is None or child.text is None:
        return None
    value = child.text.strip()
    return value or None


def parse_track_event(detail: ET.Element) -> Optional[TrackingEventData]:
    timestamp = parse_carrier_datetime(_text(detail, "EventDate"), _text(detail, "EventTime"))
    if timestamp is None:
        return None

    return TrackingEventData(
        timestamp=timestamp,
        event_type=_text(detail, "EventCode") or "UNKNOWN",
        description=_text(detail, "Event") or "Status update",
        city=_text(detail, "EventCity"),
        state=_text(detail, "EventState"),
        country=_text(detail, "EventCountry"),
        raw_data={child.tag: child.text for child in detail if child.text},
    )


def parse_track_events(info: ET.Element) -> List[TrackingEventData]:
    events = []
    for detail in info.findall("TrackSummary") + info.findall("TrackDetail"):
        event = parse_track_event(detail)
        if event:
            events.append(event)

    events.sort(key=lambda event: event.timestamp, reverse=True)
    return events


def extract_current_status(info: ET.Element) -> Optional[str]:
    return (
        _text(info, "Status")
        or _text(info, "StatusSummary")
        or _text(info.find("TrackSummary"), "Event")
    )


def extract_expected_delivery_date(info: ET.Element) -> Optional[datetime]:
    expected = _text(info, "ExpectedDeliveryDate")
    if expected:
        return parse_carrier_datetime(expected, _text(info, "ExpectedDeliveryTime"))

    for tag in ("PredictedDeliveryDate", "GuaranteedDeliveryDate"):
        value = _text(info, tag)
        if value:
            return parse_carrier_date(value)

    return None


def extract_delivered_at(info: ET.Element, events: List[TrackingEventData]) -> Optional[datetime]:
    notified = parse_carrier_date(_text(info, "DeliveryNotificationDate"))
    if notified:
        return notified
    for event in events:
        if USPS_DELIVERED_PHRASE in event.description:
            return event.timestamp
    return None
