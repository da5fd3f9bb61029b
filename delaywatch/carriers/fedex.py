import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from delaywatch.carriers.base import TrackingEventData, TrackingResult, parse_carrier_date
from delaywatch.carriers.oauth import OAuthCarrierAdapter
from delaywatch.carriers.schemas import FedexScanEvent, FedexTrackingResponse, FedexTrackResult
from delaywatch.models import Carrier

logger = logging.getLogger(__name__)


FEDEX_DELIVERED_CODES = ("DL",)

FEDEX_EXCEPTION_KEYWORDS = (
    "exception",
    "delay",
    "undeliverable",
    "hold",
    "unable",
    "incorrect",
    "damaged",
    "customs",
)

FEDEX_ON_TIME_DELAY_STATUSES = ("ON_TIME", "EARLY")

FEDEX_NOT_FOUND_CODE = "TRACKING.TRACKINGNUMBER.NOTFOUND"


class FedexAdapter(OAuthCarrierAdapter):
    carrier = Carrier.FEDEX
    token_path = "/oauth/token"

    def token_request_kwargs(self) -> Dict[str, Any]:
        return {
            "data": {
                "grant_type": "client_credentials",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            },
            "headers": {"Content-Type": "application/x-www-form-urlencoded"},
        }

    async def fetch_raw_tracking(self, tracking_number: str, credential: Optional[str]) -> Optional[Any]:
        response = await self._send(
            "POST",
            f"{self.api_url}/track/v1/trackingnumbers",
            headers={
                "Authorization": f"Bearer {credential}",
                "Content-Type": "application/json",
                "X-locale": "en_US",
            },
            json={
                "includeDetailedScans": True,
                "trackingInfo": [{"trackingNumberInfo": {"trackingNumber": tracking_number}}],
            },
        )

        self._check_unauthorized(response)
        if response.status_code == 404:
            logger.warning(f"⚠️ FedEx shipment {tracking_number} not found (404)")
            return None
        self._raise_for_status(response)

        return self._decode_json(response, tracking_number)

    def parse_tracking(self, tracking_number: str, raw: Any) -> TrackingResult:
        payload = FedexTrackingResponse.model_validate(raw)

        for alert in payload.alerts or []:
            if alert.alert_type == "ERROR" or alert.code == FEDEX_NOT_FOUND_CODE:
                logger.warning(f"⚠️ FedEx alert for {tracking_number}: {alert.code} {alert.message}")
                return TrackingResult.empty(tracking_number, self.carrier)

        complete = payload.output.complete_track_results if payload.output else None
        track_results = complete[0].track_results if complete else None
        if not track_results:
            logger.warning(f"⚠️ FedEx returned no track results for {tracking_number}")
            return TrackingResult.empty(tracking_number, self.carrier)

        info = track_results[0]
        if info.error:
            logger.warning(f"⚠️ FedEx error for {tracking_number}: {info.error.code} {info.error.message}")
            return TrackingResult.empty(tracking_number, self.carrier)

        events = parse_scan_events(info.scan_events)

        latest = info.latest_status_detail
        status_code = latest.code if latest else None
        status_text = (latest.status_by_locale or latest.description) if latest else None

        delay = info.delay_detail
        delayed_by_carrier = bool(delay and delay.status and delay.status not in FEDEX_ON_TIME_DELAY_STATUSES)
        is_exception = delayed_by_carrier or is_exception_status(status_text)
        exception_code, exception_reason = extract_exception(info, status_text) if is_exception else (None, None)

        is_delivered = status_code in FEDEX_DELIVERED_CODES
        last_event = events[0] if events else None

        return TrackingResult(
            tracking_number=tracking_number,
            carrier=self.carrier,
            current_status=status_text,
            is_delivered=is_delivered,
            delivered_at=extract_delivered_at(info, events) if is_delivered else None,
            is_exception=is_exception,
            exception_code=exception_code,
            exception_reason=exception_reason,
            expected_delivery_date=extract_expected_delivery_date(info),
            rescheduled_delivery_date=extract_rescheduled_delivery_date(info),
            last_scan_location=last_event.location if last_event else None,
            last_scan_time=last_event.timestamp if last_event else None,
            events=events,
        )


def is_exception_status(status_text: Optional[str]) -> bool:
    if not status_text:
        return False
    lowered = status_text.lower()
    return any(keyword in lowered for keyword in FEDEX_EXCEPTION_KEYWORDS)


def parse_scan_events(scan_events: Optional[List[FedexScanEvent]]) -> List[TrackingEventData]:
    events = []
    for scan in scan_events or []:
        timestamp = parse_carrier_date(scan.date)
        if timestamp is None:
            continue

        address = scan.scan_location.address if scan.scan_location else None
        events.append(
            TrackingEventData(
                timestamp=timestamp,
                event_type=scan.event_type or "UNKNOWN",
                description=scan.event_description or scan.derived_status or "Status update",
                city=address.city if address else None,
                state=address.state_or_province_code if address else None,
                country=(address.country_code or address.country_name) if address else None,
                raw_data=scan.model_dump(by_alias=True, exclude_none=True),
            )
        )

    events.sort(key=lambda event: event.timestamp, reverse=True)
    return events


def extract_exception(info: FedexTrackResult, status_text: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    latest = info.latest_status_detail
    if latest and latest.ancillary_details:
        detail = latest.ancillary_details[0]
        return detail.reason, detail.reason_description or detail.action_description
    if info.delay_detail:
        delay = info.delay_detail
        return delay.sub_type or delay.type, delay.status or status_text
    return None, status_text


def _find_date(info: FedexTrackResult, *types: str) -> Optional[datetime]:
    for entry in info.date_and_times or []:
        if entry.type in types:
            return parse_carrier_date(entry.date_time)
    return None


def extract_expected_delivery_date(info: FedexTrackResult) -> Optional[datetime]:
    for window in (info.estimated_delivery_time_window, info.standard_transit_time_window):
        if window and window.window and window.window.ends:
            return parse_carrier_date(window.window.ends)
    return _find_date(info, "ESTIMATED_DELIVERY", "SCHEDULED_DELIVERY")


def extract_rescheduled_delivery_date(info: FedexTrackResult) -> Optional[datetime]:
    delay = info.delay_detail
    if not delay or not delay.status or delay.status in FEDEX_ON_TIME_DELAY_STATUSES:
        return None
    return _find_date(info, "APPOINTMENT_DELIVERY")


def extract_delivered_at(info: FedexTrackResult, events: List[TrackingEventData]) -> Optional[datetime]:
    delivered_at = _find_date(info, "ACTUAL_DELIVERY")
    if delivered_at:
        return delivered_at
    for event in events:
        if event.event_type == "DL" or "delivered" in event.description.lower():
            return event.timestamp
    return None
