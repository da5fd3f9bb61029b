import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from delaywatch.carriers.base import (
    TrackingEventData,
    TrackingResult,
    parse_carrier_date,
    parse_carrier_datetime,
)
from delaywatch.carriers.oauth import OAuthCarrierAdapter
from delaywatch.carriers.schemas import UpsActivity, UpsPackage, UpsTrackingResponse
from delaywatch.models import Carrier

logger = logging.getLogger(__name__)


UPS_STATUS_MANIFEST = "M"
UPS_STATUS_IN_TRANSIT = "I"
UPS_STATUS_DELIVERED = "D"
UPS_STATUS_EXCEPTION = "X"
UPS_STATUS_PICKUP = "P"

UPS_STATUS_LABELS = {
    UPS_STATUS_MANIFEST: "Label Created",
    UPS_STATUS_IN_TRANSIT: "In Transit",
    UPS_STATUS_DELIVERED: "Delivered",
    UPS_STATUS_EXCEPTION: "Exception",
    UPS_STATUS_PICKUP: "Picked Up",
}

# Warning code UPS returns for tracking numbers it does not know
UPS_NOT_FOUND_WARNING = "TW0001"


class UpsAdapter(OAuthCarrierAdapter):
    carrier = Carrier.UPS
    token_path = "/security/v1/oauth/token"

    def token_request_kwargs(self) -> Dict[str, Any]:
        return {
            "auth": (self.client_id, self.client_secret),
            "data": {"grant_type": "client_credentials"},
            "headers": {"Content-Type": "application/x-www-form-urlencoded"},
        }

    async def fetch_raw_tracking(self, tracking_number: str, credential: Optional[str]) -> Optional[Any]:
        url = f"{self.api_url}/api/track/v1/details/{quote(tracking_number, safe='')}"
        response = await self._send(
            "GET",
            url,
            headers={
                "Authorization": f"Bearer {credential}",
                "Content-Type": "application/json",
                "transId": uuid.uuid4().hex,
                "transactionSrc": "delaywatch",
            },
        )

        self._check_unauthorized(response)
        if response.status_code == 404:
            logger.warning(f"⚠️ UPS shipment {tracking_number} not found (404)")
            return None
        self._raise_for_status(response)

        return self._decode_json(response, tracking_number)

    def parse_tracking(self, tracking_number: str, raw: Any) -> TrackingResult:
        payload = UpsTrackingResponse.model_validate(raw)

        shipments = payload.track_response.shipment if payload.track_response else None
        if not shipments:
            logger.warning(f"⚠️ UPS returned no shipment for {tracking_number}")
            return TrackingResult.empty(tracking_number, self.carrier)

        shipment = shipments[0]
        for warning in shipment.warnings or []:
            if warning.code == UPS_NOT_FOUND_WARNING or "not found" in (warning.message or "").lower():
                logger.warning(f"⚠️ UPS does not know {tracking_number}: {warning.message}")
                return TrackingResult.empty(tracking_number, self.carrier)

        if not shipment.package:
            logger.warning(f"⚠️ UPS returned no package for {tracking_number}")
            return TrackingResult.empty(tracking_number, self.carrier)

        package = shipment.package[0]
        events = parse_activities(package.activity)

        current = package.current_status or (package.activity[0] if package.activity else None)
        status = current.status if current else None
        status_type = status.type if status else None
        description = status.description if status else None

        is_exception = status_type == UPS_STATUS_EXCEPTION
        is_delivered = status_type == UPS_STATUS_DELIVERED

        last_event = events[0] if events else None

        return TrackingResult(
            tracking_number=tracking_number,
            carrier=self.carrier,
            current_status=UPS_STATUS_LABELS.get(status_type) or description,
            is_delivered=is_delivered,
            delivered_at=find_delivered_at(events) if is_delivered else None,
            is_exception=is_exception,
            exception_code=status.code if is_exception and status else None,
            exception_reason=description if is_exception else None,
            expected_delivery_date=extract_expected_delivery_date(package),
            rescheduled_delivery_date=extract_rescheduled_delivery_date(package),
            last_scan_location=last_event.location if last_event else None,
            last_scan_time=last_event.timestamp if last_event else None,
            events=events,
        )


def parse_activities(activities: Optional[List[UpsActivity]]) -> List[TrackingEventData]:
    events = []
    for activity in activities or []:
        timestamp = parse_carrier_datetime(activity.date, activity.time)
        if timestamp is None:
            continue

        address = activity.location.address if activity.location else None
        events.append(
            TrackingEventData(
                timestamp=timestamp,
                event_type=(activity.status.type if activity.status else None) or "UNKNOWN",
                description=(activity.status.description if activity.status else None) or "Status update",
                city=address.city if address else None,
                state=address.state_province if address else None,
                country=address.country if address else None,
                raw_data=activity.model_dump(by_alias=True, exclude_none=True),
            )
        )

    events.sort(key=lambda event: event.timestamp, reverse=True)
    return events


def find_delivered_at(events: List[TrackingEventData]) -> Optional[datetime]:
    for event in events:
        if event.event_type == UPS_STATUS_DELIVERED:
            return event.timestamp
    return None


def extract_expected_delivery_date(package: UpsPackage) -> Optional[datetime]:
    if package.delivery_date:
        return parse_carrier_date(package.delivery_date[0].date)

    for package_address in package.package_address or []:
        if package_address.address and package_address.address.scheduled_delivery_date:
            return parse_carrier_date(package_address.address.scheduled_delivery_date)

    return None


def extract_rescheduled_delivery_date(package: UpsPackage) -> Optional[datetime]:
    # Later entries of deliveryDate are reschedules of the first promise
    if package.delivery_date and len(package.delivery_date) > 1:
        return parse_carrier_date(package.delivery_date[-1].date)
    return None
