"""
Common carrier adapter contract.

Every adapter turns a carrier specific protocol into a ``TrackingResult``.
``CarrierAdapter.track`` runs the same steps for every carrier: authenticate,
fetch the raw payload, then parse it. Transport failures raise ``CarrierError``
subclasses; payloads that cannot be understood produce an empty result instead
of an exception so the poll worker can record the failure and move on.
"""
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, time
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Type
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from delaywatch.business_days import to_naive_utc
from delaywatch.exceptions import (
    CarrierRateLimitedError,
    CarrierRequestError,
    CarrierUnavailableError,
)
from delaywatch.models import Carrier

logger = logging.getLogger(__name__)


TRACKING_URL_BASES: Dict[Carrier, str] = {
    Carrier.UPS: "https://www.ups.com/track?tracknum=",
    Carrier.FEDEX: "https://www.fedex.com/fedextrack/?trknbr=",
    Carrier.USPS: "https://tools.usps.com/go/TrackConfirmAction?tLabels=",
}


@dataclass
class TrackingEventData:
    timestamp: datetime
    event_type: str
    description: str
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    raw_data: Optional[Dict[str, Any]] = None

    @property
    def location(self) -> Optional[str]:
        return format_location(self.city, self.state, self.country)


@dataclass
class TrackingResult:
    tracking_number: str
    carrier: Carrier
    current_status: Optional[str] = None
    is_delivered: bool = False
    delivered_at: Optional[datetime] = None
    is_exception: bool = False
    exception_code: Optional[str] = None
    exception_reason: Optional[str] = None
    expected_delivery_date: Optional[datetime] = None
    rescheduled_delivery_date: Optional[datetime] = None
    last_scan_location: Optional[str] = None
    last_scan_time: Optional[datetime] = None
    events: List[TrackingEventData] = field(default_factory=list)

    @classmethod
    def empty(cls, tracking_number: str, carrier: Carrier) -> "TrackingResult":
        return cls(tracking_number=tracking_number, carrier=carrier)

    @property
    def is_empty(self) -> bool:
        return (
            self.current_status is None
            and not self.is_delivered
            and not self.is_exception
            and self.expected_delivery_date is None
            and self.last_scan_time is None
            and not self.events
        )


def format_location(city: Optional[str], state: Optional[str], country: Optional[str]) -> Optional[str]:
    parts = [part for part in (city, state, country) if part]
    return ", ".join(parts) if parts else None


_MDY_PATTERN = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")
_TIME_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?\s*(am|pm)?$", re.IGNORECASE)


def parse_carrier_date(value: Optional[str]) -> Optional[datetime]:
    """Parse ISO 8601, YYYYMMDD, MM/DD/YYYY or "February 5, 2026" into naive UTC."""
    if not value:
        return None
    value = value.strip()

    if re.fullmatch(r"\d{8}", value):
        try:
            return datetime.strptime(value, "%Y%m%d")
        except ValueError:
            return None

    match = _MDY_PATTERN.match(value)
    if match:
        month, day, year = (int(part) for part in match.groups())
        try:
            return datetime(year, month, day)
        except ValueError:
            return None

    try:
        return to_naive_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        pass

    for fmt in ("%B %d, %Y", "%b %d, %Y"):
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue

    return None


def parse_carrier_time(value: Optional[str]) -> Optional[time]:
    """Parse HHMMSS, HH:MM[:SS] and "2:15 pm" style times."""
    if not value:
        return None
    value = value.strip()

    if re.fullmatch(r"\d{6}", value):
        hours, minutes, seconds = int(value[0:2]), int(value[2:4]), int(value[4:6])
    else:
        match = _TIME_PATTERN.match(value)
        if not match:
            return None
        hours, minutes = int(match.group(1)), int(match.group(2))
        seconds = int(match.group(3) or 0)
        meridiem = (match.group(4) or "").lower()
        if meridiem == "pm" and hours != 12:
            hours += 12
        elif meridiem == "am" and hours == 12:
            hours = 0

    try:
        return time(hours, minutes, seconds)
    except ValueError:
        return None


def parse_carrier_datetime(date_value: Optional[str], time_value: Optional[str]) -> Optional[datetime]:
    parsed_date = parse_carrier_date(date_value)
    if parsed_date is None:
        return None
    parsed_time = parse_carrier_time(time_value)
    if parsed_time is None:
        return parsed_date
    return datetime.combine(parsed_date.date(), parsed_time)


class CarrierAdapter(ABC):
    carrier: ClassVar[Carrier]

    # Exceptions raised while parsing that mean "payload not understood"
    parse_errors: ClassVar[Tuple[Type[BaseException], ...]] = (
        ValidationError,
        ValueError,
        KeyError,
        TypeError,
        AttributeError,
        IndexError,
    )

    def __init__(self, http: httpx.AsyncClient, timeout: float = 30.0):
        self.http = http
        self.timeout = timeout

    async def track(self, tracking_number: str) -> TrackingResult:
        logger.info(f"📦 Tracking {self.carrier.value} shipment {tracking_number}")

        credential = await self.authenticate()
        raw = await self.fetch_raw_tracking(tracking_number, credential)

        if raw is None:
            logger.warning(f"⚠️ {self.carrier.value} returned no tracking data for {tracking_number}")
            return TrackingResult.empty(tracking_number, self.carrier)

        try:
            result = self.parse_tracking(tracking_number, raw)
        except self.parse_errors as e:
            logger.warning(
                f"⚠️ Could not parse {self.carrier.value} response for {tracking_number}: "
                f"{type(e).__name__}: {e}"
            )
            return TrackingResult.empty(tracking_number, self.carrier)

        logger.info(
            f"✅ {self.carrier.value} {tracking_number}: status={result.current_status!r}, "
            f"delivered={result.is_delivered}, exception={result.is_exception}, events={len(result.events)}"
        )
        return result

    @abstractmethod
    async def authenticate(self) -> Optional[str]:
        """Return the credential used by ``fetch_raw_tracking``."""

    @abstractmethod
    async def fetch_raw_tracking(self, tracking_number: str, credential: Optional[str]) -> Optional[Any]:
        """Call the carrier; ``None`` means the carrier had nothing usable."""

    @abstractmethod
    def parse_tracking(self, tracking_number: str, raw: Any) -> TrackingResult:
        """Convert the raw payload; may raise any of ``parse_errors``."""

    def build_tracking_url(self, tracking_number: str) -> str:
        return f"{TRACKING_URL_BASES[self.carrier]}{quote(tracking_number, safe='')}"

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        logger.debug(f"{method} {url}")
        try:
            response = await self.http.request(method, url, timeout=self.timeout, **kwargs)
        except httpx.TimeoutException as e:
            logger.error(f"❌ {self.carrier.value} request timed out: {url}")
            raise CarrierUnavailableError(self.carrier.value, f"request timed out: {e}") from e
        except httpx.RequestError as e:
            logger.error(f"❌ {self.carrier.value} network error: {type(e).__name__}: {e}")
            raise CarrierUnavailableError(self.carrier.value, f"network error: {e}") from e

        logger.debug(f"Response status: {response.status_code}")
        return response

    def _raise_for_status(self, response: httpx.Response) -> None:
        status = response.status_code
        if status < 400:
            return

        body = response.text[:500]
        if status == 429:
            logger.warning(f"⚠️ {self.carrier.value} rate limit exceeded")
            raise CarrierRateLimitedError(self.carrier.value, "rate limit exceeded")
        if status >= 500:
            logger.error(f"❌ {self.carrier.value} server error {status}: {body}")
            raise CarrierUnavailableError(self.carrier.value, f"server error {status}", {"status": status, "body": body})

        logger.error(f"❌ {self.carrier.value} rejected request {status}: {body}")
        raise CarrierRequestError(self.carrier.value, f"request rejected {status}", {"status": status, "body": body})

    def _decode_json(self, response: httpx.Response, tracking_number: str) -> Optional[Any]:
        try:
            return response.json()
        except ValueError:
            logger.warning(f"⚠️ {self.carrier.value} response for {tracking_number} is not valid JSON")
            return None
