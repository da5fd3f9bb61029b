import logging
import re
from typing import Dict, List, Optional, Tuple
from urllib.parse import quote

import httpx

from delaywatch.carriers.base import TRACKING_URL_BASES, CarrierAdapter
from delaywatch.carriers.fedex import FedexAdapter
from delaywatch.carriers.token_cache import TokenCache
from delaywatch.carriers.ups import UpsAdapter
from delaywatch.carriers.usps import UspsAdapter
from delaywatch.config import Settings
from delaywatch.models import Carrier

logger = logging.getLogger(__name__)


# Checked in order: prefix based patterns first, bare length based ones last
TRACKING_NUMBER_PATTERNS: List[Tuple[Carrier, re.Pattern]] = [
    (Carrier.UPS, re.compile(r"^1Z[A-Z0-9]{16}$")),
    (Carrier.UPS, re.compile(r"^T[A-Z0-9]{10}$")),
    (Carrier.USPS, re.compile(r"^94[0-9]{20}$")),
    (Carrier.USPS, re.compile(r"^92[0-9]{20}$")),
    (Carrier.USPS, re.compile(r"^93[0-9]{20}$")),
    (Carrier.USPS, re.compile(r"^420[0-9]{5,9}[0-9]{16,22}$")),
    (Carrier.USPS, re.compile(r"^[A-Z]{2}[0-9]{9}US$")),
    (Carrier.FEDEX, re.compile(r"^96[0-9]{10,22}$")),
    (Carrier.FEDEX, re.compile(r"^61[0-9]{18}$")),
    (Carrier.FEDEX, re.compile(r"^[0-9]{12}$")),
    (Carrier.FEDEX, re.compile(r"^[0-9]{15}$")),
    (Carrier.USPS, re.compile(r"^[0-9]{20}$")),
    (Carrier.FEDEX, re.compile(r"^[0-9]{22}$")),
]

CARRIER_NAMES: Dict[str, Carrier] = {
    "ups": Carrier.UPS,
    "united parcel service": Carrier.UPS,
    "ups ground": Carrier.UPS,
    "ups next day air": Carrier.UPS,
    "ups 2nd day air": Carrier.UPS,
    "ups surepost": Carrier.UPS,
    "ups mail innovations": Carrier.UPS,
    "fedex": Carrier.FEDEX,
    "federal express": Carrier.FEDEX,
    "fedex ground": Carrier.FEDEX,
    "fedex express": Carrier.FEDEX,
    "fedex home delivery": Carrier.FEDEX,
    "fedex smartpost": Carrier.FEDEX,
    "fedex 2day": Carrier.FEDEX,
    "fedex overnight": Carrier.FEDEX,
    "usps": Carrier.USPS,
    "usps priority mail": Carrier.USPS,
    "usps priority mail express": Carrier.USPS,
    "usps ground advantage": Carrier.USPS,
    "usps first class": Carrier.USPS,
    "united states postal service": Carrier.USPS,
    "us postal service": Carrier.USPS,
}

# Longer names first so "usps priority mail express" wins over "usps priority mail"
COMPANY_SERVICE_LEVELS: List[Tuple[str, str]] = [
    ("ups ground", "ups_ground"),
    ("ups next day air", "ups_next_day_air"),
    ("ups 2nd day air", "ups_2nd_day_air"),
    ("ups surepost", "ups_surepost"),
    ("ups mail innovations", "ups_mail_innovations"),
    ("fedex ground", "fedex_ground"),
    ("fedex express", "fedex_express"),
    ("fedex home delivery", "fedex_home_delivery"),
    ("fedex smartpost", "fedex_smartpost"),
    ("fedex 2day", "fedex_2day"),
    ("fedex overnight", "fedex_overnight"),
    ("usps priority mail express", "usps_priority_mail_express"),
    ("usps priority mail", "usps_priority_mail"),
    ("usps ground advantage", "usps_ground_advantage"),
    ("usps first class", "usps_first_class"),
]


def _clean_tracking_number(tracking_number: str) -> str:
    return re.sub(r"[\s-]", "", tracking_number).upper()


def detect_carrier_from_company(tracking_company: Optional[str]) -> Carrier:
    if not tracking_company:
        return Carrier.UNKNOWN

    normalized = tracking_company.lower().strip()
    if not normalized:
        return Carrier.UNKNOWN

    if normalized in CARRIER_NAMES:
        return CARRIER_NAMES[normalized]

    for name, carrier in CARRIER_NAMES.items():
        if name in normalized or normalized in name:
            return carrier

    return Carrier.UNKNOWN


def detect_carrier_from_tracking_number(tracking_number: Optional[str]) -> Carrier:
    if not tracking_number:
        return Carrier.UNKNOWN

    cleaned = _clean_tracking_number(tracking_number)
    for carrier, pattern in TRACKING_NUMBER_PATTERNS:
        if pattern.match(cleaned):
            return carrier

    return Carrier.UNKNOWN


def detect_carrier(tracking_company: Optional[str], tracking_number: Optional[str]) -> Carrier:
    """Company name reported by the store first, tracking number format second."""
    carrier = detect_carrier_from_company(tracking_company)
    if carrier != Carrier.UNKNOWN:
        return carrier
    return detect_carrier_from_tracking_number(tracking_number)


def is_valid_tracking_number(tracking_number: Optional[str]) -> bool:
    if not tracking_number:
        return False
    cleaned = re.sub(r"[\s-]", "", tracking_number)
    return bool(re.fullmatch(r"[A-Za-z0-9]{10,34}", cleaned))


def extract_service_level_from_company(tracking_company: Optional[str]) -> Optional[str]:
    if not tracking_company:
        return None

    normalized = tracking_company.lower().strip()
    for name, service_level in sorted(COMPANY_SERVICE_LEVELS, key=lambda item: len(item[0]), reverse=True):
        if name in normalized:
            return service_level

    return None


def build_tracking_url(carrier: Carrier, tracking_number: str) -> Optional[str]:
    base = TRACKING_URL_BASES.get(carrier)
    if base is None:
        return None
    return f"{base}{quote(tracking_number, safe='')}"


class CarrierRegistry:
    """Maps a carrier to its adapter. UNKNOWN has no adapter."""

    def __init__(self, adapters: Dict[Carrier, CarrierAdapter]):
        self._adapters = dict(adapters)

    @classmethod
    def from_settings(cls, http: httpx.AsyncClient, token_cache: TokenCache, settings: Settings) -> "CarrierRegistry":
        timeout = settings.carrier_request_timeout
        return cls({
            Carrier.UPS: UpsAdapter(
                http, token_cache, settings.ups_api_url,
                settings.ups_client_id, settings.ups_client_secret, timeout,
            ),
            Carrier.FEDEX: FedexAdapter(
                http, token_cache, settings.fedex_api_url,
                settings.fedex_client_id, settings.fedex_client_secret, timeout,
            ),
            Carrier.USPS: UspsAdapter(http, settings.usps_api_url, settings.usps_user_id, timeout),
        })

    def get(self, carrier: Carrier) -> Optional[CarrierAdapter]:
        if carrier == Carrier.UNKNOWN:
            return None
        return self._adapters.get(carrier)

    def __contains__(self, carrier: Carrier) -> bool:
        return self.get(carrier) is not None

    @property
    def carriers(self) -> List[Carrier]:
        return list(self._adapters)
