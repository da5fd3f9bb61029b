from delaywatch.carriers.base import CarrierAdapter, TrackingEventData, TrackingResult
from delaywatch.carriers.fedex import FedexAdapter
from delaywatch.carriers.registry import (
    CarrierRegistry,
    build_tracking_url,
    detect_carrier,
    extract_service_level_from_company,
    is_valid_tracking_number,
)
from delaywatch.carriers.token_cache import CarrierToken, TokenCache
from delaywatch.carriers.ups import UpsAdapter
from delaywatch.carriers.usps import UspsAdapter

__all__ = [
    "CarrierAdapter",
    "CarrierRegistry",
    "CarrierToken",
    "FedexAdapter",
    "TokenCache",
    "TrackingEventData",
    "TrackingResult",
    "UpsAdapter",
    "UspsAdapter",
    "build_tracking_url",
    "detect_carrier",
    "extract_service_level_from_company",
    "is_valid_tracking_number",
]
