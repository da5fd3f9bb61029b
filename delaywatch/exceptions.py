from typing import Any, Optional


class DelayWatchError(Exception):
    """Base class for all tracking engine errors."""


class CarrierError(DelayWatchError):
    """A carrier API call failed before a usable payload was received."""

    code = "API_ERROR"
    retryable = False

    def __init__(self, carrier: str, message: str, raw: Optional[Any] = None):
        super().__init__(f"{carrier}: {message}")
        self.carrier = carrier
        self.message = message
        self.raw = raw


class CarrierAuthError(CarrierError):
    """Credentials are missing or the carrier rejected them."""

    code = "AUTH_FAILED"

    def __init__(self, carrier: str, message: str, raw: Optional[Any] = None, retryable: bool = False):
        super().__init__(carrier, message, raw)
        self.retryable = retryable


class CarrierRateLimitedError(CarrierError):
    code = "RATE_LIMITED"
    retryable = True


class CarrierUnavailableError(CarrierError):
    """Network failure, timeout or a 5xx answer from the carrier."""

    code = "NETWORK_ERROR"
    retryable = True


class CarrierRequestError(CarrierError):
    """The carrier refused the request (4xx other than auth and rate limits)."""

    code = "API_ERROR"


class ShipmentNotFoundError(DelayWatchError):
    def __init__(self, shipment_id: int):
        super().__init__(f"Shipment {shipment_id} not found")
        self.shipment_id = shipment_id
