import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Optional

from delaywatch.business_days import utcnow
from delaywatch.models import Carrier

logger = logging.getLogger(__name__)

# Tokens are considered stale this long before the carrier expires them
TOKEN_REFRESH_BUFFER_SECONDS = 60


@dataclass(frozen=True)
class CarrierToken:
    carrier: Carrier
    access_token: str
    expires_at: datetime

    @classmethod
    def from_expires_in(cls, carrier: Carrier, access_token: str, expires_in: int,
                        now: Optional[datetime] = None) -> "CarrierToken":
        now = now or utcnow()
        ttl = max(int(expires_in) - TOKEN_REFRESH_BUFFER_SECONDS, 0)
        return cls(carrier=carrier, access_token=access_token, expires_at=now + timedelta(seconds=ttl))

    def is_fresh(self, now: datetime) -> bool:
        return now < self.expires_at


class TokenCache:
    """
    Process-wide cache of carrier OAuth tokens, keyed by carrier.

    Created once at process start and passed to the OAuth adapters. Refreshes
    are serialized per carrier so concurrent polls share one token request.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self._tokens: Dict[Carrier, CarrierToken] = {}
        self._locks: Dict[Carrier, asyncio.Lock] = {}

    def get(self, carrier: Carrier) -> Optional[CarrierToken]:
        token = self._tokens.get(carrier)
        if token and token.is_fresh(self._clock()):
            return token
        return None

    def put(self, token: CarrierToken) -> None:
        self._tokens[token.carrier] = token

    def invalidate(self, carrier: Carrier) -> None:
        if self._tokens.pop(carrier, None) is not None:
            logger.info(f"🔑 Dropped cached {carrier.value} token")

    async def get_or_refresh(self, carrier: Carrier,
                             refresh: Callable[[], Awaitable[CarrierToken]]) -> CarrierToken:
        token = self.get(carrier)
        if token:
            logger.debug(f"Using cached {carrier.value} token")
            return token

        lock = self._locks.setdefault(carrier, asyncio.Lock())
        async with lock:
            # Another poll may have refreshed while we waited for the lock
            token = self.get(carrier)
            if token:
                return token

            token = await refresh()
            self.put(token)
            return token

    def clear(self) -> None:
        self._tokens.clear()
        self._locks.clear()
