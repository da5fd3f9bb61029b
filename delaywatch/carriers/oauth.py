import logging
from abc import abstractmethod
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

from delaywatch.carriers.base import CarrierAdapter
from delaywatch.carriers.token_cache import CarrierToken, TokenCache
from delaywatch.exceptions import CarrierAuthError, CarrierUnavailableError

logger = logging.getLogger(__name__)


class OAuthTokenResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    access_token: str
    token_type: str = "Bearer"
    expires_in: int = 3600


class OAuthCarrierAdapter(CarrierAdapter):
    """Adapter for carriers using the OAuth2 client-credentials grant."""

    token_path: str

    def __init__(self, http: httpx.AsyncClient, token_cache: TokenCache, api_url: str,
                 client_id: Optional[str], client_secret: Optional[str], timeout: float = 30.0):
        super().__init__(http, timeout)
        self.token_cache = token_cache
        self.api_url = api_url.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret

    @property
    def token_url(self) -> str:
        return f"{self.api_url}{self.token_path}"

    async def authenticate(self) -> str:
        token = await self.token_cache.get_or_refresh(self.carrier, self._request_token)
        return token.access_token

    @abstractmethod
    def token_request_kwargs(self) -> Dict[str, Any]:
        """httpx keyword arguments for the token request (auth, form data)."""

    async def _request_token(self) -> CarrierToken:
        if not self.client_id or not self.client_secret:
            logger.error(f"❌ {self.carrier.value} client credentials are not configured")
            raise CarrierAuthError(self.carrier.value, "client credentials are not configured")

        logger.info(f"🔑 Requesting new {self.carrier.value} access token")

        response = await self._send("POST", self.token_url, **self.token_request_kwargs())

        if response.status_code >= 500:
            raise CarrierUnavailableError(self.carrier.value, f"token endpoint error {response.status_code}")
        if response.status_code >= 400:
            logger.error(f"❌ {self.carrier.value} token request failed: {response.status_code}")
            logger.error(f"Server response: {response.text[:500]}")
            raise CarrierAuthError(
                self.carrier.value,
                f"token request failed: {response.status_code}",
                {"status": response.status_code, "body": response.text[:500]},
            )

        try:
            data = OAuthTokenResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            logger.error(f"❌ {self.carrier.value} token response is malformed: {e}")
            raise CarrierAuthError(self.carrier.value, "malformed token response") from e

        logger.info(f"✅ {self.carrier.value} token received, expires_in: {data.expires_in}s")
        return CarrierToken.from_expires_in(self.carrier, data.access_token, data.expires_in)

    def _check_unauthorized(self, response: httpx.Response) -> None:
        if response.status_code == 401:
            # The token may have been revoked early; the next attempt re-authenticates
            self.token_cache.invalidate(self.carrier)
            raise CarrierAuthError(self.carrier.value, "access token rejected", retryable=True)
