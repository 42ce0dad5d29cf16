"""
GoCardless Token Manager

Owns the bearer token pair for the GoCardless Bank Account Data API.
One instance per provider; concurrent callers share a single refresh.
"""

import asyncio
import logging
import time
from typing import Optional, Callable

import httpx

from .exceptions import ProviderAuthError

logger = logging.getLogger(__name__)

# Treat tokens as expired slightly early so they never lapse mid-request
EXPIRY_MARGIN_SECONDS = 30


class GoCardlessTokenManager:
    """
    Obtain and refresh GoCardless access tokens.

    Token lifecycle:
    1. POST /token/new/ exchanges secret_id/secret_key for access + refresh tokens
    2. While the access token is valid it is returned from the cache
    3. When it expires, POST /token/refresh/ is used while the refresh token is valid
    4. Otherwise a new pair is requested

    All refresh-or-return decisions happen under an asyncio.Lock.
    """

    def __init__(
        self,
        secret_id: str,
        secret_key: str,
        client_factory: Callable[[], httpx.AsyncClient],
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Args:
            secret_id: GoCardless secret id
            secret_key: GoCardless secret key
            client_factory: Returns an httpx.AsyncClient bound to the API base URL
            clock: Monotonic clock in seconds (injectable for tests)
        """
        self.secret_id = secret_id
        self.secret_key = secret_key
        self._client_factory = client_factory
        self._clock = clock
        self._lock = asyncio.Lock()

        self._access_token: Optional[str] = None
        self._access_expires_at: float = 0.0
        self._refresh_token: Optional[str] = None
        self._refresh_expires_at: float = 0.0

    async def get_access_token(self) -> str:
        """
        Return a valid access token, refreshing or re-issuing it if needed.

        Raises:
            ProviderAuthError: If the token endpoint fails
        """
        async with self._lock:
            now = self._clock()

            if self._access_token and now < self._access_expires_at:
                return self._access_token

            if self._refresh_token and now < self._refresh_expires_at:
                try:
                    await self._refresh()
                    return self._access_token
                except ProviderAuthError as e:
                    # Refresh token may have been revoked server-side
                    logger.warning(f"GoCardless token refresh failed, requesting new token: {e}")

            await self._issue_new()
            return self._access_token

    def invalidate(self):
        """Drop cached tokens so the next call requests a new pair."""
        self._access_token = None
        self._access_expires_at = 0.0
        self._refresh_token = None
        self._refresh_expires_at = 0.0

    async def _issue_new(self):
        logger.info("Requesting new GoCardless access token")
        data = await self._post('/token/new/', {
            'secret_id': self.secret_id,
            'secret_key': self.secret_key
        }, action="generate access token")

        now = self._clock()
        self._access_token = data['access']
        self._access_expires_at = now + data.get('access_expires', 0) - EXPIRY_MARGIN_SECONDS
        self._refresh_token = data.get('refresh')
        self._refresh_expires_at = now + data.get('refresh_expires', 0) - EXPIRY_MARGIN_SECONDS

    async def _refresh(self):
        logger.info("Refreshing GoCardless access token")
        data = await self._post('/token/refresh/', {
            'refresh': self._refresh_token
        }, action="refresh access token")

        now = self._clock()
        self._access_token = data['access']
        self._access_expires_at = now + data.get('access_expires', 0) - EXPIRY_MARGIN_SECONDS

    async def _post(self, path: str, body: dict, action: str) -> dict:
        try:
            async with self._client_factory() as client:
                response = await client.post(path, json=body)
        except httpx.HTTPError as e:
            raise ProviderAuthError(f"Failed to {action}: {e}") from e

        if not response.is_success:
            raise ProviderAuthError(f"Failed to {action}", response.status_code, response.text)
        return response.json()
