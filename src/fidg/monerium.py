"""Monerium API client.

Uses the client-credentials grant. The access token is cached for the
process and refreshed 60 seconds before it expires; concurrent callers
share a single refresh.
API docs: https://monerium.dev/api-docs/v2
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional

import httpx

from fidg.chain.abi import is_address
from fidg.exceptions import ConfigurationError, UpstreamUnavailable, ValidationError

logger = logging.getLogger(__name__)

MONERIUM_ACCEPT = "application/vnd.monerium.api-v2+json"
TOKEN_REFRESH_MARGIN = 60.0
EURE_CURRENCY = "eur"
EURE_DECIMALS = 18


@dataclass
class MoneriumBalance:
    """EURe balance of an address as reported by Monerium."""
    address: str
    amount: str = "0"
    decimals: int = EURE_DECIMALS
    linked: bool = True


class MoneriumClient:
    """Monerium v2 API client with a cached access token."""

    def __init__(
        self,
        api_url: str,
        client_id: str,
        client_secret: str,
        chain: str = "sepolia",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize Monerium client.

        Args:
            api_url: API base URL
            client_id: Client-credentials id
            client_secret: Client-credentials secret
            chain: Chain name for balance lookups
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.api_url = api_url.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self.chain = chain
        self.timeout = timeout
        self._transport = transport

        self._access_token: Optional[str] = None
        self._expires_at: float = 0.0
        self._token_lock = asyncio.Lock()

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    def _token_valid(self) -> bool:
        return self._access_token is not None and time.monotonic() < self._expires_at

    async def get_access_token(self) -> str:
        """Return a valid access token, refreshing it at most once at a time."""
        if self._token_valid():
            return self._access_token

        async with self._token_lock:
            # Another caller may have refreshed while we waited
            if self._token_valid():
                return self._access_token
            return await self._refresh_token()

    async def _refresh_token(self) -> str:
        if not self.client_id or not self.client_secret or not self.api_url:
            raise ConfigurationError("Monerium environment variables are not set.")

        try:
            async with self._client() as client:
                response = await client.post(
                    f"{self.api_url}/auth/token",
                    data={
                        "grant_type": "client_credentials",
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                    },
                )
        except httpx.HTTPError as e:
            logger.error(f"Error getting Monerium access token: {e}")
            raise UpstreamUnavailable("Failed to obtain Monerium access token.")

        if response.status_code != 200:
            logger.error(f"Monerium token error: {response.status_code} - {response.text}")
            raise UpstreamUnavailable("Failed to obtain Monerium access token.")

        data = response.json()
        self._access_token = data["access_token"]
        self._expires_at = time.monotonic() + float(data.get("expires_in", 0)) - TOKEN_REFRESH_MARGIN
        logger.info("[Monerium] Access token obtained successfully.")
        return self._access_token

    async def _get(self, path: str, params: Optional[dict] = None) -> httpx.Response:
        token = await self.get_access_token()
        try:
            async with self._client() as client:
                return await client.get(
                    f"{self.api_url}{path}",
                    params=params,
                    headers={
                        "Authorization": f"Bearer {token}",
                        "Accept": MONERIUM_ACCEPT,
                    },
                )
        except httpx.HTTPError as e:
            logger.error(f"Monerium request {path} failed: {e}")
            raise UpstreamUnavailable(f"Monerium request failed: {e}")

    async def get_tokens(self):
        """List of tokens Monerium issues, passed through as returned."""
        response = await self._get("/tokens")
        if response.status_code != 200:
            logger.error(f"Monerium tokens error: {response.status_code} - {response.text}")
            raise UpstreamUnavailable("Failed to fetch Monerium tokens.")
        return response.json()

    async def get_wallet_balance(self, address: str) -> MoneriumBalance:
        """EURe balance for an address. Unknown addresses report zero."""
        if not is_address(address):
            raise ValidationError("Valid safeAddress is required.")

        response = await self._get(
            f"/balances/{self.chain}/{address}", params={"currency": EURE_CURRENCY}
        )

        if response.status_code == 404:
            logger.info(f"[Monerium] Address {address} not found in Monerium.")
            return MoneriumBalance(address=address, linked=False)

        if response.status_code != 200:
            logger.error(f"Monerium balance error: {response.status_code} - {response.text}")
            raise UpstreamUnavailable("Failed to retrieve Monerium EURe balance.")

        for item in response.json().get("balances", []):
            if item.get("currency") == EURE_CURRENCY:
                return MoneriumBalance(
                    address=address,
                    amount=str(item.get("amount", "0")),
                    decimals=int(item.get("decimals", EURE_DECIMALS)),
                )
        return MoneriumBalance(address=address)


_client: Optional[MoneriumClient] = None


def get_monerium_client() -> MoneriumClient:
    """Process-wide Monerium client, so the token cache is shared."""
    global _client
    if _client is None:
        from fidg.config import get_settings

        settings = get_settings()
        _client = MoneriumClient(
            api_url=settings.monerium_api_url,
            client_id=settings.monerium_client_id,
            client_secret=settings.monerium_client_secret,
            chain=settings.monerium_chain,
            timeout=settings.monerium_timeout,
        )
    return _client
