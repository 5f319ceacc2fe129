"""Tests for the Monerium client."""

import asyncio
from urllib.parse import parse_qs

import httpx
import pytest

from fidg.exceptions import ConfigurationError, UpstreamUnavailable, ValidationError
from fidg.monerium import MONERIUM_ACCEPT, MoneriumClient

API_URL = "https://api.monerium.test"
SAFE = "0x" + "ab" * 20


class FakeMonerium:
    """Request handler standing in for the Monerium API."""

    def __init__(self, balances=None, balance_status=200, token_status=200):
        self.balances = balances if balances is not None else []
        self.balance_status = balance_status
        self.token_status = token_status
        self.token_requests = 0
        self.requests: list[httpx.Request] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/auth/token":
            self.token_requests += 1
            await asyncio.sleep(0.01)
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_client"})
            return httpx.Response(
                200, json={"access_token": f"token-{self.token_requests}", "expires_in": 3600}
            )
        if request.url.path == "/tokens":
            return httpx.Response(200, json=[{"currency": "eur", "ticker": "EUR", "symbol": "EURe"}])
        if request.url.path.startswith("/balances/"):
            if self.balance_status != 200:
                return httpx.Response(self.balance_status, json={"message": "not found"})
            return httpx.Response(200, json={"address": SAFE, "balances": self.balances})
        return httpx.Response(404)


def make_client(api: FakeMonerium, **kwargs) -> MoneriumClient:
    options = {"api_url": API_URL, "client_id": "client", "client_secret": "secret"}
    options.update(kwargs)
    return MoneriumClient(transport=httpx.MockTransport(api), **options)


class TestAccessToken:
    """Tests for token caching and refresh."""

    @pytest.mark.asyncio
    async def test_client_credentials_grant(self):
        api = FakeMonerium()
        client = make_client(api)

        token = await client.get_access_token()

        assert token == "token-1"
        form = parse_qs(api.requests[0].content.decode())
        assert form == {
            "grant_type": ["client_credentials"],
            "client_id": ["client"],
            "client_secret": ["secret"],
        }

    @pytest.mark.asyncio
    async def test_token_is_cached(self):
        api = FakeMonerium()
        client = make_client(api)

        await client.get_access_token()
        await client.get_tokens()
        await client.get_access_token()

        assert api.token_requests == 1

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self):
        api = FakeMonerium()
        client = make_client(api)

        tokens = await asyncio.gather(*(client.get_access_token() for _ in range(5)))

        assert set(tokens) == {"token-1"}
        assert api.token_requests == 1

    @pytest.mark.asyncio
    async def test_expired_token_is_refreshed(self):
        api = FakeMonerium()
        client = make_client(api)
        await client.get_access_token()

        client._expires_at = 0.0

        assert await client.get_access_token() == "token-2"
        assert api.token_requests == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("field", ["client_id", "client_secret", "api_url"])
    async def test_missing_configuration(self, field):
        api = FakeMonerium()
        client = make_client(api, **{field: ""})

        with pytest.raises(ConfigurationError):
            await client.get_access_token()

        assert api.requests == []

    @pytest.mark.asyncio
    async def test_rejected_credentials(self):
        client = make_client(FakeMonerium(token_status=401))

        with pytest.raises(UpstreamUnavailable):
            await client.get_access_token()

    @pytest.mark.asyncio
    async def test_transport_error(self):
        async def unreachable(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = MoneriumClient(API_URL, "client", "secret", transport=httpx.MockTransport(unreachable))

        with pytest.raises(UpstreamUnavailable):
            await client.get_access_token()


class TestBalances:
    """Tests for EURe balance lookups."""

    @pytest.mark.asyncio
    async def test_balance_found(self):
        api = FakeMonerium(balances=[{"currency": "eur", "amount": "12.5", "decimals": 18}])
        client = make_client(api, chain="gnosis")

        balance = await client.get_wallet_balance(SAFE)

        assert balance.amount == "12.5"
        assert balance.decimals == 18
        assert balance.linked

        request = api.requests[-1]
        assert request.url.path == f"/balances/gnosis/{SAFE}"
        assert request.url.params["currency"] == "eur"
        assert request.headers["Authorization"] == "Bearer token-1"
        assert request.headers["Accept"] == MONERIUM_ACCEPT

    @pytest.mark.asyncio
    async def test_no_eur_entry_is_zero(self):
        api = FakeMonerium(balances=[{"currency": "usd", "amount": "3"}])

        balance = await make_client(api).get_wallet_balance(SAFE)

        assert balance.amount == "0"
        assert balance.linked

    @pytest.mark.asyncio
    async def test_unknown_address_is_unlinked(self):
        api = FakeMonerium(balance_status=404)

        balance = await make_client(api).get_wallet_balance(SAFE)

        assert balance.amount == "0"
        assert not balance.linked

    @pytest.mark.asyncio
    async def test_upstream_error(self):
        api = FakeMonerium(balance_status=500)

        with pytest.raises(UpstreamUnavailable):
            await make_client(api).get_wallet_balance(SAFE)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("address", ["", "0x1234", "not-an-address"])
    async def test_invalid_address(self, address):
        api = FakeMonerium()

        with pytest.raises(ValidationError):
            await make_client(api).get_wallet_balance(address)

        assert api.requests == []

    @pytest.mark.asyncio
    async def test_tokens(self):
        tokens = await make_client(FakeMonerium()).get_tokens()

        assert tokens[0]["symbol"] == "EURe"
