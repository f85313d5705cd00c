"""
Tests for payment providers, using httpx.MockTransport instead of the network.
"""

import json

import httpx
import pytest

from goldenpie.config import PaymentConfig
from goldenpie.payments import (
    LNbitsProvider,
    MockProvider,
    ZBDProvider,
    resolve_provider,
)


class TestResolveProvider:

    def test_none_selected(self):
        assert resolve_provider(PaymentConfig()) is None
        assert resolve_provider(None) is None

    def test_missing_credentials(self):
        assert resolve_provider(PaymentConfig(provider="zbd")) is None
        assert resolve_provider(PaymentConfig(provider="lnbits", lnbits_url="https://lnbits.example.com")) is None

    def test_configured(self):
        assert isinstance(resolve_provider(PaymentConfig(provider="zbd", zbd_api_key="k")), ZBDProvider)
        provider = resolve_provider(PaymentConfig(
            provider="LNbits", lnbits_url="https://lnbits.example.com/", lnbits_api_key="admin"
        ))
        assert isinstance(provider, LNbitsProvider)
        assert provider.url == "https://lnbits.example.com"
        assert isinstance(resolve_provider(PaymentConfig(provider="mock")), MockProvider)

    def test_unknown(self):
        assert resolve_provider(PaymentConfig(provider="paypal")) is None


class TestZBDProvider:

    @pytest.mark.asyncio
    async def test_success(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"success": True, "data": {"id": "zbd-tx-1"}})

        provider = ZBDProvider(api_key="secret", transport=httpx.MockTransport(handler))
        result = await provider.send("p1@zbd.gg", 2, "GoldenPie Kill Reward - Spook 1")

        assert result.success
        assert result.transaction_id == "zbd-tx-1"
        assert seen["headers"]["apikey"] == "secret"
        assert seen["body"]["lnAddress"] == "p1@zbd.gg"
        assert seen["body"]["amount"] == "2000"
        assert seen["body"]["comment"] == "GoldenPie Kill Reward - Spook 1"
        assert seen["body"]["internalId"].startswith("goldenpie-")

    @pytest.mark.asyncio
    async def test_api_failure(self):
        transport = httpx.MockTransport(
            lambda request: httpx.Response(400, json={"success": False, "message": "Invalid amount"})
        )
        result = await ZBDProvider(api_key="secret", transport=transport).send("p1@zbd.gg", 1)

        assert not result.success
        assert result.error == "Invalid amount"

    @pytest.mark.asyncio
    async def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        result = await ZBDProvider(api_key="secret", transport=httpx.MockTransport(handler)).send("p1@zbd.gg", 1)

        assert not result.success
        assert "connection refused" in result.error

    @pytest.mark.asyncio
    async def test_non_json_response(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(502, text="<html>Bad Gateway</html>"))
        result = await ZBDProvider(api_key="secret", transport=transport).send("p1@zbd.gg", 1)

        assert not result.success
        assert "502" in result.error

    @pytest.mark.asyncio
    async def test_not_configured(self):
        result = await ZBDProvider().send("p1@zbd.gg", 1)
        assert not result.success


def lnbits_handler(pay_status=201, pay_body=None, calls=None):
    calls = [] if calls is None else calls

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if request.url.path == "/.well-known/lnurlp/alice":
            return httpx.Response(200, json={"callback": "https://wallet.example.com/lnurlp/cb/alice", "tag": "payRequest"})
        if request.url.path == "/lnurlp/cb/alice":
            return httpx.Response(200, json={"pr": "lnbc10n1fakeinvoice"})
        if request.url.path == "/api/v1/payments":
            return httpx.Response(pay_status, json=pay_body or {"payment_hash": "abc123"})
        return httpx.Response(404)

    return handler


class TestLNbitsProvider:

    @pytest.mark.asyncio
    async def test_success(self):
        calls = []
        provider = LNbitsProvider(
            url="https://lnbits.example.com",
            api_key="admin-key",
            transport=httpx.MockTransport(lnbits_handler(calls=calls)),
        )

        result = await provider.send("alice@wallet.example.com", 3, "kill")

        assert result.success
        assert result.transaction_id == "abc123"

        resolve, invoice, pay = calls
        assert str(resolve.url) == "https://wallet.example.com/.well-known/lnurlp/alice"
        assert invoice.url.params["amount"] == "3000"
        assert invoice.url.params["comment"] == "kill"
        assert pay.headers["X-Api-Key"] == "admin-key"
        assert json.loads(pay.content) == {"out": True, "bolt11": "lnbc10n1fakeinvoice"}

    @pytest.mark.asyncio
    async def test_auth_failure_hint(self):
        provider = LNbitsProvider(
            url="https://lnbits.example.com",
            api_key="invoice-key",
            transport=httpx.MockTransport(lnbits_handler(401, {"detail": "Invalid key"})),
        )

        result = await provider.send("alice@wallet.example.com", 1)

        assert not result.success
        assert "Admin key" in result.error

    @pytest.mark.asyncio
    async def test_unresolvable_address(self):
        provider = LNbitsProvider(
            url="https://lnbits.example.com",
            api_key="admin-key",
            transport=httpx.MockTransport(lnbits_handler()),
        )

        result = await provider.send("bob@wallet.example.com", 1)

        assert not result.success
        assert result.error == "Failed to resolve Lightning address"

    @pytest.mark.asyncio
    async def test_bad_address(self):
        provider = LNbitsProvider(url="https://lnbits.example.com", api_key="admin-key")
        result = await provider.send("not-an-address", 1)
        assert result.error == "Invalid Lightning address format"

    def test_describe_failure(self):
        assert LNbitsProvider.describe_failure(400, {"detail": "bad"}) == "Invalid request: bad"
        assert "server error (503)" in LNbitsProvider.describe_failure(503, {})
        message = LNbitsProvider.describe_failure(520, {"detail": "Only internal invoices can be paid"})
        assert "enable external payments" in message


class TestMockProvider:

    @pytest.mark.asyncio
    async def test_records_sends(self):
        provider = MockProvider()
        first = await provider.send("a@b.c", 1, "memo")
        second = await provider.send("a@b.c", 1, "memo")

        assert (first.transaction_id, second.transaction_id) == ("mock-1", "mock-2")
        assert len(provider.sent) == 2

    @pytest.mark.asyncio
    async def test_configured_failure(self):
        result = await MockProvider(fail_with="nope").send("a@b.c", 1)
        assert not result.success
        assert result.error == "nope"
