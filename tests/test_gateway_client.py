import hashlib
import hmac
import json

import httpx
import pytest

from schoolpay.core.config import settings
from schoolpay.core.exceptions import GatewayRejected, GatewayUnavailable
from schoolpay.core.gateway_client import PaystackClient


def _client(handler) -> PaystackClient:
    transport = httpx.MockTransport(handler)
    return PaystackClient(settings, client=httpx.AsyncClient(transport=transport))


@pytest.mark.asyncio
async def test_initialize_sends_subaccount_split() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "status": True,
                "message": "Authorization URL created",
                "data": {
                    "authorization_url": "https://checkout.paystack.com/abc",
                    "access_code": "abc",
                    "reference": "FEE_ref",
                },
            },
        )

    result = await _client(handler).initialize(
        email="parent@example.com",
        amount_minor=2020000,
        reference="FEE_ref",
        metadata={"purpose": "fee"},
        subaccount="ACCT_school",
        transaction_charge_minor=20000,
    )

    assert result.authorization_url == "https://checkout.paystack.com/abc"
    assert seen["url"].endswith("/transaction/initialize")
    assert seen["auth"] == f"Bearer {settings.paystack_secret_key}"
    assert seen["body"]["amount"] == 2020000
    assert seen["body"]["subaccount"] == "ACCT_school"
    assert seen["body"]["transaction_charge"] == 20000
    assert seen["body"]["bearer"] == "account"


@pytest.mark.asyncio
async def test_verify_returns_failed_transactions_instead_of_raising() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "status": True,
                "data": {
                    "id": 4099,
                    "status": "failed",
                    "reference": "SUB_ref",
                    "amount": 300000,
                    "channel": "card",
                    "paid_at": None,
                    "metadata": {"purpose": "subscription"},
                },
            },
        )

    result = await _client(handler).verify("SUB_ref")

    assert result.status == "failed"
    assert result.amount_minor == 300000
    assert result.gateway_reference == "4099"
    assert result.metadata == {"purpose": "subscription"}


@pytest.mark.asyncio
async def test_verify_maps_abandoned_to_pending() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"status": True, "data": {"status": "abandoned", "amount": 100}})

    result = await _client(handler).verify("SUB_ref")

    assert result.status == "pending"
    assert result.gateway_status == "abandoned"


@pytest.mark.asyncio
async def test_server_error_is_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="Bad Gateway")

    with pytest.raises(GatewayUnavailable):
        await _client(handler).verify("SUB_ref")


@pytest.mark.asyncio
async def test_timeout_is_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(GatewayUnavailable):
        await _client(handler).verify("SUB_ref")


@pytest.mark.asyncio
async def test_client_error_is_rejected_with_gateway_message() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"status": False, "message": "Invalid subaccount"})

    with pytest.raises(GatewayRejected) as exc_info:
        await _client(handler).initialize(email="a@b.co", amount_minor=100, reference="r", metadata={})

    assert exc_info.value.message == "Invalid subaccount"


@pytest.mark.asyncio
async def test_status_false_is_rejected() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"status": False, "message": "Transaction reference not found"})

    with pytest.raises(GatewayRejected):
        await _client(handler).verify("missing")


def test_webhook_signature() -> None:
    client = PaystackClient(settings)
    body = b'{"event":"charge.success","data":{"reference":"SUB_ref"}}'
    good = hmac.new(settings.paystack_secret_key.encode(), body, hashlib.sha512).hexdigest()

    assert client.verify_webhook_signature(body, good) is True
    assert client.verify_webhook_signature(body + b" ", good) is False
    assert client.verify_webhook_signature(body, "0" * 128) is False
    assert client.verify_webhook_signature(body, None) is False
    assert client.verify_webhook_signature(body, "\u00e9" * 128) is False
