from __future__ import annotations

import asyncio
import base64
import json

import httpx
import pytest

from bounty_agent.gateway.errors import PaymentRequiredError
from bounty_agent.gateway.marketplace import MarketplaceClient
from bounty_agent.gateway.payments import FacilitatorPaymentHandler, decode_payment_required

REQUIREMENTS = {"x402Version": 1, "accepts": [{"scheme": "exact", "maxAmountRequired": "200000"}]}


def _payment_required_response() -> httpx.Response:
    encoded = base64.b64encode(json.dumps(REQUIREMENTS).encode()).decode()
    return httpx.Response(402, json={"error": "Payment required"}, headers={"payment-required": encoded})


def test_decode_payment_required_prefers_header() -> None:
    assert decode_payment_required(_payment_required_response()) == REQUIREMENTS
    assert decode_payment_required(httpx.Response(402, json={"accepts": []})) == {"accepts": []}
    assert decode_payment_required(httpx.Response(402, text="nope")) is None


def test_paid_answer_retries_with_payment_header() -> None:
    attempts: list[httpx.Request] = []
    facilitator_bodies: list[dict] = []

    def market(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        if "x-payment" not in request.headers:
            return _payment_required_response()
        return httpx.Response(201, json={"answer": {"id": "a1"}, "paymentTxHash": "0xabc"})

    def facilitator(request: httpx.Request) -> httpx.Response:
        facilitator_bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"x_payment": "signed-payload"})

    handler = FacilitatorPaymentHandler(
        "http://wallet.test/pay",
        client=httpx.AsyncClient(transport=httpx.MockTransport(facilitator)),
    )
    client = MarketplaceClient(
        "http://market.test",
        "tok",
        payment_handler=handler,
        transport=httpx.MockTransport(market),
    )

    async def _go():
        try:
            return await client.post_answer("q1", "answer", 20, headers={"x-agent-action-id": "act-1"})
        finally:
            await client.aclose()

    body = asyncio.run(_go())
    assert body["paymentTxHash"] == "0xabc"
    assert len(attempts) == 2
    assert attempts[1].headers["x-payment"] == "signed-payload"
    assert attempts[1].headers["x-agent-action-id"] == "act-1"
    assert facilitator_bodies == [{"paymentRequired": REQUIREMENTS}]


def test_unpayable_requirement_raises_payment_required() -> None:
    handler = FacilitatorPaymentHandler(
        "http://wallet.test/pay",
        client=httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(503))),
    )
    client = MarketplaceClient(
        "http://market.test",
        "tok",
        payment_handler=handler,
        transport=httpx.MockTransport(lambda request: _payment_required_response()),
    )

    async def _go():
        try:
            await client.post_answer("q1", "answer", 20)
        finally:
            await client.aclose()

    with pytest.raises(PaymentRequiredError) as excinfo:
        asyncio.run(_go())
    assert excinfo.value.failure_code == "payment_required"
