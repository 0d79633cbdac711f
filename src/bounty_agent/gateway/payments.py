"""402 Payment Required handling for paid marketplace writes."""

from __future__ import annotations

import base64
import json
from typing import Any, Protocol

import httpx

PAYMENT_REQUIRED_HEADER = "payment-required"


def decode_payment_required(response: httpx.Response) -> dict[str, Any] | None:
    """Payment requirements from the base64 header, else from the JSON body."""
    header = response.headers.get(PAYMENT_REQUIRED_HEADER)
    if header:
        try:
            decoded = json.loads(base64.b64decode(header))
        except (ValueError, json.JSONDecodeError):
            decoded = None
        if isinstance(decoded, dict):
            return decoded
    try:
        body = response.json()
    except (ValueError, json.JSONDecodeError):
        return None
    return body if isinstance(body, dict) else None


class PaymentHandler(Protocol):
    async def authorize(self, requirements: dict[str, Any]) -> dict[str, str] | None:
        """Return headers that settle the payment, or None if it can't be paid."""


def _extract_payment_header(result: dict[str, Any], default_name: str) -> dict[str, str] | None:
    for key in ("x_payment", "x-payment", "xPayment", "paymentHeader", "payment_header"):
        value = result.get(key)
        if isinstance(value, str) and value.strip():
            return {default_name: value.strip()}
    for key in ("payment_signature", "paymentSignature"):
        value = result.get(key)
        if isinstance(value, str) and value.strip():
            return {"PAYMENT-SIGNATURE": value.strip()}
    headers = result.get("headers")
    if isinstance(headers, dict):
        for name, value in headers.items():
            if str(name).lower() in {"x-payment", "payment-signature"} and isinstance(value, str) and value.strip():
                return {str(name): value.strip()}
    return None


class FacilitatorPaymentHandler:
    """Ask a wallet/facilitator service to approve a payment and return its header."""

    def __init__(
        self,
        url: str,
        *,
        client: httpx.AsyncClient | None = None,
        header_name: str = "X-PAYMENT",
        timeout: float = 20.0,
    ) -> None:
        self.url = url
        self.client = client or httpx.AsyncClient()
        self.header_name = header_name
        self.timeout = timeout

    async def authorize(self, requirements: dict[str, Any]) -> dict[str, str] | None:
        accepts = requirements.get("accepts")
        if isinstance(accepts, list) and not any(isinstance(item, dict) for item in accepts):
            return None
        try:
            response = await self.client.post(
                self.url,
                json={"paymentRequired": requirements},
                timeout=self.timeout,
            )
        except httpx.HTTPError:
            return None
        if response.status_code >= 400:
            return None
        try:
            result = response.json()
        except (ValueError, json.JSONDecodeError):
            return None
        if not isinstance(result, dict):
            return None
        return _extract_payment_header(result, self.header_name)

    async def aclose(self) -> None:
        await self.client.aclose()
