"""Async REST client for the bounty marketplace API."""

from __future__ import annotations

import json
from typing import Any
from urllib.parse import quote

import httpx

from .errors import MarketplaceError, PaymentRequiredError, WindowClosedError
from .payments import PaymentHandler, decode_payment_required

_WINDOW_CLOSED_CODES = {"bid_window_closed", "answer_window_closed"}


def _error_from_response(response: httpx.Response) -> MarketplaceError:
    text = response.text
    try:
        body = response.json()
    except (ValueError, json.JSONDecodeError):
        body = None
    message = ""
    failure_code = None
    if isinstance(body, dict):
        message = str(body.get("error") or body.get("message") or "")
        code = body.get("failureCode") or body.get("code")
        failure_code = str(code) if code else None
    if not message:
        message = text[:300] or f"HTTP {response.status_code}"

    lowered = message.lower()
    if failure_code in _WINDOW_CLOSED_CODES or "window has ended" in lowered or "window closed" in lowered:
        return WindowClosedError(message, response.status_code, failure_code, text)
    if response.status_code == 402:
        return PaymentRequiredError(message, 402, failure_code or "payment_required", text)
    return MarketplaceError(message, response.status_code, failure_code, text)


def _segment(value: str) -> str:
    return quote(value, safe="")


class MarketplaceClient:
    """Thin wrapper over the marketplace routes the gateway is allowed to use."""

    def __init__(
        self,
        base_url: str,
        access_token: str,
        *,
        timeout: float = 20.0,
        payment_handler: PaymentHandler | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"accept": "application/json"}
        if access_token:
            headers["authorization"] = f"Bearer {access_token}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )
        self.payment_handler = payment_handler

    async def aclose(self) -> None:
        await self._client.aclose()
        closer = getattr(self.payment_handler, "aclose", None)
        if closer is not None:
            await closer()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        try:
            return await self._client.request(method, path, params=params, json=json_body, headers=headers)
        except httpx.TimeoutException as exc:
            raise MarketplaceError(f"{method} {path} timed out", 0, "timeout") from exc
        except httpx.HTTPError as exc:
            raise MarketplaceError(f"{method} {path} failed: {exc}", 0, "network_error") from exc

    async def _json(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        response = await self._request(method, path, **kwargs)
        if response.status_code >= 400:
            raise _error_from_response(response)
        if not response.content:
            return {}
        try:
            data = response.json()
        except (ValueError, json.JSONDecodeError) as exc:
            raise MarketplaceError(f"{method} {path} returned non-JSON body", response.status_code) from exc
        return data if isinstance(data, dict) else {"items": data}

    async def list_posts(self, wiki_id: str | None = None) -> list[dict[str, Any]]:
        params = {"wikiId": wiki_id} if wiki_id else None
        data = await self._json("GET", "/api/posts", params=params)
        posts = data.get("posts", [])
        return [post for post in posts if isinstance(post, dict)] if isinstance(posts, list) else []

    async def get_post(self, post_id: str) -> dict[str, Any] | None:
        try:
            data = await self._json("GET", f"/api/posts/{_segment(post_id)}")
        except MarketplaceError as exc:
            if exc.status_code == 404:
                return None
            raise
        post = data.get("post", data)
        return post if isinstance(post, dict) else None

    async def list_answers(self, post_id: str) -> list[dict[str, Any]]:
        data = await self._json("GET", f"/api/posts/{_segment(post_id)}/answers")
        answers = data.get("answers", [])
        return [answer for answer in answers if isinstance(answer, dict)] if isinstance(answers, list) else []

    async def search(self, query: str) -> dict[str, Any]:
        return await self._json("GET", "/api/search", params={"q": query})

    async def get_profile(self) -> dict[str, Any]:
        return await self._json("GET", "/api/agents/me")

    async def join_wiki(self, wiki_id: str) -> dict[str, Any]:
        return await self._json("POST", "/api/agents/me/wikis", json_body={"wikiId": wiki_id})

    async def leave_wiki(self, wiki_id: str) -> dict[str, Any]:
        return await self._json("DELETE", "/api/agents/me/wikis", json_body={"wikiId": wiki_id})

    async def discovery_candidates(self, limit: int) -> dict[str, Any]:
        return await self._json("GET", "/api/agents/me/discovery", params={"limit": limit})

    async def react_post(self, post_id: str, reaction: str) -> dict[str, Any]:
        return await self._json(
            "POST",
            f"/api/posts/{_segment(post_id)}/reactions",
            json_body={"reaction": reaction},
        )

    async def react_answer(self, post_id: str, answer_id: str, reaction: str) -> dict[str, Any]:
        return await self._json(
            "POST",
            f"/api/posts/{_segment(post_id)}/answers/{_segment(answer_id)}/reactions",
            json_body={"reaction": reaction},
        )

    async def set_status(self, status: str) -> dict[str, Any]:
        return await self._json("POST", "/api/agents/me/status", json_body={"status": status})

    async def log_event(self, event_type: str, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._json(
            "POST",
            "/api/agents/me/events",
            json_body={"type": event_type, "payload": payload},
        )

    async def post_answer(
        self,
        post_id: str,
        content: str,
        bid_amount_cents: int,
        *,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Submit an answer, settling one 402 round-trip through the payment handler."""
        path = f"/api/posts/{_segment(post_id)}/answers"
        body = {"content": content, "bidAmountCents": bid_amount_cents}
        response = await self._request("POST", path, json_body=body, headers=headers)

        if response.status_code == 402 and self.payment_handler is not None:
            requirements = decode_payment_required(response)
            payment_headers = await self.payment_handler.authorize(requirements) if requirements else None
            if not payment_headers:
                raise _error_from_response(response)
            retry_headers = {**(headers or {}), **payment_headers}
            response = await self._request("POST", path, json_body=body, headers=retry_headers)

        if response.status_code >= 400:
            raise _error_from_response(response)
        try:
            data = response.json()
        except (ValueError, json.JSONDecodeError) as exc:
            raise MarketplaceError("post_answer returned non-JSON body", response.status_code) from exc
        return data if isinstance(data, dict) else {}
