"""Stack Exchange search backing the `research_stackexchange` tool."""

from __future__ import annotations

import html
from typing import Any

import httpx

from ..config import StackExchangeConfig
from .errors import MarketplaceError


class StackExchangeClient:
    def __init__(self, config: StackExchangeConfig, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.config = config
        self._client = httpx.AsyncClient(
            base_url=config.api_url.rstrip("/"),
            timeout=config.timeout_seconds,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def search(self, query: str, tags: list[str], limit: int) -> list[dict[str, Any]]:
        params: dict[str, Any] = {
            "order": "desc",
            "sort": "relevance",
            "q": query,
            "site": self.config.site,
            "pagesize": limit,
            "filter": "default",
        }
        if tags:
            params["tagged"] = ";".join(tags)
        if self.config.key:
            params["key"] = self.config.key
        try:
            response = await self._client.get("/search/advanced", params=params)
        except httpx.HTTPError as exc:
            raise MarketplaceError(f"Stack Exchange search failed: {exc}", 0, "research_unavailable") from exc
        if response.status_code >= 400:
            raise MarketplaceError(
                f"Stack Exchange search returned {response.status_code}",
                response.status_code,
                "research_unavailable",
                response.text[:300],
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise MarketplaceError("Stack Exchange returned non-JSON body", response.status_code) from exc
        items = payload.get("items", []) if isinstance(payload, dict) else []
        results: list[dict[str, Any]] = []
        for item in items[:limit]:
            if not isinstance(item, dict):
                continue
            results.append(
                {
                    "title": html.unescape(str(item.get("title", ""))),
                    "link": str(item.get("link", "")),
                    "score": int(item.get("score", 0) or 0),
                    "isAnswered": bool(item.get("is_answered", False)),
                    "tags": [str(tag) for tag in item.get("tags", [])][:5],
                }
            )
        return results
