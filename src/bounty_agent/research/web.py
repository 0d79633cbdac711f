"""Optional open-web research: search, polite fetch, text extraction, summary."""

from __future__ import annotations

import json
from typing import Any
from urllib.parse import urljoin, urlsplit

import httpx
from bs4 import BeautifulSoup

from ..agent.decisions import EvidenceSummary
from ..agent.llm import CompletionModel
from ..config import ResearchConfig
from .robots import RobotsCache
from .summarize import summarize_pages


def _host_matches(host: str, pattern: str) -> bool:
    pattern = pattern.strip().lower().lstrip(".")
    return bool(pattern) and (host == pattern or host.endswith("." + pattern))


def host_allowed(url: str, *, allow: list[str], deny: list[str]) -> bool:
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https"):
        return False
    host = (parts.hostname or "").lower()
    if not host:
        return False
    if any(_host_matches(host, pattern) for pattern in deny):
        return False
    if allow:
        return any(_host_matches(host, pattern) for pattern in allow)
    return True


def content_type_allowed(content_type: str, allowed: list[str]) -> bool:
    media = content_type.split(";", 1)[0].strip().lower()
    if not media:
        return False
    return media in allowed or media.endswith("+xml") or media.endswith("+json")


def extract_text(body: str, media_type: str, max_chars: int) -> str:
    if "json" in media_type:
        try:
            text = json.dumps(json.loads(body), ensure_ascii=True)
        except json.JSONDecodeError:
            text = body
    else:
        soup = BeautifulSoup(body, "html.parser")
        for tag in soup(["script", "style", "noscript"]):
            tag.decompose()
        text = soup.get_text(separator=" ")
    return " ".join(text.split())[:max_chars]


class WebResearchProvider:
    name = "web"

    def __init__(
        self,
        config: ResearchConfig,
        llm: CompletionModel,
        *,
        temperature: float = 0.1,
        transport: httpx.AsyncBaseTransport | None = None,
        robots: RobotsCache | None = None,
    ) -> None:
        self.config = config
        self.llm = llm
        self.temperature = temperature
        self._client = httpx.AsyncClient(
            timeout=config.fetch_timeout_seconds,
            follow_redirects=False,
            transport=transport,
            headers={"User-Agent": config.user_agent},
        )
        self.robots = robots or RobotsCache(
            self._client,
            user_agent=config.user_agent,
            ttl_seconds=config.robots_ttl_seconds,
            timeout=config.fetch_timeout_seconds,
        )
        self.queries_used = 0
        self.fetches_used = 0

    def reset(self) -> None:
        self.queries_used = 0
        self.fetches_used = 0

    async def aclose(self) -> None:
        await self._client.aclose()

    async def gather(self, query: str, *, topics: list[str]) -> dict[str, Any]:
        bundle: dict[str, Any] = {"query": query, "provider": self.name, "items": []}
        if not self.config.search_url:
            bundle["error"] = "search-url-not-configured"
            return bundle
        if self.queries_used >= self.config.max_web_queries:
            bundle["error"] = "query-cap-reached"
            return bundle
        self.queries_used += 1

        pages: list[dict[str, Any]] = []
        for result in await self.search(query):
            if self.fetches_used >= self.config.max_fetches:
                break
            url = result["url"]
            if not await self.permitted(url):
                continue
            self.fetches_used += 1
            text = await self.fetch_text(url)
            if text:
                pages.append({"url": url, "title": result["title"], "text": text})

        bundle["items"] = [{"title": page["title"][:140], "link": page["url"][:240]} for page in pages]
        if pages:
            summary = await summarize_pages(self.llm, query=query, pages=pages, temperature=self.temperature)
            if isinstance(summary, EvidenceSummary):
                bundle["summary"] = summary
            else:
                bundle["error"] = summary
        return bundle

    async def search(self, query: str) -> list[dict[str, str]]:
        response = await self._client.get(
            self.config.search_url or "",
            params={"q": query, "format": "json"},
            follow_redirects=True,
        )
        response.raise_for_status()
        try:
            payload = response.json()
        except ValueError:
            return []
        raw = payload.get("results") if isinstance(payload, dict) else None
        results: list[dict[str, str]] = []
        for item in raw if isinstance(raw, list) else []:
            if isinstance(item, dict) and item.get("url"):
                results.append({"url": str(item["url"]), "title": str(item.get("title") or "")})
        return results

    async def permitted(self, url: str) -> bool:
        if not host_allowed(url, allow=self.config.allow_hosts, deny=self.config.deny_hosts):
            return False
        return await self.robots.allowed(url)

    async def fetch_text(self, url: str) -> str:
        """Fetch one page within the byte cap; disallowed content types yield ''.

        Redirects are followed by hand so each hop is checked against the host
        lists and robots.txt before it is requested.
        """
        for _ in range(self.config.max_redirects + 1):
            async with self._client.stream("GET", url) as response:
                if not response.is_redirect:
                    return await self._read_text(response)
                location = response.headers.get("location", "").strip()
            if not location:
                return ""
            url = urljoin(url, location)
            if not await self.permitted(url):
                return ""
        return ""

    async def _read_text(self, response: httpx.Response) -> str:
        if response.status_code >= 400:
            return ""
        content_type = response.headers.get("content-type", "")
        if not content_type_allowed(content_type, self.config.allowed_content_types):
            return ""
        body = bytearray()
        async for chunk in response.aiter_bytes():
            body.extend(chunk)
            if len(body) >= self.config.max_response_bytes:
                break
        encoding = response.encoding or "utf-8"
        media_type = content_type.split(";", 1)[0].strip().lower()
        text = bytes(body[: self.config.max_response_bytes]).decode(encoding, errors="replace")
        return extract_text(text, media_type, self.config.max_text_chars)
