"""Per-origin robots.txt cache."""

from __future__ import annotations

import time
from typing import Callable
from urllib.parse import urlsplit
from urllib.robotparser import RobotFileParser

import httpx


def origin_of(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}".lower()


class RobotsCache:
    """Fetches robots.txt once per origin and keeps it for `ttl_seconds`.

    A missing robots.txt (4xx) allows everything; a server error or network
    failure disallows the origin until the entry expires.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        user_agent: str,
        ttl_seconds: float = 3600.0,
        timeout: float = 8.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.user_agent = user_agent
        self.ttl_seconds = ttl_seconds
        self.timeout = timeout
        self.clock = clock
        self._entries: dict[str, tuple[float, RobotFileParser]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    async def allowed(self, url: str) -> bool:
        parser = await self._parser_for(origin_of(url))
        return parser.can_fetch(self.user_agent, url)

    async def _parser_for(self, origin: str) -> RobotFileParser:
        now = self.clock()
        cached = self._entries.get(origin)
        if cached is not None and cached[0] > now:
            return cached[1]
        parser = await self._fetch(origin)
        self._entries[origin] = (now + self.ttl_seconds, parser)
        return parser

    async def _fetch(self, origin: str) -> RobotFileParser:
        parser = RobotFileParser(f"{origin}/robots.txt")
        try:
            response = await self.client.get(
                f"{origin}/robots.txt",
                headers={"User-Agent": self.user_agent},
                timeout=self.timeout,
                follow_redirects=True,
            )
        except httpx.HTTPError:
            parser.disallow_all = True
            return parser
        if response.status_code >= 500:
            parser.disallow_all = True
        elif response.status_code >= 400:
            parser.allow_all = True
        else:
            parser.parse(response.text.splitlines())
        return parser
