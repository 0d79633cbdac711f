"""Server-sent event subscription to the marketplace question stream."""

from __future__ import annotations

import asyncio
import json
import time
from collections import OrderedDict
from typing import TYPE_CHECKING, Any, Callable

import httpx

from ..config import ListenerConfig
from ..logger import EventLogger
from .llm import LLMAuthError, LLMError
from .tool_client import ToolCallError

if TYPE_CHECKING:
    from .discovery import DiscoveryPulse
    from .reactions import ReactionPolicy
    from .state import LoopState


class DedupeCache:
    """Least-recently-seen event ids.

    An id seen again within `window_seconds` is a duplicate. Once the cache
    grows past `cap` the oldest half is dropped.
    """

    def __init__(
        self,
        *,
        window_seconds: float = 900.0,
        cap: int = 3000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.window_seconds = window_seconds
        self.cap = cap
        self.clock = clock
        self._seen: OrderedDict[str, float] = OrderedDict()

    def __len__(self) -> int:
        return len(self._seen)

    def seen(self, event_id: str) -> bool:
        now = self.clock()
        previous = self._seen.pop(event_id, None)
        self._seen[event_id] = now
        if len(self._seen) > self.cap:
            for _ in range(len(self._seen) // 2):
                self._seen.popitem(last=False)
        return previous is not None and now - previous < self.window_seconds


def parse_sse_line(line: str) -> dict[str, Any] | None:
    text = line.strip()
    if not text.startswith("data:"):
        return None
    raw = text[5:].strip()
    if not raw:
        return None
    try:
        event = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return event if isinstance(event, dict) else None


class EventListener:
    def __init__(
        self,
        config: ListenerConfig,
        *,
        base_url: str,
        access_token: str,
        state: LoopState,
        logger: EventLogger,
        reactions: ReactionPolicy | None = None,
        discovery: DiscoveryPulse | None = None,
        auth_cooldown_seconds: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.url = base_url.rstrip("/") + config.path
        self.access_token = access_token
        self.state = state
        self.logger = logger
        self.reactions = reactions
        self.discovery = discovery
        self.auth_cooldown_seconds = auth_cooldown_seconds
        # The stream stays open indefinitely; only connect and write are bounded.
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(10.0, read=None),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        return {
            "Accept": "text/event-stream",
            "Cache-Control": "no-cache",
            "Authorization": f"Bearer {self.access_token}",
        }

    async def run(self, stop: asyncio.Event) -> None:
        if not self.access_token:
            self.logger.log("event_stream_disabled", {"url": self.url, "has_token": False})
            return
        delay = max(1.0, self.config.reconnect_seconds)
        while not stop.is_set():
            try:
                await self.consume()
            except httpx.HTTPError as exc:
                self.logger.log("event_stream_error", {"error": str(exc)[:220]})
            if stop.is_set():
                break
            try:
                await asyncio.wait_for(stop.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

    async def consume(self) -> None:
        """Read one connection until the server closes it."""
        async with self._client.stream("GET", self.url, headers=self._headers()) as response:
            if response.status_code >= 400:
                self.logger.log("event_stream_connect_failed", {"status": response.status_code})
                return
            self.logger.log("event_stream_connected", {"url": self.url})
            async for line in response.aiter_lines():
                event = parse_sse_line(line)
                if event is not None:
                    await self.dispatch(event)
        self.logger.log("event_stream_disconnected", {"url": self.url})

    async def dispatch(self, event: dict[str, Any]) -> None:
        event_type = str(event.get("eventType") or "").strip()
        if not event_type:
            return
        event_id = str(event.get("eventId") or "").strip() or f"{event_type}:{time.time()}"
        if self.state.dedupe.seen(event_id):
            return
        try:
            await self._handle(event_type, event)
        except LLMAuthError as exc:
            self.state.block_auth(self.auth_cooldown_seconds)
            self.logger.log("llm_auth_error", {"source": "listener", "event_type": event_type, "error": str(exc)})
        except (ToolCallError, LLMError) as exc:
            self.logger.log(
                "event_process_failed",
                {"event_type": event_type, "event_id": event_id, "error": str(exc)[:220]},
            )

    async def _handle(self, event_type: str, event: dict[str, Any]) -> None:
        if event_type == "session.ready":
            self.logger.log("event_session_ready", {"agent_id": event.get("agentId")})
        elif event_type == "question.created":
            post_id = str(event.get("postId") or "").strip()
            self.logger.log("event_question_created", {"post_id": post_id, "wiki_id": event.get("wikiId")})
            if post_id:
                dropped = self.state.enqueue_question(post_id)
                if dropped:
                    self.logger.log("event_queue_dropped", {"question_id": dropped})
            if self.reactions is not None and not self.state.auth_blocked():
                await self.reactions.react_to_question(event)
        elif event_type == "answer.created":
            self.logger.log(
                "event_answer_created",
                {"post_id": event.get("postId"), "answer_id": event.get("answerId"), "wiki_id": event.get("wikiId")},
            )
            if self.reactions is not None and not self.state.auth_blocked():
                await self.reactions.react_to_answer(event)
        elif event_type == "wiki.created":
            self.logger.log("event_wiki_created", {"wiki_id": event.get("wikiId")})
            if self.discovery is not None and not self.state.auth_blocked():
                await self.discovery.run("wiki-created")
        else:
            self.logger.log("event_ignored", {"event_type": event_type})
