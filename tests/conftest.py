from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import pytest

from bounty_agent.agent.tool_client import ToolClient
from bounty_agent.config import AppConfig
from bounty_agent.gateway.executor import ToolExecutor
from bounty_agent.gateway.identity import IdentitySigner
from bounty_agent.gateway.ledger import BudgetLedger
from bounty_agent.gateway.marketplace import MarketplaceClient
from bounty_agent.gateway.rates import MinuteRateLimiter
from bounty_agent.gateway.server import handle_rpc
from bounty_agent.gateway.state import GatewayState
from bounty_agent.logger import EventLogger


def iso_in(minutes: float) -> str:
    return (datetime.now(timezone.utc) + timedelta(minutes=minutes)).isoformat()


class FakeMarketplace:
    """In-memory marketplace speaking the REST routes the gateway uses."""

    def __init__(self) -> None:
        self.posts: dict[str, dict[str, Any]] = {}
        self.answers: dict[str, list[dict[str, Any]]] = {}
        self.requests: list[httpx.Request] = []
        self.answer_headers: list[dict[str, str]] = []
        self.joined: list[str] = []
        self.events: list[dict[str, Any]] = []
        self.reactions: list[dict[str, Any]] = []
        self.candidates: list[dict[str, Any]] = []
        self.fail_answers_with: tuple[int, dict[str, Any]] | None = None
        self.unavailable_posts: set[str] = set()

    def add_post(self, post_id: str, **fields: Any) -> dict[str, Any]:
        post = {
            "id": post_id,
            "header": fields.pop("header", f"How do I fix python error {post_id}?"),
            "content": fields.pop("content", "My python code raises an exception when parsing an api response."),
            "settlementStatus": fields.pop("settlementStatus", "open"),
            "answersCloseAt": fields.pop("answersCloseAt", iso_in(60)),
            "requiredBidCents": fields.pop("requiredBidCents", 20),
            "wikiId": fields.pop("wikiId", "python"),
            **fields,
        }
        self.posts[post_id] = post
        self.answers.setdefault(post_id, [])
        return post

    def count(self, method: str, path_prefix: str) -> int:
        return sum(1 for req in self.requests if req.method == method and req.url.path.startswith(path_prefix))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        parts = [part for part in path.split("/") if part]
        body = json.loads(request.content) if request.content else {}

        if path == "/api/posts" and request.method == "GET":
            return httpx.Response(200, json={"posts": list(self.posts.values())})
        if path == "/api/search":
            return httpx.Response(200, json={"posts": list(self.posts.values())[:2]})
        if path == "/api/agents/me":
            return httpx.Response(200, json={"agent": {"id": "agent-test", "name": "Test Agent"}})
        if path == "/api/agents/me/wikis":
            wiki_id = body.get("wikiId")
            if request.method == "POST" and wiki_id not in self.joined:
                self.joined.append(wiki_id)
            elif request.method == "DELETE" and wiki_id in self.joined:
                self.joined.remove(wiki_id)
            return httpx.Response(200, json={"joinedWikiIds": list(self.joined)})
        if path == "/api/agents/me/discovery":
            return httpx.Response(
                200,
                json={"joinedWikiIds": list(self.joined), "interests": [], "candidates": self.candidates},
            )
        if path in ("/api/agents/me/status", "/api/agents/me/events"):
            self.events.append(body)
            return httpx.Response(200, json={"ok": True})

        if len(parts) >= 3 and parts[:2] == ["api", "posts"]:
            post_id = parts[2]
            post = self.posts.get(post_id)
            if post is None:
                return httpx.Response(404, json={"error": "Post not found"})
            if post_id in self.unavailable_posts:
                return httpx.Response(503, json={"error": "Service unavailable"})
            if len(parts) == 3:
                return httpx.Response(200, json={"post": post})
            if parts[3] == "reactions":
                self.reactions.append({"postId": post_id, **body})
                return httpx.Response(200, json={"reaction": body.get("reaction")})
            if parts[3] == "answers" and len(parts) == 6 and parts[5] == "reactions":
                self.reactions.append({"postId": post_id, "answerId": parts[4], **body})
                return httpx.Response(200, json={"reaction": body.get("reaction")})
            if parts[3] == "answers" and request.method == "GET":
                return httpx.Response(200, json={"answers": self.answers[post_id]})
            if parts[3] == "answers" and request.method == "POST":
                return self._post_answer(post_id, request, body)
        return httpx.Response(404, json={"error": f"no route {request.method} {path}"})

    def _post_answer(self, post_id: str, request: httpx.Request, body: dict[str, Any]) -> httpx.Response:
        if self.fail_answers_with is not None:
            status, payload = self.fail_answers_with
            return httpx.Response(status, json=payload)
        self.answer_headers.append(dict(request.headers))
        answer = {
            "id": f"ans-{post_id}-{len(self.answers[post_id]) + 1}",
            "agentId": "agent-test",
            "content": body.get("content"),
            "bidAmountCents": body.get("bidAmountCents"),
        }
        self.answers[post_id].append(answer)
        return httpx.Response(
            201,
            json={
                "ok": True,
                "answer": answer,
                "bidAmountCents": body.get("bidAmountCents"),
                "paymentTxHash": f"0xtx{len(self.answer_headers)}",
            },
        )


@pytest.fixture
def market() -> FakeMarketplace:
    return FakeMarketplace()


def make_executor(
    tmp_path,
    market: FakeMarketplace,
    *,
    max_bid: int = 200,
    daily_cap: int = 1000,
    rate_limit: int = 60,
    signer: IdentitySigner | None = None,
) -> ToolExecutor:
    state = GatewayState(
        ledger=BudgetLedger(max_bid_per_action_cents=max_bid, max_daily_spend_cents=daily_cap),
        rate_limiter=MinuteRateLimiter(default_limit=rate_limit),
        state_path=tmp_path / "state" / "gateway.json",
    )
    return ToolExecutor(
        agent_id="agent-test",
        state=state,
        marketplace=MarketplaceClient(
            "http://market.test",
            "token-123",
            transport=httpx.MockTransport(market.handler),
        ),
        logger=EventLogger(logs_dir=tmp_path / "logs", file_name="gateway.jsonl"),
        signer=signer or IdentitySigner.generate(),
    )


def gateway_tool_client(executor: ToolExecutor, **kwargs: Any) -> ToolClient:
    """Agent-side RPC client wired straight into an in-process gateway."""

    async def route(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        return httpx.Response(200, json=await handle_rpc(executor, payload))

    return ToolClient("http://gateway.test/mcp", transport=httpx.MockTransport(route), **kwargs)


class ScriptedLLM:
    """Returns canned completions in order and records every prompt."""

    def __init__(self, *responses: str) -> None:
        self.responses = list(responses)
        self.calls: list[list[dict[str, Any]]] = []

    async def complete(self, messages: list[dict[str, Any]], *, temperature: float) -> str:
        self.calls.append(messages)
        if not self.responses:
            raise AssertionError("unexpected LLM call")
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response


def agent_config(tmp_path) -> AppConfig:
    cfg = AppConfig()
    cfg.agent.id = "agent-test"
    cfg.agent.persona.specialties = ["programming"]
    cfg.agent.persona.answer_propensity = 1.0
    cfg.agent.persona.seed = 7
    cfg.loop.scan_probability = 1.0
    cfg.loop.interval_seconds = 0.05
    cfg.loop.jitter_seconds = 0.0
    cfg.listener.enabled = False
    cfg.logging.logs_dir = str(tmp_path / "logs")
    cfg.logging.memory_file = str(tmp_path / "state" / "{agent_id}-memory.json")
    cfg.logging.heartbeat_file = str(tmp_path / "state" / "{agent_id}-heartbeat.json")
    return cfg
