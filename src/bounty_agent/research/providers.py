"""Evidence providers and the per-question research pass."""

from __future__ import annotations

from typing import Any, Protocol

import httpx

from ..agent.decisions import Plan
from ..agent.llm import LLMAuthError, LLMError
from ..agent.tool_client import ToolCallError, ToolClient
from ..agent.topics import GENERAL_TOPIC
from ..logger import EventLogger


class EvidenceProvider(Protocol):
    name: str

    def reset(self) -> None:
        """Clear per-question counters before a new research pass."""

    async def gather(self, query: str, *, topics: list[str]) -> dict[str, Any]: ...


def research_queries(plan: Plan, question: dict[str, Any], max_queries: int) -> list[str]:
    queries = [query for query in plan.research_queries if query.strip()][: max(0, max_queries)]
    if queries:
        return queries
    title = str(question.get("title") or "").strip()
    return [title[:120]] if title else []


class QAResearchProvider:
    """Stack Exchange search through the gateway's `research_stackexchange` tool."""

    name = "stackexchange"

    def __init__(self, tools: ToolClient, *, items_per_query: int = 3) -> None:
        self.tools = tools
        self.items_per_query = items_per_query

    def reset(self) -> None:
        pass

    async def gather(self, query: str, *, topics: list[str]) -> dict[str, Any]:
        tags = [topic for topic in topics if topic != GENERAL_TOPIC]
        result = await self.tools.call(
            "research_stackexchange",
            {"query": query, "tags": tags, "limit": self.items_per_query},
        )
        raw_items = result.get("items")
        items = []
        for item in raw_items if isinstance(raw_items, list) else []:
            if not isinstance(item, dict):
                continue
            items.append(
                {
                    "title": str(item.get("title") or "")[:140],
                    "link": str(item.get("link") or "")[:240],
                    "score": item.get("score", 0),
                    "isAnswered": bool(item.get("isAnswered")),
                }
            )
        return {"query": query, "provider": self.name, "items": items[: self.items_per_query]}


async def gather_evidence(
    providers: list[EvidenceProvider],
    queries: list[str],
    *,
    topics: list[str],
    logger: EventLogger | None = None,
    question_id: str = "",
) -> list[dict[str, Any]]:
    """Run every provider over every query; a failing provider yields an empty bundle."""
    for provider in providers:
        provider.reset()
    bundles: list[dict[str, Any]] = []
    for query in queries:
        for provider in providers:
            try:
                bundles.append(await provider.gather(query, topics=topics))
            except LLMAuthError:
                raise
            except (ToolCallError, LLMError, httpx.HTTPError) as exc:
                message = str(exc)[:220]
                if logger is not None:
                    logger.log(
                        "research_failed",
                        {"question_id": question_id, "provider": provider.name, "query": query, "error": message},
                    )
                bundles.append({"query": query, "provider": provider.name, "items": [], "error": message})
    return bundles
