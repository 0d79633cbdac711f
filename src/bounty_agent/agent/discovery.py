"""Interval-gated wiki discovery pulse."""

from __future__ import annotations

import json
from typing import Any

from ..config import DiscoveryConfig
from ..logger import EventLogger
from .decisions import parse_discovery
from .llm import CompletionModel, json_messages
from .state import LoopState
from .tool_client import ToolCallError, ToolClient

MIN_DISCOVERY_INTERVAL_SECONDS = 30.0


class DiscoveryPulse:
    def __init__(
        self,
        config: DiscoveryConfig,
        *,
        llm: CompletionModel,
        tools: ToolClient,
        state: LoopState,
        logger: EventLogger,
        temperature: float = 0.1,
    ) -> None:
        self.config = config
        self.llm = llm
        self.tools = tools
        self.state = state
        self.logger = logger
        self.temperature = temperature

    @property
    def interval_seconds(self) -> float:
        return max(MIN_DISCOVERY_INTERVAL_SECONDS, self.config.interval_seconds)

    def due(self) -> bool:
        last = self.state.discovery_last_at
        return last is None or self.state.clock() - last >= self.interval_seconds

    async def run(self, source: str = "loop") -> list[str]:
        """Maybe join a few candidate wikis; returns the ids actually joined."""
        if not self.config.enabled or not self.due():
            return []
        self.state.discovery_last_at = self.state.clock()

        try:
            discovery = await self.tools.call("get_wiki_discovery_candidates", {"limit": self.config.candidate_limit})
        except ToolCallError as exc:
            self.logger.log("discovery_pulse_failed", {"source": source, "error": exc.message})
            return []
        raw_candidates = discovery.get("candidates")
        candidates: list[dict[str, Any]] = [
            item for item in (raw_candidates if isinstance(raw_candidates, list) else []) if isinstance(item, dict)
        ][: self.config.shortlist_size]
        if not candidates:
            return []
        joined = [str(item) for item in discovery.get("joinedWikiIds") or []]

        prompt = "\n".join(
            [
                "You decide if an autonomous agent should join any wiki right now.",
                "Return strict JSON only.",
                'Schema: {"joinWikiIds":[string],"reason":"short"}',
                f"Join at most {self.config.max_joins} wikis only when likely useful.",
                f"Candidates: {json.dumps(candidates, ensure_ascii=True)}",
                f"Current joined: {json.dumps(joined)}",
                f"Source: {source}",
            ]
        )
        raw = await self.llm.complete(json_messages("Return strict JSON only.", prompt), temperature=self.temperature)
        decision = parse_discovery(
            raw,
            candidate_ids=[str(item.get("id") or item.get("wikiId") or "") for item in candidates],
            joined=joined,
            max_joins=self.config.max_joins,
        )
        if isinstance(decision, str):
            self.logger.log("discovery_output_invalid", {"source": source, "error": decision})
            return []

        done: list[str] = []
        for wiki_id in decision.join_wiki_ids:
            try:
                await self.tools.call("join_wiki", {"wiki_id": wiki_id, "idempotency_key": f"discover-join-{wiki_id}"})
                await self.tools.call(
                    "log_agent_event",
                    {
                        "type": "discovery_join",
                        "payload": {"source": source, "wikiId": wiki_id, "reason": decision.reason[:180]},
                    },
                )
            except ToolCallError as exc:
                self.logger.log("discovery_join_failed", {"source": source, "wiki_id": wiki_id, "error": exc.message})
                continue
            self.logger.log("discovery_join", {"source": source, "wiki_id": wiki_id})
            done.append(wiki_id)
        return done
