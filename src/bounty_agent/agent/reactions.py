"""Quick like/dislike reactions to realtime marketplace events."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from ..logger import EventLogger
from .decisions import ReactionDecision, parse_reaction
from .llm import CompletionModel, json_messages
from .memory import utc_now
from .tool_client import ToolClient


def _minute_key(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M")


@dataclass
class ReactionWindow:
    """Local per-minute cap on reaction actions."""

    limit: int = 2
    clock: Callable[[], datetime] = utc_now
    minute_key: str = ""
    count: int = 0

    def try_acquire(self) -> bool:
        key = _minute_key(self.clock())
        if key != self.minute_key:
            self.minute_key = key
            self.count = 0
        if self.count >= self.limit:
            return False
        self.count += 1
        return True


class ReactionPolicy:
    def __init__(
        self,
        *,
        llm: CompletionModel,
        tools: ToolClient,
        window: ReactionWindow,
        logger: EventLogger,
        temperature: float = 0.08,
        body_chars: int = 280,
    ) -> None:
        self.llm = llm
        self.tools = tools
        self.window = window
        self.logger = logger
        self.temperature = temperature
        self.body_chars = body_chars

    async def decide(self, context: dict[str, Any]) -> ReactionDecision:
        prompt = "\n".join(
            [
                "You are a fast reaction gate for an autonomous agent.",
                "Return strict JSON only.",
                'Schema: {"reaction":"like|dislike|none","confidence":0..1,"reason":"short"}',
                "Pick none when low confidence or irrelevant.",
                f"Context: {json.dumps(context, ensure_ascii=True)}",
            ]
        )
        raw = await self.llm.complete(
            json_messages("Return strict JSON only, no markdown.", prompt),
            temperature=self.temperature,
        )
        parsed = parse_reaction(raw)
        if isinstance(parsed, str):
            return ReactionDecision(reaction="none", confidence=0.0, reason="reaction-output-invalid")
        return parsed

    async def react_to_question(self, event: dict[str, Any]) -> ReactionDecision | None:
        post_id = str(event.get("postId") or "").strip()
        if not post_id:
            return None
        target = {"postId": post_id, "targetType": "post"}
        if not self.window.try_acquire():
            self.logger.log("reaction_skip_rate_limit", target)
            return None
        decision = await self.decide(
            {
                "kind": "question",
                "postId": post_id,
                "wikiId": event.get("wikiId") or "",
                "header": str(event.get("header") or "")[:180],
                "content": str(event.get("content") or "")[: self.body_chars],
            }
        )
        return await self._apply(decision, target, "vote_post", {"post_id": post_id}, f"react-post-{post_id}")

    async def react_to_answer(self, event: dict[str, Any]) -> ReactionDecision | None:
        post_id = str(event.get("postId") or "").strip()
        answer_id = str(event.get("answerId") or "").strip()
        if not post_id or not answer_id:
            return None
        target = {"postId": post_id, "answerId": answer_id, "targetType": "answer"}
        if not self.window.try_acquire():
            self.logger.log("reaction_skip_rate_limit", target)
            return None
        decision = await self.decide(
            {
                "kind": "answer",
                "postId": post_id,
                "answerId": answer_id,
                "wikiId": event.get("wikiId") or "",
                "agentName": event.get("agentName") or "",
                "contentPreview": str(event.get("contentPreview") or "")[: self.body_chars],
            }
        )
        return await self._apply(
            decision,
            target,
            "vote_answer",
            {"post_id": post_id, "answer_id": answer_id},
            f"react-answer-{answer_id}",
        )

    async def _apply(
        self,
        decision: ReactionDecision,
        target: dict[str, str],
        tool: str,
        arguments: dict[str, Any],
        idempotency_key: str,
    ) -> ReactionDecision:
        if decision.reaction == "none":
            await self.tools.call(
                "log_agent_event",
                {
                    "type": "reaction_abstain",
                    "payload": {**target, "reason": decision.reason, "confidence": decision.confidence},
                },
            )
            self.logger.log("reaction_abstain", {**target, "reason": decision.reason})
            return decision

        await self.tools.call(
            tool,
            {**arguments, "direction": decision.direction, "idempotency_key": idempotency_key},
        )
        await self.tools.call(
            "log_agent_event",
            {
                "type": "reaction_posted",
                "payload": {
                    **target,
                    "reaction": decision.reaction,
                    "reason": decision.reason,
                    "confidence": decision.confidence,
                },
            },
        )
        self.logger.log("reaction_posted", {**target, "reaction": decision.reaction})
        return decision
