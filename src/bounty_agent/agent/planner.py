"""Per-question evaluation: observe, plan, critique, gate, research, act, reflect."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from ..config import AppConfig
from ..logger import EventLogger
from ..research.providers import EvidenceProvider, gather_evidence, research_queries
from .compose import compose_answer
from .decisions import Critique, Plan, parse_critique, parse_plan
from .gate import GateResult, gate_plan
from .llm import CompletionModel, json_messages
from .memory import AgentMemory, Outcome, QuestionStatus, utc_now
from .state import LoopState
from .tool_client import ToolCallError, ToolClient
from .topics import domain_alignment, infer_topics


@dataclass
class WorldView:
    budget: dict[str, Any] = field(default_factory=dict)
    profile: dict[str, Any] = field(default_factory=dict)
    questions: list[dict[str, Any]] = field(default_factory=list)

    @property
    def paused(self) -> bool:
        return bool(self.budget.get("paused"))

    @property
    def remaining_cents(self) -> int:
        value = self.budget.get("remainingCents")
        return int(value) if isinstance(value, (int, float)) and not isinstance(value, bool) else 0


@dataclass
class QuestionOutcome:
    question_id: str
    acted: bool
    outcome: str
    reason: str = ""


def _parse_time(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def window_closed(question: dict[str, Any], now: datetime) -> bool:
    closes = _parse_time(question.get("answersCloseAt"))
    return closes is not None and now > closes


class QuestionPlanner:
    """Drives one question through the decision pipeline against the gateway."""

    def __init__(
        self,
        config: AppConfig,
        *,
        tools: ToolClient,
        llm: CompletionModel,
        state: LoopState,
        logger: EventLogger,
        providers: list[EvidenceProvider] | None = None,
    ) -> None:
        self.config = config
        self.tools = tools
        self.llm = llm
        self.state = state
        self.logger = logger
        self.providers = list(providers or [])

    @property
    def memory(self) -> AgentMemory:
        return self.state.memory

    async def observe(self) -> WorldView:
        budget, profile, listing = await asyncio.gather(
            self.tools.call("get_agent_budget", {}),
            self.tools.call("get_agent_profile", {}),
            self.tools.call(
                "list_open_questions",
                {"limit": self.config.loop.max_questions_per_loop, "only_open": True},
            ),
        )
        questions = listing.get("questions")
        return WorldView(
            budget=budget.get("budget") if isinstance(budget.get("budget"), dict) else {},
            profile=profile.get("profile") if isinstance(profile.get("profile"), dict) else {},
            questions=[item for item in questions if isinstance(item, dict)] if isinstance(questions, list) else [],
        )

    async def process_question(self, question_id: str, world: WorldView, *, now: datetime | None = None) -> QuestionOutcome:
        question_id = str(question_id or "").strip()
        if not question_id:
            return QuestionOutcome(question_id, False, "skip", "invalid-id")
        now = now or utc_now()
        memory = self.memory
        memory.note_seen(question_id, now)

        if not memory.should_revisit(
            question_id,
            revisit_seconds=self.config.loop.revisit_minutes * 60,
            run_started_at=self.state.run_started_at,
            now=now,
        ):
            return QuestionOutcome(question_id, False, "skip", "revisit-window")

        previous = memory.status_of(question_id)
        payload = await self.tools.call("get_question", {"question_id": question_id})
        question = payload.get("question")
        if not isinstance(question, dict) or not question.get("id"):
            if previous == QuestionStatus.ANSWERED:
                memory.touch(question_id, "missing-question", now)
            else:
                memory.mark(question_id, QuestionStatus.INVALID, "missing-question", now)
            self.logger.log("skip_invalid", {"question_id": question_id})
            return QuestionOutcome(question_id, False, "skip", "missing-question")

        if str(question.get("settlementStatus") or "open") != "open":
            memory.mark(question_id, QuestionStatus.SETTLED, "settled", now)
            self.logger.log("skip_settled", {"question_id": question_id})
            return QuestionOutcome(question_id, False, "skip", "settled")

        if window_closed(question, now):
            memory.mark(question_id, QuestionStatus.CLOSED_WINDOW, "closed-window", now)
            self.logger.log(
                "skip_closed_window",
                {"question_id": question_id, "answers_close_at": question.get("answersCloseAt")},
            )
            return QuestionOutcome(question_id, False, "skip", "closed-window")

        if previous == QuestionStatus.ANSWERED:
            memory.touch(question_id, "already-answered", now)
            return QuestionOutcome(question_id, False, "skip", "already-answered")

        return await self._decide(question_id, question, world)

    async def _decide(self, question_id: str, question: dict[str, Any], world: WorldView) -> QuestionOutcome:
        memory = self.memory
        persona = self.config.agent.persona
        topics = infer_topics(question)
        topic_prior = memory.topic_prior(topics)
        alignment = domain_alignment(topics, persona.specialties)

        similar, bid_state = await asyncio.gather(
            self.tools.call("search_similar_questions", {"query": str(question.get("title") or question_id)[:500]}),
            self.tools.call("get_current_bid_state", {"question_id": question_id}),
        )
        similar_posts = similar.get("similar") if isinstance(similar.get("similar"), list) else []

        observation = {
            "question": {
                key: question.get(key)
                for key in ("id", "wikiId", "title", "content", "requiredBidCents", "answerCount", "settlementStatus")
            },
            "budget": world.budget,
            "profile": world.profile,
            "persona": {
                "name": persona.name,
                "specialties": persona.specialties,
                "riskProfile": persona.risk_profile,
            },
            "similarPosts": similar_posts[:3],
            "bidState": bid_state,
            "topics": topics,
            "topicPrior": round(topic_prior, 4),
            "domainAlignment": round(alignment, 4),
        }

        plan, critique = await self._plan_and_critique(observation)

        required_bid = question.get("requiredBidCents")
        if required_bid is None:
            required_bid = bid_state.get("requiredBidCents")
        answer_count = bid_state.get("answerCount", question.get("answerCount", 0))
        gated = gate_plan(
            plan,
            critique,
            topic_prior=topic_prior,
            domain_alignment=alignment,
            remaining_budget_cents=world.remaining_cents,
            required_bid_cents=int(required_bid) if isinstance(required_bid, (int, float)) else None,
            answer_count=int(answer_count) if isinstance(answer_count, (int, float)) else 0,
            persona=persona,
            decision=self.config.decision,
            rng=self.state.rng,
            paused=world.paused,
        )

        self.logger.log(
            "decision_summary",
            {
                "question_id": question_id,
                "action": gated.action,
                "confidence": round(gated.confidence, 2),
                "ev": round(gated.expected_value, 2),
                "bid_amount_cents": gated.bid_amount_cents,
                "required_bid_cents": required_bid,
                "vote": gated.vote,
                "borderline": gated.borderline,
                "reason": gated.reason[:180],
            },
        )
        await self._mirror(
            "cognitive_decision",
            {
                "questionId": question_id,
                "topics": topics,
                "requiredBidCents": required_bid,
                "plan": plan.to_dict(),
                "critique": critique.to_dict(),
                "gated": gated.to_dict(),
            },
        )
        await self._join_planned_wikis(question_id, plan)

        if not gated.should_answer:
            memory.mark(question_id, QuestionStatus.ABSTAINED, gated.reason)
            self._reflect(question_id, "abstain", gated, topics, alignment, "abstain")
            self.logger.log(
                "abstain",
                {"question_id": question_id, "reason": gated.reason, "confidence": gated.confidence},
            )
            return QuestionOutcome(question_id, True, "abstain", gated.reason)

        return await self._answer(question_id, question, plan, gated, topics, alignment)

    async def _plan_and_critique(self, observation: dict[str, Any]) -> tuple[Plan, Critique]:
        llm_config = self.config.llm
        plan_text = await self.llm.complete(
            json_messages("Produce strict JSON only, no markdown.", self._planner_prompt(observation)),
            temperature=llm_config.planner_temperature,
        )
        plan = parse_plan(plan_text, max_research_queries=self.config.research.max_queries)
        if isinstance(plan, str):
            self.logger.log("planner_output_invalid", {"error": plan})
            fallback = Plan(action="abstain", confidence=0.0, expected_value=0.0, reason="planner-output-invalid")
            return fallback, Critique(approve=False, adjusted_action="abstain", issues=["planner-output-invalid"])

        critique_text = await self.llm.complete(
            json_messages("Produce strict JSON only, no markdown.", self._critic_prompt(observation, plan)),
            temperature=llm_config.critic_temperature,
        )
        critique = parse_critique(critique_text)
        if isinstance(critique, str):
            self.logger.log("critic_output_invalid", {"error": critique})
            plan.reason = "critic-output-invalid"
            return plan, Critique(approve=False, adjusted_action="abstain", issues=["critic-output-invalid"])
        return plan, critique

    def _planner_prompt(self, observation: dict[str, Any]) -> str:
        return "\n".join(
            [
                "You are a continuous autonomous agent with budget constraints.",
                "Return JSON only.",
                'Schema: {"action":"answer|abstain","confidence":0..1,"expectedValue":-1..1,"bidAmountCents":int,'
                '"vote":"up|down|none","joinWikiIds":[string],"researchQueries":[string],"reason":string,'
                '"riskFlags":[string]}',
                "Requirements:",
                "- Abstain when uncertain or EV is weak.",
                "- Join wiki only if it improves fit.",
                f"- Use no more than {self.config.research.max_queries} research queries.",
                f"Observation JSON: {json.dumps(observation, ensure_ascii=True, default=str)}",
            ]
        )

    def _critic_prompt(self, observation: dict[str, Any], plan: Plan) -> str:
        return "\n".join(
            [
                "You are a risk critic for an autonomous economic agent.",
                "Return JSON only.",
                'Schema: {"approve":boolean,"adjustedAction":"answer|abstain","adjustedBidAmountCents":int,'
                '"adjustedVote":"up|down|none","issues":[string],"confidenceAdjustment":number}',
                "Be strict on budget and uncertainty.",
                f"Observation JSON: {json.dumps(observation, ensure_ascii=True, default=str)}",
                f"Plan JSON: {json.dumps(plan.to_dict(), ensure_ascii=True)}",
            ]
        )

    async def _answer(
        self,
        question_id: str,
        question: dict[str, Any],
        plan: Plan,
        gated: GateResult,
        topics: list[str],
        alignment: float,
    ) -> QuestionOutcome:
        memory = self.memory
        evidence: list[dict[str, Any]] = []
        if self.providers:
            queries = research_queries(plan, question, self.config.research.max_queries)
            evidence = await gather_evidence(
                self.providers,
                queries,
                topics=topics,
                logger=self.logger,
                question_id=question_id,
            )

        decision = self.config.decision
        answer = await compose_answer(
            self.llm,
            question=question,
            gated=gated,
            topics=topics,
            evidence=evidence,
            max_chars=decision.max_answer_chars,
            sentence_floor=decision.sentence_floor_chars,
            temperature=self.config.llm.answer_temperature,
        )

        try:
            posted = await self.tools.call(
                "post_answer",
                {
                    "question_id": question_id,
                    "content": answer,
                    "bid_amount_cents": gated.bid_amount_cents,
                    "idempotency_key": f"answer-{question_id}",
                },
            )
        except ToolCallError as exc:
            if exc.is_window_closed:
                memory.mark(question_id, QuestionStatus.CLOSED_WINDOW, "closed-window:post_answer")
                self.logger.log(
                    "skip_closed_window",
                    {"question_id": question_id, "source": "post_answer", "error": exc.message},
                )
                return QuestionOutcome(question_id, False, "skip", "closed-window")
            memory.mark(question_id, QuestionStatus.FAILED, exc.message)
            memory.record_topic_outcome(topics, "failure", gated.confidence)
            self.logger.log(
                "answer_failed",
                {"question_id": question_id, "tool": exc.tool, "code": exc.code, "error": exc.message},
            )
            return QuestionOutcome(question_id, True, "failure", exc.message)

        if gated.vote in ("up", "down"):
            try:
                await self.tools.call(
                    "vote_post",
                    {"post_id": question_id, "direction": gated.vote, "idempotency_key": f"vote-{question_id}"},
                )
            except ToolCallError as exc:
                self.logger.log("vote_failed", {"question_id": question_id, "error": exc.message})

        try:
            after = await self.tools.call("get_current_bid_state", {"question_id": question_id})
            verification: dict[str, Any] = {
                "ok": True,
                "answerCount": after.get("answerCount", 0),
                "settlementStatus": after.get("settlementStatus", "open"),
                "alreadyAnswered": bool(after.get("alreadyAnswered")),
            }
        except ToolCallError as exc:
            verification = {"ok": False, "error": exc.message}

        tx = posted.get("paymentTxHash")
        memory.mark(question_id, QuestionStatus.ANSWERED, gated.reason)
        self._reflect(
            question_id,
            "answered",
            gated,
            topics,
            alignment,
            "success",
            tx=tx,
            verification=verification,
            answer_chars=len(answer),
        )
        self.logger.log(
            "answer_posted",
            {
                "question_id": question_id,
                "answer_id": posted.get("answerId"),
                "bid_amount_cents": gated.bid_amount_cents,
                "tx": tx,
                "idempotent": bool(posted.get("idempotent")),
                "verification": verification,
            },
        )
        return QuestionOutcome(question_id, True, "answered", gated.reason)

    def _reflect(
        self,
        question_id: str,
        action: str,
        gated: GateResult,
        topics: list[str],
        alignment: float,
        outcome: Outcome,
        **extra: Any,
    ) -> None:
        self.memory.add_reflection(
            {
                "questionId": question_id,
                "action": action,
                "reason": gated.reason,
                "confidence": gated.confidence,
                "expectedValue": gated.expected_value,
                "domainAlignment": alignment,
                "outcome": outcome,
                "topics": topics,
                "bidAmountCents": gated.bid_amount_cents,
                "tx": extra.pop("tx", None),
                **extra,
            }
        )
        self.memory.record_topic_outcome(topics, outcome, gated.confidence)

    async def _join_planned_wikis(self, question_id: str, plan: Plan) -> None:
        for wiki_id in plan.join_wiki_ids:
            try:
                await self.tools.call("join_wiki", {"wiki_id": wiki_id, "idempotency_key": f"join-{wiki_id}"})
            except ToolCallError as exc:
                self.logger.log("join_wiki_failed", {"question_id": question_id, "wiki_id": wiki_id, "error": exc.message})
                continue
            self.logger.log("joined_wiki", {"question_id": question_id, "wiki_id": wiki_id})

    async def _mirror(self, event_type: str, payload: dict[str, Any]) -> None:
        """Copy a decision to the marketplace activity feed; failures stay local."""
        try:
            await self.tools.call("log_agent_event", {"type": event_type, "payload": payload})
        except ToolCallError as exc:
            self.logger.log("mirror_failed", {"type": event_type, "error": exc.message})
