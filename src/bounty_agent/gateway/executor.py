"""Tool execution with idempotency, rate, budget and identity enforcement."""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from ..logger import EventLogger
from .errors import BudgetRejectedError, GatewayError, ToolArgumentError
from .identity import HEADER_ACTION_ID, ActionEnvelope, IdentitySigner
from .ledger import Reservation
from .marketplace import MarketplaceClient
from .stackexchange import StackExchangeClient
from .state import GatewayState
from .tools import (
    DiscoveryCandidatesArgs,
    GetBidStateArgs,
    GetQuestionArgs,
    ListOpenQuestionsArgs,
    LogAgentEventArgs,
    PostAnswerArgs,
    ResearchStackExchangeArgs,
    SearchSimilarQuestionsArgs,
    SetAgentStatusArgs,
    ToolArgs,
    ToolResult,
    ToolSpec,
    VoteAnswerArgs,
    VotePostArgs,
    WikiMembershipArgs,
    idempotency_key_of,
    parse_tool_call,
)

_QUESTION_CONTENT_CHARS = 1200
_REACTION_BY_DIRECTION = {"up": "like", "down": "dislike"}

Handler = Callable[[ToolArgs], Awaitable[dict[str, Any]]]


def _parse_time(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _as_int(value: Any, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return default


def summarize_question(post: dict[str, Any]) -> dict[str, Any]:
    """Normalize a marketplace post into the shape the agent reasons over."""
    content = str(post.get("content") or post.get("body") or "")
    answers = post.get("answers")
    answer_count = post.get("answerCount")
    if answer_count is None and isinstance(answers, list):
        answer_count = len(answers)
    return {
        "id": str(post.get("id", "")),
        "title": str(post.get("title") or post.get("header") or ""),
        "content": content[:_QUESTION_CONTENT_CHARS],
        "wikiId": post.get("wikiId"),
        "settlementStatus": str(post.get("settlementStatus") or "open"),
        "answersCloseAt": post.get("answersCloseAt"),
        "requiredBidCents": None if post.get("requiredBidCents") is None else _as_int(post.get("requiredBidCents")),
        "answerCount": _as_int(answer_count, 0),
        "createdAt": post.get("createdAt"),
    }


def _is_open(question: dict[str, Any], now: datetime) -> bool:
    if question["settlementStatus"] != "open":
        return False
    closes = _parse_time(question.get("answersCloseAt"))
    return closes is None or closes > now


class ToolExecutor:
    """Runs one tool call at a time against explicit gateway state."""

    def __init__(
        self,
        *,
        agent_id: str,
        state: GatewayState,
        marketplace: MarketplaceClient,
        logger: EventLogger,
        signer: IdentitySigner | None = None,
        stackexchange: StackExchangeClient | None = None,
    ) -> None:
        self.agent_id = agent_id
        self.state = state
        self.marketplace = marketplace
        self.logger = logger
        self.signer = signer
        self.stackexchange = stackexchange
        self._lock = asyncio.Lock()
        self._handlers: dict[str, Handler] = {
            "list_open_questions": self._list_open_questions,
            "get_question": self._get_question,
            "search_similar_questions": self._search_similar_questions,
            "get_current_bid_state": self._get_current_bid_state,
            "get_agent_budget": self._get_agent_budget,
            "get_agent_profile": self._get_agent_profile,
            "get_wiki_discovery_candidates": self._get_wiki_discovery_candidates,
            "research_stackexchange": self._research_stackexchange,
            "post_answer": self._post_answer,
            "vote_post": self._vote_post,
            "vote_answer": self._vote_answer,
            "join_wiki": self._join_wiki,
            "leave_wiki": self._leave_wiki,
            "set_agent_status": self._set_agent_status,
            "log_agent_event": self._log_agent_event,
        }
        self._last_action_id: str | None = None

    async def aclose(self) -> None:
        await self.marketplace.aclose()
        if self.stackexchange is not None:
            await self.stackexchange.aclose()

    async def call(self, name: str, arguments: Any) -> ToolResult:
        """Validate and execute one tool call; raises a GatewayError on rejection."""
        try:
            spec, args = parse_tool_call(name, arguments)
        except GatewayError as exc:
            self.logger.log("tool_rejected", {"tool": name, "reason": exc.message, "code": exc.rpc_code})
            raise
        async with self._lock:
            return await self._execute(spec, args)

    async def _execute(self, spec: ToolSpec, args: ToolArgs) -> ToolResult:
        key = idempotency_key_of(args) if spec.is_write else None
        if key is not None:
            record = self.state.lookup(key)
            if record is not None:
                if record.tool != spec.name:
                    raise ToolArgumentError(
                        f"Idempotency key '{key}' was used for {record.tool}",
                        {"tool": spec.name, "idempotency_key": key},
                    )
                self.logger.log("tool_idempotent_hit", {"tool": spec.name, "idempotency_key": key})
                return ToolResult(spec.name, dict(record.result), idempotent=True)

        bid = spec.bid_cents(args)
        reservation: Reservation | None = None
        try:
            self.state.rate_limiter.consume(spec.name)
            if spec.bid_bearing:
                reservation = self.state.ledger.reserve(bid)
        except GatewayError as exc:
            self.logger.log(
                "tool_rejected",
                {"tool": spec.name, "reason": exc.message, "code": exc.rpc_code, "bid_amount_cents": bid},
            )
            raise

        self._last_action_id = None
        committed = False
        try:
            data = await self._handlers[spec.name](args)
            if reservation is not None:
                self.state.ledger.commit(reservation)
                committed = True
        except GatewayError as exc:
            self.logger.log(
                "tool_failed",
                {
                    "tool": spec.name,
                    "error": exc.message,
                    "code": exc.rpc_code,
                    "data": exc.data,
                    "action_id": self._last_action_id,
                    "idempotency_key": key,
                },
            )
            raise
        finally:
            if reservation is not None and not committed:
                self.state.ledger.release(reservation)

        result = ToolResult(spec.name, data, action_id=self._last_action_id)
        if spec.is_write:
            if key is not None:
                self.state.remember(key, spec.name, result.to_dict())
            self._persist()
        self.logger.log(
            "tool_call",
            {
                "tool": spec.name,
                "kind": spec.kind.value,
                "idempotency_key": key,
                "action_id": result.action_id,
                "bid_amount_cents": bid,
                "daily_spend_cents": self.state.ledger.daily_spend_cents,
            },
        )
        return result

    def _persist(self) -> None:
        try:
            self.state.save()
        except OSError as exc:
            self.logger.log("state_persist_failed", {"error": str(exc)})

    def _identity_headers(self, target_id: str, bid_cents: int) -> dict[str, str]:
        if bid_cents > 0:
            if self.signer is None:
                raise BudgetRejectedError(
                    "Paid action requires an identity key",
                    {"bidAmountCents": bid_cents},
                )
            envelope = ActionEnvelope.new(agent_id=self.agent_id, target_id=target_id, bid_amount_cents=bid_cents)
            self._last_action_id = envelope.action_id
            return self.signer.headers_for(envelope)
        return {HEADER_ACTION_ID: self._new_action_id()}

    def _new_action_id(self) -> str:
        self._last_action_id = str(uuid.uuid4())
        return self._last_action_id

    # Read tools

    async def _list_open_questions(self, args: ListOpenQuestionsArgs) -> dict[str, Any]:
        posts = await self.marketplace.list_posts(args.wiki_id)
        now = datetime.now(timezone.utc)
        questions = [summarize_question(post) for post in posts]
        if args.only_open:
            questions = [question for question in questions if _is_open(question, now)]
        questions = [question for question in questions if question["id"]]
        return {"questions": questions[: args.limit], "total": len(questions)}

    async def _get_question(self, args: GetQuestionArgs) -> dict[str, Any]:
        post = await self.marketplace.get_post(args.question_id)
        return {"question": summarize_question(post) if post else None}

    async def _search_similar_questions(self, args: SearchSimilarQuestionsArgs) -> dict[str, Any]:
        data = await self.marketplace.search(args.query)
        posts = data.get("posts", [])
        similar = [
            {
                "id": question["id"],
                "title": question["title"],
                "settlementStatus": question["settlementStatus"],
                "answerCount": question["answerCount"],
            }
            for question in (summarize_question(post) for post in posts if isinstance(post, dict))
        ]
        return {"similar": similar[: args.limit]}

    async def _get_current_bid_state(self, args: GetBidStateArgs) -> dict[str, Any]:
        post = await self.marketplace.get_post(args.question_id)
        if post is None:
            return {"questionId": args.question_id, "found": False}
        answers = await self.marketplace.list_answers(args.question_id)
        question = summarize_question(post)
        return {
            "questionId": args.question_id,
            "found": True,
            "requiredBidCents": question["requiredBidCents"],
            "answerCount": len(answers),
            "settlementStatus": question["settlementStatus"],
            "answersCloseAt": question["answersCloseAt"],
            "windowOpen": _is_open(question, datetime.now(timezone.utc)),
            "alreadyAnswered": any(str(answer.get("agentId", "")) == self.agent_id for answer in answers),
        }

    async def _get_agent_budget(self, args: ToolArgs) -> dict[str, Any]:
        return {"budget": self.state.ledger.snapshot()}

    async def _get_agent_profile(self, args: ToolArgs) -> dict[str, Any]:
        profile = await self.marketplace.get_profile()
        agent = profile.get("agent", profile)
        return {"profile": agent if isinstance(agent, dict) else {}}

    async def _get_wiki_discovery_candidates(self, args: DiscoveryCandidatesArgs) -> dict[str, Any]:
        data = await self.marketplace.discovery_candidates(args.limit)
        candidates = data.get("candidates", [])
        return {
            "joinedWikiIds": [str(item) for item in data.get("joinedWikiIds", [])],
            "interests": [str(item) for item in data.get("interests", [])],
            "candidates": [item for item in candidates if isinstance(item, dict)][: args.limit],
        }

    async def _research_stackexchange(self, args: ResearchStackExchangeArgs) -> dict[str, Any]:
        if self.stackexchange is None:
            return {"items": [], "provider": "disabled"}
        items = await self.stackexchange.search(args.query, args.tags, args.limit)
        return {"items": items, "provider": "stackexchange"}

    # Write tools

    async def _post_answer(self, args: PostAnswerArgs) -> dict[str, Any]:
        headers = self._identity_headers(args.question_id, args.bid_amount_cents)
        body = await self.marketplace.post_answer(
            args.question_id,
            args.content,
            args.bid_amount_cents,
            headers=headers,
        )
        answer = body.get("answer") if isinstance(body.get("answer"), dict) else {}
        return {
            "questionId": args.question_id,
            "answerId": answer.get("id"),
            "paymentTxHash": body.get("paymentTxHash") or answer.get("paymentTxHash"),
            "bidAmountCents": args.bid_amount_cents,
        }

    async def _vote_post(self, args: VotePostArgs) -> dict[str, Any]:
        self._new_action_id()
        body = await self.marketplace.react_post(args.post_id, _REACTION_BY_DIRECTION[args.direction])
        return {"postId": args.post_id, "direction": args.direction, "reaction": body.get("reaction")}

    async def _vote_answer(self, args: VoteAnswerArgs) -> dict[str, Any]:
        self._new_action_id()
        body = await self.marketplace.react_answer(
            args.post_id,
            args.answer_id,
            _REACTION_BY_DIRECTION[args.direction],
        )
        return {
            "postId": args.post_id,
            "answerId": args.answer_id,
            "direction": args.direction,
            "reaction": body.get("reaction"),
        }

    async def _join_wiki(self, args: WikiMembershipArgs) -> dict[str, Any]:
        self._new_action_id()
        body = await self.marketplace.join_wiki(args.wiki_id)
        return {"wikiId": args.wiki_id, "joined": True, "joinedWikiIds": body.get("joinedWikiIds", [])}

    async def _leave_wiki(self, args: WikiMembershipArgs) -> dict[str, Any]:
        self._new_action_id()
        body = await self.marketplace.leave_wiki(args.wiki_id)
        return {"wikiId": args.wiki_id, "joined": False, "joinedWikiIds": body.get("joinedWikiIds", [])}

    async def _set_agent_status(self, args: SetAgentStatusArgs) -> dict[str, Any]:
        self._new_action_id()
        await self.marketplace.set_status(args.status)
        self.state.ledger.paused = args.status == "paused"
        return {"status": args.status, "paused": self.state.ledger.paused}

    async def _log_agent_event(self, args: LogAgentEventArgs) -> dict[str, Any]:
        self._new_action_id()
        await self.marketplace.log_event(args.type, args.payload)
        return {"type": args.type, "logged": True}
