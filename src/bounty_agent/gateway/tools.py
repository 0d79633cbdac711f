"""Tool catalogue: validated argument schemas and normalized results."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ToolArgumentError, UnknownToolError


class ToolKind(str, Enum):
    READ = "read"
    WRITE = "write"


class ToolArgs(BaseModel):
    """Base for tool arguments: unknown keys and loose types are rejected."""

    model_config = ConfigDict(extra="forbid", strict=True)


class NoArgs(ToolArgs):
    pass


class ListOpenQuestionsArgs(ToolArgs):
    limit: int = Field(default=10, ge=1, le=50)
    wiki_id: str | None = None
    only_open: bool = True


class GetQuestionArgs(ToolArgs):
    question_id: str = Field(min_length=1)


class SearchSimilarQuestionsArgs(ToolArgs):
    query: str = Field(min_length=1, max_length=500)
    limit: int = Field(default=3, ge=1, le=10)


class GetBidStateArgs(ToolArgs):
    question_id: str = Field(min_length=1)


class DiscoveryCandidatesArgs(ToolArgs):
    limit: int = Field(default=12, ge=1, le=50)


class ResearchStackExchangeArgs(ToolArgs):
    query: str = Field(min_length=1, max_length=300)
    tags: list[str] = Field(default_factory=list, max_length=5)
    limit: int = Field(default=3, ge=1, le=10)


class PostAnswerArgs(ToolArgs):
    question_id: str = Field(min_length=1)
    content: str = Field(min_length=1, max_length=4000)
    bid_amount_cents: int = Field(ge=0)
    idempotency_key: str = Field(min_length=1, max_length=200)


class VotePostArgs(ToolArgs):
    post_id: str = Field(min_length=1)
    direction: Literal["up", "down"]
    idempotency_key: str | None = None


class VoteAnswerArgs(ToolArgs):
    post_id: str = Field(min_length=1)
    answer_id: str = Field(min_length=1)
    direction: Literal["up", "down"]
    idempotency_key: str | None = None


class WikiMembershipArgs(ToolArgs):
    wiki_id: str = Field(min_length=1)
    idempotency_key: str | None = None


class SetAgentStatusArgs(ToolArgs):
    status: Literal["active", "paused"]
    idempotency_key: str | None = None


class LogAgentEventArgs(ToolArgs):
    type: str = Field(min_length=1, max_length=80)
    payload: dict[str, Any] = Field(default_factory=dict)
    idempotency_key: str | None = None


@dataclass(frozen=True)
class ToolSpec:
    name: str
    kind: ToolKind
    args_model: type[ToolArgs]
    description: str
    bid_bearing: bool = False

    @property
    def is_write(self) -> bool:
        return self.kind == ToolKind.WRITE

    def bid_cents(self, args: ToolArgs) -> int:
        if not self.bid_bearing:
            return 0
        return int(getattr(args, "bid_amount_cents", 0))

    def schema(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.args_model.model_json_schema(),
        }


_SPECS: tuple[ToolSpec, ...] = (
    ToolSpec("list_open_questions", ToolKind.READ, ListOpenQuestionsArgs, "List open bounty questions."),
    ToolSpec("get_question", ToolKind.READ, GetQuestionArgs, "Fetch one question by id."),
    ToolSpec(
        "search_similar_questions",
        ToolKind.READ,
        SearchSimilarQuestionsArgs,
        "Search the marketplace for similar questions.",
    ),
    ToolSpec(
        "get_current_bid_state",
        ToolKind.READ,
        GetBidStateArgs,
        "Required bid, answer count and window state for a question.",
    ),
    ToolSpec("get_agent_budget", ToolKind.READ, NoArgs, "Daily budget snapshot from the gateway ledger."),
    ToolSpec("get_agent_profile", ToolKind.READ, NoArgs, "The calling agent's marketplace profile."),
    ToolSpec(
        "get_wiki_discovery_candidates",
        ToolKind.READ,
        DiscoveryCandidatesArgs,
        "Wikis the agent could join.",
    ),
    ToolSpec(
        "research_stackexchange",
        ToolKind.READ,
        ResearchStackExchangeArgs,
        "Search Stack Exchange for related answered questions.",
    ),
    ToolSpec(
        "post_answer",
        ToolKind.WRITE,
        PostAnswerArgs,
        "Submit a paid answer. Requires an idempotency key.",
        bid_bearing=True,
    ),
    ToolSpec("vote_post", ToolKind.WRITE, VotePostArgs, "Like (up) or dislike (down) a question."),
    ToolSpec("vote_answer", ToolKind.WRITE, VoteAnswerArgs, "Like (up) or dislike (down) an answer."),
    ToolSpec("join_wiki", ToolKind.WRITE, WikiMembershipArgs, "Join a wiki community."),
    ToolSpec("leave_wiki", ToolKind.WRITE, WikiMembershipArgs, "Leave a wiki community."),
    ToolSpec("set_agent_status", ToolKind.WRITE, SetAgentStatusArgs, "Mark the agent active or paused."),
    ToolSpec("log_agent_event", ToolKind.WRITE, LogAgentEventArgs, "Append an audit event to the marketplace."),
)

TOOLS: dict[str, ToolSpec] = {spec.name: spec for spec in _SPECS}


def list_tool_schemas() -> list[dict[str, Any]]:
    return [spec.schema() for spec in _SPECS]


def parse_tool_call(name: str, arguments: Any) -> tuple[ToolSpec, ToolArgs]:
    """Resolve a tool by name and validate its arguments."""
    spec = TOOLS.get(name)
    if spec is None:
        raise UnknownToolError(f"Unknown tool: {name}", {"tool": name})
    if arguments is None:
        arguments = {}
    if not isinstance(arguments, dict):
        raise ToolArgumentError(f"{name} arguments must be an object", {"tool": name})
    try:
        args = spec.args_model.model_validate(arguments)
    except ValidationError as exc:
        errors = [
            {"loc": ".".join(str(part) for part in err["loc"]), "msg": err["msg"]}
            for err in exc.errors()
        ]
        raise ToolArgumentError(f"Invalid arguments for {name}", {"tool": name, "errors": errors}) from exc
    return spec, args


def idempotency_key_of(args: ToolArgs) -> str | None:
    key = getattr(args, "idempotency_key", None)
    if isinstance(key, str) and key.strip():
        return key.strip()
    return None


@dataclass
class ToolResult:
    tool: str
    data: dict[str, Any] = field(default_factory=dict)
    idempotent: bool = False
    action_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"ok": True, "tool": self.tool, **self.data}
        if self.idempotent:
            payload["idempotent"] = True
        if self.action_id:
            payload["actionId"] = self.action_id
        return payload
