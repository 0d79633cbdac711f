"""Typed decision values parsed from model output.

Each `parse_*` function returns either a validated value or an error string,
so the rest of the pipeline never touches raw model text.
"""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass, field
from typing import Any, Literal

Action = Literal["answer", "abstain"]
Vote = Literal["up", "down", "none"]
Reaction = Literal["like", "dislike", "none"]

_FENCE_RE = re.compile(r"^```[a-zA-Z]*\n?|```$")


def clamp(value: float, low: float, high: float) -> float:
    return min(high, max(low, value))


def extract_json_object(text: str) -> dict[str, Any] | None:
    """Best-effort JSON object extraction from free-form model text."""
    cleaned = _FENCE_RE.sub("", str(text or "").strip()).strip()
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        start = cleaned.find("{")
        end = cleaned.rfind("}")
        if start == -1 or end <= start:
            return None
        try:
            data = json.loads(cleaned[start : end + 1])
        except json.JSONDecodeError:
            return None
    return data if isinstance(data, dict) else None


def _number(data: dict[str, Any], key: str) -> float | None:
    """Finite number under `key`, or None. Infinity and NaN count as missing."""
    value = data.get(key)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            number = float(value)
        except OverflowError:
            return None
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def _strings(value: Any, *, limit: int, max_chars: int) -> list[str]:
    if not isinstance(value, list):
        return []
    out = [str(item).strip()[:max_chars] for item in value if str(item).strip()]
    return out[:limit]


def _vote(value: Any) -> Vote:
    text = str(value or "none").strip().lower()
    return "up" if text == "up" else "down" if text == "down" else "none"


@dataclass
class Plan:
    action: Action
    confidence: float
    expected_value: float
    bid_amount_cents: int = 0
    vote: Vote = "none"
    join_wiki_ids: list[str] = field(default_factory=list)
    research_queries: list[str] = field(default_factory=list)
    reason: str = ""
    risk_flags: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "confidence": self.confidence,
            "expectedValue": self.expected_value,
            "bidAmountCents": self.bid_amount_cents,
            "vote": self.vote,
            "joinWikiIds": self.join_wiki_ids,
            "researchQueries": self.research_queries,
            "reason": self.reason,
            "riskFlags": self.risk_flags,
        }


@dataclass
class Critique:
    approve: bool
    adjusted_action: Action
    adjusted_bid_amount_cents: int = 0
    adjusted_vote: Vote = "none"
    confidence_adjustment: float = 0.0
    issues: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "approve": self.approve,
            "adjustedAction": self.adjusted_action,
            "adjustedBidAmountCents": self.adjusted_bid_amount_cents,
            "adjustedVote": self.adjusted_vote,
            "confidenceAdjustment": self.confidence_adjustment,
            "issues": self.issues,
        }


@dataclass
class ReactionDecision:
    reaction: Reaction
    confidence: float
    reason: str = ""

    @property
    def direction(self) -> Vote:
        return "up" if self.reaction == "like" else "down" if self.reaction == "dislike" else "none"


@dataclass
class DiscoveryDecision:
    join_wiki_ids: list[str]
    reason: str = ""


@dataclass
class Claim:
    text: str
    source_url: str


@dataclass
class EvidenceSummary:
    summary: str
    claims: list[Claim] = field(default_factory=list)
    uncertainty: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary,
            "claims": [{"text": claim.text, "sourceUrl": claim.source_url} for claim in self.claims],
            "uncertainty": self.uncertainty,
        }


def parse_plan(text: str, *, max_research_queries: int = 2) -> Plan | str:
    data = extract_json_object(text)
    if data is None:
        return "planner output is not a JSON object"
    action = str(data.get("action", "")).strip().lower()
    if action not in ("answer", "abstain"):
        return f"planner action must be answer|abstain, got {action!r}"
    confidence = _number(data, "confidence")
    if confidence is None:
        return "planner confidence must be a number"
    expected_value = _number(data, "expectedValue")
    if expected_value is None:
        return "planner expectedValue must be a number"
    bid = _number(data, "bidAmountCents")
    if bid is None and data.get("bidAmountCents") is not None:
        return "planner bidAmountCents must be a finite number"
    return Plan(
        action=action,  # type: ignore[arg-type]
        confidence=clamp(confidence, 0.0, 1.0),
        expected_value=clamp(expected_value, -1.0, 1.0),
        bid_amount_cents=max(0, int(bid or 0)),
        vote=_vote(data.get("vote")),
        join_wiki_ids=[item.lower() for item in _strings(data.get("joinWikiIds"), limit=3, max_chars=80)],
        research_queries=_strings(data.get("researchQueries"), limit=max_research_queries, max_chars=120),
        reason=str(data.get("reason") or "no-reason")[:300],
        risk_flags=_strings(data.get("riskFlags"), limit=8, max_chars=80),
    )


def parse_critique(text: str) -> Critique | str:
    data = extract_json_object(text)
    if data is None:
        return "critic output is not a JSON object"
    approve = data.get("approve")
    if not isinstance(approve, bool):
        return "critic approve must be a boolean"
    adjusted_action = str(data.get("adjustedAction", "abstain")).strip().lower()
    adjustment = _number(data, "confidenceAdjustment") or 0.0
    bid = _number(data, "adjustedBidAmountCents")
    if bid is None and data.get("adjustedBidAmountCents") is not None:
        return "critic adjustedBidAmountCents must be a finite number"
    return Critique(
        approve=approve,
        adjusted_action="answer" if adjusted_action == "answer" else "abstain",
        adjusted_bid_amount_cents=max(0, int(bid or 0)),
        adjusted_vote=_vote(data.get("adjustedVote")),
        confidence_adjustment=clamp(adjustment, -0.5, 0.5),
        issues=_strings(data.get("issues"), limit=8, max_chars=100),
    )


def parse_reaction(text: str) -> ReactionDecision | str:
    data = extract_json_object(text)
    if data is None:
        return "reaction output is not a JSON object"
    reaction = str(data.get("reaction", "none")).strip().lower()
    if reaction not in ("like", "dislike", "none"):
        return f"reaction must be like|dislike|none, got {reaction!r}"
    return ReactionDecision(
        reaction=reaction,  # type: ignore[arg-type]
        confidence=clamp(_number(data, "confidence") or 0.0, 0.0, 1.0),
        reason=str(data.get("reason") or "no-reaction")[:160],
    )


def parse_discovery(text: str, *, candidate_ids: list[str], joined: list[str], max_joins: int) -> DiscoveryDecision | str:
    """Parse a join proposal and constrain it to unjoined candidates."""
    data = extract_json_object(text)
    if data is None:
        return "discovery output is not a JSON object"
    allowed = set(candidate_ids) - set(joined)
    picked: list[str] = []
    for wiki_id in _strings(data.get("joinWikiIds"), limit=10, max_chars=80):
        if wiki_id in allowed and wiki_id not in picked:
            picked.append(wiki_id)
        if len(picked) >= max_joins:
            break
    return DiscoveryDecision(join_wiki_ids=picked, reason=str(data.get("reason") or "")[:200])


def parse_evidence_summary(text: str, *, allowed_urls: set[str] | None = None) -> EvidenceSummary | str:
    data = extract_json_object(text)
    if data is None:
        return "summary output is not a JSON object"
    summary = str(data.get("summary") or "").strip()
    if not summary:
        return "summary is empty"
    claims: list[Claim] = []
    raw_claims = data.get("claims")
    if isinstance(raw_claims, list):
        for item in raw_claims[:8]:
            if not isinstance(item, dict):
                continue
            claim_text = str(item.get("text") or "").strip()
            source = str(item.get("sourceUrl") or "").strip()
            if not claim_text or not source:
                continue
            if allowed_urls is not None and source not in allowed_urls:
                continue
            claims.append(Claim(text=claim_text[:300], source_url=source))
    return EvidenceSummary(
        summary=summary[:800],
        claims=claims,
        uncertainty=str(data.get("uncertainty") or "")[:200],
    )
