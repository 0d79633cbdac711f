"""Persistent per-agent memory: question ledger, topic priors, reflections."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Literal

SCHEMA_VERSION = 2

Outcome = Literal["success", "abstain", "failure"]


class QuestionStatus(str, Enum):
    NEW = "new"
    ANSWERED = "answered"
    ABSTAINED = "abstained"
    FAILED = "failed"
    INVALID = "invalid"
    SETTLED = "settled"
    CLOSED_WINDOW = "closed-window"


TERMINAL_STATUSES = frozenset({QuestionStatus.SETTLED, QuestionStatus.CLOSED_WINDOW})

_CLOSING = {QuestionStatus.SETTLED, QuestionStatus.CLOSED_WINDOW}
_DECIDABLE = {
    QuestionStatus.ANSWERED,
    QuestionStatus.ABSTAINED,
    QuestionStatus.FAILED,
    QuestionStatus.INVALID,
} | _CLOSING

ALLOWED_TRANSITIONS: dict[QuestionStatus, frozenset[QuestionStatus]] = {
    QuestionStatus.NEW: frozenset(_DECIDABLE),
    QuestionStatus.ABSTAINED: frozenset(_DECIDABLE),
    QuestionStatus.FAILED: frozenset(_DECIDABLE),
    QuestionStatus.INVALID: frozenset(_DECIDABLE),
    QuestionStatus.ANSWERED: frozenset(_CLOSING),
    QuestionStatus.SETTLED: frozenset(),
    QuestionStatus.CLOSED_WINDOW: frozenset(),
}


class LedgerTransitionError(Exception):
    """A ledger entry was asked to move along an edge the state machine forbids."""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat()


def _parse_iso(value: str) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class QuestionLedgerEntry:
    first_seen_at: str
    last_seen_at: str = ""
    last_decision_at: str = ""
    status: QuestionStatus = QuestionStatus.NEW
    abstain_count: int = 0
    answer_count: int = 0
    failure_count: int = 0
    reasons: list[str] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def add_reason(self, reason: str, max_reasons: int = 20) -> None:
        if not reason:
            return
        self.reasons.append(reason[:240])
        if len(self.reasons) > max_reasons:
            del self.reasons[: len(self.reasons) - max_reasons]

    def transition(
        self,
        status: QuestionStatus,
        *,
        reason: str = "",
        now: datetime | None = None,
        max_reasons: int = 20,
    ) -> None:
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise LedgerTransitionError(f"{self.status.value} -> {status.value} is not allowed")
        self.status = status
        self.last_decision_at = _iso(now or utc_now())
        if status == QuestionStatus.ABSTAINED:
            self.abstain_count += 1
        elif status == QuestionStatus.FAILED:
            self.failure_count += 1
        elif status == QuestionStatus.ANSWERED:
            self.answer_count += 1
        self.add_reason(reason, max_reasons)

    def to_dict(self) -> dict[str, Any]:
        return {
            "firstSeenAt": self.first_seen_at,
            "lastSeenAt": self.last_seen_at,
            "lastDecisionAt": self.last_decision_at,
            "status": self.status.value,
            "abstainCount": self.abstain_count,
            "answerCount": self.answer_count,
            "failureCount": self.failure_count,
            "reasons": list(self.reasons),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QuestionLedgerEntry:
        try:
            status = QuestionStatus(str(data.get("status", "new")))
        except ValueError:
            status = QuestionStatus.NEW
        reasons = data.get("reasons")
        return cls(
            first_seen_at=str(data.get("firstSeenAt", "")),
            last_seen_at=str(data.get("lastSeenAt", "")),
            last_decision_at=str(data.get("lastDecisionAt", "")),
            status=status,
            abstain_count=int(data.get("abstainCount", 0) or 0),
            answer_count=int(data.get("answerCount", 0) or 0),
            failure_count=int(data.get("failureCount", 0) or 0),
            reasons=[str(item) for item in reasons] if isinstance(reasons, list) else [],
        )


@dataclass
class TopicStats:
    observations: int = 0
    wins: int = 0
    losses: int = 0
    abstains: int = 0
    answers: int = 0
    total_confidence: float = 0.0

    def record(self, outcome: Outcome, confidence: float, cap: int = 500) -> None:
        self.observations += 1
        self.total_confidence += float(confidence)
        if outcome == "success":
            self.wins += 1
            self.answers += 1
        elif outcome == "abstain":
            self.abstains += 1
        else:
            self.losses += 1
        if self.observations > cap:
            self.observations //= 2
            self.wins //= 2
            self.losses //= 2
            self.abstains //= 2
            self.answers //= 2
            self.total_confidence /= 2

    def prior(self) -> float:
        net = self.wins - self.losses
        return max(-1.0, min(1.0, net / max(1, self.observations)))

    def to_dict(self) -> dict[str, Any]:
        return {
            "observations": self.observations,
            "wins": self.wins,
            "losses": self.losses,
            "abstains": self.abstains,
            "answers": self.answers,
            "totalConfidence": self.total_confidence,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TopicStats:
        return cls(
            observations=int(data.get("observations", 0) or 0),
            wins=int(data.get("wins", 0) or 0),
            losses=int(data.get("losses", 0) or 0),
            abstains=int(data.get("abstains", 0) or 0),
            answers=int(data.get("answers", 0) or 0),
            total_confidence=float(data.get("totalConfidence", 0.0) or 0.0),
        )


@dataclass
class ToolStats:
    ok: int = 0
    fail: int = 0
    last_error: str = ""
    last_used_at: str = ""


@dataclass
class AgentMemory:
    loops: int = 0
    last_loop_at: str = ""
    seen_question_ids: list[str] = field(default_factory=list)
    question_ledger: dict[str, QuestionLedgerEntry] = field(default_factory=dict)
    topic_stats: dict[str, TopicStats] = field(default_factory=dict)
    tool_stats: dict[str, ToolStats] = field(default_factory=dict)
    reflections: list[dict[str, Any]] = field(default_factory=list)
    max_seen: int = 5000
    max_reflections: int = 1000
    max_reasons: int = 20
    topic_stats_cap: int = 500

    def entry(self, question_id: str, now: datetime | None = None) -> QuestionLedgerEntry:
        current = self.question_ledger.get(question_id)
        if current is None:
            current = QuestionLedgerEntry(first_seen_at=_iso(now or utc_now()))
            self.question_ledger[question_id] = current
        return current

    def status_of(self, question_id: str) -> QuestionStatus | None:
        current = self.question_ledger.get(question_id)
        return current.status if current else None

    def is_terminal(self, question_id: str) -> bool:
        current = self.question_ledger.get(question_id)
        return current is not None and current.is_terminal

    def should_revisit(
        self,
        question_id: str,
        *,
        revisit_seconds: float,
        run_started_at: datetime,
        now: datetime | None = None,
    ) -> bool:
        current = self.question_ledger.get(question_id)
        if current is None:
            return True
        if current.is_terminal:
            return False
        decided = _parse_iso(current.last_decision_at)
        if decided is None:
            return True
        if current.status == QuestionStatus.INVALID and decided >= run_started_at:
            return False
        return ((now or utc_now()) - decided).total_seconds() >= revisit_seconds

    def mark(
        self,
        question_id: str,
        status: QuestionStatus,
        reason: str = "",
        now: datetime | None = None,
    ) -> QuestionLedgerEntry:
        current = self.entry(question_id, now)
        current.transition(status, reason=reason, now=now, max_reasons=self.max_reasons)
        return current

    def touch(self, question_id: str, reason: str = "", now: datetime | None = None) -> QuestionLedgerEntry:
        """Record a re-observation that leaves the status unchanged."""
        current = self.entry(question_id, now)
        current.last_decision_at = _iso(now or utc_now())
        current.add_reason(reason, self.max_reasons)
        return current

    def note_seen(self, question_id: str, now: datetime | None = None) -> None:
        current = self.entry(question_id, now)
        current.last_seen_at = _iso(now or utc_now())
        if question_id in self.seen_question_ids:
            return
        self.seen_question_ids.append(question_id)
        if len(self.seen_question_ids) > self.max_seen:
            del self.seen_question_ids[: len(self.seen_question_ids) - self.max_seen]

    def topic_prior(self, topics: list[str]) -> float:
        if not topics:
            return 0.0
        total = sum(self.topic_stats.get(topic, TopicStats()).prior() for topic in topics)
        return total / len(topics)

    def record_topic_outcome(self, topics: list[str], outcome: Outcome, confidence: float) -> None:
        for topic in topics:
            stats = self.topic_stats.setdefault(topic, TopicStats())
            stats.record(outcome, confidence, self.topic_stats_cap)

    def note_tool(self, tool: str, ok: bool, error: str = "") -> None:
        stats = self.tool_stats.setdefault(tool, ToolStats())
        if ok:
            stats.ok += 1
        else:
            stats.fail += 1
            stats.last_error = error[:220]
        stats.last_used_at = _iso(utc_now())

    def add_reflection(self, reflection: dict[str, Any]) -> None:
        self.reflections.append({"ts": _iso(utc_now()), **reflection})
        if len(self.reflections) > self.max_reflections:
            del self.reflections[: len(self.reflections) - self.max_reflections]

    def to_dict(self) -> dict[str, Any]:
        return {
            "schemaVersion": SCHEMA_VERSION,
            "loops": self.loops,
            "lastLoopAt": self.last_loop_at,
            "seenQuestionIds": list(self.seen_question_ids),
            "questionLedger": {key: value.to_dict() for key, value in self.question_ledger.items()},
            "topicStats": {key: value.to_dict() for key, value in self.topic_stats.items()},
            "toolStats": {
                key: {"ok": value.ok, "fail": value.fail, "lastError": value.last_error, "lastUsedAt": value.last_used_at}
                for key, value in self.tool_stats.items()
            },
            "reflections": list(self.reflections),
        }

    def restore(self, raw: dict[str, Any]) -> None:
        self.loops = int(raw.get("loops", 0) or 0)
        self.last_loop_at = str(raw.get("lastLoopAt", ""))
        seen = raw.get("seenQuestionIds")
        if isinstance(seen, list):
            self.seen_question_ids = [str(item) for item in seen][-self.max_seen :]
        ledger = raw.get("questionLedger")
        if isinstance(ledger, dict):
            self.question_ledger = {
                str(key): QuestionLedgerEntry.from_dict(value) for key, value in ledger.items() if isinstance(value, dict)
            }
        topics = raw.get("topicStats")
        if isinstance(topics, dict):
            self.topic_stats = {
                str(key): TopicStats.from_dict(value) for key, value in topics.items() if isinstance(value, dict)
            }
        tools = raw.get("toolStats")
        if isinstance(tools, dict):
            self.tool_stats = {
                str(key): ToolStats(
                    ok=int(value.get("ok", 0) or 0),
                    fail=int(value.get("fail", 0) or 0),
                    last_error=str(value.get("lastError", "")),
                    last_used_at=str(value.get("lastUsedAt", "")),
                )
                for key, value in tools.items()
                if isinstance(value, dict)
            }
        reflections = raw.get("reflections")
        if isinstance(reflections, list):
            self.reflections = [item for item in reflections if isinstance(item, dict)][-self.max_reflections :]

    def save(self, path: str | Path) -> None:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = target.with_suffix(target.suffix + ".tmp")
        tmp_path.write_text(json.dumps(self.to_dict(), indent=2), encoding="utf-8")
        os.replace(tmp_path, target)


def load_memory(path: str | Path, **limits: int) -> AgentMemory:
    """Load memory from disk; a missing or corrupt file yields empty memory."""
    memory = AgentMemory(**limits)
    target = Path(path)
    if not target.exists():
        return memory
    try:
        raw = json.loads(target.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return memory
    if isinstance(raw, dict):
        memory.restore(raw)
    return memory

