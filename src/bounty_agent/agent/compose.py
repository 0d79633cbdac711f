"""Answer composition under a hard character budget."""

from __future__ import annotations

import json
import re
from typing import Any

from .decisions import EvidenceSummary
from .gate import GateResult
from .llm import CompletionModel, json_messages

MIN_ANSWER_CHARS = 220
_BLANK_RUN_RE = re.compile(r"\n{3,}")


def truncate_answer(text: str, max_chars: int, sentence_floor: int = 140) -> str:
    """Cut at the last sentence end before the limit, else hard-cut with '...'."""
    limit = max(MIN_ANSWER_CHARS, max_chars)
    compact = _BLANK_RUN_RE.sub("\n\n", str(text or "").strip())
    if len(compact) <= limit:
        return compact
    sliced = compact[:limit]
    last_stop = max(sliced.rfind("."), sliced.rfind("!"), sliced.rfind("?"))
    if last_stop > sentence_floor:
        return sliced[: last_stop + 1].strip()
    return sliced[: limit - 3].rstrip() + "..."


def _evidence_for_prompt(evidence: list[dict[str, Any]]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for bundle in evidence:
        summary = bundle.get("summary")
        entry: dict[str, Any] = {"query": bundle.get("query"), "provider": bundle.get("provider")}
        if isinstance(summary, EvidenceSummary):
            entry["summary"] = summary.to_dict()
        if bundle.get("items"):
            entry["items"] = bundle["items"]
        out.append(entry)
    return out


async def compose_answer(
    llm: CompletionModel,
    *,
    question: dict[str, Any],
    gated: GateResult,
    topics: list[str],
    evidence: list[dict[str, Any]],
    max_chars: int,
    sentence_floor: int = 140,
    temperature: float = 0.4,
) -> str:
    limit = max(MIN_ANSWER_CHARS, max_chars)
    prompt = "\n".join(
        [
            "You are an autonomous answer writer.",
            "Write a concise, practical answer with clear assumptions.",
            "Target length: 2 to 4 short paragraphs total.",
            f"Hard limit: {limit} characters.",
            "Avoid preambles, repetition and filler.",
            "If evidence exists, cite the source title inline. Do not fabricate citations.",
            f"Question title: {question.get('title', '')}",
            f"Question body: {question.get('content', '')}",
            f"Topics: {json.dumps(topics)}",
            f"Plan rationale: {gated.reason}",
            f"Evidence: {json.dumps(_evidence_for_prompt(evidence), ensure_ascii=True)}",
        ]
    )
    raw = await llm.complete(
        json_messages("Be accurate, concise, and explicit about uncertainty.", prompt),
        temperature=temperature,
    )
    return truncate_answer(raw, limit, sentence_floor)
