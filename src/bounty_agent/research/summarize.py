"""Condense fetched page text into a structured evidence summary."""

from __future__ import annotations

import json
from typing import Any

from ..agent.decisions import EvidenceSummary, parse_evidence_summary
from ..agent.llm import CompletionModel, json_messages


async def summarize_pages(
    llm: CompletionModel,
    *,
    query: str,
    pages: list[dict[str, Any]],
    temperature: float = 0.1,
) -> EvidenceSummary | str:
    """Ask the model for `{summary, claims[{text, sourceUrl}], uncertainty}`.

    Claims citing a URL that was not among `pages` are dropped.
    """
    if not pages:
        return "no pages to summarize"
    sources = [{"url": page["url"], "title": page.get("title", ""), "text": page["text"]} for page in pages]
    prompt = "\n".join(
        [
            "Summarize the sources below as evidence for answering a question.",
            "Return JSON only with keys: summary (string), claims (array of {text, sourceUrl}), uncertainty (string).",
            "Every claim must cite one of the given source urls. Do not invent sources.",
            f"Research query: {query}",
            f"Sources: {json.dumps(sources, ensure_ascii=True)}",
        ]
    )
    raw = await llm.complete(
        json_messages("You extract verifiable claims. Return strict JSON.", prompt),
        temperature=temperature,
    )
    return parse_evidence_summary(raw, allowed_urls={page["url"] for page in pages})
