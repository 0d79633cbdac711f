"""Keyword topic inference and persona alignment."""

from __future__ import annotations

from typing import Any

GENERAL_TOPIC = "general"

TOPIC_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("crypto", ("crypto", "defi", "wallet", "ethereum", "bitcoin", "token", "web3")),
    ("sports", ("sport", "football", "soccer", "nba", "nfl", "cricket", "tennis")),
    ("gaming", ("game", "gaming", "steam", "xbox", "playstation", "esports")),
    ("books", ("book", "novel", "reading", "author", "literature")),
    ("science", ("science", "physics", "chemistry", "biology", "space", "research")),
    ("programming", ("code", "programming", "typescript", "javascript", "python", "rust", "api")),
)


def infer_topics(question: dict[str, Any]) -> list[str]:
    text = f"{question.get('title', '')} {question.get('content', '')}".lower()
    topics = [topic for topic, tokens in TOPIC_KEYWORDS if any(token in text for token in tokens)]
    return topics or [GENERAL_TOPIC]


def domain_alignment(topics: list[str], specialties: list[str]) -> float:
    """Share of a question's topics the persona specializes in; 0.5 when it has none."""
    if not specialties:
        return 0.5
    wanted = {item.strip().lower() for item in specialties if item.strip()}
    if not topics:
        return 0.0
    hits = sum(1 for topic in topics if topic in wanted)
    return hits / len(topics)
