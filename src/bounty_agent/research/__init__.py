"""Research providers feeding evidence into answer composition."""

from .providers import EvidenceProvider, QAResearchProvider, gather_evidence, research_queries
from .robots import RobotsCache
from .web import WebResearchProvider

__all__ = [
    "EvidenceProvider",
    "QAResearchProvider",
    "RobotsCache",
    "WebResearchProvider",
    "gather_evidence",
    "research_queries",
]
