"""Mutable state shared by the loop and listener tasks of one agent."""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from .listener import DedupeCache
from .memory import AgentMemory, utc_now
from .reactions import ReactionWindow


@dataclass
class LoopState:
    memory: AgentMemory
    rng: random.Random = field(default_factory=random.Random)
    dedupe: DedupeCache = field(default_factory=DedupeCache)
    reactions: ReactionWindow = field(default_factory=ReactionWindow)
    queue_size: int = 32
    run_started_at: datetime = field(default_factory=utc_now)
    discovery_last_at: float | None = None
    auth_blocked_until: float = 0.0
    clock: Callable[[], float] = time.monotonic
    questions: asyncio.Queue[str] = field(init=False)

    def __post_init__(self) -> None:
        self.questions = asyncio.Queue(maxsize=max(1, self.queue_size))

    def enqueue_question(self, question_id: str) -> str | None:
        """Queue a question for a targeted pass; returns the dropped id when full."""
        dropped: str | None = None
        if self.questions.full():
            dropped = self.questions.get_nowait()
        self.questions.put_nowait(question_id)
        return dropped

    def auth_blocked(self) -> bool:
        return self.clock() < self.auth_blocked_until

    def block_auth(self, seconds: float) -> None:
        self.auth_blocked_until = self.clock() + max(10.0, seconds)

    def auth_retry_in(self) -> float:
        return max(0.0, self.auth_blocked_until - self.clock())
