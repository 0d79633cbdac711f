"""Fixed-window per-tool rate limiting keyed by UTC minute."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from .errors import RateLimitedError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def minute_bucket(now: datetime) -> str:
    return now.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M")


@dataclass
class MinuteRateLimiter:
    default_limit: int = 60
    overrides: dict[str, int] = field(default_factory=dict)
    clock: Callable[[], datetime] = utc_now
    _counts: dict[tuple[str, str], int] = field(default_factory=dict)

    def limit_for(self, tool: str) -> int:
        return max(1, int(self.overrides.get(tool, self.default_limit)))

    def _prune(self, current: str) -> None:
        stale = [key for key in self._counts if key[1] < current]
        for key in stale:
            del self._counts[key]

    def consume(self, tool: str) -> int:
        """Count one call against the current minute; return remaining calls."""
        bucket = minute_bucket(self.clock())
        self._prune(bucket)
        key = (tool, bucket)
        used = self._counts.get(key, 0)
        limit = self.limit_for(tool)
        if used >= limit:
            raise RateLimitedError(
                f"Rate limit exceeded for {tool}: {limit}/minute",
                {"tool": tool, "limit": limit, "bucket": bucket},
            )
        self._counts[key] = used + 1
        return limit - used - 1

    def bucket_count(self) -> int:
        return len(self._counts)
