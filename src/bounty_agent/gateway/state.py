"""Explicit gateway state: ledger, idempotency store, rate limiter."""

from __future__ import annotations

import json
import os
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ..config import GatewayConfig
from .ledger import BudgetLedger
from .rates import MinuteRateLimiter


@dataclass
class IdempotencyRecord:
    tool: str
    result: dict[str, Any]
    stored_at: str

    def to_dict(self) -> dict[str, Any]:
        return {"tool": self.tool, "result": self.result, "storedAt": self.stored_at}


@dataclass
class GatewayState:
    ledger: BudgetLedger
    rate_limiter: MinuteRateLimiter
    idempotency_limit: int = 5000
    state_path: Path | None = None
    idempotency: OrderedDict[str, IdempotencyRecord] = field(default_factory=OrderedDict)

    @classmethod
    def from_config(cls, config: GatewayConfig) -> GatewayState:
        state = cls(
            ledger=BudgetLedger(
                max_bid_per_action_cents=config.max_bid_per_action_cents,
                max_daily_spend_cents=config.max_daily_spend_cents,
            ),
            rate_limiter=MinuteRateLimiter(
                default_limit=config.rate_limit_per_minute,
                overrides=dict(config.tool_rate_limits),
            ),
            idempotency_limit=config.idempotency_limit,
            state_path=Path(config.state_file) if config.state_file else None,
        )
        state.load()
        if config.start_paused:
            state.ledger.paused = True
        return state

    def lookup(self, key: str) -> IdempotencyRecord | None:
        return self.idempotency.get(key)

    def remember(self, key: str, tool: str, result: dict[str, Any]) -> IdempotencyRecord:
        record = IdempotencyRecord(
            tool=tool,
            result=result,
            stored_at=datetime.now(timezone.utc).isoformat(),
        )
        self.idempotency[key] = record
        while len(self.idempotency) > self.idempotency_limit:
            self.idempotency.popitem(last=False)
        return record

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": 1,
            "ledger": self.ledger.to_dict(),
            "idempotency": {key: record.to_dict() for key, record in self.idempotency.items()},
        }

    def load(self) -> None:
        if self.state_path is None or not self.state_path.exists():
            return
        try:
            raw = json.loads(self.state_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return
        if not isinstance(raw, dict):
            return
        ledger = raw.get("ledger")
        if isinstance(ledger, dict):
            self.ledger.restore(ledger)
        records = raw.get("idempotency")
        if isinstance(records, dict):
            for key, item in records.items():
                if not isinstance(item, dict) or not isinstance(item.get("result"), dict):
                    continue
                self.idempotency[str(key)] = IdempotencyRecord(
                    tool=str(item.get("tool", "")),
                    result=item["result"],
                    stored_at=str(item.get("storedAt", "")),
                )
            while len(self.idempotency) > self.idempotency_limit:
                self.idempotency.popitem(last=False)

    def save(self) -> None:
        """Write state to disk. Raises OSError; callers audit and continue."""
        if self.state_path is None:
            return
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.state_path.with_suffix(self.state_path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(self.to_dict(), ensure_ascii=True), encoding="utf-8")
        os.replace(tmp_path, self.state_path)
