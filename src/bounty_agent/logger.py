"""JSONL audit logging."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


class EventLogger:
    """Append-only JSONL logger, one file per process."""

    def __init__(self, *, logs_dir: str | Path, file_name: str, truncate: bool = False) -> None:
        self.logs_dir = Path(logs_dir)
        self.output_path = self.logs_dir / file_name
        self.sequence = 0

        self.logs_dir.mkdir(parents=True, exist_ok=True)
        if truncate or not self.output_path.exists():
            self.output_path.write_text("", encoding="utf-8")

    def _timestamp(self) -> str:
        return datetime.now(timezone.utc).isoformat()

    def log(self, event_type: str, data: dict[str, Any]) -> None:
        self.sequence += 1
        payload = {
            "timestamp": self._timestamp(),
            "sequence": self.sequence,
            "event_type": event_type,
            **data,
        }
        with self.output_path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(payload, ensure_ascii=True, default=str) + "\n")

    def read_recent(self, n: int = 50) -> list[dict[str, Any]]:
        if n <= 0:
            return []
        if not self.output_path.exists():
            return []
        lines = self.output_path.read_text(encoding="utf-8").splitlines()
        result: list[dict[str, Any]] = []
        for raw in lines[-n:]:
            try:
                result.append(json.loads(raw))
            except json.JSONDecodeError:
                continue
        return result

    def event_types(self, n: int = 500) -> set[str]:
        return {str(event.get("event_type")) for event in self.read_recent(n)}
