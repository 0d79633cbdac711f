"""Heartbeat file for external supervisors."""

from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

HeartbeatStatus = Literal["online", "degraded", "offline"]


class HeartbeatWriter:
    def __init__(self, path: str | Path, *, agent_id: str, model: str, mcp_url: str) -> None:
        self.path = Path(path)
        self.agent_id = agent_id
        self.model = model
        self.mcp_url = mcp_url

    def write(self, status: HeartbeatStatus, *, loops: int, **extras: Any) -> dict[str, Any]:
        payload = {
            "agentId": self.agent_id,
            "status": status,
            "ts": datetime.now(timezone.utc).isoformat(),
            "pid": os.getpid(),
            "model": self.model,
            "mcpUrl": self.mcp_url,
            "loops": loops,
            **extras,
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
        os.replace(tmp_path, self.path)
        return payload

    def read(self) -> dict[str, Any] | None:
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return None
        return data if isinstance(data, dict) else None
