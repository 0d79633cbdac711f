"""JSON-RPC client the agent uses to reach its tool gateway."""

from __future__ import annotations

import json
import time
import uuid
from typing import Any

import httpx

from ..gateway.errors import RPC_BUDGET_REJECTED, RPC_RATE_LIMITED, RPC_WINDOW_CLOSED
from ..logger import EventLogger
from .memory import AgentMemory


class ToolCallError(Exception):
    """A tool call failed at the transport, the gateway, or the marketplace."""

    def __init__(self, tool: str, message: str, code: int | None = None, data: Any = None) -> None:
        super().__init__(message)
        self.tool = tool
        self.message = message
        self.code = code
        self.data = data if isinstance(data, dict) else {}

    @property
    def is_window_closed(self) -> bool:
        if self.code == RPC_WINDOW_CLOSED:
            return True
        if self.data.get("failure_code") == "bid_window_closed":
            return True
        return "window has ended" in self.message.lower()

    @property
    def is_budget_rejection(self) -> bool:
        return self.code == RPC_BUDGET_REJECTED

    @property
    def is_rate_limited(self) -> bool:
        return self.code == RPC_RATE_LIMITED


class ToolClient:
    def __init__(
        self,
        url: str,
        *,
        timeout: float = 30.0,
        memory: AgentMemory | None = None,
        logger: EventLogger | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self.memory = memory
        self.logger = logger
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def rpc(self, method: str, params: dict[str, Any] | None = None, *, tool: str = "") -> dict[str, Any]:
        label = tool or method
        payload = {
            "jsonrpc": "2.0",
            "id": f"rpc-{uuid.uuid4().hex[:12]}",
            "method": method,
            "params": params or {},
        }
        try:
            response = await self._client.post(self.url, json=payload)
        except httpx.TimeoutException as exc:
            raise ToolCallError(label, f"{label} timed out") from exc
        except httpx.HTTPError as exc:
            raise ToolCallError(label, f"{label} transport error: {exc}") from exc
        try:
            body = response.json()
        except (ValueError, json.JSONDecodeError) as exc:
            raise ToolCallError(label, f"{label} returned non-JSON ({response.status_code})") from exc
        if not isinstance(body, dict):
            raise ToolCallError(label, f"{label} returned a non-object body")
        error = body.get("error")
        if isinstance(error, dict):
            raise ToolCallError(
                label,
                str(error.get("message") or "tool call failed")[:320],
                error.get("code") if isinstance(error.get("code"), int) else None,
                error.get("data"),
            )
        if response.status_code >= 400:
            raise ToolCallError(label, f"{label} HTTP {response.status_code}")
        result = body.get("result")
        return result if isinstance(result, dict) else {}

    async def call(self, name: str, arguments: dict[str, Any] | None = None) -> dict[str, Any]:
        """Call a gateway tool and return its decoded JSON payload."""
        started = time.monotonic()
        try:
            result = await self.rpc("tools/call", {"name": name, "arguments": arguments or {}}, tool=name)
            content = result.get("content")
            text = content[0].get("text", "{}") if isinstance(content, list) and content else "{}"
            try:
                decoded = json.loads(text)
            except json.JSONDecodeError as exc:
                raise ToolCallError(name, f"{name} returned undecodable content") from exc
            if not isinstance(decoded, dict):
                raise ToolCallError(name, f"{name} returned non-object content")
        except ToolCallError as exc:
            self._note(name, False, exc.message, started)
            raise
        self._note(name, True, "", started)
        return decoded

    def _note(self, tool: str, ok: bool, error: str, started: float) -> None:
        if self.memory is not None:
            self.memory.note_tool(tool, ok, error)
        if self.logger is not None:
            self.logger.log(
                "tool_call",
                {
                    "tool": tool,
                    "ok": ok,
                    "duration_ms": int((time.monotonic() - started) * 1000),
                    "error": error or None,
                },
            )
