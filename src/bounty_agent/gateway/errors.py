"""Typed failures raised by the tool gateway.

Every gateway error carries the JSON-RPC code it maps to, so the server can
turn any of them into an error envelope without inspecting the message.
"""

from __future__ import annotations

from typing import Any

RPC_PARSE_ERROR = -32700
RPC_INVALID_REQUEST = -32600
RPC_METHOD_NOT_FOUND = -32601
RPC_INVALID_PARAMS = -32602
RPC_INTERNAL_ERROR = -32603
RPC_RATE_LIMITED = -32001
RPC_BUDGET_REJECTED = -32002
RPC_UPSTREAM_ERROR = -32003
RPC_WINDOW_CLOSED = -32004


class GatewayError(Exception):
    """Base exception for all gateway failures."""

    rpc_code = RPC_INTERNAL_ERROR

    def __init__(self, message: str, data: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.data = data or {}


class UnknownToolError(GatewayError):
    rpc_code = RPC_METHOD_NOT_FOUND


class ToolArgumentError(GatewayError):
    """Tool arguments failed schema validation."""

    rpc_code = RPC_INVALID_PARAMS


class RateLimitedError(GatewayError):
    rpc_code = RPC_RATE_LIMITED


class BudgetRejectedError(GatewayError):
    """Bid exceeds the per-action cap, the daily cap, or the agent is paused."""

    rpc_code = RPC_BUDGET_REJECTED


class MarketplaceError(GatewayError):
    """Marketplace API returned a non-success response."""

    rpc_code = RPC_UPSTREAM_ERROR

    def __init__(
        self,
        message: str,
        status_code: int = 0,
        failure_code: str | None = None,
        response_body: str = "",
    ) -> None:
        super().__init__(
            message,
            {"status": status_code, "failure_code": failure_code},
        )
        self.status_code = status_code
        self.failure_code = failure_code
        self.response_body = response_body


class WindowClosedError(MarketplaceError):
    """The question's answer window has closed."""

    rpc_code = RPC_WINDOW_CLOSED


class PaymentRequiredError(MarketplaceError):
    """A 402 response that no payment handler could satisfy."""

    pass
