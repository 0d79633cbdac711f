"""JSON-RPC tool gateway over HTTP."""

from __future__ import annotations

import json
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .. import __version__
from ..config import AppConfig
from ..logger import EventLogger
from .errors import (
    RPC_INVALID_PARAMS,
    RPC_INVALID_REQUEST,
    RPC_METHOD_NOT_FOUND,
    RPC_PARSE_ERROR,
    GatewayError,
)
from .executor import ToolExecutor
from .identity import IdentitySigner
from .marketplace import MarketplaceClient
from .payments import FacilitatorPaymentHandler
from .stackexchange import StackExchangeClient
from .state import GatewayState
from .tools import list_tool_schemas

PROTOCOL_VERSION = "2024-11-05"
SERVER_NAME = "bounty-agent-gateway"
SERVER_VERSION = __version__


def build_executor(config: AppConfig, logger: EventLogger) -> ToolExecutor:
    """Wire gateway state, marketplace client and signer from config."""
    gateway = config.gateway
    payment_handler = None
    if gateway.payment_facilitator_url:
        payment_handler = FacilitatorPaymentHandler(
            gateway.payment_facilitator_url,
            header_name=gateway.payment_header_name,
            timeout=config.marketplace.timeout_seconds,
        )
    signer = IdentitySigner.from_pem_file(gateway.private_key_path) if gateway.private_key_path else None
    return ToolExecutor(
        agent_id=config.agent.id,
        state=GatewayState.from_config(gateway),
        marketplace=MarketplaceClient(
            config.marketplace.base_url,
            config.marketplace.access_token,
            timeout=config.marketplace.timeout_seconds,
            payment_handler=payment_handler,
        ),
        logger=logger,
        signer=signer,
        stackexchange=StackExchangeClient(gateway.stackexchange),
    )


def _rpc_result(request_id: Any, result: dict[str, Any]) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def _rpc_error(request_id: Any, code: int, message: str, data: dict[str, Any] | None = None) -> dict[str, Any]:
    error: dict[str, Any] = {"code": code, "message": message}
    if data:
        error["data"] = data
    return {"jsonrpc": "2.0", "id": request_id, "error": error}


async def handle_rpc(executor: ToolExecutor, payload: Any) -> dict[str, Any]:
    """Dispatch one JSON-RPC request object."""
    if not isinstance(payload, dict) or not isinstance(payload.get("method"), str):
        request_id = payload.get("id") if isinstance(payload, dict) else None
        return _rpc_error(request_id, RPC_INVALID_REQUEST, "Invalid request")

    request_id = payload.get("id")
    method = payload["method"]
    params = payload.get("params") or {}

    if method == "initialize":
        return _rpc_result(
            request_id,
            {
                "protocolVersion": PROTOCOL_VERSION,
                "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
                "capabilities": {"tools": {}},
            },
        )
    if method == "notifications/initialized":
        return _rpc_result(request_id, {})
    if method == "tools/list":
        return _rpc_result(request_id, {"tools": list_tool_schemas()})
    if method != "tools/call":
        return _rpc_error(request_id, RPC_METHOD_NOT_FOUND, f"Unknown method: {method}")

    if not isinstance(params, dict) or not isinstance(params.get("name"), str):
        return _rpc_error(request_id, RPC_INVALID_PARAMS, "tools/call requires params.name")

    try:
        result = await executor.call(params["name"], params.get("arguments"))
    except GatewayError as exc:
        return _rpc_error(request_id, exc.rpc_code, exc.message, exc.data)

    return _rpc_result(
        request_id,
        {
            "content": [{"type": "text", "text": json.dumps(result.to_dict(), ensure_ascii=True)}],
            "isError": False,
        },
    )


def create_app(*, executor: ToolExecutor) -> FastAPI:
    app = FastAPI(title="Bounty Agent Tool Gateway")

    @app.get("/health")
    async def health() -> dict[str, Any]:
        budget = executor.state.ledger.snapshot()
        return {
            "ok": True,
            "agentId": executor.agent_id,
            "paused": budget["paused"],
            "dayKey": budget["dayKey"],
            "dailySpendCents": budget["dailySpendCents"],
            "maxDailySpendCents": budget["maxDailySpendCents"],
        }

    @app.post("/mcp")
    async def mcp(request: Request) -> JSONResponse:
        raw = await request.body()
        try:
            payload = json.loads(raw or b"null")
        except (json.JSONDecodeError, UnicodeDecodeError):
            return JSONResponse(_rpc_error(None, RPC_PARSE_ERROR, "Parse error"))
        return JSONResponse(await handle_rpc(executor, payload))

    return app
