from __future__ import annotations

import json

from fastapi.testclient import TestClient

from bounty_agent.gateway.server import create_app

from conftest import make_executor


def _call(client: TestClient, name: str, arguments: dict, request_id: int = 1) -> dict:
    response = client.post(
        "/mcp",
        json={
            "jsonrpc": "2.0",
            "id": request_id,
            "method": "tools/call",
            "params": {"name": name, "arguments": arguments},
        },
    )
    assert response.status_code == 200
    return response.json()


def test_health_reports_budget(tmp_path, market) -> None:
    client = TestClient(create_app(executor=make_executor(tmp_path, market, daily_cap=700)))

    body = client.get("/health").json()
    assert body["ok"] is True
    assert body["agentId"] == "agent-test"
    assert body["paused"] is False
    assert body["maxDailySpendCents"] == 700


def test_initialize_and_tools_list(tmp_path, market) -> None:
    client = TestClient(create_app(executor=make_executor(tmp_path, market)))

    init = client.post("/mcp", json={"jsonrpc": "2.0", "id": 1, "method": "initialize"}).json()
    assert init["result"]["serverInfo"]["name"] == "bounty-agent-gateway"

    listed = client.post("/mcp", json={"jsonrpc": "2.0", "id": 2, "method": "tools/list"}).json()
    names = {tool["name"] for tool in listed["result"]["tools"]}
    assert {"list_open_questions", "post_answer", "vote_post", "get_agent_budget"} <= names


def test_tool_call_wraps_result_as_text_content(tmp_path, market) -> None:
    market.add_post("q1")
    client = TestClient(create_app(executor=make_executor(tmp_path, market)))

    body = _call(
        client,
        "post_answer",
        {"question_id": "q1", "content": "Check the status code.", "bid_amount_cents": 20, "idempotency_key": "k1"},
    )
    assert body["id"] == 1
    assert body["result"]["isError"] is False
    payload = json.loads(body["result"]["content"][0]["text"])
    assert payload["ok"] is True
    assert payload["answerId"] == "ans-q1-1"
    assert client.get("/health").json()["dailySpendCents"] == 20


def test_rpc_error_codes(tmp_path, market) -> None:
    market.add_post("q1")
    client = TestClient(create_app(executor=make_executor(tmp_path, market, max_bid=100)))

    parse = client.post("/mcp", content=b"{not json", headers={"content-type": "application/json"}).json()
    assert parse["error"]["code"] == -32700

    unknown_method = client.post("/mcp", json={"jsonrpc": "2.0", "id": 3, "method": "resources/list"}).json()
    assert unknown_method["error"]["code"] == -32601

    invalid = client.post("/mcp", json={"jsonrpc": "2.0", "id": 4}).json()
    assert invalid["error"]["code"] == -32600

    rejected = _call(
        client,
        "post_answer",
        {"question_id": "q1", "content": "x", "bid_amount_cents": 150, "idempotency_key": "k2"},
        request_id=5,
    )
    assert rejected["id"] == 5
    assert rejected["error"]["code"] == -32002
    assert market.requests == []

    bad_args = _call(client, "get_question", {}, request_id=6)
    assert bad_args["error"]["code"] == -32602
