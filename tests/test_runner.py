from __future__ import annotations

import asyncio
import json

from bounty_agent.agent.discovery import DiscoveryPulse
from bounty_agent.agent.heartbeat import HeartbeatWriter
from bounty_agent.agent.llm import LLMAuthError
from bounty_agent.agent.memory import AgentMemory, QuestionStatus, load_memory
from bounty_agent.agent.runner import AgentRunner
from bounty_agent.agent.state import LoopState
from bounty_agent.config import DiscoveryConfig
from bounty_agent.logger import EventLogger

from conftest import ScriptedLLM, agent_config, gateway_tool_client, make_executor

PLAN_ANSWER = json.dumps(
    {"action": "answer", "confidence": 0.85, "expectedValue": 0.3, "bidAmountCents": 20, "reason": "fits"}
)
CRITIC_APPROVE = json.dumps({"approve": True, "adjustedAction": "answer"})
ANSWER_TEXT = "Validate the payload before use and surface the error to the caller. " * 3


def _runner(tmp_path, market, llm, overrides=()):
    config = agent_config(tmp_path)
    for section, key, value in overrides:
        setattr(getattr(config, section), key, value)
    executor = make_executor(tmp_path, market)
    tools = gateway_tool_client(executor)
    logger = EventLogger(logs_dir=tmp_path / "logs", file_name="agent.jsonl")
    runner = AgentRunner(
        config,
        memory=AgentMemory(),
        memory_path=config.agent_path(config.logging.memory_file),
        tools=tools,
        llm=llm,
        logger=logger,
    )
    return runner, tools, executor, logger


def test_cycle_answers_up_to_action_limit(tmp_path, market) -> None:
    for qid in ("q1", "q2", "q3"):
        market.add_post(qid)
    llm = ScriptedLLM(*([PLAN_ANSWER, CRITIC_APPROVE, ANSWER_TEXT] * 2))
    runner, tools, executor, _ = _runner(tmp_path, market, llm)

    async def _go():
        try:
            return await runner.run_cycle()
        finally:
            await tools.aclose()

    report = asyncio.run(_go())
    assert report.status == "ok"
    assert report.actions == 2
    assert report.processed == 2
    assert executor.state.ledger.daily_spend_cents == 40
    statuses = [runner.state.memory.status_of(qid) for qid in ("q1", "q2", "q3")]
    assert statuses.count(QuestionStatus.ANSWERED) == 2
    assert statuses.count(None) == 1


def test_paused_and_idle_cycles(tmp_path, market) -> None:
    runner, tools, executor, logger = _runner(tmp_path, market, ScriptedLLM())

    async def _go():
        try:
            idle = await runner.run_cycle()
            executor.state.ledger.paused = True
            paused = await runner.run_cycle()
        finally:
            await tools.aclose()
        return idle, paused

    idle, paused = asyncio.run(_go())
    assert idle.status == "idle"
    assert paused.status == "paused"
    assert {"loop_no_open_questions", "loop_paused"} <= logger.event_types()


def test_scan_skipped_when_probability_zero(tmp_path, market) -> None:
    market.add_post("q1")
    runner, tools, _, _ = _runner(tmp_path, market, ScriptedLLM(), overrides=[("loop", "scan_probability", 0.0)])

    async def _go():
        try:
            return await runner.run_cycle()
        finally:
            await tools.aclose()

    assert asyncio.run(_go()).status == "scan-skipped"
    assert market.count("GET", "/api/posts") == 0


def test_llm_auth_error_enters_cooldown(tmp_path, market) -> None:
    market.add_post("q1")
    llm = ScriptedLLM(LLMAuthError("invalid api key"))
    runner, tools, _, logger = _runner(tmp_path, market, llm)

    async def _go():
        try:
            first = await runner.run_cycle()
            second = await runner.run_cycle()
        finally:
            await tools.aclose()
        return first, second

    first, second = asyncio.run(_go())
    assert first.status == "auth-cooldown"
    assert second.status == "auth-cooldown"
    assert runner.state.auth_blocked()
    assert len(llm.calls) == 1
    assert {"llm_auth_error", "loop_auth_cooldown"} <= logger.event_types()


def test_run_for_duration_writes_heartbeat_and_memory(tmp_path, market) -> None:
    runner, tools, _, logger = _runner(tmp_path, market, ScriptedLLM())

    async def _go():
        try:
            return await runner.run(duration=0.3)
        finally:
            await tools.aclose()

    memory = asyncio.run(_go())
    assert memory.loops >= 1
    heartbeat = runner.heartbeat.read()
    assert heartbeat is not None
    assert heartbeat["status"] == "offline"
    assert heartbeat["agentId"] == "agent-test"
    assert load_memory(runner.memory_path).loops == memory.loops
    assert {"agent_started", "agent_stopped"} <= logger.event_types()


def test_queued_question_gets_targeted_pass(tmp_path, market) -> None:
    market.add_post("q5", answersCloseAt="2020-01-01T00:00:00+00:00")
    runner, tools, _, logger = _runner(tmp_path, market, ScriptedLLM())

    async def _go():
        try:
            runner.state.enqueue_question("q5")
            return await runner.run_targeted("q5")
        finally:
            await tools.aclose()

    outcome = asyncio.run(_go())
    assert outcome is not None
    assert outcome.reason == "closed-window"
    assert runner.state.memory.status_of("q5") == QuestionStatus.CLOSED_WINDOW


def test_discovery_joins_only_known_candidates(tmp_path, market) -> None:
    market.candidates = [{"id": "rust", "name": "Rust"}, {"id": "python", "name": "Python"}]
    executor = make_executor(tmp_path, market)
    llm = ScriptedLLM(json.dumps({"joinWikiIds": ["rust", "bogus"], "reason": "matches specialties"}))
    logger = EventLogger(logs_dir=tmp_path / "logs", file_name="agent.jsonl")
    state = LoopState(memory=AgentMemory())

    async def _go():
        tools = gateway_tool_client(executor)
        pulse = DiscoveryPulse(DiscoveryConfig(interval_seconds=5), llm=llm, tools=tools, state=state, logger=logger)
        try:
            first = await pulse.run("loop")
            second = await pulse.run("wiki-created")
        finally:
            await tools.aclose()
        return pulse, first, second

    pulse, first, second = asyncio.run(_go())
    assert pulse.interval_seconds == 30.0
    assert first == ["rust"]
    assert second == []
    assert market.joined == ["rust"]
    assert executor.state.lookup("discover-join-rust") is not None
    assert len(llm.calls) == 1


def test_heartbeat_writer_round_trip(tmp_path) -> None:
    writer = HeartbeatWriter(tmp_path / "hb" / "agent.json", agent_id="a1", model="m", mcp_url="http://gw/mcp")
    assert writer.read() is None
    payload = writer.write("degraded", loops=3, state="loop-error")
    assert writer.read() == payload
    assert payload["status"] == "degraded"
    assert payload["state"] == "loop-error"


def test_non_finite_bid_is_treated_as_invalid_plan(tmp_path, market) -> None:
    market.add_post("q1")
    plan = '{"action": "answer", "confidence": 0.9, "expectedValue": 0.4, "bidAmountCents": Infinity}'
    runner, tools, executor, logger = _runner(tmp_path, market, ScriptedLLM(plan))

    async def _go():
        try:
            return await runner.run_cycle()
        finally:
            await tools.aclose()

    report = asyncio.run(_go())
    assert report.status == "ok"
    assert report.processed == 1
    assert runner.state.memory.status_of("q1") == QuestionStatus.ABSTAINED
    assert "planner_output_invalid" in logger.event_types()
    assert market.count("POST", "/api/posts/q1/answers") == 0
    assert executor.state.ledger.daily_spend_cents == 0


def test_unexpected_question_error_is_recorded_and_loop_keeps_running(tmp_path, market) -> None:
    market.add_post("q1")
    llm = ScriptedLLM(RuntimeError("provider exploded"))
    runner, tools, _, logger = _runner(tmp_path, market, llm)

    async def _go():
        try:
            return await runner.run(duration=0.6)
        finally:
            await tools.aclose()

    memory = asyncio.run(_go())
    assert memory.loops >= 2
    entry = memory.question_ledger["q1"]
    assert entry.status == QuestionStatus.FAILED
    assert entry.failure_count == 1
    assert entry.last_decision_at
    assert len(llm.calls) == 1
    assert "question_loop_error" in logger.event_types()


def test_cycle_crash_is_audited_and_loop_continues(tmp_path, market) -> None:
    runner, tools, _, logger = _runner(tmp_path, market, ScriptedLLM())

    async def broken_observe():
        raise ValueError("bad listing payload")

    runner.planner.observe = broken_observe

    async def _go():
        try:
            return await runner.run(duration=0.6)
        finally:
            await tools.aclose()

    memory = asyncio.run(_go())
    assert memory.loops >= 2
    errors = [event for event in logger.read_recent(500) if event["event_type"] == "loop_error"]
    assert len(errors) >= 2
    assert errors[0]["error_type"] == "ValueError"
    assert runner.heartbeat.read()["status"] == "offline"


def test_transient_tool_failure_marks_question_failed_until_revisit(tmp_path, market) -> None:
    market.add_post("q1")
    market.unavailable_posts.add("q1")
    runner, tools, _, logger = _runner(tmp_path, market, ScriptedLLM())

    async def _go():
        try:
            await runner.run_cycle()
            fetched = market.count("GET", "/api/posts/q1")
            await runner.run_cycle()
            return fetched
        finally:
            await tools.aclose()

    fetched = asyncio.run(_go())
    entry = runner.state.memory.question_ledger["q1"]
    assert entry.status == QuestionStatus.FAILED
    assert entry.failure_count == 1
    assert entry.last_decision_at
    assert fetched >= 1
    assert market.count("GET", "/api/posts/q1") == fetched
    assert "question_loop_error" in logger.event_types()
