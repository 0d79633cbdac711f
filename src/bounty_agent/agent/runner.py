"""Agent orchestration: periodic loop task plus realtime listener task."""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..config import AppConfig
from ..logger import EventLogger
from ..research.providers import EvidenceProvider
from .discovery import DiscoveryPulse
from .heartbeat import HeartbeatStatus, HeartbeatWriter
from .listener import DedupeCache, EventListener
from .llm import CompletionModel, LLMAuthError, LLMError
from .memory import AgentMemory, LedgerTransitionError, QuestionStatus, utc_now
from .planner import QuestionOutcome, QuestionPlanner, WorldView
from .reactions import ReactionPolicy, ReactionWindow
from .state import LoopState
from .tool_client import ToolCallError, ToolClient


@dataclass
class CycleReport:
    status: str
    actions: int = 0
    processed: int = 0


class AgentRunner:
    """Runs the cognitive loop and the event listener until stopped."""

    def __init__(
        self,
        config: AppConfig,
        *,
        memory: AgentMemory,
        memory_path: str | Path,
        tools: ToolClient,
        llm: CompletionModel,
        logger: EventLogger,
        providers: list[EvidenceProvider] | None = None,
        rng: random.Random | None = None,
        listener: EventListener | None = None,
    ) -> None:
        self.config = config
        self.memory_path = Path(memory_path)
        self.tools = tools
        self.logger = logger
        self.state = LoopState(
            memory=memory,
            rng=rng or random.Random(config.agent.persona.seed),
            dedupe=DedupeCache(
                window_seconds=config.listener.dedupe_window_seconds,
                cap=config.listener.dedupe_cap,
            ),
            reactions=ReactionWindow(limit=config.listener.max_reactions_per_minute),
            queue_size=config.loop.event_queue_size,
        )
        self.planner = QuestionPlanner(
            config,
            tools=tools,
            llm=llm,
            state=self.state,
            logger=logger,
            providers=providers,
        )
        self.discovery = DiscoveryPulse(
            config.discovery,
            llm=llm,
            tools=tools,
            state=self.state,
            logger=logger,
            temperature=config.llm.discovery_temperature,
        )
        self.reactions = ReactionPolicy(
            llm=llm,
            tools=tools,
            window=self.state.reactions,
            logger=logger,
            temperature=config.llm.reaction_temperature,
            body_chars=config.listener.event_body_chars,
        )
        self.listener = listener
        if self.listener is None and config.listener.enabled:
            self.listener = EventListener(
                config.listener,
                base_url=config.marketplace.base_url,
                access_token=config.marketplace.access_token,
                state=self.state,
                logger=logger,
                reactions=self.reactions,
                discovery=self.discovery,
                auth_cooldown_seconds=config.loop.auth_cooldown_seconds,
            )
        self.heartbeat = HeartbeatWriter(
            config.agent_path(config.logging.heartbeat_file),
            agent_id=config.agent.id,
            model=config.llm.model,
            mcp_url=config.gateway.url,
        )
        self._stop = asyncio.Event()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def stop(self) -> None:
        self._stop.set()

    def beat(self, status: HeartbeatStatus, **extras: Any) -> None:
        try:
            self.heartbeat.write(status, loops=self.state.memory.loops, **extras)
        except OSError as exc:
            self.logger.log("heartbeat_failed", {"error": str(exc)})

    def save_memory(self) -> None:
        try:
            self.state.memory.save(self.memory_path)
        except OSError as exc:
            self.logger.log("memory_persist_failed", {"error": str(exc)})

    def _order(self, questions: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Fewest prior failures first, ties shuffled."""
        ledger = self.state.memory.question_ledger
        keyed = [
            (
                ledger[str(item.get("id"))].failure_count if str(item.get("id")) in ledger else 0,
                self.state.rng.random(),
                index,
            )
            for index, item in enumerate(questions)
        ]
        return [questions[index] for _, _, index in sorted(keyed)]

    def _record_failure(self, question_id: str, error: str) -> None:
        memory = self.state.memory
        status = memory.status_of(question_id)
        if not question_id or status == QuestionStatus.ANSWERED or memory.is_terminal(question_id):
            return
        memory.mark(question_id, QuestionStatus.FAILED, error[:160])

    async def _evaluate(self, question_id: str, world: WorldView) -> QuestionOutcome | None:
        """Run one question; audit non-auth failures. LLM auth errors propagate."""
        try:
            return await self.planner.process_question(question_id, world)
        except ToolCallError as exc:
            self.logger.log(
                "question_loop_error",
                {"question_id": question_id, "tool": exc.tool, "code": exc.code, "error": exc.message},
            )
            self._record_failure(question_id, f"{exc.tool}:{exc.message}")
        except LLMAuthError:
            raise
        except LLMError as exc:
            self.logger.log("question_loop_error", {"question_id": question_id, "error": str(exc)[:320]})
            self._record_failure(question_id, f"llm:{exc}")
        except LedgerTransitionError as exc:
            self.logger.log("question_loop_error", {"question_id": question_id, "error": str(exc)[:320]})
        except Exception as exc:
            self.logger.log(
                "question_loop_error",
                {"question_id": question_id, "error_type": type(exc).__name__, "error": str(exc)[:320]},
            )
            self._record_failure(question_id, f"{type(exc).__name__}:{exc}")
        return None

    def _enter_auth_cooldown(self, question_id: str, exc: LLMAuthError) -> None:
        self.state.block_auth(self.config.loop.auth_cooldown_seconds)
        self.logger.log(
            "llm_auth_error",
            {"question_id": question_id, "retry_in_seconds": self.state.auth_retry_in(), "error": str(exc)[:260]},
        )

    async def run_cycle(self) -> CycleReport:
        if self.state.auth_blocked():
            self.logger.log("loop_auth_cooldown", {"retry_in_seconds": round(self.state.auth_retry_in(), 1)})
            return CycleReport(status="auth-cooldown")

        try:
            await self.discovery.run("loop")
        except LLMAuthError as exc:
            self._enter_auth_cooldown("", exc)
            return CycleReport(status="auth-cooldown")
        except LLMError as exc:
            self.logger.log("discovery_pulse_failed", {"source": "loop", "error": str(exc)[:220]})

        if self.state.rng.random() > self.config.loop.scan_probability:
            self.logger.log("loop_scan_skipped", {"scan_probability": self.config.loop.scan_probability})
            return CycleReport(status="scan-skipped")

        world = await self.planner.observe()
        if world.paused:
            self.logger.log("loop_paused", {"budget": world.budget})
            return CycleReport(status="paused")
        if not world.questions:
            self.logger.log("loop_no_open_questions", {})
            return CycleReport(status="idle")

        report = CycleReport(status="ok")
        for question in self._order(world.questions):
            if report.actions >= self.config.loop.max_actions_per_loop:
                break
            question_id = str(question.get("id") or "")
            try:
                outcome = await self._evaluate(question_id, world)
            except LLMAuthError as exc:
                self._enter_auth_cooldown(question_id, exc)
                report.status = "auth-cooldown"
                break
            report.processed += 1
            if outcome is not None and outcome.acted:
                report.actions += 1
        return report

    async def run_targeted(self, question_id: str) -> QuestionOutcome | None:
        """Planning pass for a question announced by the listener."""
        if self.state.auth_blocked():
            return None
        world = await self.planner.observe()
        if world.paused:
            return None
        try:
            return await self._evaluate(question_id, world)
        except LLMAuthError as exc:
            self._enter_auth_cooldown(question_id, exc)
            return None

    async def _next_tick(self, timeout: float) -> str | None:
        """Wait for a queued question id or the tick timeout, whichever comes first."""
        try:
            return await asyncio.wait_for(self.state.questions.get(), timeout=max(0.0, timeout))
        except asyncio.TimeoutError:
            return None

    async def _loop(self) -> None:
        loop_config = self.config.loop
        while not self._stop.is_set():
            memory = self.state.memory
            memory.loops += 1
            memory.last_loop_at = utc_now().isoformat()
            self.beat("online", state="loop-start")
            try:
                report = await self.run_cycle()
            except Exception as exc:
                self.logger.log("loop_error", {"error_type": type(exc).__name__, "error": str(exc)[:320]})
                self.beat("degraded", state="loop-error", error=str(exc)[:180])
            else:
                degraded = self.state.auth_blocked()
                self.beat("degraded" if degraded else "online", state=report.status, actions=report.actions)
            self.save_memory()

            jitter = self.state.rng.random() * loop_config.jitter_seconds if loop_config.jitter_seconds > 0 else 0.0
            deadline = asyncio.get_running_loop().time() + loop_config.interval_seconds + jitter
            while not self._stop.is_set():
                remaining = deadline - asyncio.get_running_loop().time()
                if remaining <= 0:
                    break
                question_id = await self._next_tick(min(remaining, 1.0))
                if question_id is None:
                    continue
                try:
                    outcome = await self.run_targeted(question_id)
                except ToolCallError as exc:
                    self.logger.log("targeted_pass_failed", {"question_id": question_id, "error": exc.message})
                    continue
                except Exception as exc:
                    self.logger.log(
                        "targeted_pass_failed",
                        {"question_id": question_id, "error_type": type(exc).__name__, "error": str(exc)[:320]},
                    )
                    continue
                if outcome is not None:
                    self.logger.log(
                        "targeted_pass",
                        {"question_id": question_id, "outcome": outcome.outcome, "reason": outcome.reason[:180]},
                    )
                    self.save_memory()

    async def run(self, duration: float | None = None) -> AgentMemory:
        if self._running:
            return self.state.memory
        self._running = True
        self._stop.clear()
        self.beat("online", state="booting")
        self.logger.log(
            "agent_started",
            {
                "agent_id": self.config.agent.id,
                "model": self.config.llm.model,
                "mcp_url": self.config.gateway.url,
                "interval_seconds": self.config.loop.interval_seconds,
                "max_questions_per_loop": self.config.loop.max_questions_per_loop,
                "max_actions_per_loop": self.config.loop.max_actions_per_loop,
                "revisit_minutes": self.config.loop.revisit_minutes,
            },
        )

        tasks: list[asyncio.Task[None]] = [asyncio.create_task(self._loop())]
        if self.listener is not None:
            tasks.append(asyncio.create_task(self.listener.run(self._stop)))
        try:
            if duration is not None and duration > 0:
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=duration)
                except asyncio.TimeoutError:
                    pass
            else:
                await self._stop.wait()
        finally:
            self._stop.set()
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            if self.listener is not None:
                await self.listener.aclose()
            self._running = False
            self.save_memory()
            self.beat("offline", state="shutdown")
            self.logger.log("agent_stopped", {"loops": self.state.memory.loops})
        return self.state.memory
