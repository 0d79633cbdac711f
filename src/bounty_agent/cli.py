"""Bounty agent command-line entrypoint."""

from __future__ import annotations

import argparse
import asyncio
import signal
from contextlib import suppress
from typing import Any

from dotenv import load_dotenv

from .agent.llm import LLMClient
from .agent.memory import AgentMemory, load_memory
from .agent.runner import AgentRunner
from .agent.tool_client import ToolClient
from .config import AppConfig, apply_env_overrides, load_config
from .gateway.executor import ToolExecutor
from .gateway.server import build_executor, create_app
from .logger import EventLogger
from .research import QAResearchProvider, WebResearchProvider


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", default="config/config.yaml", help="Path to config YAML")
    common.add_argument("--host", default=None, help="Gateway host override")
    common.add_argument("--port", type=int, default=None, help="Gateway port override")
    common.add_argument("--paused", action="store_true", help="Start the gateway with spending paused")
    common.add_argument("--seed", type=int, default=None, help="Seed for the agent's decision RNG")
    common.add_argument("--duration", type=float, default=None, help="Seconds to run the agent (default: forever)")

    parser = argparse.ArgumentParser(description="Run the bounty agent or its tool gateway")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("gateway", parents=[common], help="Serve the budget-enforcing tool gateway")
    sub.add_parser("agent", parents=[common], help="Run the cognitive loop and event listener")
    sub.add_parser("run", parents=[common], help="Run gateway and agent in one process")
    return parser.parse_args(argv)


def _load_runtime_config(args: argparse.Namespace) -> AppConfig:
    config = apply_env_overrides(load_config(args.config))
    if args.host:
        config.gateway.host = args.host
    if args.port is not None:
        if args.port <= 0:
            raise ValueError("--port must be > 0")
        config.gateway.port = args.port
        if args.command == "run":
            config.gateway.url = f"http://{config.gateway.host}:{args.port}/mcp"
    if args.paused:
        config.gateway.start_paused = True
    if args.seed is not None:
        config.agent.persona.seed = args.seed
    if args.duration is not None and args.duration <= 0:
        raise ValueError("--duration must be > 0")
    return config


def _gateway_server(config: AppConfig, executor: ToolExecutor) -> Any:
    import uvicorn

    return uvicorn.Server(
        uvicorn.Config(
            create_app(executor=executor),
            host=config.gateway.host,
            port=config.gateway.port,
            log_level="warning",
        )
    )


def _build_runner(config: AppConfig) -> tuple[AgentRunner, ToolClient, list[Any]]:
    logger = EventLogger(
        logs_dir=config.logging.logs_dir,
        file_name=config.agent_path(config.logging.agent_log_name).name,
    )
    loop = config.loop
    memory_path = config.agent_path(config.logging.memory_file)
    memory: AgentMemory = load_memory(
        memory_path,
        max_seen=loop.max_seen_questions,
        max_reflections=loop.max_reflections,
        max_reasons=loop.max_reasons,
        topic_stats_cap=loop.topic_stats_cap,
    )
    tools = ToolClient(config.gateway.url, timeout=loop.tool_timeout_seconds, memory=memory, logger=logger)
    llm = LLMClient(config.llm)
    providers: list[Any] = [QAResearchProvider(tools, items_per_query=config.research.items_per_query)]
    if config.research.web_enabled:
        providers.append(WebResearchProvider(config.research, llm, temperature=config.llm.research_temperature))
    runner = AgentRunner(
        config,
        memory=memory,
        memory_path=memory_path,
        tools=tools,
        llm=llm,
        logger=logger,
        providers=providers,
    )
    return runner, tools, providers


def _install_stop_handler(runner: AgentRunner) -> None:
    loop = asyncio.get_running_loop()
    with suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGTERM, runner.stop)


async def _close_all(tools: ToolClient, providers: list[Any]) -> None:
    for provider in providers:
        if isinstance(provider, WebResearchProvider):
            await provider.aclose()
    await tools.aclose()


async def _serve_gateway(config: AppConfig) -> None:
    logger = EventLogger(
        logs_dir=config.logging.logs_dir,
        file_name=config.agent_path(config.logging.gateway_log_name).name,
    )
    executor = build_executor(config, logger)
    logger.log("gateway_started", {"agent_id": config.agent.id, "host": config.gateway.host, "port": config.gateway.port})
    try:
        await _gateway_server(config, executor).serve()
    finally:
        await executor.aclose()
        logger.log("gateway_stopped", {"agent_id": config.agent.id})


async def _run_agent(config: AppConfig, duration: float | None) -> AgentMemory:
    runner, tools, providers = _build_runner(config)
    _install_stop_handler(runner)
    try:
        return await runner.run(duration)
    finally:
        await _close_all(tools, providers)


async def _run_both(config: AppConfig, duration: float | None) -> AgentMemory:
    gateway_logger = EventLogger(
        logs_dir=config.logging.logs_dir,
        file_name=config.agent_path(config.logging.gateway_log_name).name,
    )
    executor = build_executor(config, gateway_logger)
    server = _gateway_server(config, executor)
    runner, tools, providers = _build_runner(config)
    _install_stop_handler(runner)

    server_task = asyncio.create_task(server.serve())
    try:
        while not server.started and not server_task.done():
            await asyncio.sleep(0.05)
        return await runner.run(duration)
    finally:
        server.should_exit = True
        await server_task
        await _close_all(tools, providers)
        await executor.aclose()


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = _parse_args(argv)
    config = _load_runtime_config(args)

    if args.command == "gateway":
        print(f"gateway: {config.agent.id} on http://{config.gateway.host}:{config.gateway.port}/mcp")
        asyncio.run(_serve_gateway(config))
        return 0

    if args.command == "agent":
        memory = asyncio.run(_run_agent(config, args.duration))
    else:
        memory = asyncio.run(_run_both(config, args.duration))

    print("=== bounty agent stopped ===")
    print(f"agent_id: {config.agent.id}")
    print(f"loops: {memory.loops}")
    print(f"questions_tracked: {len(memory.question_ledger)}")
    print(f"reflections: {len(memory.reflections)}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
