"""Configuration loading and strict validation for the bounty agent."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field


class StrictModel(BaseModel):
    """Base model that rejects unknown keys."""

    model_config = ConfigDict(extra="forbid")


RiskProfile = Literal["cautious", "balanced", "bold"]

_COMMIT_RATE_BY_RISK: dict[str, float] = {
    "cautious": 0.25,
    "balanced": 0.5,
    "bold": 0.75,
}


class PersonaConfig(StrictModel):
    name: str = "generalist"
    specialties: list[str] = Field(default_factory=list)
    risk_profile: RiskProfile = "balanced"
    confidence_bias: float = 0.0
    ev_bias: float = 0.0
    alignment_weight: float = 0.1
    borderline_commit_rate: float | None = None
    answer_propensity: float = Field(default=0.9, ge=0.0, le=1.0)
    seed: int | None = None

    def commit_rate(self) -> float:
        if self.borderline_commit_rate is not None:
            return min(1.0, max(0.0, self.borderline_commit_rate))
        return _COMMIT_RATE_BY_RISK[self.risk_profile]


class AgentIdentityConfig(StrictModel):
    id: str = "agent-local"
    persona: PersonaConfig = Field(default_factory=PersonaConfig)


class MarketplaceConfig(StrictModel):
    base_url: str = "http://localhost:3000"
    access_token: str = ""
    timeout_seconds: float = 20.0


class StackExchangeConfig(StrictModel):
    api_url: str = "https://api.stackexchange.com/2.3"
    site: str = "stackoverflow"
    key: str | None = None
    timeout_seconds: float = 10.0


class GatewayConfig(StrictModel):
    host: str = "127.0.0.1"
    port: int = 8795
    url: str = "http://127.0.0.1:8795/mcp"
    max_bid_per_action_cents: int = Field(default=200, ge=0)
    max_daily_spend_cents: int = Field(default=1000, ge=0)
    rate_limit_per_minute: int = Field(default=60, ge=1)
    tool_rate_limits: dict[str, int] = Field(default_factory=dict)
    idempotency_limit: int = Field(default=5000, ge=1)
    state_file: str = "state/gateway-state.json"
    private_key_path: str | None = None
    start_paused: bool = False
    payment_facilitator_url: str | None = None
    payment_header_name: str = "X-PAYMENT"
    stackexchange: StackExchangeConfig = Field(default_factory=StackExchangeConfig)


class LoopConfig(StrictModel):
    interval_seconds: float = 30.0
    jitter_seconds: float = 5.0
    max_questions_per_loop: int = Field(default=10, ge=1, le=50)
    max_actions_per_loop: int = Field(default=2, ge=1)
    scan_probability: float = Field(default=0.75, ge=0.0, le=1.0)
    revisit_minutes: float = 45.0
    auth_cooldown_seconds: float = 120.0
    event_queue_size: int = Field(default=32, ge=1)
    tool_timeout_seconds: float = 30.0
    max_reasons: int = 20
    max_seen_questions: int = 5000
    max_reflections: int = 1000
    topic_stats_cap: int = 500


class DecisionConfig(StrictModel):
    min_confidence: float = 0.62
    min_expected_value: float = 0.08
    low_budget_ev_bump: float = 0.05
    topic_prior_weight: float = 0.18
    borderline_margin: float = 0.05
    crowding_penalty_per_answer: float = 0.04
    crowding_penalty_cap: float = 0.3
    default_bid_cents: int = 20
    max_bid_cents: int = 80
    max_answer_chars: int = 520
    sentence_floor_chars: int = 140


class ListenerConfig(StrictModel):
    enabled: bool = True
    path: str = "/api/events/questions"
    reconnect_seconds: float = 2.5
    dedupe_cap: int = 3000
    dedupe_window_seconds: float = 900.0
    max_reactions_per_minute: int = 2
    event_body_chars: int = 280


class DiscoveryConfig(StrictModel):
    enabled: bool = True
    interval_seconds: float = 180.0
    candidate_limit: int = 12
    shortlist_size: int = 5
    max_joins: int = 2


class ResearchConfig(StrictModel):
    max_queries: int = 2
    items_per_query: int = 3
    web_enabled: bool = False
    search_url: str | None = None
    allow_hosts: list[str] = Field(default_factory=list)
    deny_hosts: list[str] = Field(default_factory=list)
    robots_ttl_seconds: float = 3600.0
    max_web_queries: int = 2
    max_fetches: int = 3
    max_response_bytes: int = 200_000
    max_text_chars: int = 6000
    allowed_content_types: list[str] = Field(
        default_factory=lambda: ["text/html", "application/xml", "text/xml", "application/json"]
    )
    fetch_timeout_seconds: float = 8.0
    max_redirects: int = Field(default=3, ge=0)
    user_agent: str = "bounty-agent-research/0.1"


class LLMConfig(StrictModel):
    model: str = "gemini/gemini-2.5-flash"
    timeout_seconds: int = 60
    num_retries: int = 1
    api_base: str | None = None
    planner_temperature: float = 0.2
    critic_temperature: float = 0.0
    answer_temperature: float = 0.4
    reaction_temperature: float = 0.08
    research_temperature: float = 0.1
    discovery_temperature: float = 0.2


class LoggingConfig(StrictModel):
    logs_dir: str = "logs"
    memory_file: str = "state/{agent_id}-memory.json"
    heartbeat_file: str = "state/{agent_id}-heartbeat.json"
    gateway_log_name: str = "{agent_id}-gateway.jsonl"
    agent_log_name: str = "{agent_id}-agent.jsonl"


class AppConfig(StrictModel):
    agent: AgentIdentityConfig = Field(default_factory=AgentIdentityConfig)
    marketplace: MarketplaceConfig = Field(default_factory=MarketplaceConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    decision: DecisionConfig = Field(default_factory=DecisionConfig)
    listener: ListenerConfig = Field(default_factory=ListenerConfig)
    discovery: DiscoveryConfig = Field(default_factory=DiscoveryConfig)
    research: ResearchConfig = Field(default_factory=ResearchConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    def agent_path(self, template: str) -> Path:
        """Expand an `{agent_id}` file template."""
        return Path(template.format(agent_id=self.agent.id))


_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "AGENT_ID": ("agent", "id"),
    "AGENT_ACCESS_TOKEN": ("marketplace", "access_token"),
    "APP_BASE_URL": ("marketplace", "base_url"),
    "AGENT_PRIVATE_KEY_PATH": ("gateway", "private_key_path"),
    "PLATFORM_MCP_URL": ("gateway", "url"),
    "AGENT_LLM_MODEL": ("llm", "model"),
}


def apply_env_overrides(config: AppConfig, environ: dict[str, str] | None = None) -> AppConfig:
    """Overlay deployment secrets and identity from the environment."""
    env = os.environ if environ is None else environ
    for name, (section, key) in _ENV_OVERRIDES.items():
        value = env.get(name, "").strip()
        if value:
            setattr(getattr(config, section), key, value)
    return config


def load_config(config_path: str | Path = "config/config.yaml") -> AppConfig:
    """Load and strictly validate YAML config."""
    path = Path(config_path)
    with path.open("r", encoding="utf-8") as f:
        raw: dict[str, Any] = yaml.safe_load(f) or {}
    return AppConfig.model_validate(raw)
