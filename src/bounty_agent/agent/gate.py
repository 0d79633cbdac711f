"""Deterministic act/abstain gate over a plan and its critique."""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Any

from ..config import DecisionConfig, PersonaConfig
from .decisions import Critique, Plan, Vote, clamp


def crowding_penalty(answer_count: int, per_answer: float, cap: float) -> float:
    return min(cap, per_answer * max(0, answer_count))


@dataclass
class GateResult:
    should_answer: bool
    action: str
    confidence: float
    expected_value: float
    bid_amount_cents: int
    vote: Vote
    reason: str
    issues: list[str] = field(default_factory=list)
    borderline: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "shouldAnswer": self.should_answer,
            "action": self.action,
            "confidence": round(self.confidence, 4),
            "expectedValue": round(self.expected_value, 4),
            "bidAmountCents": self.bid_amount_cents,
            "vote": self.vote,
            "reason": self.reason,
            "issues": self.issues,
            "borderline": self.borderline,
        }


def gate_plan(
    plan: Plan,
    critique: Critique,
    *,
    topic_prior: float,
    domain_alignment: float,
    remaining_budget_cents: int,
    required_bid_cents: int | None,
    answer_count: int,
    persona: PersonaConfig,
    decision: DecisionConfig,
    rng: random.Random,
    paused: bool = False,
) -> GateResult:
    """Combine plan, critique, priors and persona into a final decision.

    Two draws are always taken from `rng` in the same order (borderline commit,
    then answer propensity), so a seeded generator makes the result fully
    reproducible regardless of which branch is taken.
    """
    borderline_draw = rng.random()
    propensity_draw = rng.random()

    persona_bias = persona.confidence_bias + persona.alignment_weight * (domain_alignment - 0.5)
    confidence = clamp(
        plan.confidence + topic_prior * decision.topic_prior_weight + critique.confidence_adjustment + persona_bias,
        0.0,
        1.0,
    )
    penalty = crowding_penalty(answer_count, decision.crowding_penalty_per_answer, decision.crowding_penalty_cap)
    expected_value = clamp(plan.expected_value - penalty + persona.ev_bias, -1.0, 1.0)

    low_budget = remaining_budget_cents <= max(20, decision.default_bid_cents)
    min_ev = decision.min_expected_value + (decision.low_budget_ev_bump if low_budget else 0.0)
    required_bid = decision.default_bid_cents if required_bid_cents is None else max(0, int(required_bid_cents))
    vote: Vote = critique.adjusted_vote if critique.adjusted_vote != "none" else plan.vote

    def _decline(reason: str, borderline: bool = False) -> GateResult:
        return GateResult(
            should_answer=False,
            action="abstain",
            confidence=confidence,
            expected_value=expected_value,
            bid_amount_cents=0,
            vote="none",
            reason=reason,
            issues=list(critique.issues),
            borderline=borderline,
        )

    if paused:
        return _decline("gated:budget-paused")
    if required_bid > decision.max_bid_cents:
        return _decline(f"gated:required-bid-exceeds-max ({required_bid} > {decision.max_bid_cents})")
    if required_bid > remaining_budget_cents:
        return _decline(f"gated:insufficient-budget ({required_bid} > {remaining_budget_cents})")
    if not critique.approve:
        return _decline(f"gated:critic-rejected:{plan.reason}")
    if critique.adjusted_action != "answer":
        return _decline(f"gated:{plan.reason}")

    margin = min(confidence - decision.min_confidence, expected_value - min_ev)
    borderline = False
    if margin < -decision.borderline_margin:
        return _decline(f"gated:below-threshold (confidence={confidence:.2f}, ev={expected_value:.2f}, min_ev={min_ev:.2f})")
    if margin < decision.borderline_margin:
        borderline = True
        if borderline_draw >= persona.commit_rate():
            return _decline("gated:borderline-declined", borderline=True)

    if propensity_draw >= persona.answer_propensity:
        return _decline("gated:propensity-abstain", borderline=borderline)

    return GateResult(
        should_answer=True,
        action="answer",
        confidence=confidence,
        expected_value=expected_value,
        bid_amount_cents=required_bid,
        vote=vote,
        reason=plan.reason,
        issues=list(critique.issues),
        borderline=borderline,
    )
