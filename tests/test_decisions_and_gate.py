from __future__ import annotations

import random

from bounty_agent.agent.decisions import (
    Critique,
    Plan,
    extract_json_object,
    parse_critique,
    parse_discovery,
    parse_evidence_summary,
    parse_plan,
    parse_reaction,
)
from bounty_agent.agent.gate import crowding_penalty, gate_plan
from bounty_agent.agent.topics import GENERAL_TOPIC, domain_alignment, infer_topics
from bounty_agent.config import DecisionConfig, PersonaConfig


def test_extract_json_object_handles_fences_and_prose() -> None:
    assert extract_json_object('```json\n{"a": 1}\n```') == {"a": 1}
    assert extract_json_object('Sure! Here it is: {"a": 2} hope that helps') == {"a": 2}
    assert extract_json_object("[1, 2]") is None
    assert extract_json_object("nothing here") is None


def test_parse_plan_validates_and_clamps() -> None:
    plan = parse_plan(
        '{"action": "ANSWER", "confidence": 1.4, "expectedValue": "0.3", "bidAmountCents": 25.9,'
        ' "vote": "Up", "joinWikiIds": ["Python"], "researchQueries": ["a", "b", "c"], "reason": "fits"}'
    )
    assert isinstance(plan, Plan)
    assert plan.action == "answer"
    assert plan.confidence == 1.0
    assert plan.expected_value == 0.3
    assert plan.bid_amount_cents == 25
    assert plan.vote == "up"
    assert plan.join_wiki_ids == ["python"]
    assert plan.research_queries == ["a", "b"]

    assert isinstance(parse_plan("not json"), str)
    assert isinstance(parse_plan('{"action": "maybe", "confidence": 0.5, "expectedValue": 0.1}'), str)
    assert isinstance(parse_plan('{"action": "answer", "confidence": true, "expectedValue": 0.1}'), str)


def test_parse_critique_requires_boolean_approve() -> None:
    critique = parse_critique('{"approve": true, "adjustedAction": "answer", "confidenceAdjustment": 0.9}')
    assert isinstance(critique, Critique)
    assert critique.confidence_adjustment == 0.5
    assert isinstance(parse_critique('{"approve": "yes"}'), str)


def test_non_finite_numbers_are_rejected() -> None:
    base = '{"action": "answer", "confidence": 0.8, "expectedValue": 0.2, "bidAmountCents": %s}'
    for raw in ("Infinity", "-Infinity", "NaN", "1e400", '"inf"'):
        assert isinstance(parse_plan(base % raw), str)
    assert isinstance(parse_plan('{"action": "answer", "confidence": NaN, "expectedValue": 0.2}'), str)
    assert isinstance(parse_critique('{"approve": true, "adjustedBidAmountCents": Infinity}'), str)

    critique = parse_critique('{"approve": true, "confidenceAdjustment": NaN}')
    assert isinstance(critique, Critique)
    assert critique.confidence_adjustment == 0.0
    plan = parse_plan('{"action": "abstain", "confidence": 0.4, "expectedValue": 0.0}')
    assert isinstance(plan, Plan)
    assert plan.bid_amount_cents == 0


def test_parse_reaction_and_discovery() -> None:
    reaction = parse_reaction('{"reaction": "like", "confidence": 0.7, "reason": "useful"}')
    assert not isinstance(reaction, str)
    assert reaction.direction == "up"
    assert isinstance(parse_reaction('{"reaction": "love"}'), str)

    decision = parse_discovery(
        '{"joinWikiIds": ["rust", "python", "made-up", "go"], "reason": "fit"}',
        candidate_ids=["python", "rust", "go"],
        joined=["python"],
        max_joins=2,
    )
    assert not isinstance(decision, str)
    assert decision.join_wiki_ids == ["rust", "go"]


def test_parse_evidence_summary_drops_unknown_sources() -> None:
    summary = parse_evidence_summary(
        '{"summary": "Use asyncio.gather.", "claims": ['
        '{"text": "gather runs concurrently", "sourceUrl": "https://docs.python.org/a"},'
        '{"text": "invented", "sourceUrl": "https://elsewhere.example/b"}]}',
        allowed_urls={"https://docs.python.org/a"},
    )
    assert not isinstance(summary, str)
    assert [claim.source_url for claim in summary.claims] == ["https://docs.python.org/a"]
    assert isinstance(parse_evidence_summary('{"summary": ""}'), str)


def test_topics_and_alignment() -> None:
    topics = infer_topics({"title": "Python API timeout", "content": "physics lab data"})
    assert topics == ["science", "programming"]
    assert infer_topics({"title": "hello", "content": ""}) == [GENERAL_TOPIC]
    assert domain_alignment(topics, ["Programming"]) == 0.5
    assert domain_alignment(topics, []) == 0.5


def _plan(confidence: float = 0.8, expected_value: float = 0.3) -> Plan:
    return Plan(action="answer", confidence=confidence, expected_value=expected_value, reason="fits")


def _critique(approve: bool = True, action: str = "answer") -> Critique:
    return Critique(approve=approve, adjusted_action=action)  # type: ignore[arg-type]


def _gate(plan: Plan, critique: Critique, *, persona: PersonaConfig | None = None, seed: int = 3, **kwargs):
    params = {
        "topic_prior": 0.0,
        "domain_alignment": 1.0,
        "remaining_budget_cents": 500,
        "required_bid_cents": 20,
        "answer_count": 0,
        "paused": False,
    }
    params.update(kwargs)
    return gate_plan(
        plan,
        critique,
        persona=persona or PersonaConfig(answer_propensity=1.0),
        decision=DecisionConfig(),
        rng=random.Random(seed),
        **params,
    )


def test_gate_answers_confident_plan_with_required_bid() -> None:
    result = _gate(_plan(), _critique(), required_bid_cents=35)
    assert result.should_answer is True
    assert result.bid_amount_cents == 35
    assert result.borderline is False


def test_gate_is_deterministic_for_a_seed() -> None:
    persona = PersonaConfig(answer_propensity=0.5)
    first = [_gate(_plan(), _critique(), persona=persona, seed=seed).should_answer for seed in range(20)]
    second = [_gate(_plan(), _critique(), persona=persona, seed=seed).should_answer for seed in range(20)]
    assert first == second
    assert True in first and False in first


def test_gate_hard_rejections() -> None:
    assert _gate(_plan(), _critique(), paused=True).reason == "gated:budget-paused"
    assert _gate(_plan(), _critique(), required_bid_cents=100).reason.startswith("gated:required-bid-exceeds-max")
    assert _gate(_plan(), _critique(), remaining_budget_cents=10).reason.startswith("gated:insufficient-budget")
    assert _gate(_plan(), _critique(approve=False)).reason.startswith("gated:critic-rejected")
    assert _gate(_plan(), _critique(action="abstain")).should_answer is False
    low = _gate(_plan(confidence=0.3), _critique())
    assert low.should_answer is False
    assert low.reason.startswith("gated:below-threshold")
    assert low.bid_amount_cents == 0


def test_gate_borderline_follows_commit_rate() -> None:
    never = PersonaConfig(answer_propensity=1.0, borderline_commit_rate=0.0)
    always = PersonaConfig(answer_propensity=1.0, borderline_commit_rate=1.0)

    declined = _gate(_plan(confidence=0.57), _critique(), persona=never)
    committed = _gate(_plan(confidence=0.57), _critique(), persona=always)
    assert declined.borderline is True
    assert declined.reason == "gated:borderline-declined"
    assert committed.borderline is True
    assert committed.should_answer is True


def test_crowding_penalty_is_capped() -> None:
    assert crowding_penalty(2, 0.04, 0.3) == 0.08
    assert crowding_penalty(50, 0.04, 0.3) == 0.3
    crowded = _gate(_plan(expected_value=0.3), _critique(), answer_count=50)
    assert crowded.should_answer is False
