import json

import pytest

from research_engine.executor.errors import PlanParseError
from research_engine.workflows.planner import (
    build_fallback_plan,
    normalize_plan,
    parse_plan,
    plan_from_output,
)
from research_engine.workflows.schemas import STEP_SEQUENCE, PlanStep, ResearchPlan, SourceType, StepType
from research_engine.workflows.sequence import can_transition_step, canonical_step_sequence, expects_json

TOPIC = "Municipal broadband outcomes"


def test_fallback_plan_covers_every_stage_in_order() -> None:
    plan = build_fallback_plan(TOPIC, source_target=50, max_tokens_per_step=100)

    assert [s.step_type for s in plan.steps] == list(STEP_SEQUENCE)
    assert [s.step_index for s in plan.steps] == list(range(len(STEP_SEQUENCE)))
    assert plan.refined_topic == TOPIC
    assert plan.steps[0].search_query_pack[0] == TOPIC
    assert plan.steps[0].budgets.max_sources == 30
    assert plan.steps[0].budgets.max_tokens == 300
    assert plan.total_budget.max_steps == len(STEP_SEQUENCE)


def test_normalize_reorders_and_fills_missing_stages() -> None:
    raw = {
        "refined_topic": "Broadband in rural towns",
        "steps": [
            {"step_index": 0, "step_type": "SECTION_SYNTHESIS", "title": "Write it up"},
            {"step_index": 1, "step_type": "DEEP_READ", "objective": "Read the audits",
             "target_source_types": ["government", "tabloid"],
             "budgets": {"max_sources": 99, "max_tokens": "2000", "max_minutes": 0}},
            {"step_index": 2, "step_type": "NOT_A_STAGE"},
        ],
    }

    plan = normalize_plan(raw, TOPIC)

    assert [s.step_type for s in plan.steps] == list(STEP_SEQUENCE)
    assert [s.step_index for s in plan.steps] == list(range(len(STEP_SEQUENCE)))
    deep_read = plan.step_for(StepType.DEEP_READ)
    assert deep_read.objective == "Read the audits"
    assert deep_read.target_source_types == [SourceType.GOVERNMENT]
    assert deep_read.budgets.max_sources == 30
    assert deep_read.budgets.max_tokens == 2000
    assert deep_read.budgets.max_minutes == 1
    assert plan.step_for(StepType.SECTION_SYNTHESIS).title == "Write it up"
    assert plan.step_for(StepType.GAP_CHECK).title == "GAP CHECK"
    assert plan.refined_topic == "Broadband in rural towns"


def test_parse_plan_from_fenced_output() -> None:
    text = "```json\n" + json.dumps({"refined_topic": "Fenced", "assumptions": ["US only"]}) + "\n```"

    plan = parse_plan(text, TOPIC)

    assert plan.refined_topic == "Fenced"
    assert plan.assumptions == ["US only"]
    assert len(plan.steps) == len(STEP_SEQUENCE)


def test_parse_plan_rejects_prose() -> None:
    with pytest.raises(PlanParseError):
        parse_plan("I could not produce a plan.", TOPIC)


def test_plan_from_output_falls_back_on_garbage() -> None:
    plan = plan_from_output("definitely not json", TOPIC)
    assert plan == build_fallback_plan(TOPIC)


def test_wrongly_typed_fields_fall_back_per_field() -> None:
    plan = normalize_plan(
        {
            "refined_topic": "Typed",
            "assumptions": 3,
            "deliverables": "one report",
            "steps": [{"step_type": "GAP_CHECK", "target_source_types": 7, "title": "Gaps"}],
        },
        TOPIC,
    )
    fallback = build_fallback_plan(TOPIC)

    assert plan.refined_topic == "Typed"
    assert plan.assumptions == fallback.assumptions
    assert plan.deliverables == fallback.deliverables
    gap_step = plan.step_for(StepType.GAP_CHECK)
    assert gap_step.title == "Gaps"
    assert gap_step.target_source_types == fallback.step_for(StepType.GAP_CHECK).target_source_types


def test_scalar_steps_use_fallback_steps() -> None:
    plan = parse_plan('{"refined_topic": "x", "steps": 5}', TOPIC)

    assert plan.refined_topic == "x"
    assert plan.steps == build_fallback_plan(TOPIC).steps


def test_unhashable_step_type_is_skipped() -> None:
    plan = normalize_plan({"steps": [{"step_type": ["GAP_CHECK"]}]}, TOPIC)
    assert plan.steps == build_fallback_plan(TOPIC).steps


def test_plan_from_output_prefers_executor_plan() -> None:
    plan = plan_from_output('{"refined_topic": "from text"}', TOPIC, updated_plan={"refined_topic": "from executor"})
    assert plan.refined_topic == "from executor"


def test_sequence_ignores_plan_order() -> None:
    reversed_plan = ResearchPlan(steps=[
        PlanStep(step_index=i, step_type=t) for i, t in enumerate(reversed(STEP_SEQUENCE))
    ])
    partial_plan = ResearchPlan(steps=[PlanStep(step_index=0, step_type=StepType.DEEP_READ)])

    assert canonical_step_sequence(reversed_plan) == STEP_SEQUENCE
    assert canonical_step_sequence(partial_plan) == STEP_SEQUENCE
    assert canonical_step_sequence(None) == STEP_SEQUENCE


def test_step_transitions() -> None:
    assert can_transition_step(StepType.DEVELOP_RESEARCH_PLAN, StepType.DISCOVER_SOURCES_WITH_PLAN)
    assert can_transition_step(StepType.GAP_CHECK, StepType.SECTION_SYNTHESIS)
    assert can_transition_step(StepType.GAP_CHECK, StepType.DISCOVER_SOURCES_WITH_PLAN)
    assert not can_transition_step(StepType.DEEP_READ, StepType.DISCOVER_SOURCES_WITH_PLAN)
    assert not can_transition_step(StepType.DEVELOP_RESEARCH_PLAN, StepType.DEEP_READ)
    assert not can_transition_step(StepType.SECTION_SYNTHESIS, StepType.DEVELOP_RESEARCH_PLAN)


def test_json_stages() -> None:
    assert expects_json(StepType.GAP_CHECK)
    assert expects_json(StepType.SHORTLIST_RESULTS)
    assert not expects_json(StepType.DEEP_READ)
