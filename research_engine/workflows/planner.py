"""Research plan construction and normalization.

Handles:
- Deterministic fallback plan (used when planning output is unusable)
- Normalization of planner output: fills missing stages, orders by
  canonical position, clamps budgets
- Parsing planning-stage text into a ResearchPlan
"""

import logging
from typing import Any, Optional

from pydantic import ValidationError

from research_engine.executor.errors import PlanParseError
from research_engine.executor.structured_output import extract_json_object
from research_engine.workflows.schemas import (
    STEP_SEQUENCE,
    PlanStep,
    ResearchPlan,
    SourceType,
    StepBudget,
    StepType,
    TotalBudget,
)

logger = logging.getLogger(__name__)

DEFAULT_SOURCE_TYPES = [SourceType.ACADEMIC_JOURNAL, SourceType.GOVERNMENT, SourceType.NEWS]


def _clamp(value: Any, fallback: int, low: int, high: int) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError):
        return fallback
    return max(low, min(high, n))


def _spaced(step_type: StepType) -> str:
    return step_type.value.replace("_", " ")


def build_fallback_plan(
    topic: str,
    source_target: int = 10,
    max_tokens_per_step: int = 5000,
) -> ResearchPlan:
    """Deterministic default plan: one step per canonical stage."""
    steps = []
    for index, step_type in enumerate(STEP_SEQUENCE):
        spaced = _spaced(step_type)
        steps.append(PlanStep(
            step_index=index,
            step_type=step_type,
            title=spaced,
            objective=f"Execute {spaced.lower()}",
            target_source_types=list(DEFAULT_SOURCE_TYPES),
            search_query_pack=[topic, f"{topic} {spaced.lower()}"],
            budgets=StepBudget(
                max_sources=_clamp(source_target, 10, 1, 30),
                max_tokens=_clamp(max_tokens_per_step, 5000, 300, 8000),
                max_minutes=15,
            ),
            deliverables=["Structured notes with citations"],
            done_definition=["Output is evidence-backed and cites sources"],
        ))

    return ResearchPlan(
        version="1.0",
        refined_topic=topic,
        assumptions=["Default to global scope unless user constraints specify otherwise."],
        total_budget=TotalBudget(
            max_steps=len(STEP_SEQUENCE),
            max_sources=max(1, _clamp(source_target, 10, 1, 30) * len(STEP_SEQUENCE)),
            max_tokens=max(300, _clamp(max_tokens_per_step, 5000, 300, 8000) * len(STEP_SEQUENCE)),
        ),
        steps=steps,
        deliverables=["Source-backed provider report", "Explicit uncertainty and gap notes"],
    )


def _string_list(values: Any) -> list[str]:
    if not isinstance(values, list):
        return []
    return [str(v) for v in values if str(v).strip()]


def _coerce_step(raw: dict, fallback: PlanStep) -> PlanStep:
    """Merge one raw planner step over its fallback, dropping bad fields."""
    budgets_raw = raw.get("budgets") if isinstance(raw.get("budgets"), dict) else {}
    budgets = StepBudget(
        max_sources=_clamp(budgets_raw.get("max_sources"), fallback.budgets.max_sources, 1, 30),
        max_tokens=_clamp(budgets_raw.get("max_tokens"), fallback.budgets.max_tokens, 300, 8000),
        max_minutes=_clamp(budgets_raw.get("max_minutes"), fallback.budgets.max_minutes, 1, 120),
    )

    source_types = []
    raw_source_types = raw.get("target_source_types")
    for value in raw_source_types if isinstance(raw_source_types, list) else []:
        try:
            source_types.append(SourceType(value))
        except (TypeError, ValueError):
            continue

    def _strings(key: str, default: list[str]) -> list[str]:
        values = raw.get(key)
        if not isinstance(values, list):
            return list(default)
        cleaned = [str(v).strip() for v in values if str(v).strip()]
        return cleaned or list(default)

    return PlanStep(
        step_index=fallback.step_index,
        step_type=fallback.step_type,
        title=str(raw.get("title") or fallback.title),
        objective=str(raw.get("objective") or fallback.objective),
        target_source_types=source_types or list(fallback.target_source_types),
        search_query_pack=_strings("search_query_pack", fallback.search_query_pack),
        budgets=budgets,
        deliverables=_strings("deliverables", fallback.deliverables),
        done_definition=_strings("done_definition", fallback.done_definition),
    )


def normalize_plan(
    raw: Optional[dict],
    topic: str,
    source_target: int = 10,
    max_tokens_per_step: int = 5000,
) -> ResearchPlan:
    """Normalize arbitrary planner output into a complete ResearchPlan.

    Every canonical stage appears exactly once, ordered by canonical position
    and re-indexed. Stages the planner omitted come from the fallback plan.
    """
    fallback = build_fallback_plan(topic, source_target, max_tokens_per_step)
    if not isinstance(raw, dict):
        return fallback

    raw_steps = raw.get("steps")
    by_type: dict[StepType, dict] = {}
    for item in raw_steps if isinstance(raw_steps, list) else []:
        if not isinstance(item, dict):
            continue
        try:
            step_type = StepType(item.get("step_type"))
        except (TypeError, ValueError):
            continue
        by_type.setdefault(step_type, item)

    steps = []
    for fallback_step in fallback.steps:
        raw_step = by_type.get(fallback_step.step_type)
        steps.append(_coerce_step(raw_step, fallback_step) if raw_step else fallback_step)

    total_raw = raw.get("total_budget") if isinstance(raw.get("total_budget"), dict) else {}
    assumptions = _string_list(raw.get("assumptions"))
    deliverables = _string_list(raw.get("deliverables"))

    return ResearchPlan(
        version=str(raw.get("version") or "1.0"),
        refined_topic=str(raw.get("refined_topic") or topic),
        assumptions=assumptions or fallback.assumptions,
        total_budget=TotalBudget(
            max_steps=len(steps),
            max_sources=_clamp(total_raw.get("max_sources"), fallback.total_budget.max_sources, 1, 1000),
            max_tokens=_clamp(total_raw.get("max_tokens"), fallback.total_budget.max_tokens, 300, 1_000_000),
        ),
        steps=steps,
        deliverables=deliverables or fallback.deliverables,
    )


def parse_plan(text: str, topic: str, source_target: int = 10, max_tokens_per_step: int = 5000) -> ResearchPlan:
    """Parse planning-stage text into a plan.

    Raises:
        PlanParseError: If no JSON object can be recovered from the text
    """
    raw = extract_json_object(text)
    if raw is None:
        raise PlanParseError("Planning output contained no JSON object")
    try:
        return normalize_plan(raw, topic, source_target, max_tokens_per_step)
    except (ValidationError, TypeError, ValueError) as e:
        raise PlanParseError(f"Planning output failed validation: {e}") from e


def plan_from_output(
    text: str,
    topic: str,
    updated_plan: Optional[dict] = None,
    source_target: int = 10,
    max_tokens_per_step: int = 5000,
) -> ResearchPlan:
    """Resolve the plan for a completed planning stage. Never raises.

    An executor-supplied plan wins over text parsing. Unusable output falls
    back to the deterministic default plan.
    """
    if updated_plan:
        try:
            return normalize_plan(updated_plan, topic, source_target, max_tokens_per_step)
        except (ValidationError, TypeError, ValueError) as e:
            logger.warning(f"Executor plan unusable, parsing output text instead: {e}")
    try:
        return parse_plan(text, topic, source_target, max_tokens_per_step)
    except PlanParseError as e:
        logger.warning(f"Plan parse failed, using fallback plan: {e}")
        return build_fallback_plan(topic, source_target, max_tokens_per_step)
