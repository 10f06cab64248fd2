"""Canonical step sequencing.

A plan may list stages in any order or leave some out. The executable
sequence is derived here and is always the full canonical order: a plan
that declares exactly the canonical set is accepted, anything else falls
back to STEP_SEQUENCE. Both paths yield the same tuple, so the derivation
is identical on every tick.
"""

import logging
from typing import Optional

from research_engine.workflows.schemas import STEP_SEQUENCE, ResearchPlan, StepType

logger = logging.getLogger(__name__)

# Stages whose prompt asks for a JSON object
JSON_STEPS = frozenset({
    StepType.DEVELOP_RESEARCH_PLAN,
    StepType.SHORTLIST_RESULTS,
    StepType.EXTRACT_EVIDENCE,
    StepType.GAP_CHECK,
})

PLANNING_STEP = StepType.DEVELOP_RESEARCH_PLAN
GAP_CHECK_STEP = StepType.GAP_CHECK
SYNTHESIS_STEP = StepType.SECTION_SYNTHESIS

# Index execution jumps back to when the gap check loops
GAP_LOOP_RESTART_INDEX = 1


def canonical_step_sequence(plan: Optional[ResearchPlan]) -> tuple[StepType, ...]:
    """Derive the executable step list for a run."""
    if plan is None or not plan.steps:
        return STEP_SEQUENCE

    declared = {step.step_type for step in plan.steps}
    accepted = tuple(t for t in STEP_SEQUENCE if t in declared)
    if accepted != STEP_SEQUENCE:
        missing = [t.value for t in STEP_SEQUENCE if t not in declared]
        logger.debug(f"Plan omits {missing}; using canonical sequence")
        return STEP_SEQUENCE
    return accepted


def can_transition_step(from_type: StepType, to_type: StepType) -> bool:
    """Whether `to_type` may directly follow `from_type`.

    Forward edges follow STEP_SEQUENCE. The only backward edge is the gap
    loop from GAP_CHECK to the stage at GAP_LOOP_RESTART_INDEX.
    """
    try:
        src = STEP_SEQUENCE.index(from_type)
        dst = STEP_SEQUENCE.index(to_type)
    except ValueError:
        return False
    if dst == src + 1:
        return True
    return from_type == GAP_CHECK_STEP and dst == GAP_LOOP_RESTART_INDEX


def expects_json(step_type: StepType) -> bool:
    return step_type in JSON_STEPS
