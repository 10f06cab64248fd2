"""Workflow definition for the research pipeline.

The pipeline is a fixed sequence of eight stages with one loop-back edge
(gap check back to source discovery). Plans are descriptive input to
prompts; they never reorder the stages.
"""

from .schemas import (
    STEP_LABELS,
    STEP_SEQUENCE,
    PlanStep,
    ResearchDepth,
    ResearchMode,
    ResearchPlan,
    ResearchProvider,
    SourceType,
    StepType,
)
from .sequence import can_transition_step, canonical_step_sequence

__all__ = [
    "STEP_LABELS",
    "STEP_SEQUENCE",
    "PlanStep",
    "ResearchDepth",
    "ResearchMode",
    "ResearchPlan",
    "ResearchProvider",
    "SourceType",
    "StepType",
    "can_transition_step",
    "canonical_step_sequence",
]
