"""Workflow schemas for the fixed research pipeline.

The pipeline is a fixed 8-stage sequence. A ResearchPlan describes WHAT each
stage should look for (objectives, query packs, budgets); it never decides
the ORDER stages run in. Execution order always comes from STEP_SEQUENCE,
whatever order (or subset) the planner returned.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class StepType(str, Enum):
    """The eight canonical pipeline stages."""

    DEVELOP_RESEARCH_PLAN = "DEVELOP_RESEARCH_PLAN"
    DISCOVER_SOURCES_WITH_PLAN = "DISCOVER_SOURCES_WITH_PLAN"
    SHORTLIST_RESULTS = "SHORTLIST_RESULTS"
    DEEP_READ = "DEEP_READ"
    EXTRACT_EVIDENCE = "EXTRACT_EVIDENCE"
    COUNTERPOINTS = "COUNTERPOINTS"
    GAP_CHECK = "GAP_CHECK"
    SECTION_SYNTHESIS = "SECTION_SYNTHESIS"


STEP_SEQUENCE: tuple[StepType, ...] = (
    StepType.DEVELOP_RESEARCH_PLAN,
    StepType.DISCOVER_SOURCES_WITH_PLAN,
    StepType.SHORTLIST_RESULTS,
    StepType.DEEP_READ,
    StepType.EXTRACT_EVIDENCE,
    StepType.COUNTERPOINTS,
    StepType.GAP_CHECK,
    StepType.SECTION_SYNTHESIS,
)

STEP_LABELS: dict[StepType, str] = {
    StepType.DEVELOP_RESEARCH_PLAN: "Develop Research Plan",
    StepType.DISCOVER_SOURCES_WITH_PLAN: "Discover Sources",
    StepType.SHORTLIST_RESULTS: "Shortlist Results",
    StepType.DEEP_READ: "Deep Read",
    StepType.EXTRACT_EVIDENCE: "Extract Evidence",
    StepType.COUNTERPOINTS: "Counterpoints",
    StepType.GAP_CHECK: "Gap Check",
    StepType.SECTION_SYNTHESIS: "Section Synthesis",
}


class SourceType(str, Enum):
    """Source categories a plan step may target."""

    ACADEMIC_JOURNAL = "academic_journal"
    GOVERNMENT = "government"
    INDUSTRY_REPORT = "industry_report"
    NEWS = "news"
    COMPANY_FILING = "company_filing"
    DATASET = "dataset"
    REFERENCE = "reference"
    EXPERT_ANALYSIS = "expert_analysis"


class ResearchProvider(str, Enum):
    """External research providers. Each one is an independent lane."""

    OPENAI = "openai"
    GEMINI = "gemini"


class ResearchMode(str, Enum):
    NATIVE = "native"
    CUSTOM = "custom"


class ResearchDepth(str, Enum):
    LIGHT = "light"
    STANDARD = "standard"
    DEEP = "deep"


class StepBudget(BaseModel):
    """Per-step budget hints passed into prompts."""

    max_sources: int = Field(default=10, ge=1, le=30)
    max_tokens: int = Field(default=5000, ge=300, le=8000)
    max_minutes: int = Field(default=15, ge=1, le=120)


class TotalBudget(BaseModel):
    max_steps: int = Field(default=len(STEP_SEQUENCE), ge=1)
    max_sources: int = Field(default=80, ge=1)
    max_tokens: int = Field(default=40000, ge=300)


class PlanStep(BaseModel):
    """One stage as described by the planner."""

    step_index: int = Field(..., ge=0, description="0-based position the planner declared")
    step_type: StepType
    title: str = ""
    objective: str = ""
    target_source_types: list[SourceType] = Field(default_factory=list)
    search_query_pack: list[str] = Field(
        default_factory=list,
        description="Search queries the stage should run",
    )
    budgets: StepBudget = Field(default_factory=StepBudget)
    deliverables: list[str] = Field(default_factory=list)
    done_definition: list[str] = Field(
        default_factory=list,
        description="Conditions under which the stage counts as complete",
    )


class ResearchPlan(BaseModel):
    """Versioned, structured plan produced by the planning stage."""

    version: str = "1.0"
    refined_topic: str = ""
    assumptions: list[str] = Field(default_factory=list)
    total_budget: TotalBudget = Field(default_factory=TotalBudget)
    steps: list[PlanStep] = Field(default_factory=list)
    deliverables: list[str] = Field(default_factory=list)

    def step_for(self, step_type: StepType) -> Optional[PlanStep]:
        """Return the plan's description of a stage, if it has one."""
        for step in self.steps:
            if step.step_type == step_type:
                return step
        return None
