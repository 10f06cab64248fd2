"""Executor-side schemas for run lifecycle, steps, and artifacts.

These are distinct from the workflow schemas (which describe plans).
Executor schemas describe what happens during and after execution.

Run and step states are enums with explicit transition tables. Every state
change goes through `RunState.ensure_transition` / `StepStatus.ensure_transition`
so an illegal change raises instead of being written.
"""

from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field

from research_engine.executor.errors import InvalidTransitionError
from research_engine.workflows.schemas import (
    ResearchDepth,
    ResearchMode,
    ResearchPlan,
    ResearchProvider,
)


class RunState(str, Enum):
    """Run lifecycle states."""
    NEW = "NEW"
    PLANNED = "PLANNED"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (RunState.DONE, RunState.FAILED)

    def can_transition(self, target: "RunState") -> bool:
        return target in RUN_TRANSITIONS[self]

    def ensure_transition(self, target: "RunState") -> "RunState":
        if not self.can_transition(target):
            raise InvalidTransitionError(f"Run state {self.value} -> {target.value} is not allowed")
        return target


class StepStatus(str, Enum):
    """Step execution states."""
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"

    def can_transition(self, target: "StepStatus") -> bool:
        return target in STEP_TRANSITIONS[self]

    def ensure_transition(self, target: "StepStatus") -> "StepStatus":
        if not self.can_transition(target):
            raise InvalidTransitionError(f"Step status {self.value} -> {target.value} is not allowed")
        return target


# IN_PROGRESS -> IN_PROGRESS is the only self-loop
RUN_TRANSITIONS: dict[RunState, frozenset[RunState]] = {
    RunState.NEW: frozenset({RunState.PLANNED, RunState.IN_PROGRESS, RunState.FAILED}),
    RunState.PLANNED: frozenset({RunState.IN_PROGRESS, RunState.FAILED}),
    RunState.IN_PROGRESS: frozenset({RunState.IN_PROGRESS, RunState.DONE, RunState.FAILED}),
    RunState.DONE: frozenset(),
    RunState.FAILED: frozenset(),
}

# running -> running covers re-execution after an interrupted tick;
# done -> queued is the gap-loop reset
STEP_TRANSITIONS: dict[StepStatus, frozenset[StepStatus]] = {
    StepStatus.QUEUED: frozenset({StepStatus.RUNNING}),
    StepStatus.RUNNING: frozenset({StepStatus.RUNNING, StepStatus.DONE, StepStatus.QUEUED, StepStatus.FAILED}),
    StepStatus.DONE: frozenset({StepStatus.QUEUED}),
    StepStatus.FAILED: frozenset(),
}


class RunProgress(BaseModel):
    """Progress snapshot for polling clients."""

    step_id: Optional[str] = Field(default=None, description="Step type currently targeted")
    step_index: int = 0
    total_steps: int = 8
    step_label: str = ""
    gap_loops: int = 0


class Citation(BaseModel):
    """A normalized source reference. citation_id depends only on the URL."""

    citation_id: str
    url: str
    title: Optional[str] = None
    publisher: Optional[str] = None
    reliability_tags: list[str] = Field(default_factory=list)
    accessed_at: Optional[str] = None
    provider_metadata: dict[str, Any] = Field(default_factory=dict)


class Evidence(BaseModel):
    """A claim extracted from step output. evidence_id depends only on the claim."""

    evidence_id: str
    claim: str
    supporting_snippet: str = ""
    source_citation_ids: list[str] = Field(default_factory=list)
    confidence: Literal["low", "med", "high"] = "med"
    notes: Optional[str] = None


class NormalizedReference(BaseModel):
    n: int
    url: str
    title: Optional[str] = None


# --- Provider-native citation payloads (tagged by provider) ---


class OpenAINativePayload(BaseModel):
    """Position-tagged url_citation annotations plus the raw source list."""

    provider: Literal["openai"] = "openai"
    annotations: list[dict[str, Any]] = Field(default_factory=list)
    sources: list[dict[str, Any]] = Field(default_factory=list)


class GeminiNativePayload(BaseModel):
    """Grounding chunks and supports from Google Search grounding."""

    provider: Literal["gemini"] = "gemini"
    grounding_metadata: dict[str, Any] = Field(default_factory=dict)


ProviderNativePayload = Annotated[
    Union[OpenAINativePayload, GeminiNativePayload],
    Field(discriminator="provider"),
]


class StepExecution(BaseModel):
    """What a step executor returns for one stage."""

    raw_text: str = ""
    raw_citations: list[dict[str, Any]] = Field(
        default_factory=list,
        description="Raw source records (url/uri/href, title, publisher)",
    )
    evidence: list[dict[str, Any]] = Field(default_factory=list)
    tools_used: list[str] = Field(default_factory=list)
    token_usage: dict[str, int] = Field(default_factory=dict)
    model_used: str = ""
    structured_output: Optional[dict[str, Any]] = None
    updated_plan: Optional[dict[str, Any]] = None
    native: Optional[ProviderNativePayload] = None


class ResearchStep(BaseModel):
    """One row per (run_id, step_index)."""

    run_id: str
    step_index: int
    step_type: str
    status: StepStatus = StepStatus.QUEUED
    provider: Optional[str] = None
    mode: Optional[str] = None
    step_goal: Optional[str] = None
    inputs_summary: Optional[str] = None
    tools_used: list[str] = Field(default_factory=list)
    raw_output: Optional[str] = None
    output_excerpt: Optional[str] = None
    output_text_with_refs: Optional[str] = None
    references: list[NormalizedReference] = Field(default_factory=list)
    citations: list[Citation] = Field(default_factory=list)
    evidence: list[Evidence] = Field(default_factory=list)
    provider_native: Optional[ProviderNativePayload] = None
    structured_output: Optional[dict[str, Any]] = None
    token_usage: dict[str, int] = Field(default_factory=dict)
    model_used: Optional[str] = None
    retry_count: int = Field(default=0, description="Consecutive transient failures")
    error_message: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    updated_at: Optional[str] = None


class ResearchRun(BaseModel):
    """Full state of one provider lane's pipeline execution."""

    id: str
    session_id: str
    attempt: int = 1
    provider: ResearchProvider
    mode: ResearchMode = ResearchMode.CUSTOM
    depth: ResearchDepth = ResearchDepth.STANDARD
    question: str
    plan: Optional[ResearchPlan] = None
    progress: RunProgress = Field(default_factory=RunProgress)
    current_step_index: int = 0
    max_steps: int = 8
    target_sources_per_step: int = 10
    max_total_sources: int = 80
    max_tokens_per_step: int = 5000
    min_word_count: int = 2500
    state: RunState = RunState.NEW
    error_message: Optional[str] = None
    synthesized_report: Optional[str] = None
    synthesized_sources: list[Citation] = Field(default_factory=list)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None


class TickResult(BaseModel):
    """Outcome of one tick."""

    state: RunState
    done: bool


class StartRunRequest(BaseModel):
    """Request to start a research run for one provider lane."""

    session_id: str
    provider: ResearchProvider
    question: str = Field(..., min_length=1)
    mode: ResearchMode = ResearchMode.CUSTOM
    depth: ResearchDepth = ResearchDepth.STANDARD


class AdvanceSessionRequest(BaseModel):
    question: str = Field(..., min_length=1)
    mode: ResearchMode = ResearchMode.CUSTOM
    depth: ResearchDepth = ResearchDepth.STANDARD


class RetryLaneRequest(BaseModel):
    provider: ResearchProvider


class RunSnapshot(BaseModel):
    """Response for run status polling."""

    run: ResearchRun
    steps: list[ResearchStep] = Field(default_factory=list)
    sources: list[Citation] = Field(default_factory=list)
    evidence: list[Evidence] = Field(default_factory=list)


class SessionSnapshot(BaseModel):
    """Latest run per provider lane for one session."""

    session_id: str
    lanes: dict[str, Optional[ResearchRun]] = Field(default_factory=dict)
    advanced: bool = Field(
        default=False,
        description="Whether this request triggered an orchestration pass",
    )
