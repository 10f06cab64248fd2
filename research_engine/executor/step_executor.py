"""Step executor: the boundary between the orchestrator and the providers.

The orchestrator only sees the StepExecutor protocol. LLMStepExecutor is
the production implementation: it builds the stage prompt, picks the model
tier for the stage from the provider config, calls the backend once, and
returns the raw text plus the provider-native citation payload. It does not
retry; a retry is a whole-step re-execution decided by the orchestrator.
"""

import json
import logging
from typing import Callable, Optional, Protocol, runtime_checkable

from research_engine.config import ProviderResearchConfig, get_provider_config
from research_engine.executor.schemas import (
    GeminiNativePayload,
    OpenAINativePayload,
    StepExecution,
)
from research_engine.llm.backends import LLMCallResult, ModelBackend
from research_engine.llm.factory import get_backend
from research_engine.workflows.schemas import ResearchPlan, StepType

logger = logging.getLogger(__name__)

MAX_PLAN_PROMPT_CHARS = 6000

SYSTEM_PROMPT = (
    "You are a meticulous research analyst. Ground every claim in sources, "
    "cite URLs, separate established findings from open questions, and follow "
    "the requested output format exactly."
)

# Stages that need live web search
SEARCH_STEPS = frozenset({
    StepType.DISCOVER_SOURCES_WITH_PLAN,
    StepType.DEEP_READ,
    StepType.COUNTERPOINTS,
})


@runtime_checkable
class StepExecutor(Protocol):
    """Executes one pipeline stage against one provider."""

    def execute(
        self,
        *,
        provider: str,
        step_type: StepType,
        question: str,
        plan: Optional[ResearchPlan],
        prior_summary: str,
        source_target: int,
        max_output_tokens: int,
        timeout_ms: int,
    ) -> StepExecution: ...


def build_step_prompt(
    step_type: StepType,
    question: str,
    plan: Optional[ResearchPlan],
    prior_summary: str,
    *,
    max_candidates: int = 40,
    shortlist_size: int = 18,
    source_target: int = 10,
) -> str:
    """Build the user prompt for one stage."""
    plan_text = plan.model_dump_json()[:MAX_PLAN_PROMPT_CHARS] if plan else "null"
    base = (
        f"Question:\n{question}\n\n"
        f"Prior step summary:\n{prior_summary or 'None yet.'}\n\n"
        f"Current plan:\n{plan_text}"
    )

    if step_type == StepType.DEVELOP_RESEARCH_PLAN:
        schema = {
            "version": "1.0",
            "refined_topic": "string",
            "assumptions": ["string"],
            "total_budget": {"max_steps": 8, "max_sources": "int", "max_tokens": "int"},
            "steps": [{
                "step_index": "int",
                "step_type": "|".join(t.value for t in StepType),
                "title": "string",
                "objective": "string",
                "target_source_types": ["academic_journal|government|industry_report|news|company_filing|dataset|reference|expert_analysis"],
                "search_query_pack": ["string"],
                "budgets": {"max_sources": "1-30", "max_tokens": "300-8000", "max_minutes": "1-120"},
                "deliverables": ["string"],
                "done_definition": ["string"],
            }],
            "deliverables": ["string"],
        }
        return (
            f"{base}\n\nReturn ONLY JSON with schema:\n{json.dumps(schema)}\n"
            f"Include one step for each of the 8 step types."
        )

    if step_type == StepType.SHORTLIST_RESULTS:
        return (
            f"{base}\n\nReturn ONLY JSON with schema:\n"
            '{"shortlist":[{"url":string,"title":string,"publisher":string,"reason":string,'
            '"section":string,"read_priority":"high|med|low"}]}'
            f"\nKeep {shortlist_size} items max, diverse viewpoints, include primary sources where possible."
        )

    if step_type == StepType.EXTRACT_EVIDENCE:
        return (
            f"{base}\n\nReturn ONLY JSON with schema:\n"
            '{"evidence":[{"claim":string,"supporting_snippet":string,"confidence":"low|med|high","notes":string}]}'
            "\nFocus on metrics, definitions, timelines, and contradictions."
        )

    if step_type == StepType.GAP_CHECK:
        return (
            f"{base}\n\nReturn ONLY JSON with schema:\n"
            '{"missing_sections":string[],"weak_claims":string[],"missing_primary_sources":string[],'
            '"follow_up_queries":string[],"severe_gaps":boolean}'
        )

    if step_type == StepType.SECTION_SYNTHESIS:
        return (
            f"{base}\n\nProduce the final provider report in markdown with:\n"
            "- Title\n- Table of Contents\n- Section/subsection hierarchy\n"
            "- Inline citations [#] mapped to sources\n"
            "- What we know / what we do not know in each section\n"
            "- Summary and implications\n- Full Sources list with URLs"
        )

    if step_type == StepType.DISCOVER_SOURCES_WITH_PLAN:
        return (
            f"{base}\n\nDiscover and list {max_candidates} candidate sources with URL, title, "
            f"publisher, section fit, and 1-2 line rationale. Aim for at least {source_target} "
            f"high-quality sources."
        )

    if step_type == StepType.DEEP_READ:
        return (
            f"{base}\n\nDeep-read shortlisted sources by section. For each source provide key "
            f"takeaways, critical datapoints, and limitations."
        )

    return (
        f"{base}\n\nGenerate strongest counterarguments, disagreements among sources, and "
        f"bias/limitation analysis with citations."
    )


def native_payload(provider: str, result: LLMCallResult):
    """Wrap a backend result's citation metadata in the provider's tagged payload."""
    if provider == "openai":
        return OpenAINativePayload(annotations=result.annotations, sources=result.sources)
    return GeminiNativePayload(grounding_metadata=result.grounding_metadata or {})


class LLMStepExecutor:
    """Production step executor backed by the provider SDKs."""

    def __init__(
        self,
        config_loader: Callable[[str], ProviderResearchConfig] = get_provider_config,
        backend_factory: Callable[[str, str], ModelBackend] = get_backend,
    ):
        self._config_loader = config_loader
        self._backend_factory = backend_factory

    def execute(
        self,
        *,
        provider: str,
        step_type: StepType,
        question: str,
        plan: Optional[ResearchPlan],
        prior_summary: str,
        source_target: int,
        max_output_tokens: int,
        timeout_ms: int,
    ) -> StepExecution:
        cfg = self._config_loader(provider)
        step_cfg = cfg.steps[step_type]
        output_tokens = max(300, min(max_output_tokens, step_cfg.max_output_tokens))
        if step_type == StepType.SECTION_SYNTHESIS:
            # Synthesis budget comes from the stage config, not the per-step cap
            output_tokens = step_cfg.max_output_tokens

        backend = self._backend_factory(provider, cfg.model_for(step_type))
        prompt = build_step_prompt(
            step_type,
            question,
            plan,
            prior_summary,
            max_candidates=cfg.max_candidates,
            shortlist_size=cfg.shortlist_size,
            source_target=source_target,
        )

        result = backend.execute_sync(
            SYSTEM_PROMPT,
            prompt,
            max_tokens=output_tokens,
            use_search=step_type in SEARCH_STEPS,
            timeout_seconds=timeout_ms / 1000,
            label=f"{provider}:{step_type.value}",
        )

        return StepExecution(
            raw_text=result.content,
            raw_citations=result.sources,
            tools_used=result.tools_used,
            token_usage={
                "input_tokens": result.input_tokens,
                "output_tokens": result.output_tokens,
            },
            model_used=result.model_id,
            native=native_payload(provider, result),
        )
