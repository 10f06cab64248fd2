"""
Shared pytest fixtures.

Every test gets its own SQLite database, an in-memory lock table and a
scripted step executor, so no test touches a provider SDK or Postgres.
"""

from typing import Any, Optional

import pytest

from research_engine.config import reset_provider_configs
from research_engine.executor import db
from research_engine.executor.locks import InMemoryLock
from research_engine.executor.orchestrator import ResearchOrchestrator
from research_engine.executor.schemas import OpenAINativePayload, StepExecution
from research_engine.workflows.schemas import StepType

REPORT_URL = "https://example.org/report"
AGENCY_URL = "https://stats.example.gov/table"

LONG_LINE = (
    "Adoption of heat pumps in cold climates rose sharply between 2019 and 2023 "
    "according to national statistics offices."
)


def _default_output(step_type: StepType) -> StepExecution:
    if step_type == StepType.DEVELOP_RESEARCH_PLAN:
        return StepExecution(raw_text='{"refined_topic": "Heat pumps in cold climates", "steps": []}')
    if step_type == StepType.DISCOVER_SOURCES_WITH_PLAN:
        return StepExecution(
            raw_text=f"Candidates:\n- {REPORT_URL} (industry)\n- {AGENCY_URL} (government)",
            raw_citations=[{"url": REPORT_URL, "title": "Annual Report"}],
            tools_used=["web_search"],
        )
    if step_type == StepType.SHORTLIST_RESULTS:
        return StepExecution(raw_text=f'{{"shortlist": [{{"url": "{REPORT_URL}", "title": "Annual Report"}}]}}')
    if step_type == StepType.EXTRACT_EVIDENCE:
        return StepExecution(
            raw_text='{"evidence": [{"claim": "Installations doubled", "supporting_snippet": "doubled", "confidence": "high"}]}'
        )
    if step_type == StepType.GAP_CHECK:
        return StepExecution(raw_text='{"missing_sections": [], "follow_up_queries": [], "severe_gaps": false}')
    if step_type == StepType.SECTION_SYNTHESIS:
        text = "# Heat Pumps\n\nInstallations doubled since 2019."
        return StepExecution(
            raw_text=text,
            native=OpenAINativePayload(annotations=[{
                "type": "url_citation",
                "end_index": len(text),
                "url": REPORT_URL,
                "title": "Annual Report",
            }]),
        )
    return StepExecution(raw_text=f"{LONG_LINE}\nSee {REPORT_URL}.")


class FakeStepExecutor:
    """Scripted executor.

    `script` maps a StepType, or a (provider, StepType) pair, to a list of
    outcomes consumed in order. An outcome is a StepExecution to return or an
    exception to raise. When the script runs out, a canned output is used.
    """

    def __init__(self, script: Optional[dict] = None):
        self.script: dict[Any, list] = {k: list(v) for k, v in (script or {}).items()}
        self.calls: list[tuple[str, StepType]] = []

    def calls_for(self, step_type: StepType, provider: Optional[str] = None) -> int:
        return sum(
            1 for prov, st in self.calls
            if st == step_type and (provider is None or prov == provider)
        )

    def execute(
        self,
        *,
        provider,
        step_type,
        question,
        plan,
        prior_summary,
        source_target,
        max_output_tokens,
        timeout_ms,
    ) -> StepExecution:
        self.calls.append((provider, step_type))
        for key in ((provider, step_type), step_type):
            queue = self.script.get(key)
            if queue:
                outcome = queue.pop(0)
                if isinstance(outcome, BaseException):
                    raise outcome
                return outcome
        return _default_output(step_type)


@pytest.fixture(autouse=True)
def research_db(tmp_path, monkeypatch):
    """Fresh SQLite database per test."""
    monkeypatch.setattr(db, "DATABASE_URL", "")
    monkeypatch.setattr(db, "SQLITE_PATH", tmp_path / "research.db")
    monkeypatch.setattr(db, "_initialized", False)
    monkeypatch.delenv("RESEARCH_STEP_CONFIG_JSON", raising=False)
    monkeypatch.delenv("RESEARCH_CONFIG_FILE", raising=False)
    reset_provider_configs()
    yield tmp_path / "research.db"
    reset_provider_configs()


@pytest.fixture
def lock():
    return InMemoryLock()


@pytest.fixture
def executor():
    return FakeStepExecutor()


@pytest.fixture
def orchestrator(executor, lock):
    return ResearchOrchestrator(executor, lock)


def tick_until(orchestrator, run_id: str, ticks: int):
    """Tick `ticks` times, returning the last result."""
    result = None
    for _ in range(ticks):
        result = orchestrator.tick(run_id)
    return result
