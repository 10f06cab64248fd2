"""Research run orchestration: the per-run state machine.

An external poller calls `tick(run_id)` repeatedly. Each tick:

1. Returns immediately for terminal runs (DONE / FAILED)
2. Re-derives the canonical step sequence (the plan never reorders stages)
3. Gating: step i runs only once step i-1 is done. Otherwise the index is
   pulled back to i-1 and the tick returns, which heals runs whose index
   got ahead of their steps after an interrupted tick
4. Skips a step already marked done (redelivered poll) without calling
   the executor again
5. Takes the provider lane lock; if another process is mid-call for the
   same provider, returns without touching run or step state
6. Executes at most one step, persists its artifacts, and advances,
   loops back (gap check) or completes the run

Failures are classified by executor/retry.py: transient errors requeue the
step up to the retry ceiling, everything else fails the run. Storage errors
(RepositoryError) are never caught here.

`advance_session` runs one pass over every provider lane of a session
under a session-scoped try-lock and hands finished sessions to the
ReportFinalizer.
"""

import logging
import re
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol, runtime_checkable

from research_engine.citations.normalizer import normalize_provider_citations
from research_engine.citations.sources import build_citations, filter_citations_by_urls
from research_engine.config import (
    DEPTH_SETTINGS,
    MAX_TRANSIENT_RETRIES,
    STEP_TIMEOUT_SECONDS,
    ProviderResearchConfig,
    get_provider_config,
)
from research_engine.executor import run_repo
from research_engine.executor.errors import (
    EmptySynthesisError,
    InvalidTransitionError,
    RepositoryError,
    RunNotFoundError,
)
from research_engine.executor.locks import (
    ProviderLock,
    get_default_lock,
    provider_lock_key,
    session_lock_key,
    try_lock,
)
from research_engine.executor.retry import is_retryable, retry_exhausted
from research_engine.executor.schemas import (
    Citation,
    Evidence,
    ResearchRun,
    ResearchStep,
    RunSnapshot,
    RunState,
    SessionSnapshot,
    StepExecution,
    StepStatus,
    TickResult,
)
from research_engine.executor.step_executor import LLMStepExecutor, StepExecutor
from research_engine.executor.structured_output import (
    evidence_from_rows,
    evidence_from_text,
    extract_json_object,
)
from research_engine.workflows.planner import plan_from_output
from research_engine.workflows.schemas import (
    STEP_LABELS,
    STEP_SEQUENCE,
    ResearchDepth,
    ResearchMode,
    ResearchPlan,
    ResearchProvider,
    StepType,
)
from research_engine.workflows.sequence import (
    GAP_CHECK_STEP,
    GAP_LOOP_RESTART_INDEX,
    PLANNING_STEP,
    SYNTHESIS_STEP,
    can_transition_step,
    canonical_step_sequence,
    expects_json,
)

logger = logging.getLogger(__name__)

PRIOR_SUMMARY_STEPS = 4
PRIOR_SUMMARY_CHARS = 800

# Stages whose output is not mined for evidence claims
_NO_TEXT_EVIDENCE = frozenset({PLANNING_STEP, GAP_CHECK_STEP, StepType.SHORTLIST_RESULTS})


@runtime_checkable
class ReportFinalizer(Protocol):
    """Downstream consumer of finished sessions.

    Receives only DONE runs, each with a non-empty synthesized_report and
    synthesized_sources. May be called more than once for the same session
    (redelivered passes), so implementations should be idempotent.
    """

    def finalize(self, session_id: str, runs: list[ResearchRun]) -> None: ...


@dataclass
class StepOutcome:
    """Post-processed artifacts of one successful step execution."""

    raw_output: str
    output_text_with_refs: str
    references: list[dict] = field(default_factory=list)
    citations: list[Citation] = field(default_factory=list)
    evidence: list[Evidence] = field(default_factory=list)
    structured_output: Optional[dict] = None
    updated_plan: Optional[ResearchPlan] = None
    severe_gaps: bool = False


def _progress_for(sequence: tuple[StepType, ...], index: int) -> dict:
    total = len(sequence)
    if index < total:
        step_type = sequence[index]
        return {
            "step_id": step_type.value,
            "step_index": index,
            "total_steps": total,
            "step_label": STEP_LABELS[step_type],
        }
    return {
        "step_id": None,
        "step_index": total,
        "total_steps": total,
        "step_label": "Complete",
    }


def _compact(text: str, max_chars: int = PRIOR_SUMMARY_CHARS) -> str:
    flat = re.sub(r"\s+", " ", text or "").strip()
    if len(flat) <= max_chars:
        return flat
    return f"{flat[:max_chars]}..."


def _truthy(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "1")
    return value is True


class ResearchOrchestrator:
    """Drives research runs one step per tick."""

    def __init__(
        self,
        executor: StepExecutor,
        lock: Optional[ProviderLock] = None,
        *,
        max_transient_retries: int = MAX_TRANSIENT_RETRIES,
        step_timeout_seconds: int = STEP_TIMEOUT_SECONDS,
        config_loader: Callable[[str], ProviderResearchConfig] = get_provider_config,
        finalizer: Optional[ReportFinalizer] = None,
        providers: tuple[ResearchProvider, ...] = tuple(ResearchProvider),
    ):
        self.executor = executor
        self.lock = lock if lock is not None else get_default_lock()
        self.max_transient_retries = max_transient_retries
        self.step_timeout_seconds = step_timeout_seconds
        self.config_loader = config_loader
        self.finalizer = finalizer
        self.providers = providers

    # --- Run creation ---

    def start_run(
        self,
        session_id: str,
        provider: ResearchProvider,
        question: str,
        mode: ResearchMode = ResearchMode.CUSTOM,
        depth: ResearchDepth = ResearchDepth.STANDARD,
    ) -> ResearchRun:
        """Start a run for a provider lane.

        Idempotent: if the lane already has a non-terminal run, that run is
        returned instead of creating a duplicate.
        """
        provider = ResearchProvider(provider)
        existing = run_repo.get_latest_run(session_id, provider.value)
        if existing is not None and not existing.state.is_terminal:
            logger.warning(
                f"IDEMPOTENCY: Returning active run {existing.id} for session "
                f"{session_id}/{provider.value} instead of starting a new one"
            )
            return existing
        return self._create_run(session_id, provider, question, mode, depth)

    def _create_run(
        self,
        session_id: str,
        provider: ResearchProvider,
        question: str,
        mode: ResearchMode,
        depth: ResearchDepth,
    ) -> ResearchRun:
        settings = DEPTH_SETTINGS[ResearchDepth(depth)]
        progress = {**_progress_for(STEP_SEQUENCE, 0), "gap_loops": 0}
        run = run_repo.create_run(
            session_id,
            provider.value,
            question,
            mode=ResearchMode(mode).value,
            depth=ResearchDepth(depth).value,
            progress=progress,
            max_steps=len(STEP_SEQUENCE),
            target_sources_per_step=settings.target_sources_per_step,
            max_total_sources=settings.target_sources_per_step * len(STEP_SEQUENCE),
            max_tokens_per_step=settings.max_tokens_per_step,
            min_word_count=settings.min_word_count,
        )
        run_repo.initialize_steps(run.id, [t.value for t in STEP_SEQUENCE], provider.value, run.mode.value)
        return run

    # --- Tick ---

    def tick(self, run_id: str) -> TickResult:
        """Advance a run by at most one step."""
        run = run_repo.get_run(run_id)
        if run is None:
            raise RunNotFoundError(f"Research run not found: {run_id}")
        if run.state.is_terminal:
            return TickResult(state=run.state, done=True)

        sequence = canonical_step_sequence(run.plan)
        total = len(sequence)
        steps = {s.step_index: s for s in run_repo.list_steps(run_id)}
        index = max(0, min(run.current_step_index, total))

        if index > 0:
            previous = steps.get(index - 1)
            if previous is None or previous.status != StepStatus.DONE:
                logger.warning(
                    f"[{run_id}] Step {index - 1} is "
                    f"{previous.status.value if previous else 'missing'}; "
                    f"moving index back from {index}"
                )
                run_repo.update_run(
                    run_id,
                    current_step_index=index - 1,
                    progress=_progress_for(sequence, index - 1),
                )
                return TickResult(state=RunState.IN_PROGRESS, done=False)
            if index < total and not can_transition_step(sequence[index - 1], sequence[index]):
                return self._fail(
                    run,
                    f"Invalid step transition {sequence[index - 1].value} -> {sequence[index].value}",
                )

        if index >= total:
            return self._complete(run, sequence)

        current = steps.get(index)
        if current is not None and current.status == StepStatus.DONE:
            index += 1
            logger.info(f"[{run_id}] Step {index - 1} already done, advancing to {index}")
            run_repo.update_run(run_id, current_step_index=index, progress=_progress_for(sequence, index))
            if index >= total:
                return self._complete(run, sequence)
            current = steps.get(index)

        with try_lock(self.lock, provider_lock_key(run.provider.value)) as acquired:
            if not acquired:
                logger.info(f"[{run_id}] Provider {run.provider.value} busy, deferring step {index}")
                return TickResult(state=RunState.IN_PROGRESS, done=False)

            # Another poller may have moved the run while this tick waited for the lane
            fresh = run_repo.get_run(run_id)
            if fresh is None:
                raise RunNotFoundError(f"Research run not found: {run_id}")
            if fresh.state.is_terminal:
                return TickResult(state=fresh.state, done=True)
            fresh_steps = {s.step_index: s for s in run_repo.list_steps(run_id)}
            fresh_current = fresh_steps.get(index)
            if fresh.current_step_index != index or (
                fresh_current is not None and fresh_current.status == StepStatus.DONE
            ):
                logger.info(
                    f"[{run_id}] Step {index} advanced by another poller "
                    f"(index now {fresh.current_step_index}), skipping"
                )
                return TickResult(state=RunState.IN_PROGRESS, done=False)
            return self._execute_step(fresh, sequence, index, fresh_current, fresh_steps)

    def _execute_step(
        self,
        run: ResearchRun,
        sequence: tuple[StepType, ...],
        index: int,
        current: Optional[ResearchStep],
        steps: dict[int, ResearchStep],
    ) -> TickResult:
        step_type = sequence[index]
        current_status = current.status if current else StepStatus.QUEUED
        retry_count = current.retry_count if current else 0

        try:
            current_status.ensure_transition(StepStatus.RUNNING)
        except InvalidTransitionError as e:
            return self._fail(run, f"{step_type.value}: {e}")

        # The planning stage leaves NEW/PLANNED alone; it sets PLANNED when it completes
        executing_state = run.state if step_type == PLANNING_STEP else RunState.IN_PROGRESS
        if executing_state != run.state:
            run.state.ensure_transition(executing_state)
            run_repo.update_run(run.id, state=executing_state, progress=_progress_for(sequence, index))
            run.state = executing_state

        plan_step = run.plan.step_for(step_type) if run.plan else None
        run_repo.upsert_step(
            run.id,
            index,
            step_type.value,
            StepStatus.RUNNING,
            provider=run.provider.value,
            mode=run.mode.value,
            step_goal=plan_step.objective if plan_step else STEP_LABELS[step_type],
            inputs_summary=f"question={_compact(run.question, 200)}; sources={run.target_sources_per_step}",
            started=True,
        )
        logger.info(f"[{run.id}] Executing step {index} ({step_type.value}) on {run.provider.value}")

        try:
            execution = self.executor.execute(
                provider=run.provider.value,
                step_type=step_type,
                question=run.question,
                plan=run.plan,
                prior_summary=self._prior_summary(steps, index),
                source_target=run.target_sources_per_step,
                max_output_tokens=run.max_tokens_per_step,
                timeout_ms=self.step_timeout_seconds * 1000,
            )
            outcome = self._build_outcome(run, step_type, execution)
        except RepositoryError:
            raise
        except Exception as e:
            return self._handle_failure(run, index, step_type, retry_count, e)

        self._persist_outcome(run, index, step_type, execution, outcome)

        if step_type == PLANNING_STEP:
            planned_state = RunState.IN_PROGRESS if run.state == RunState.IN_PROGRESS else RunState.PLANNED
            if planned_state != run.state:
                run.state.ensure_transition(planned_state)
            run_repo.update_run(
                run.id,
                plan=outcome.updated_plan.model_dump(mode="json") if outcome.updated_plan else None,
                state=planned_state,
            )
            run.state = planned_state

        if step_type == GAP_CHECK_STEP and outcome.severe_gaps:
            gap_loops = run.progress.gap_loops
            max_gap_loops = self.config_loader(run.provider.value).max_gap_loops
            if gap_loops < max_gap_loops:
                run_repo.reset_steps(run.id, GAP_LOOP_RESTART_INDEX)
                run_repo.update_run(
                    run.id,
                    current_step_index=GAP_LOOP_RESTART_INDEX,
                    progress={**_progress_for(sequence, GAP_LOOP_RESTART_INDEX), "gap_loops": gap_loops + 1},
                )
                logger.info(f"[{run.id}] Severe gaps found, gap loop {gap_loops + 1}/{max_gap_loops}")
                return TickResult(state=RunState.IN_PROGRESS, done=False)
            logger.info(f"[{run.id}] Severe gaps remain but gap loops exhausted ({gap_loops}/{max_gap_loops})")

        next_index = index + 1
        run_repo.update_run(run.id, current_step_index=next_index, progress=_progress_for(sequence, next_index))
        if next_index >= len(sequence):
            return self._complete(run, sequence)
        return TickResult(state=run.state, done=False)

    def _prior_summary(self, steps: dict[int, ResearchStep], index: int) -> str:
        done = [
            steps[i] for i in sorted(steps)
            if i < index and steps[i].status == StepStatus.DONE and steps[i].output_excerpt
        ]
        lines = []
        for step in done[-PRIOR_SUMMARY_STEPS:]:
            label = STEP_LABELS.get(StepType(step.step_type), step.step_type)
            lines.append(f"{label}: {_compact(step.output_excerpt)}")
        return "\n".join(lines)

    # --- Post-processing ---

    def _build_outcome(self, run: ResearchRun, step_type: StepType, execution: StepExecution) -> StepOutcome:
        """Turn executor output into persisted artifacts. Touches no storage."""
        raw_text = execution.raw_text or ""
        text = raw_text.strip()
        if step_type == SYNTHESIS_STEP and not text:
            raise EmptySynthesisError()

        normalized = normalize_provider_citations(raw_text, execution.native)
        references = [r.model_dump() for r in normalized.references]
        cfg = self.config_loader(run.provider.value)
        citations = build_citations(
            run.provider.value,
            raw_text,
            execution.raw_citations,
            references,
            max_items=max(cfg.max_candidates, len(references)),
        )

        structured = execution.structured_output
        if structured is None and expects_json(step_type):
            structured = extract_json_object(text)

        updated_plan = None
        if step_type == PLANNING_STEP:
            updated_plan = plan_from_output(
                text,
                run.question,
                execution.updated_plan,
                run.target_sources_per_step,
                run.max_tokens_per_step,
            )
            structured = updated_plan.model_dump(mode="json")

        if step_type == StepType.SHORTLIST_RESULTS and structured and isinstance(structured.get("shortlist"), list):
            shortlisted = [row.get("url") for row in structured["shortlist"] if isinstance(row, dict)]
            citations = filter_citations_by_urls(citations, shortlisted)

        severe_gaps = False
        if step_type == GAP_CHECK_STEP and structured:
            severe_gaps = _truthy(structured.get("severe_gaps"))
            follow_ups = structured.get("follow_up_queries")
            structured = {
                **structured,
                "next_step_hint": f"follow_up_queries={len(follow_ups) if isinstance(follow_ups, list) else 0}",
            }

        citation_ids = [c.citation_id for c in citations]
        if execution.evidence:
            evidence_rows = evidence_from_rows(execution.evidence, citation_ids)
        elif step_type == StepType.EXTRACT_EVIDENCE and structured and isinstance(structured.get("evidence"), list):
            evidence_rows = evidence_from_rows(structured["evidence"], citation_ids)
        elif step_type in _NO_TEXT_EVIDENCE:
            evidence_rows = []
        else:
            evidence_rows = evidence_from_text(text, citation_ids)

        return StepOutcome(
            raw_output=raw_text,
            output_text_with_refs=normalized.output_text_with_refs,
            references=references,
            citations=citations,
            evidence=[Evidence(**row) for row in evidence_rows],
            structured_output=structured,
            updated_plan=updated_plan,
            severe_gaps=severe_gaps,
        )

    def _persist_outcome(
        self,
        run: ResearchRun,
        index: int,
        step_type: StepType,
        execution: StepExecution,
        outcome: StepOutcome,
    ) -> None:
        run_repo.upsert_step(
            run.id,
            index,
            step_type.value,
            StepStatus.DONE,
            tools_used=execution.tools_used,
            raw_output=outcome.raw_output,
            output_text_with_refs=outcome.output_text_with_refs,
            references=outcome.references,
            citations=[c.model_dump() for c in outcome.citations],
            evidence=[e.model_dump() for e in outcome.evidence],
            provider_native=execution.native.model_dump(mode="json") if execution.native else None,
            structured_output=outcome.structured_output,
            token_usage=execution.token_usage,
            model_used=execution.model_used or None,
            retry_count=0,
            clear_error=True,
            completed=True,
        )
        for citation in outcome.citations:
            run_repo.upsert_citation(run.id, citation)
        for evidence in outcome.evidence:
            run_repo.upsert_evidence(run.id, index, evidence)
        logger.info(
            f"[{run.id}] Step {index} ({step_type.value}) done: {len(outcome.raw_output):,} chars, "
            f"{len(outcome.citations)} citations, {len(outcome.evidence)} evidence"
        )

    # --- Failure and completion ---

    def _handle_failure(
        self,
        run: ResearchRun,
        index: int,
        step_type: StepType,
        retry_count: int,
        error: Exception,
    ) -> TickResult:
        if is_retryable(error):
            if retry_exhausted(retry_count, self.max_transient_retries):
                run_repo.upsert_step(
                    run.id, index, step_type.value, StepStatus.FAILED,
                    retry_count=retry_count, error_message=str(error),
                )
                return self._fail(
                    run,
                    f"{step_type.value} failed after {retry_count} consecutive transient errors: {error}",
                )
            run_repo.upsert_step(
                run.id, index, step_type.value, StepStatus.QUEUED,
                retry_count=retry_count + 1, error_message=str(error),
            )
            logger.warning(
                f"[{run.id}] Transient error on {step_type.value} "
                f"({retry_count + 1}/{self.max_transient_retries}), requeued: {error}"
            )
            return TickResult(state=RunState.IN_PROGRESS, done=False)

        run_repo.upsert_step(run.id, index, step_type.value, StepStatus.FAILED, error_message=str(error))
        if isinstance(error, EmptySynthesisError):
            return self._fail(run, str(error))
        return self._fail(run, f"{step_type.value} failed: {error}")

    def _fail(self, run: ResearchRun, message: str) -> TickResult:
        run_repo.update_run(run.id, state=RunState.FAILED, error_message=message, completed=True)
        logger.error(f"[{run.id}] Run failed: {message}")
        return TickResult(state=RunState.FAILED, done=True)

    def _complete(self, run: ResearchRun, sequence: tuple[StepType, ...]) -> TickResult:
        """Mark the run DONE once synthesis produced a report and sources."""
        steps = run_repo.list_steps(run.id)
        synthesis = next((s for s in steps if s.step_type == SYNTHESIS_STEP.value), None)
        report = ""
        if synthesis is not None and synthesis.status == StepStatus.DONE:
            report = (synthesis.output_text_with_refs or synthesis.raw_output or "").strip()
        if not report:
            return self._fail(run, str(EmptySynthesisError()))

        sources = synthesis.citations or run_repo.list_citations(run.id)
        if not sources:
            return self._fail(run, f"{SYNTHESIS_STEP.value} failed: synthesis produced no sources")

        try:
            run.state.ensure_transition(RunState.DONE)
        except InvalidTransitionError as e:
            return self._fail(run, f"{SYNTHESIS_STEP.value}: {e}")

        run_repo.update_run(
            run.id,
            state=RunState.DONE,
            current_step_index=len(sequence),
            progress=_progress_for(sequence, len(sequence)),
            synthesized_report=report,
            synthesized_sources=[c.model_dump() for c in sources],
            error_message=None,
            completed=True,
        )
        logger.info(f"[{run.id}] Run complete: {len(report):,} chars, {len(sources)} sources")
        return TickResult(state=RunState.DONE, done=True)

    # --- Sessions ---

    def advance_session(
        self,
        session_id: str,
        question: str,
        mode: ResearchMode = ResearchMode.CUSTOM,
        depth: ResearchDepth = ResearchDepth.STANDARD,
    ) -> Optional[dict[str, TickResult]]:
        """One orchestration pass over every provider lane of a session.

        Returns None when another pass for the session is already running.
        """
        with try_lock(self.lock, session_lock_key(session_id)) as acquired:
            if not acquired:
                logger.info(f"Session {session_id} is already being advanced")
                return None

            results: dict[str, TickResult] = {}
            finished_now = False
            for provider in self.providers:
                run = run_repo.get_latest_run(session_id, provider.value)
                if run is None:
                    run = self._create_run(session_id, provider, question, mode, depth)
                if run.state.is_terminal:
                    results[provider.value] = TickResult(state=run.state, done=True)
                    continue
                result = self.tick(run.id)
                finished_now = finished_now or result.done
                results[provider.value] = result

            if finished_now and all(r.done for r in results.values()):
                self._finalize(session_id)
            return results

    def retry_lane(self, session_id: str, provider: ResearchProvider) -> Optional[ResearchRun]:
        """Start a new attempt for a FAILED lane.

        Returns None when a session pass holds the session lock.
        """
        provider = ResearchProvider(provider)
        with try_lock(self.lock, session_lock_key(session_id)) as acquired:
            if not acquired:
                logger.info(f"Session {session_id} is busy; retry of {provider.value} deferred")
                return None
            latest = run_repo.get_latest_run(session_id, provider.value)
            if latest is None:
                raise RunNotFoundError(f"No {provider.value} run for session {session_id}")
            if latest.state != RunState.FAILED:
                raise InvalidTransitionError(
                    f"Only FAILED lanes can be retried; {provider.value} is {latest.state.value}"
                )
            logger.info(f"Retrying {provider.value} lane for session {session_id} (after {latest.id})")
            return self._create_run(session_id, provider, latest.question, latest.mode, latest.depth)

    def _finalize(self, session_id: str) -> None:
        if self.finalizer is None:
            return
        done_runs = []
        for provider in self.providers:
            run = run_repo.get_latest_run(session_id, provider.value)
            if run is not None and run.state == RunState.DONE:
                done_runs.append(run)
        logger.info(f"Session {session_id} finished: {len(done_runs)} DONE lane(s) to finalizer")
        self.finalizer.finalize(session_id, done_runs)

    # --- Snapshots ---

    def get_run_snapshot(self, run_id: str) -> RunSnapshot:
        run = run_repo.get_run(run_id)
        if run is None:
            raise RunNotFoundError(f"Research run not found: {run_id}")
        return RunSnapshot(
            run=run,
            steps=run_repo.list_steps(run_id),
            sources=run_repo.list_citations(run_id),
            evidence=run_repo.list_evidence(run_id),
        )

    def get_session_snapshot(self, session_id: str) -> SessionSnapshot:
        lanes = {
            provider.value: run_repo.get_latest_run(session_id, provider.value)
            for provider in self.providers
        }
        return SessionSnapshot(session_id=session_id, lanes=lanes)


_orchestrator: Optional[ResearchOrchestrator] = None
_orchestrator_lock = threading.Lock()


def get_orchestrator() -> ResearchOrchestrator:
    """Get the process-wide orchestrator (lazy singleton)."""
    global _orchestrator
    with _orchestrator_lock:
        if _orchestrator is None:
            _orchestrator = ResearchOrchestrator(executor=LLMStepExecutor())
        return _orchestrator
