"""Run and step persistence for the research executor.

Handles:
- Run creation (attempt numbering per session/provider lane)
- Merge-updates of run fields (progress JSON is shallow-merged server-side)
- Step upserts keyed by (run_id, step_index)
- Citation and evidence upserts keyed by their deterministic ids
- Snapshot queries for polling clients

Every write is an upsert or a keyed update, never an append, so a
redelivered poll cannot duplicate rows.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from research_engine.executor.db import _json_dumps, _json_loads, execute, json_merge_sql
from research_engine.executor.errors import IntegrityConflict
from research_engine.executor.schemas import (
    Citation,
    Evidence,
    ResearchRun,
    ResearchStep,
    RunState,
    StepStatus,
)
from research_engine.executor.structured_output import confidence_score

logger = logging.getLogger(__name__)

MAX_ATTEMPT_INSERT_RETRIES = 3
OUTPUT_EXCERPT_CHARS = 700

_RUN_JSON_FIELDS = ("plan", "progress", "synthesized_sources")
_STEP_JSON_FIELDS = {
    "tools_used": [],
    "step_references": [],
    "citations": [],
    "evidence": [],
    "provider_native": None,
    "structured_output": None,
    "token_usage": {},
}
_TIMESTAMP_FIELDS = ("created_at", "updated_at", "started_at", "completed_at", "accessed_at")

# Sentinel for "leave this column alone" in update_run
_UNSET: Any = object()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _normalize_timestamps(row: dict) -> dict:
    """Convert datetime objects to ISO strings (Postgres returns datetimes for TIMESTAMP columns)."""
    for key in _TIMESTAMP_FIELDS:
        val = row.get(key)
        if val is not None and isinstance(val, datetime):
            row[key] = val.isoformat()
    return row


def _row_to_run(row: dict) -> ResearchRun:
    for key in _RUN_JSON_FIELDS:
        if isinstance(row.get(key), str):
            row[key] = _json_loads(row[key])
    if row.get("plan") == {}:
        row["plan"] = None
    if not row.get("synthesized_sources"):
        row["synthesized_sources"] = []
    _normalize_timestamps(row)
    return ResearchRun(**row)


def _row_to_step(row: dict) -> ResearchStep:
    for key, default in _STEP_JSON_FIELDS.items():
        value = row.get(key)
        row[key] = _json_loads(value, default) if value is not None else default
    row["references"] = row.pop("step_references") or []
    _normalize_timestamps(row)
    return ResearchStep(**row)


# --- Runs ---


def create_run(
    session_id: str,
    provider: str,
    question: str,
    *,
    mode: str = "custom",
    depth: str = "standard",
    progress: Optional[dict] = None,
    max_steps: int = 8,
    target_sources_per_step: int = 10,
    max_total_sources: int = 80,
    max_tokens_per_step: int = 5000,
    min_word_count: int = 2500,
) -> ResearchRun:
    """Create a run as the next attempt for its (session, provider) lane."""
    for attempt_try in range(MAX_ATTEMPT_INSERT_RETRIES):
        row = execute(
            """SELECT COALESCE(MAX(attempt), 0) AS last_attempt
               FROM research_runs WHERE session_id = %s AND provider = %s""",
            (session_id, provider),
            fetch="one",
        )
        attempt = int(row["last_attempt"]) + 1
        run_id = f"run-{uuid.uuid4().hex[:12]}"
        now = _now()
        try:
            execute(
                """INSERT INTO research_runs
                   (id, session_id, attempt, provider, mode, depth, question, plan,
                    progress, current_step_index, max_steps, target_sources_per_step,
                    max_total_sources, max_tokens_per_step, min_word_count, state,
                    synthesized_sources, created_at, updated_at)
                   VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)""",
                (run_id, session_id, attempt, provider, mode, depth, question, None,
                 _json_dumps(progress or {}), 0, max_steps, target_sources_per_step,
                 max_total_sources, max_tokens_per_step, min_word_count, RunState.NEW.value,
                 "[]", now, now),
            )
        except IntegrityConflict:
            logger.warning(
                f"Attempt {attempt} for session {session_id}/{provider} taken concurrently "
                f"(try {attempt_try + 1}/{MAX_ATTEMPT_INSERT_RETRIES})"
            )
            continue

        logger.info(f"Created run {run_id} (session {session_id}, {provider}, attempt {attempt})")
        return get_run(run_id)

    raise IntegrityConflict(
        f"Could not allocate an attempt number for session {session_id}/{provider}"
    )


def get_run(run_id: str) -> Optional[ResearchRun]:
    """Get a run by ID."""
    row = execute("SELECT * FROM research_runs WHERE id = %s", (run_id,), fetch="one")
    if row is None:
        return None
    return _row_to_run(row)


def get_latest_run(session_id: str, provider: str) -> Optional[ResearchRun]:
    """Most recent attempt for a session's provider lane."""
    row = execute(
        """SELECT * FROM research_runs
           WHERE session_id = %s AND provider = %s
           ORDER BY attempt DESC LIMIT 1""",
        (session_id, provider),
        fetch="one",
    )
    return _row_to_run(row) if row else None


def update_run(
    run_id: str,
    *,
    state: Optional[RunState] = None,
    current_step_index: Optional[int] = None,
    plan: Any = _UNSET,
    progress: Optional[dict] = None,
    error_message: Any = _UNSET,
    synthesized_report: Any = _UNSET,
    synthesized_sources: Any = _UNSET,
    completed: bool = False,
) -> None:
    """Merge-update a run. Only the given fields change.

    `progress` is shallow-merged into the stored JSON rather than replacing
    it, so concurrent writers touching different keys don't clobber each other.
    """
    sets = ["updated_at = %s"]
    params: list[Any] = [_now()]

    if state is not None:
        sets.append("state = %s")
        params.append(RunState(state).value)
    if current_step_index is not None:
        sets.append("current_step_index = %s")
        params.append(current_step_index)
    if plan is not _UNSET:
        sets.append("plan = %s")
        params.append(_json_dumps(plan) if plan is not None else None)
    if progress:
        sets.append(f"progress = {json_merge_sql()}")
        params.append(_json_dumps(progress))
    if error_message is not _UNSET:
        sets.append("error_message = %s")
        params.append(error_message)
    if synthesized_report is not _UNSET:
        sets.append("synthesized_report = %s")
        params.append(synthesized_report)
    if synthesized_sources is not _UNSET:
        sets.append("synthesized_sources = %s")
        params.append(_json_dumps(synthesized_sources or []))
    if completed:
        sets.append("completed_at = %s")
        params.append(_now())

    params.append(run_id)
    execute(f"UPDATE research_runs SET {', '.join(sets)} WHERE id = %s", tuple(params))

    if state is not None:
        logger.info(f"Run {run_id} state → {RunState(state).value}")


# --- Steps ---


def initialize_steps(run_id: str, step_types: list[str], provider: str, mode: str) -> None:
    """Pre-create one queued row per stage. Existing rows are left untouched."""
    now = _now()
    for index, step_type in enumerate(step_types):
        execute(
            """INSERT INTO research_steps
               (run_id, step_index, step_type, status, provider, mode, retry_count, updated_at)
               VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
               ON CONFLICT (run_id, step_index) DO NOTHING""",
            (run_id, index, step_type, StepStatus.QUEUED.value, provider, mode, 0, now),
        )


def upsert_step(
    run_id: str,
    step_index: int,
    step_type: str,
    status: StepStatus,
    *,
    provider: Optional[str] = None,
    mode: Optional[str] = None,
    step_goal: Optional[str] = None,
    inputs_summary: Optional[str] = None,
    tools_used: Optional[list] = None,
    raw_output: Optional[str] = None,
    output_text_with_refs: Optional[str] = None,
    references: Optional[list] = None,
    citations: Optional[list] = None,
    evidence: Optional[list] = None,
    provider_native: Optional[dict] = None,
    structured_output: Optional[dict] = None,
    token_usage: Optional[dict] = None,
    model_used: Optional[str] = None,
    retry_count: Optional[int] = None,
    error_message: Optional[str] = None,
    clear_error: bool = False,
    started: bool = False,
    completed: bool = False,
) -> None:
    """Insert or update the step keyed by (run_id, step_index).

    Optional fields left as None keep their stored value.
    """
    now = _now()
    excerpt = raw_output[:OUTPUT_EXCERPT_CHARS] if raw_output is not None else None

    def _js(value: Any) -> Optional[str]:
        return _json_dumps(value) if value is not None else None

    retry_sql = "EXCLUDED.retry_count" if retry_count is not None else "research_steps.retry_count"
    error_sql = "NULL" if clear_error else "COALESCE(EXCLUDED.error_message, research_steps.error_message)"
    execute(
        f"""INSERT INTO research_steps
           (run_id, step_index, step_type, status, provider, mode, step_goal, inputs_summary,
            tools_used, raw_output, output_excerpt, output_text_with_refs, step_references,
            citations, evidence, provider_native, structured_output, token_usage, model_used,
            retry_count, error_message, started_at, completed_at, updated_at)
           VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s,
                   %s, %s, %s, %s, %s)
           ON CONFLICT (run_id, step_index) DO UPDATE SET
             step_type = EXCLUDED.step_type,
             status = EXCLUDED.status,
             provider = COALESCE(EXCLUDED.provider, research_steps.provider),
             mode = COALESCE(EXCLUDED.mode, research_steps.mode),
             step_goal = COALESCE(EXCLUDED.step_goal, research_steps.step_goal),
             inputs_summary = COALESCE(EXCLUDED.inputs_summary, research_steps.inputs_summary),
             tools_used = COALESCE(EXCLUDED.tools_used, research_steps.tools_used),
             raw_output = COALESCE(EXCLUDED.raw_output, research_steps.raw_output),
             output_excerpt = COALESCE(EXCLUDED.output_excerpt, research_steps.output_excerpt),
             output_text_with_refs = COALESCE(EXCLUDED.output_text_with_refs, research_steps.output_text_with_refs),
             step_references = COALESCE(EXCLUDED.step_references, research_steps.step_references),
             citations = COALESCE(EXCLUDED.citations, research_steps.citations),
             evidence = COALESCE(EXCLUDED.evidence, research_steps.evidence),
             provider_native = COALESCE(EXCLUDED.provider_native, research_steps.provider_native),
             structured_output = COALESCE(EXCLUDED.structured_output, research_steps.structured_output),
             token_usage = COALESCE(EXCLUDED.token_usage, research_steps.token_usage),
             model_used = COALESCE(EXCLUDED.model_used, research_steps.model_used),
             retry_count = {retry_sql},
             error_message = {error_sql},
             started_at = COALESCE(EXCLUDED.started_at, research_steps.started_at),
             completed_at = COALESCE(EXCLUDED.completed_at, research_steps.completed_at),
             updated_at = EXCLUDED.updated_at""",
        (run_id, step_index, step_type, StepStatus(status).value, provider, mode, step_goal,
         inputs_summary, _js(tools_used), raw_output, excerpt, output_text_with_refs,
         _js(references), _js(citations), _js(evidence), _js(provider_native),
         _js(structured_output), _js(token_usage), model_used,
         retry_count or 0,
         error_message, now if started else None, now if completed else None, now),
    )


def list_steps(run_id: str) -> list[ResearchStep]:
    rows = execute(
        "SELECT * FROM research_steps WHERE run_id = %s ORDER BY step_index",
        (run_id,),
        fetch="all",
    )
    return [_row_to_step(r) for r in rows]


def reset_steps(run_id: str, from_index: int) -> None:
    """Requeue every step at or after `from_index` (gap-loop reset)."""
    execute(
        """UPDATE research_steps
           SET status = %s, retry_count = 0, error_message = NULL,
               completed_at = NULL, updated_at = %s
           WHERE run_id = %s AND step_index >= %s""",
        (StepStatus.QUEUED.value, _now(), run_id, from_index),
    )
    logger.info(f"Run {run_id}: steps from index {from_index} reset to queued")


# --- Citations and evidence ---


def upsert_citation(run_id: str, citation: Citation) -> None:
    """Upsert by (run_id, citation_id). The first accessed_at is kept."""
    execute(
        """INSERT INTO research_sources
           (run_id, citation_id, url, title, publisher, reliability_tags,
            provider_metadata, accessed_at)
           VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
           ON CONFLICT (run_id, citation_id) DO UPDATE SET
             title = COALESCE(research_sources.title, EXCLUDED.title),
             publisher = COALESCE(research_sources.publisher, EXCLUDED.publisher),
             reliability_tags = EXCLUDED.reliability_tags,
             accessed_at = COALESCE(research_sources.accessed_at, EXCLUDED.accessed_at)""",
        (run_id, citation.citation_id, citation.url, citation.title, citation.publisher,
         _json_dumps(citation.reliability_tags), _json_dumps(citation.provider_metadata),
         citation.accessed_at or _now()),
    )


def upsert_evidence(run_id: str, step_index: int, evidence: Evidence) -> None:
    """Upsert by (run_id, evidence_id)."""
    execute(
        """INSERT INTO research_evidence
           (run_id, evidence_id, step_index, claim, supporting_snippet,
            source_citation_ids, confidence, confidence_score, notes, created_at)
           VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
           ON CONFLICT (run_id, evidence_id) DO UPDATE SET
             supporting_snippet = EXCLUDED.supporting_snippet,
             source_citation_ids = EXCLUDED.source_citation_ids,
             confidence = EXCLUDED.confidence,
             confidence_score = EXCLUDED.confidence_score,
             notes = EXCLUDED.notes""",
        (run_id, evidence.evidence_id, step_index, evidence.claim, evidence.supporting_snippet,
         _json_dumps(evidence.source_citation_ids), evidence.confidence,
         confidence_score(evidence.confidence), evidence.notes, _now()),
    )


def list_citations(run_id: str) -> list[Citation]:
    rows = execute(
        "SELECT * FROM research_sources WHERE run_id = %s ORDER BY id",
        (run_id,),
        fetch="all",
    )
    out = []
    for row in rows:
        _normalize_timestamps(row)
        out.append(Citation(
            citation_id=row["citation_id"],
            url=row["url"],
            title=row.get("title"),
            publisher=row.get("publisher"),
            reliability_tags=_json_loads(row.get("reliability_tags"), []),
            accessed_at=row.get("accessed_at"),
            provider_metadata=_json_loads(row.get("provider_metadata"), {}),
        ))
    return out


def list_evidence(run_id: str) -> list[Evidence]:
    rows = execute(
        "SELECT * FROM research_evidence WHERE run_id = %s ORDER BY step_index, id",
        (run_id,),
        fetch="all",
    )
    return [
        Evidence(
            evidence_id=row["evidence_id"],
            claim=row["claim"],
            supporting_snippet=row.get("supporting_snippet") or "",
            source_citation_ids=_json_loads(row.get("source_citation_ids"), []),
            confidence=row.get("confidence") or "med",
            notes=row.get("notes"),
        )
        for row in rows
    ]
