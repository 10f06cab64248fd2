import pytest

from conftest import FakeStepExecutor
from research_engine.executor import run_repo
from research_engine.executor.errors import InvalidTransitionError, RunNotFoundError
from research_engine.executor.locks import session_lock_key
from research_engine.executor.orchestrator import ResearchOrchestrator
from research_engine.executor.schemas import RunState
from research_engine.workflows.schemas import STEP_SEQUENCE, ResearchDepth, ResearchProvider, StepType

QUESTION = "What limits grid-scale battery deployment?"


class RecordingFinalizer:
    def __init__(self):
        self.calls = []

    def finalize(self, session_id, runs):
        self.calls.append((session_id, [run.provider.value for run in runs]))


def test_advance_session_creates_and_ticks_every_lane(orchestrator, executor) -> None:
    results = orchestrator.advance_session("s1", QUESTION, depth=ResearchDepth.DEEP)

    assert set(results) == {"openai", "gemini"}
    assert all(r.state == RunState.PLANNED for r in results.values())
    assert executor.calls_for(StepType.DEVELOP_RESEARCH_PLAN, "openai") == 1
    assert executor.calls_for(StepType.DEVELOP_RESEARCH_PLAN, "gemini") == 1

    run = run_repo.get_latest_run("s1", "gemini")
    assert run.depth == ResearchDepth.DEEP
    assert run.target_sources_per_step == 15
    assert run.max_tokens_per_step == 8000
    assert run.min_word_count == 6000


def test_session_finalized_once_when_all_lanes_finish(executor, lock) -> None:
    finalizer = RecordingFinalizer()
    orchestrator = ResearchOrchestrator(executor, lock, finalizer=finalizer)

    for _ in range(len(STEP_SEQUENCE) + 2):
        orchestrator.advance_session("s1", QUESTION)

    assert finalizer.calls == [("s1", ["openai", "gemini"])]
    snapshot = orchestrator.get_session_snapshot("s1")
    assert all(run.state == RunState.DONE for run in snapshot.lanes.values())


def test_failed_lane_is_left_out_of_finalization(lock) -> None:
    executor = FakeStepExecutor({
        ("gemini", StepType.DISCOVER_SOURCES_WITH_PLAN): [RuntimeError("billing hard limit reached")],
    })
    finalizer = RecordingFinalizer()
    orchestrator = ResearchOrchestrator(executor, lock, finalizer=finalizer)

    for _ in range(len(STEP_SEQUENCE)):
        orchestrator.advance_session("s1", QUESTION)

    assert finalizer.calls == [("s1", ["openai"])]
    assert run_repo.get_latest_run("s1", "gemini").state == RunState.FAILED


def test_advance_session_skips_when_session_locked(orchestrator, executor, lock) -> None:
    assert lock.try_acquire(session_lock_key("s1"))

    assert orchestrator.advance_session("s1", QUESTION) is None
    assert executor.calls == []
    assert run_repo.get_latest_run("s1", "openai") is None


def test_retry_lane_starts_new_attempt(lock) -> None:
    executor = FakeStepExecutor({
        ("gemini", StepType.DEVELOP_RESEARCH_PLAN): [RuntimeError("insufficient_quota")],
    })
    orchestrator = ResearchOrchestrator(executor, lock)
    orchestrator.advance_session("s1", QUESTION)
    failed = run_repo.get_latest_run("s1", "gemini")
    assert failed.state == RunState.FAILED

    retried = orchestrator.retry_lane("s1", ResearchProvider.GEMINI)

    assert retried.id != failed.id
    assert retried.attempt == 2
    assert retried.state == RunState.NEW
    assert retried.question == QUESTION
    assert run_repo.get_latest_run("s1", "gemini").id == retried.id
    assert run_repo.get_run(failed.id).state == RunState.FAILED


def test_retry_lane_rejects_active_lane(orchestrator) -> None:
    orchestrator.advance_session("s1", QUESTION)

    with pytest.raises(InvalidTransitionError):
        orchestrator.retry_lane("s1", ResearchProvider.OPENAI)


def test_retry_lane_unknown_lane(orchestrator) -> None:
    with pytest.raises(RunNotFoundError):
        orchestrator.retry_lane("nope", ResearchProvider.OPENAI)


def test_retry_lane_deferred_while_session_locked(orchestrator, lock) -> None:
    assert lock.try_acquire(session_lock_key("s1"))
    assert orchestrator.retry_lane("s1", ResearchProvider.OPENAI) is None


def test_session_snapshot_reports_missing_lanes(orchestrator) -> None:
    orchestrator.start_run("s1", ResearchProvider.OPENAI, QUESTION)

    snapshot = orchestrator.get_session_snapshot("s1")

    assert snapshot.lanes["openai"].state == RunState.NEW
    assert snapshot.lanes["gemini"] is None
    assert snapshot.advanced is False
