import pytest

from conftest import FakeStepExecutor, tick_until
from research_engine.executor import run_repo
from research_engine.executor.errors import RunNotFoundError, TransientProviderError
from research_engine.executor.locks import InMemoryLock, provider_lock_key
from research_engine.executor.orchestrator import ResearchOrchestrator
from research_engine.executor.schemas import RunState, StepExecution, StepStatus
from research_engine.workflows.schemas import STEP_SEQUENCE, ResearchProvider, StepType

GAP_FOUND = StepExecution(raw_text='{"severe_gaps": true, "follow_up_queries": ["q1", "q2"]}')


def _start(orchestrator, session_id: str = "s1"):
    return orchestrator.start_run(session_id, ResearchProvider.OPENAI, "How are heat pumps doing in cold climates?")


def _statuses(run_id: str) -> dict[int, StepStatus]:
    return {s.step_index: s.status for s in run_repo.list_steps(run_id)}


def test_start_run_initializes_queued_steps(orchestrator) -> None:
    run = _start(orchestrator)

    assert run.state == RunState.NEW
    assert run.attempt == 1
    assert run.current_step_index == 0
    steps = run_repo.list_steps(run.id)
    assert [s.step_type for s in steps] == [t.value for t in STEP_SEQUENCE]
    assert all(s.status == StepStatus.QUEUED for s in steps)


def test_start_run_is_idempotent_for_active_lane(orchestrator) -> None:
    first = _start(orchestrator)
    second = _start(orchestrator)
    assert second.id == first.id


def test_planning_step_moves_run_to_planned(orchestrator, executor) -> None:
    run = _start(orchestrator)

    result = orchestrator.tick(run.id)

    assert result.state == RunState.PLANNED
    assert result.done is False
    stored = run_repo.get_run(run.id)
    assert stored.state == RunState.PLANNED
    assert stored.current_step_index == 1
    assert stored.plan is not None
    assert [s.step_type for s in stored.plan.steps] == list(STEP_SEQUENCE)
    assert stored.plan.refined_topic == "Heat pumps in cold climates"
    assert executor.calls_for(StepType.DEVELOP_RESEARCH_PLAN) == 1


def test_full_run_completes_with_report_and_sources(orchestrator, executor) -> None:
    run = _start(orchestrator)

    result = tick_until(orchestrator, run.id, len(STEP_SEQUENCE))

    assert result.state == RunState.DONE
    assert result.done is True
    stored = run_repo.get_run(run.id)
    assert stored.synthesized_report.startswith("# Heat Pumps")
    assert "[1](https://example.org/report)" in stored.synthesized_report
    assert stored.synthesized_sources
    assert stored.progress.step_label == "Complete"
    assert stored.completed_at is not None
    assert all(status == StepStatus.DONE for status in _statuses(run.id).values())
    assert len(executor.calls) == len(STEP_SEQUENCE)


def test_each_step_runs_once_per_tick(orchestrator, executor) -> None:
    run = _start(orchestrator)

    for expected_calls in range(1, 4):
        orchestrator.tick(run.id)
        assert len(executor.calls) == expected_calls
    assert run_repo.get_run(run.id).current_step_index == 3


def test_evidence_and_sources_are_persisted(orchestrator) -> None:
    run = _start(orchestrator)
    tick_until(orchestrator, run.id, 5)

    evidence = run_repo.list_evidence(run.id)
    claims = [e.claim for e in evidence]
    assert "Installations doubled" in claims
    doubled = next(e for e in evidence if e.claim == "Installations doubled")
    assert doubled.confidence == "high"
    assert doubled.evidence_id.startswith("ev_")

    urls = [c.url for c in run_repo.list_citations(run.id)]
    assert "https://example.org/report" in urls
    assert "https://stats.example.gov/table" in urls


def test_terminal_run_tick_is_noop(orchestrator, executor) -> None:
    run = _start(orchestrator)
    tick_until(orchestrator, run.id, len(STEP_SEQUENCE))
    calls = len(executor.calls)

    results = [orchestrator.tick(run.id) for _ in range(3)]

    assert all(r.state == RunState.DONE and r.done for r in results)
    assert len(executor.calls) == calls


def test_tick_unknown_run_raises(orchestrator) -> None:
    with pytest.raises(RunNotFoundError):
        orchestrator.tick("run-missing")


def test_transient_errors_requeue_then_fail_after_ceiling(lock) -> None:
    executor = FakeStepExecutor({
        StepType.DISCOVER_SOURCES_WITH_PLAN: [TransientProviderError("Request timed out")] * 4,
    })
    orchestrator = ResearchOrchestrator(executor, lock, max_transient_retries=3)
    run = _start(orchestrator)
    orchestrator.tick(run.id)

    for attempt in range(1, 4):
        result = orchestrator.tick(run.id)
        assert result.state == RunState.IN_PROGRESS
        assert result.done is False
        step = run_repo.list_steps(run.id)[1]
        assert step.status == StepStatus.QUEUED
        assert step.retry_count == attempt

    result = orchestrator.tick(run.id)

    assert result.state == RunState.FAILED
    assert result.done is True
    stored = run_repo.get_run(run.id)
    assert "DISCOVER_SOURCES_WITH_PLAN" in stored.error_message
    assert "3" in stored.error_message
    assert executor.calls_for(StepType.DISCOVER_SOURCES_WITH_PLAN) == 4


def test_transient_success_resets_retry_count(lock) -> None:
    executor = FakeStepExecutor({
        StepType.DISCOVER_SOURCES_WITH_PLAN: [TransientProviderError("429 rate limit")],
    })
    orchestrator = ResearchOrchestrator(executor, lock)
    run = _start(orchestrator)

    tick_until(orchestrator, run.id, 3)

    step = run_repo.list_steps(run.id)[1]
    assert step.status == StepStatus.DONE
    assert step.retry_count == 0
    assert step.error_message is None


def test_quota_error_fails_immediately(lock) -> None:
    executor = FakeStepExecutor({
        StepType.DISCOVER_SOURCES_WITH_PLAN: [RuntimeError("429: You exceeded your current quota")],
    })
    orchestrator = ResearchOrchestrator(executor, lock)
    run = _start(orchestrator)

    result = tick_until(orchestrator, run.id, 2)

    assert result.state == RunState.FAILED
    stored = run_repo.get_run(run.id)
    assert stored.error_message.startswith("DISCOVER_SOURCES_WITH_PLAN failed:")
    assert executor.calls_for(StepType.DISCOVER_SOURCES_WITH_PLAN) == 1


def test_severe_gaps_loop_back_to_discovery(lock) -> None:
    executor = FakeStepExecutor({StepType.GAP_CHECK: [GAP_FOUND]})
    orchestrator = ResearchOrchestrator(executor, lock)
    run = _start(orchestrator)

    result = tick_until(orchestrator, run.id, 7)

    assert result.state == RunState.IN_PROGRESS
    assert result.done is False
    stored = run_repo.get_run(run.id)
    assert stored.current_step_index == 1
    assert stored.progress.gap_loops == 1
    statuses = _statuses(run.id)
    assert statuses[0] == StepStatus.DONE
    assert all(statuses[i] == StepStatus.QUEUED for i in range(1, 8))


def test_gap_loop_reruns_middle_stages_then_completes(lock) -> None:
    executor = FakeStepExecutor({StepType.GAP_CHECK: [GAP_FOUND]})
    orchestrator = ResearchOrchestrator(executor, lock)
    run = _start(orchestrator)

    result = tick_until(orchestrator, run.id, 7 + 7)

    assert result.state == RunState.DONE
    assert executor.calls_for(StepType.DEVELOP_RESEARCH_PLAN) == 1
    assert executor.calls_for(StepType.DISCOVER_SOURCES_WITH_PLAN) == 2
    assert executor.calls_for(StepType.GAP_CHECK) == 2
    assert executor.calls_for(StepType.SECTION_SYNTHESIS) == 1


def test_severe_gaps_at_loop_ceiling_proceed_to_synthesis(lock) -> None:
    executor = FakeStepExecutor({StepType.GAP_CHECK: [GAP_FOUND]})
    orchestrator = ResearchOrchestrator(executor, lock)
    run = _start(orchestrator)
    tick_until(orchestrator, run.id, 6)
    run_repo.update_run(run.id, progress={"gap_loops": 2})

    result = orchestrator.tick(run.id)

    assert result.done is False
    stored = run_repo.get_run(run.id)
    assert stored.current_step_index == 7
    assert stored.progress.gap_loops == 2
    assert _statuses(run.id)[6] == StepStatus.DONE

    assert orchestrator.tick(run.id).state == RunState.DONE


class InterleavingLock(InMemoryLock):
    """Runs a competing tick right before the next provider lock attempt."""

    def __init__(self):
        super().__init__()
        self.competing_tick = None

    def try_acquire(self, key: str) -> bool:
        if self.competing_tick is not None and key.startswith(provider_lock_key("")):
            competing, self.competing_tick = self.competing_tick, None
            competing()
        return super().try_acquire(key)


def test_step_finished_by_concurrent_poller_is_not_reexecuted() -> None:
    lock = InterleavingLock()
    executor = FakeStepExecutor()
    orchestrator = ResearchOrchestrator(executor, lock)
    run = _start(orchestrator)
    orchestrator.tick(run.id)

    lock.competing_tick = lambda: orchestrator.tick(run.id)
    result = orchestrator.tick(run.id)

    assert result.state == RunState.IN_PROGRESS
    assert result.done is False
    assert executor.calls_for(StepType.DISCOVER_SOURCES_WITH_PLAN) == 1
    assert run_repo.get_run(run.id).current_step_index == 2


def test_concurrent_gap_loop_is_not_overridden() -> None:
    lock = InterleavingLock()
    executor = FakeStepExecutor({StepType.GAP_CHECK: [GAP_FOUND]})
    orchestrator = ResearchOrchestrator(executor, lock)
    run = _start(orchestrator)
    tick_until(orchestrator, run.id, 6)

    lock.competing_tick = lambda: orchestrator.tick(run.id)
    orchestrator.tick(run.id)

    assert executor.calls_for(StepType.GAP_CHECK) == 1
    stored = run_repo.get_run(run.id)
    assert stored.current_step_index == 1
    assert stored.progress.gap_loops == 1
    statuses = _statuses(run.id)
    assert statuses[0] == StepStatus.DONE
    assert all(statuses[i] == StepStatus.QUEUED for i in range(1, 8))


def test_run_failed_by_concurrent_poller_is_left_alone() -> None:
    lock = InterleavingLock()
    executor = FakeStepExecutor({StepType.DISCOVER_SOURCES_WITH_PLAN: [RuntimeError("insufficient_quota")]})
    orchestrator = ResearchOrchestrator(executor, lock)
    run = _start(orchestrator)
    orchestrator.tick(run.id)

    lock.competing_tick = lambda: orchestrator.tick(run.id)
    result = orchestrator.tick(run.id)

    assert result.state == RunState.FAILED
    assert result.done is True
    assert executor.calls_for(StepType.DISCOVER_SOURCES_WITH_PLAN) == 1


@pytest.mark.parametrize("gap_outputs", [[], [GAP_FOUND], [GAP_FOUND, GAP_FOUND]])
def test_step_index_only_moves_back_through_gap_loop(lock, gap_outputs) -> None:
    executor = FakeStepExecutor({StepType.GAP_CHECK: list(gap_outputs)})
    orchestrator = ResearchOrchestrator(executor, lock)
    run = _start(orchestrator)

    observed = [(0, 0)]
    result = None
    for _ in range(40):
        result = orchestrator.tick(run.id)
        stored = run_repo.get_run(run.id)
        observed.append((stored.current_step_index, stored.progress.gap_loops))
        if result.done:
            break

    assert result.state == RunState.DONE
    for (prev_index, prev_loops), (index, loops) in zip(observed, observed[1:]):
        if index < prev_index:
            assert (index, loops) == (1, prev_loops + 1)
        else:
            assert loops == prev_loops
    assert observed[-1] == (len(STEP_SEQUENCE), len(gap_outputs))


@pytest.mark.parametrize("plan_text", [
    '{"refined_topic": "x", "steps": 5}',
    '{"refined_topic": "x", "assumptions": 3}',
    '{"refined_topic": "x", "steps": [{"step_type": "GAP_CHECK", "target_source_types": 7}]}',
])
def test_malformed_plan_fields_fall_back_instead_of_failing(lock, plan_text) -> None:
    executor = FakeStepExecutor({StepType.DEVELOP_RESEARCH_PLAN: [StepExecution(raw_text=plan_text)]})
    orchestrator = ResearchOrchestrator(executor, lock)
    run = _start(orchestrator)

    result = orchestrator.tick(run.id)

    assert result.state == RunState.PLANNED
    stored = run_repo.get_run(run.id)
    assert stored.plan.refined_topic == "x"
    assert [s.step_type for s in stored.plan.steps] == list(STEP_SEQUENCE)


def test_scalar_shortlist_keeps_discovered_citations(lock) -> None:
    executor = FakeStepExecutor({StepType.SHORTLIST_RESULTS: [StepExecution(raw_text='{"shortlist": 3}')]})
    orchestrator = ResearchOrchestrator(executor, lock)
    run = _start(orchestrator)

    result = tick_until(orchestrator, run.id, 3)

    assert result.state == RunState.IN_PROGRESS
    assert _statuses(run.id)[2] == StepStatus.DONE


def test_busy_provider_lock_defers_without_mutation(orchestrator, executor, lock) -> None:
    run = _start(orchestrator)
    orchestrator.tick(run.id)
    before = run_repo.get_run(run.id)
    assert lock.try_acquire(provider_lock_key("openai"))

    result = orchestrator.tick(run.id)

    assert result.state == RunState.IN_PROGRESS
    assert result.done is False
    assert len(executor.calls) == 1
    after = run_repo.get_run(run.id)
    assert after.current_step_index == before.current_step_index
    assert after.state == before.state
    assert _statuses(run.id)[1] == StepStatus.QUEUED


def test_provider_lock_released_after_step(orchestrator, lock) -> None:
    run = _start(orchestrator)
    orchestrator.tick(run.id)
    assert not lock.is_held(provider_lock_key("openai"))


def test_whitespace_synthesis_fails_without_retry(lock) -> None:
    executor = FakeStepExecutor({StepType.SECTION_SYNTHESIS: [StepExecution(raw_text="  \n\t ")]})
    orchestrator = ResearchOrchestrator(executor, lock)
    run = _start(orchestrator)

    result = tick_until(orchestrator, run.id, len(STEP_SEQUENCE))

    assert result.state == RunState.FAILED
    stored = run_repo.get_run(run.id)
    assert stored.error_message == "Empty synthesis output"
    assert executor.calls_for(StepType.SECTION_SYNTHESIS) == 1
    synthesis = run_repo.list_steps(run.id)[7]
    assert synthesis.status == StepStatus.FAILED
    assert synthesis.retry_count == 0


def test_synthesis_without_sources_fails(lock) -> None:
    executor = FakeStepExecutor({
        step: [StepExecution(raw_text="Plain findings with no links at all.")]
        for step in STEP_SEQUENCE if step != StepType.DEVELOP_RESEARCH_PLAN
    })
    orchestrator = ResearchOrchestrator(executor, lock)
    run = _start(orchestrator)

    result = tick_until(orchestrator, run.id, len(STEP_SEQUENCE))

    assert result.state == RunState.FAILED
    assert "no sources" in run_repo.get_run(run.id).error_message


def test_redelivered_tick_skips_done_step(orchestrator, executor) -> None:
    run = _start(orchestrator)
    tick_until(orchestrator, run.id, 2)
    # Interrupted tick: step 1 persisted as done but the index never advanced
    run_repo.update_run(run.id, current_step_index=1)

    orchestrator.tick(run.id)

    assert executor.calls_for(StepType.DISCOVER_SOURCES_WITH_PLAN) == 1
    assert executor.calls_for(StepType.SHORTLIST_RESULTS) == 1
    assert run_repo.get_run(run.id).current_step_index == 3


def test_index_ahead_of_steps_is_pulled_back(orchestrator, executor) -> None:
    run = _start(orchestrator)
    tick_until(orchestrator, run.id, 2)
    run_repo.update_run(run.id, current_step_index=3)

    result = orchestrator.tick(run.id)

    assert result.state == RunState.IN_PROGRESS
    assert result.done is False
    assert len(executor.calls) == 2
    assert run_repo.get_run(run.id).current_step_index == 2


def test_interrupted_running_step_is_reexecuted(orchestrator, executor) -> None:
    run = _start(orchestrator)
    orchestrator.tick(run.id)
    run_repo.upsert_step(run.id, 1, StepType.DISCOVER_SOURCES_WITH_PLAN.value, StepStatus.RUNNING, started=True)

    orchestrator.tick(run.id)

    assert _statuses(run.id)[1] == StepStatus.DONE
    assert executor.calls_for(StepType.DISCOVER_SOURCES_WITH_PLAN) == 1


def test_run_snapshot(orchestrator) -> None:
    run = _start(orchestrator)
    tick_until(orchestrator, run.id, 2)

    snapshot = orchestrator.get_run_snapshot(run.id)

    assert snapshot.run.id == run.id
    assert len(snapshot.steps) == len(STEP_SEQUENCE)
    assert snapshot.sources
    assert snapshot.steps[1].output_excerpt


def test_run_snapshot_unknown_run(orchestrator) -> None:
    with pytest.raises(RunNotFoundError):
        orchestrator.get_run_snapshot("run-missing")
