"""Execution engine for the research pipeline.

Takes a research question for one provider lane and drives it through the
fixed 8-stage pipeline, one step per externally-triggered tick, persisting
every step so a run can be resumed by whichever process polls next.

Architecture (bottom-up):
- db: Postgres / SQLite connection handling and DDL
- run_repo: Run and step persistence, citation/evidence upserts
- structured_output: Tolerant JSON extraction, evidence derivation
- retry: Transient-vs-fatal error classification
- locks: Provider-lane and session try-locks (advisory or in-memory)
- throttle: Poll throttling for status reads
- step_executor: Prompt building and the provider call for one stage
- orchestrator: Run state machine, gap loop, session passes
"""
