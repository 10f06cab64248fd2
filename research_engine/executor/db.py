"""Database layer for the research executor.

Supports two backends:
- PostgreSQL (production, set EXECUTOR_DATABASE_URL env var)
- SQLite (local development, default)

Uses raw SQL via psycopg2 (Postgres) or sqlite3 (SQLite) for simplicity.
No ORM.

Thread-safety: Postgres uses a ThreadedConnectionPool for efficient
connection reuse. SQLite uses per-call connections with check_same_thread=False.

Storage failures surface as RepositoryError; unique-constraint violations
as its IntegrityConflict subclass.
"""

import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from research_engine.executor.errors import IntegrityConflict, RepositoryError

logger = logging.getLogger(__name__)

# Database URL: postgres://... for Postgres, or empty/sqlite for SQLite
DATABASE_URL = os.environ.get("EXECUTOR_DATABASE_URL", "")

# SQLite default path
SQLITE_PATH = Path(__file__).parent / "research.db"

_initialized = False
_pg_pool = None


def _is_postgres() -> bool:
    """Check if we're using Postgres."""
    return DATABASE_URL.startswith("postgres")


def _get_pg_pool():
    """Get or create the Postgres connection pool (lazy singleton)."""
    global _pg_pool
    if _pg_pool is None:
        import psycopg2.pool
        _pg_pool = psycopg2.pool.ThreadedConnectionPool(
            minconn=1,
            maxconn=8,
            dsn=DATABASE_URL,
        )
        logger.info("PostgreSQL connection pool initialized (1-8 connections)")
    return _pg_pool


@contextmanager
def get_connection():
    """Get a database connection (Postgres or SQLite).

    Usage:
        with get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(...)
            conn.commit()
    """
    if _is_postgres():
        pool = _get_pg_pool()
        conn = pool.getconn()
        try:
            yield conn
        finally:
            pool.putconn(conn)
    else:
        conn = sqlite3.connect(str(SQLITE_PATH), check_same_thread=False, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        try:
            yield conn
        finally:
            conn.close()


def _json_dumps(data: Any) -> str:
    """Serialize data to JSON string for storage."""
    if data is None:
        return "{}"
    return json.dumps(data, ensure_ascii=False, default=str)


def _json_loads(text: Any, default: Any = None) -> Any:
    """Deserialize JSON string from storage."""
    if text is None or text == "":
        return {} if default is None else default
    if isinstance(text, (dict, list)):
        return text  # Already parsed (Postgres JSONB)
    return json.loads(text)


def _driver_errors() -> tuple[type, ...]:
    if _is_postgres():
        import psycopg2
        return (psycopg2.Error,)
    return (sqlite3.Error,)


def _is_integrity_error(error: Exception) -> bool:
    if isinstance(error, sqlite3.IntegrityError):
        return True
    if _is_postgres():
        import psycopg2
        return isinstance(error, psycopg2.IntegrityError)
    return False


def json_merge_sql() -> str:
    """SQL expression that shallow-merges a JSON param into the progress column."""
    if _is_postgres():
        return "COALESCE(progress, '{}'::jsonb) || %s::jsonb"
    return "json_patch(COALESCE(progress, '{}'), %s)"


def execute(sql: str, params: tuple = (), fetch: str = "none") -> Any:
    """Execute a SQL statement.

    Args:
        sql: SQL statement (use %s placeholders; converted to ? for SQLite)
        params: Parameters tuple
        fetch: "none", "one", "all"

    Returns:
        None for "none", dict for "one", list[dict] for "all"

    Raises:
        RepositoryError: If the database rejects the statement or is unreachable
    """
    init_db()

    # Adapt placeholder style
    if _is_postgres():
        adapted_sql = sql
    else:
        adapted_sql = sql.replace("%s", "?")

    try:
        with get_connection() as conn:
            cursor = conn.cursor()
            try:
                cursor.execute(adapted_sql, params)
                if fetch == "none":
                    conn.commit()
                    return None
                columns = [desc[0] for desc in cursor.description] if cursor.description else []
                if fetch == "one":
                    row = cursor.fetchone()
                    conn.commit()
                    if row is None:
                        return None
                    return dict(zip(columns, row)) if _is_postgres() else dict(row)
                rows = cursor.fetchall()
                conn.commit()
                if _is_postgres():
                    return [dict(zip(columns, row)) for row in rows]
                return [dict(row) for row in rows]
            except Exception:
                conn.rollback()
                raise
    except _driver_errors() as e:
        if _is_integrity_error(e):
            raise IntegrityConflict(str(e)) from e
        logger.error(f"Database error: {e}")
        raise RepositoryError(str(e)) from e


def init_db():
    """Create tables if they don't exist."""
    global _initialized
    if _initialized:
        return

    try:
        if _is_postgres():
            _init_postgres()
        else:
            _init_sqlite()
    except _driver_errors() as e:
        raise RepositoryError(f"Database initialization failed: {e}") from e

    _initialized = True
    backend = "PostgreSQL" if _is_postgres() else f"SQLite ({SQLITE_PATH})"
    logger.info(f"Research database initialized: {backend}")


def _init_postgres():
    """Create Postgres tables."""
    ddl = """
    CREATE TABLE IF NOT EXISTS research_runs (
        id VARCHAR(100) PRIMARY KEY,
        session_id VARCHAR(100) NOT NULL,
        attempt INTEGER NOT NULL DEFAULT 1,
        provider VARCHAR(20) NOT NULL,
        mode VARCHAR(20) NOT NULL DEFAULT 'custom',
        depth VARCHAR(20) NOT NULL DEFAULT 'standard',
        question TEXT NOT NULL,
        plan JSONB,
        progress JSONB DEFAULT '{}',
        current_step_index INTEGER NOT NULL DEFAULT 0,
        max_steps INTEGER NOT NULL DEFAULT 8,
        target_sources_per_step INTEGER NOT NULL DEFAULT 10,
        max_total_sources INTEGER NOT NULL DEFAULT 80,
        max_tokens_per_step INTEGER NOT NULL DEFAULT 5000,
        min_word_count INTEGER NOT NULL DEFAULT 2500,
        state VARCHAR(20) NOT NULL DEFAULT 'NEW',
        error_message TEXT,
        synthesized_report TEXT,
        synthesized_sources JSONB,
        created_at TIMESTAMP DEFAULT NOW(),
        updated_at TIMESTAMP DEFAULT NOW(),
        completed_at TIMESTAMP,
        UNIQUE(session_id, provider, attempt)
    );

    CREATE INDEX IF NOT EXISTS idx_research_runs_session
        ON research_runs(session_id, provider, attempt DESC);

    CREATE TABLE IF NOT EXISTS research_steps (
        id SERIAL PRIMARY KEY,
        run_id VARCHAR(100) NOT NULL REFERENCES research_runs(id) ON DELETE CASCADE,
        step_index INTEGER NOT NULL,
        step_type VARCHAR(50) NOT NULL,
        status VARCHAR(20) NOT NULL DEFAULT 'queued',
        provider VARCHAR(20),
        mode VARCHAR(20),
        step_goal TEXT,
        inputs_summary TEXT,
        tools_used JSONB,
        raw_output TEXT,
        output_excerpt TEXT,
        output_text_with_refs TEXT,
        step_references JSONB,
        citations JSONB,
        evidence JSONB,
        provider_native JSONB,
        structured_output JSONB,
        token_usage JSONB,
        model_used VARCHAR(100),
        retry_count INTEGER NOT NULL DEFAULT 0,
        error_message TEXT,
        started_at TIMESTAMP,
        completed_at TIMESTAMP,
        updated_at TIMESTAMP DEFAULT NOW(),
        UNIQUE(run_id, step_index)
    );

    CREATE TABLE IF NOT EXISTS research_sources (
        id SERIAL PRIMARY KEY,
        run_id VARCHAR(100) NOT NULL REFERENCES research_runs(id) ON DELETE CASCADE,
        citation_id VARCHAR(64) NOT NULL,
        url TEXT NOT NULL,
        title TEXT,
        publisher TEXT,
        reliability_tags JSONB,
        provider_metadata JSONB,
        accessed_at TIMESTAMP,
        UNIQUE(run_id, citation_id)
    );

    CREATE TABLE IF NOT EXISTS research_evidence (
        id SERIAL PRIMARY KEY,
        run_id VARCHAR(100) NOT NULL REFERENCES research_runs(id) ON DELETE CASCADE,
        evidence_id VARCHAR(64) NOT NULL,
        step_index INTEGER NOT NULL,
        claim TEXT NOT NULL,
        supporting_snippet TEXT,
        source_citation_ids JSONB,
        confidence VARCHAR(10) NOT NULL DEFAULT 'med',
        confidence_score REAL NOT NULL DEFAULT 0.65,
        notes TEXT,
        created_at TIMESTAMP DEFAULT NOW(),
        UNIQUE(run_id, evidence_id)
    );
    """
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute(ddl)
        conn.commit()


def _init_sqlite():
    """Create SQLite tables."""
    ddl = """
    CREATE TABLE IF NOT EXISTS research_runs (
        id TEXT PRIMARY KEY,
        session_id TEXT NOT NULL,
        attempt INTEGER NOT NULL DEFAULT 1,
        provider TEXT NOT NULL,
        mode TEXT NOT NULL DEFAULT 'custom',
        depth TEXT NOT NULL DEFAULT 'standard',
        question TEXT NOT NULL,
        plan TEXT,
        progress TEXT DEFAULT '{}',
        current_step_index INTEGER NOT NULL DEFAULT 0,
        max_steps INTEGER NOT NULL DEFAULT 8,
        target_sources_per_step INTEGER NOT NULL DEFAULT 10,
        max_total_sources INTEGER NOT NULL DEFAULT 80,
        max_tokens_per_step INTEGER NOT NULL DEFAULT 5000,
        min_word_count INTEGER NOT NULL DEFAULT 2500,
        state TEXT NOT NULL DEFAULT 'NEW',
        error_message TEXT,
        synthesized_report TEXT,
        synthesized_sources TEXT,
        created_at TEXT,
        updated_at TEXT,
        completed_at TEXT,
        UNIQUE(session_id, provider, attempt)
    );

    CREATE INDEX IF NOT EXISTS idx_research_runs_session
        ON research_runs(session_id, provider, attempt DESC);

    CREATE TABLE IF NOT EXISTS research_steps (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        run_id TEXT NOT NULL REFERENCES research_runs(id) ON DELETE CASCADE,
        step_index INTEGER NOT NULL,
        step_type TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'queued',
        provider TEXT,
        mode TEXT,
        step_goal TEXT,
        inputs_summary TEXT,
        tools_used TEXT,
        raw_output TEXT,
        output_excerpt TEXT,
        output_text_with_refs TEXT,
        step_references TEXT,
        citations TEXT,
        evidence TEXT,
        provider_native TEXT,
        structured_output TEXT,
        token_usage TEXT,
        model_used TEXT,
        retry_count INTEGER NOT NULL DEFAULT 0,
        error_message TEXT,
        started_at TEXT,
        completed_at TEXT,
        updated_at TEXT,
        UNIQUE(run_id, step_index)
    );

    CREATE TABLE IF NOT EXISTS research_sources (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        run_id TEXT NOT NULL REFERENCES research_runs(id) ON DELETE CASCADE,
        citation_id TEXT NOT NULL,
        url TEXT NOT NULL,
        title TEXT,
        publisher TEXT,
        reliability_tags TEXT,
        provider_metadata TEXT,
        accessed_at TEXT,
        UNIQUE(run_id, citation_id)
    );

    CREATE TABLE IF NOT EXISTS research_evidence (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        run_id TEXT NOT NULL REFERENCES research_runs(id) ON DELETE CASCADE,
        evidence_id TEXT NOT NULL,
        step_index INTEGER NOT NULL,
        claim TEXT NOT NULL,
        supporting_snippet TEXT,
        source_citation_ids TEXT,
        confidence TEXT NOT NULL DEFAULT 'med',
        confidence_score REAL NOT NULL DEFAULT 0.65,
        notes TEXT,
        created_at TEXT,
        UNIQUE(run_id, evidence_id)
    );
    """
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.executescript(ddl)
        conn.commit()
