"""Named non-blocking locks for provider lanes and sessions.

Two implementations of the same try-acquire/release contract:
- InMemoryLock: one process (SQLite / local development)
- PostgresAdvisoryLock: any number of processes sharing the database,
  using session-level pg_try_advisory_lock. The connection that took the
  lock is held out of the pool until release, because advisory locks
  belong to the connection that acquired them.

Keys:
- provider lane: "deep_research_provider:{provider}"
- session pass:  "session_run:{session_id}"
"""

import logging
import threading
from contextlib import contextmanager
from typing import Iterator, Protocol, runtime_checkable

from research_engine.executor import db
from research_engine.executor.errors import RepositoryError

logger = logging.getLogger(__name__)


def provider_lock_key(provider: str) -> str:
    return f"deep_research_provider:{provider}"


def session_lock_key(session_id: str) -> str:
    return f"session_run:{session_id}"


@runtime_checkable
class ProviderLock(Protocol):
    """Non-blocking named mutual exclusion."""

    def try_acquire(self, key: str) -> bool: ...

    def release(self, key: str) -> None: ...


class InMemoryLock:
    """Per-process lock table."""

    def __init__(self):
        self._held: set[str] = set()
        self._guard = threading.Lock()

    def try_acquire(self, key: str) -> bool:
        with self._guard:
            if key in self._held:
                return False
            self._held.add(key)
            return True

    def release(self, key: str) -> None:
        with self._guard:
            self._held.discard(key)

    def is_held(self, key: str) -> bool:
        with self._guard:
            return key in self._held


class PostgresAdvisoryLock:
    """Database-wide lock backed by pg_try_advisory_lock(hashtext(key))."""

    def __init__(self):
        self._connections: dict = {}
        self._guard = threading.Lock()

    def try_acquire(self, key: str) -> bool:
        import psycopg2

        with self._guard:
            if key in self._connections:
                # Advisory locks are re-entrant per connection; treat as busy
                return False

        pool = db._get_pg_pool()
        conn = pool.getconn()
        try:
            cursor = conn.cursor()
            cursor.execute("SELECT pg_try_advisory_lock(hashtext(%s))", (key,))
            acquired = bool(cursor.fetchone()[0])
            conn.commit()
        except psycopg2.Error as e:
            pool.putconn(conn)
            raise RepositoryError(f"Advisory lock {key} failed: {e}") from e

        if not acquired:
            pool.putconn(conn)
            return False

        with self._guard:
            self._connections[key] = conn
        return True

    def release(self, key: str) -> None:
        import psycopg2

        with self._guard:
            conn = self._connections.pop(key, None)
        if conn is None:
            return
        pool = db._get_pg_pool()
        try:
            cursor = conn.cursor()
            cursor.execute("SELECT pg_advisory_unlock(hashtext(%s))", (key,))
            conn.commit()
        except psycopg2.Error as e:
            # Closing the connection drops its advisory locks
            logger.warning(f"Advisory unlock {key} failed, discarding connection: {e}")
            pool.putconn(conn, close=True)
            return
        pool.putconn(conn)


_default_lock = None
_default_lock_guard = threading.Lock()


def get_default_lock():
    """Advisory locks on Postgres, in-memory otherwise (lazy singleton)."""
    global _default_lock
    with _default_lock_guard:
        if _default_lock is None:
            _default_lock = PostgresAdvisoryLock() if db._is_postgres() else InMemoryLock()
            logger.info(f"Using {type(_default_lock).__name__} for provider/session locks")
        return _default_lock


@contextmanager
def try_lock(lock: ProviderLock, key: str) -> Iterator[bool]:
    """Yield whether `key` was acquired; release it on exit if it was."""
    acquired = lock.try_acquire(key)
    try:
        yield acquired
    finally:
        if acquired:
            lock.release(key)
