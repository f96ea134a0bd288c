"""
ratelimit/store.py -- Append-only request event log in the shared database.

Each request that passes through the limiter adds one immutable row
(client_key, endpoint, created_at). The "current count" is never stored; it is
derived by counting rows for a key+endpoint inside the trailing window.

Race freedom:
  record_and_count() inserts the caller's row and counts the window inside one
  serialized transaction. Two concurrent callers with the same key cannot both
  observe the pre-insert count:
    - SQLite: the transaction opens with BEGIN IMMEDIATE (core/db.py), taking
      the database write lock before the INSERT. The next writer waits on the
      driver timeout and then sees every committed row, its own included.
    - PostgreSQL: pg_advisory_xact_lock on a hash of the key serializes the
      callers for that key only; other keys proceed in parallel. The lock is
      released at COMMIT.
  A naive "count, then insert" lets N concurrent requests all see the same
  stale count.

created_at is unix seconds from the limiter's injected clock so windows can be
tested deterministically.

Errors propagate. RateLimiter.allow() is where they turn into a deny.

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations

from sqlalchemy import Column, Float, Index, Integer, MetaData, String, Table, func, select, text
from sqlalchemy.engine import Engine

from core.config import get_settings
from core.db import create_store_engine

_metadata = MetaData()

_api_usage = Table(
    "api_usage",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("client_key", String(255), nullable=False),
    Column("endpoint", String(50), nullable=False),
    Column("created_at", Float, nullable=False),
    Index("idx_api_usage_lookup", "client_key", "endpoint", "created_at"),
)

_ADVISORY_LOCK = text("SELECT pg_advisory_xact_lock(hashtext(:lock_key))")


class UsageStore:
    """Repository for rate-limit events.

    Usage:
        usage = UsageStore("sqlite:///pcompass.db")
        count = usage.record_and_count("ip:10.0.0.1", "verify-pro", now=1700000000, window_seconds=3600)
        usage.purge_older_than(1700000000 - 48 * 3600)
        usage.close()
    """

    def __init__(self, db_url: str | None = None, timeout: float | None = None) -> None:
        if db_url is None or timeout is None:
            settings = get_settings()
            db_url = db_url or settings.database_url
            timeout = settings.db_timeout_seconds if timeout is None else timeout
        self.engine: Engine = create_store_engine(db_url, timeout)
        _metadata.create_all(self.engine)
        # Writers on this engine take the SQLite write lock at BEGIN.
        self._serialized = self.engine.execution_options(sqlite_begin="IMMEDIATE")

    def record_and_count(self, client_key: str, endpoint: str, now: float, window_seconds: int) -> int:
        """Record one event and return the post-insert count inside the window.

        The returned count always includes the row just inserted, and every
        row committed by concurrent callers for the same key before it.
        """
        with self._serialized.begin() as conn:
            if conn.dialect.name == "postgresql":
                conn.execute(_ADVISORY_LOCK, {"lock_key": f"{client_key}|{endpoint}"})
            conn.execute(_api_usage.insert().values(client_key=client_key, endpoint=endpoint, created_at=now))
            count = conn.execute(
                select(func.count())
                .select_from(_api_usage)
                .where(
                    (_api_usage.c.client_key == client_key)
                    & (_api_usage.c.endpoint == endpoint)
                    & (_api_usage.c.created_at > now - window_seconds)
                )
            ).scalar()
        return int(count or 0)

    def count(self, client_key: str, endpoint: str, now: float, window_seconds: int) -> int:
        """Read-only window count without recording an event.

        The limiter never calls this; allow() must go through
        record_and_count(). It exists for tests and operator diagnostics.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_api_usage)
                .where(
                    (_api_usage.c.client_key == client_key)
                    & (_api_usage.c.endpoint == endpoint)
                    & (_api_usage.c.created_at > now - window_seconds)
                )
            ).scalar()
        return int(result or 0)

    def purge_older_than(self, cutoff: float) -> int:
        """Delete events created before cutoff. Returns number of rows removed."""
        with self.engine.begin() as conn:
            result = conn.execute(_api_usage.delete().where(_api_usage.c.created_at < cutoff))
        return result.rowcount

    def delete_for_key(self, client_key: str) -> int:
        """Delete every event for client_key (account deletion)."""
        with self.engine.begin() as conn:
            result = conn.execute(_api_usage.delete().where(_api_usage.c.client_key == client_key))
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()
