"""
core/db.py -- SQLAlchemy engine factory shared by every store.

Both stores (auth/store.py, ratelimit/store.py) talk to the same relational
database. This module owns the dialect-specific connection setup so the
repositories only deal with SQL.

SQLite:
  - check_same_thread=False: FastAPI runs sync handlers in a thread pool.
  - timeout: how long a writer waits for the database lock before raising
    "database is locked". That error is treated like any other outage.
  - WAL journal mode so readers do not block behind the rate-limit writer.
  - pysqlite's own transaction handling is disabled and SQLAlchemy emits BEGIN
    itself. Without this, pysqlite defers BEGIN until the first DML statement
    and a transaction cannot ask for BEGIN IMMEDIATE up front. Connections
    opened with execution_options(sqlite_begin="IMMEDIATE") take the write
    lock before their first statement.

PostgreSQL:
  - connect_timeout and a per-session statement_timeout derived from the same
    setting, so a hung server turns into an error instead of a stuck request.

Layer rule: core/ may not import from api/, auth/, or ratelimit/.
"""

from __future__ import annotations

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import QueuePool, StaticPool

_BEGIN_STATEMENTS = {
    "": "BEGIN",
    "IMMEDIATE": "BEGIN IMMEDIATE",
}


def _on_sqlite_connect(dbapi_conn, connection_record) -> None:
    """Hand transaction control to SQLAlchemy and enable WAL.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.isolation_level = None
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _on_sqlite_begin(conn) -> None:
    mode = conn.get_execution_options().get("sqlite_begin", "")
    conn.exec_driver_sql(_BEGIN_STATEMENTS.get(mode, "BEGIN"))


def _sqlite_poolclass(db_url: str):
    """Pick a pool under which every thread sees the same database.

    A private :memory: database lives and dies with its one connection, so
    all threads (request workers and the prune worker) must share it. A
    named shared-cache memory database survives as long as any connection
    stays open, which a QueuePool guarantees. Files use QueuePool as well.
    """
    if db_url in ("sqlite://", "sqlite:///:memory:") or db_url.startswith("sqlite:///:memory:?"):
        return StaticPool
    return QueuePool


def create_store_engine(db_url: str, timeout: float = 5.0) -> Engine:
    """Return an Engine for db_url with timeouts applied.

    Args:
        db_url:  SQLAlchemy URL. sqlite:// and postgresql:// are supported.
        timeout: Seconds. Bounds connects, lock waits and statements.
    """
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = timeout
    elif db_url.startswith("postgresql"):
        connect_args["connect_timeout"] = max(1, int(timeout))
        connect_args["options"] = f"-c statement_timeout={int(timeout * 1000)}"

    engine_kwargs: dict = {}
    if db_url.startswith("sqlite"):
        engine_kwargs["poolclass"] = _sqlite_poolclass(db_url)
    else:
        engine_kwargs["pool_pre_ping"] = True

    engine = create_engine(db_url, connect_args=connect_args, **engine_kwargs)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _on_sqlite_connect)
        event.listen(engine, "begin", _on_sqlite_begin)
    return engine
