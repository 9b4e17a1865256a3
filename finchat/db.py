import os
from contextlib import contextmanager
from typing import Any, Iterable

from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

_POOL: ConnectionPool | None = None


def _dsn() -> str:
    url = os.getenv("DATABASE_URL")
    if url:
        return url
    return (
        f"host={os.getenv('PGHOST','db')} "
        f"port={os.getenv('PGPORT','5432')} "
        f"dbname={os.getenv('PGDATABASE','finchat')} "
        f"user={os.getenv('PGUSER','postgres')} "
        f"password={os.getenv('PGPASSWORD','postgres')}"
    )


def pool() -> ConnectionPool:
    global _POOL
    if _POOL is None:
        _POOL = ConnectionPool(conninfo=_dsn(), min_size=1, max_size=10, kwargs={"autocommit": True}, open=True)
    return _POOL


def close_pool() -> None:
    global _POOL
    if _POOL is not None:
        _POOL.close()
        _POOL = None


@contextmanager
def conn_cursor():
    with pool().connection() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            yield cur


@contextmanager
def transaction_cursor():
    with pool().connection() as conn:
        with conn.transaction():
            with conn.cursor(row_factory=dict_row) as cur:
                yield cur


def execute(sql: str, params: tuple | list | None = None) -> None:
    with conn_cursor() as cur:
        cur.execute(sql, params or ())


def execute_many(statements: Iterable[tuple[str, tuple | list]]) -> None:
    """Run every statement on one connection inside a single transaction."""
    with transaction_cursor() as cur:
        for sql, params in statements:
            cur.execute(sql, params)


def query_all(sql: str, params: tuple | list | None = None) -> list[dict[str, Any]]:
    with conn_cursor() as cur:
        cur.execute(sql, params or ())
        return list(cur.fetchall())


def query_one(sql: str, params: tuple | list | None = None) -> dict[str, Any] | None:
    rows = query_all(sql, params)
    return rows[0] if rows else None


def ensure_schema() -> None:
    execute(
        """
        CREATE TABLE IF NOT EXISTS chat_sessions (
          id TEXT PRIMARY KEY,
          user_id TEXT NOT NULL,
          title TEXT NOT NULL DEFAULT 'New Chat',
          created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
          updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
          last_message_at TIMESTAMPTZ
        )
        """
    )
    execute("CREATE INDEX IF NOT EXISTS chat_sessions_user_idx ON chat_sessions (user_id, updated_at DESC)")
    execute(
        """
        CREATE TABLE IF NOT EXISTS chat_messages (
          id TEXT PRIMARY KEY,
          session_id TEXT NOT NULL REFERENCES chat_sessions(id) ON DELETE CASCADE,
          position INT NOT NULL,
          role TEXT NOT NULL,
          content JSONB NOT NULL DEFAULT '[]'::jsonb,
          processing_time_ms INT,
          created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
        """
    )
    execute("CREATE INDEX IF NOT EXISTS chat_messages_session_idx ON chat_messages (session_id, position)")
    execute(
        """
        CREATE TABLE IF NOT EXISTS charts (
          id TEXT PRIMARY KEY,
          user_id TEXT NOT NULL,
          session_id TEXT REFERENCES chat_sessions(id) ON DELETE CASCADE,
          chart_data JSONB NOT NULL,
          created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
          updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
        """
    )
    execute(
        """
        CREATE TABLE IF NOT EXISTS csvs (
          id TEXT PRIMARY KEY,
          user_id TEXT NOT NULL,
          session_id TEXT REFERENCES chat_sessions(id) ON DELETE CASCADE,
          title TEXT NOT NULL,
          description TEXT,
          headers JSONB NOT NULL,
          rows JSONB NOT NULL,
          created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
          updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
        """
    )
