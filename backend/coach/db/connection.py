import asyncio
import os
import sqlite3
from typing import Any, Optional


def init_db(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        create table if not exists jobs (
          job_id text primary key,
          type text not null,
          target_id text,
          status text not null,
          created_at text not null,
          updated_at text not null,
          started_at text,
          completed_at text,
          input_json text,
          result_json text,
          error text
        );
        """
    )
    conn.execute(
        """
        create table if not exists job_events (
          event_id integer primary key,
          job_id text not null,
          created_at text not null,
          level text not null,
          message text not null,
          meta_json text
        );
        """
    )
    conn.execute(
        """
        create table if not exists threads (
          thread_id text primary key,
          title text not null,
          context_json text,
          messages_json text not null,
          is_streaming integer default 0,
          created_at text not null,
          updated_at text not null
        );
        """
    )
    conn.execute(
        """
        create table if not exists evaluations (
          challenge_id text primary key,
          job_id text,
          status text not null,
          streaming_feedback text,
          partial_json text,
          result_json text,
          error text,
          updated_at text not null
        );
        """
    )
    conn.execute(
        """
        create table if not exists focus_items (
          item_type text not null,
          item_id text not null,
          date_key text not null,
          status text not null,
          title text,
          data_json text not null,
          state_history_json text not null,
          operation_state_json text,
          updated_at text not null,
          primary key (item_type, item_id)
        );
        """
    )
    conn.execute(
        """
        create index if not exists idx_jobs_status
        on jobs (status, type);
        """
    )
    conn.execute(
        """
        create index if not exists idx_focus_items_date
        on focus_items (date_key, item_type);
        """
    )
    conn.commit()


class Database:
    """Single SQLite connection shared by the repos of one process.

    Every statement runs in a worker thread behind one asyncio lock, so the
    store has exactly one writer at a time.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self._lock = asyncio.Lock()
        self._conn: sqlite3.Connection | None = None

    async def connect(self) -> None:
        if self._conn is not None:
            return
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        conn = sqlite3.connect(self.path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        init_db(conn)
        self._conn = conn

    async def close(self) -> None:
        if self._conn:
            async with self._lock:
                self._conn.close()
                self._conn = None

    def _ensure_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("database not initialized")
        return self._conn

    async def execute(self, query: str, params: tuple[Any, ...] = ()) -> int:
        async with self._lock:
            return await asyncio.to_thread(self._execute_sync, query, params)

    async def executemany(self, query: str, params: list[tuple[Any, ...]]) -> None:
        if not params:
            return
        async with self._lock:
            await asyncio.to_thread(self._executemany_sync, query, params)

    def _execute_sync(self, query: str, params: tuple[Any, ...]) -> int:
        conn = self._ensure_conn()
        cur = conn.execute(query, params)
        conn.commit()
        return cur.rowcount

    def _executemany_sync(self, query: str, params: list[tuple[Any, ...]]) -> None:
        conn = self._ensure_conn()
        conn.executemany(query, params)
        conn.commit()

    async def fetchone(
        self, query: str, params: tuple[Any, ...] = ()
    ) -> Optional[sqlite3.Row]:
        async with self._lock:
            return await asyncio.to_thread(self._fetchone_sync, query, params)

    def _fetchone_sync(
        self, query: str, params: tuple[Any, ...]
    ) -> Optional[sqlite3.Row]:
        conn = self._ensure_conn()
        cur = conn.execute(query, params)
        return cur.fetchone()

    async def fetchall(
        self, query: str, params: tuple[Any, ...] = ()
    ) -> list[sqlite3.Row]:
        async with self._lock:
            return await asyncio.to_thread(self._fetchall_sync, query, params)

    def _fetchall_sync(
        self, query: str, params: tuple[Any, ...]
    ) -> list[sqlite3.Row]:
        conn = self._ensure_conn()
        cur = conn.execute(query, params)
        return cur.fetchall()
