import json
import logging
from typing import Any, Callable, Dict, List, Optional

from coach.db.connection import Database
from coach.schemas.threads import (
    INTERRUPTED_NOTE,
    STOPPED_NOTE,
    STREAMING_CURSOR,
    generate_message_id,
    is_placeholder_id,
)
from coach.utils.locks import KeyedLock
from coach.utils.time import utc_now_ms

logger = logging.getLogger(__name__)

NOTES = {"interrupted": INTERRUPTED_NOTE, "stopped": STOPPED_NOTE}


def _row_to_thread(row: Any) -> Dict[str, Any]:
    return {
        "thread_id": row["thread_id"],
        "title": row["title"],
        "context": json.loads(row["context_json"]) if row["context_json"] else {},
        "messages": json.loads(row["messages_json"]) if row["messages_json"] else [],
        "is_streaming": bool(row["is_streaming"]),
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def with_note(content: str, note: Optional[str]) -> str:
    note_text = NOTES.get(note or "")
    if not note_text or not content.strip() or note_text in content:
        return content
    return f"{content}\n\n{note_text}"


def apply_streaming_message(
    thread: Dict[str, Any],
    placeholder_id: str,
    content: str,
    tool_calls: Optional[List[str]] = None,
    is_final: bool = False,
    anchor_prompt: Optional[str] = None,
    note: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    """Insert or replace the placeholder message of an in-progress answer.

    The placeholder sits right after the user message equal to
    ``anchor_prompt`` (or at the end of the thread). On the final write it is
    replaced in place by a message with a fresh id, or removed when there is
    no content to keep. Returns None when the anchor message is missing.
    """
    messages = list(thread.get("messages", []))
    existing_index = next(
        (i for i, message in enumerate(messages) if message.get("id") == placeholder_id),
        -1,
    )
    insert_at = len(messages)
    if existing_index < 0 and anchor_prompt is not None:
        anchor_index = -1
        for i, message in enumerate(messages):
            if message.get("role") == "user" and message.get("content") == anchor_prompt:
                anchor_index = i
        if anchor_index < 0:
            return None
        insert_at = anchor_index + 1

    body = with_note(content, note)
    now = utc_now_ms()
    if is_final and not body.strip():
        if existing_index >= 0:
            messages.pop(existing_index)
    else:
        message = {
            "id": generate_message_id() if is_final else placeholder_id,
            "role": "assistant",
            "content": body if is_final else f"{body}{STREAMING_CURSOR}",
            "timestamp": now,
            "tool_calls": list(tool_calls) if tool_calls else None,
        }
        if existing_index >= 0:
            messages[existing_index] = message
        else:
            messages.insert(insert_at, message)

    return {
        **thread,
        "messages": messages,
        "is_streaming": not is_final,
        "updated_at": now,
    }


def finalize_interrupted_message(thread: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Turn a leftover placeholder into a completed, interrupted message."""
    placeholder = next(
        (m for m in thread.get("messages", []) if is_placeholder_id(m.get("id", ""))),
        None,
    )
    if placeholder is None:
        return None
    content = placeholder.get("content", "")
    if content.endswith(STREAMING_CURSOR):
        content = content[: -len(STREAMING_CURSOR)]
    return apply_streaming_message(
        thread,
        placeholder["id"],
        content,
        tool_calls=placeholder.get("tool_calls"),
        is_final=True,
        note="interrupted",
    )


class ThreadsRepo:
    def __init__(self, db: Database) -> None:
        self.db = db
        self._locks = KeyedLock()

    async def fetch_thread(self, thread_id: str) -> Optional[Dict[str, Any]]:
        row = await self.db.fetchone(
            "select * from threads where thread_id = ?", (thread_id,)
        )
        if row is None:
            return None
        return _row_to_thread(row)

    async def fetch_threads(self, limit: int = 100) -> List[Dict[str, Any]]:
        rows = await self.db.fetchall(
            "select * from threads order by updated_at desc limit ?", (limit,)
        )
        return [_row_to_thread(row) for row in rows]

    async def _save(self, thread: Dict[str, Any]) -> None:
        await self.db.execute(
            """
            insert into threads (
              thread_id, title, context_json, messages_json, is_streaming,
              created_at, updated_at
            )
            values (?, ?, ?, ?, ?, ?, ?)
            on conflict(thread_id) do update set
              title = excluded.title,
              context_json = excluded.context_json,
              messages_json = excluded.messages_json,
              is_streaming = excluded.is_streaming,
              updated_at = excluded.updated_at
            """,
            (
                thread["thread_id"],
                thread.get("title") or "New conversation",
                json.dumps(thread.get("context") or {}),
                json.dumps(thread.get("messages") or []),
                1 if thread.get("is_streaming") else 0,
                thread.get("created_at") or utc_now_ms(),
                thread.get("updated_at") or utc_now_ms(),
            ),
        )

    async def save_thread(self, thread: Dict[str, Any]) -> Dict[str, Any]:
        async with self._locks.hold(thread["thread_id"]):
            existing = await self.fetch_thread(thread["thread_id"])
            now = utc_now_ms()
            record = {
                **thread,
                "created_at": existing["created_at"] if existing else now,
                "updated_at": now,
            }
            await self._save(record)
            return record

    async def update_thread(
        self,
        thread_id: str,
        mutate: Callable[[Dict[str, Any]], Optional[Dict[str, Any]]],
    ) -> Optional[Dict[str, Any]]:
        """Read-modify-write one thread; ``mutate`` returns None to skip the write."""
        async with self._locks.hold(thread_id):
            thread = await self.fetch_thread(thread_id)
            if thread is None:
                return None
            updated = mutate(thread)
            if updated is None:
                return None
            await self._save(updated)
            return updated

    async def append_message(
        self, thread_id: str, role: str, content: str
    ) -> Dict[str, Any]:
        message = {
            "id": generate_message_id(),
            "role": role,
            "content": content,
            "timestamp": utc_now_ms(),
            "tool_calls": None,
        }
        async with self._locks.hold(thread_id):
            thread = await self.fetch_thread(thread_id)
            now = utc_now_ms()
            if thread is None:
                thread = {
                    "thread_id": thread_id,
                    "title": content[:50] or "New conversation",
                    "context": {},
                    "messages": [],
                    "is_streaming": False,
                    "created_at": now,
                }
            thread["messages"] = [*thread["messages"], message]
            thread["updated_at"] = now
            await self._save(thread)
        return message

    async def upsert_streaming_message(
        self,
        thread_id: str,
        placeholder_id: str,
        content: str,
        tool_calls: Optional[List[str]] = None,
        is_final: bool = False,
        anchor_prompt: Optional[str] = None,
        note: Optional[str] = None,
    ) -> bool:
        def mutate(thread: Dict[str, Any]) -> Optional[Dict[str, Any]]:
            return apply_streaming_message(
                thread,
                placeholder_id,
                content,
                tool_calls=tool_calls,
                is_final=is_final,
                anchor_prompt=anchor_prompt,
                note=note,
            )

        updated = await self.update_thread(thread_id, mutate)
        if updated is None:
            logger.warning(
                f"Could not save streaming message {placeholder_id} to thread {thread_id}"
            )
            return False
        return True

    async def finalize_interrupted(self, thread_id: str) -> bool:
        updated = await self.update_thread(thread_id, finalize_interrupted_message)
        return updated is not None

    async def delete_thread(self, thread_id: str) -> bool:
        async with self._locks.hold(thread_id):
            deleted = await self.db.execute(
                "delete from threads where thread_id = ?", (thread_id,)
            )
        return deleted > 0
