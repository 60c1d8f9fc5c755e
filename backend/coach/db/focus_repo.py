import json
import logging
from typing import Any, Dict, List, Optional

from coach.db.connection import Database
from coach.state_machine.core import (
    StatefulItem,
    StateTransition,
    create_stateful_item,
    transition_item,
)
from coach.state_machine.tables import FOCUS_INITIAL_STATES, FOCUS_TRANSITIONS
from coach.utils.locks import KeyedLock
from coach.utils.time import utc_now_ms

logger = logging.getLogger(__name__)


def _row_to_record(row: Any) -> Dict[str, Any]:
    return {
        "metadata": {
            "date_key": row["date_key"],
            "operation_state": (
                json.loads(row["operation_state_json"])
                if row["operation_state_json"]
                else None
            ),
        },
        "data": json.loads(row["data_json"]),
        "state_history": json.loads(row["state_history_json"]),
    }


def _check_type(item_type: str) -> None:
    if item_type not in FOCUS_TRANSITIONS:
        raise ValueError(f"Unknown focus item type: {item_type}")


class FocusRepo:
    """Daily focus items (challenges, goals, topics) with their lifecycle history."""

    def __init__(self, db: Database) -> None:
        self.db = db
        self._locks = KeyedLock()

    async def fetch_index(
        self, date_key: Optional[str] = None, item_type: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if date_key:
            clauses.append("date_key = ?")
            params.append(date_key)
        if item_type:
            clauses.append("item_type = ?")
            params.append(item_type)
        where = f"where {' and '.join(clauses)}" if clauses else ""
        rows = await self.db.fetchall(
            "select item_type, item_id, date_key, status, title, updated_at "
            f"from focus_items {where} order by date_key desc, updated_at desc",
            tuple(params),
        )
        return [
            {
                "id": row["item_id"],
                "type": row["item_type"],
                "date_key": row["date_key"],
                "status": row["status"],
                "title": row["title"],
                "updated_at": row["updated_at"],
            }
            for row in rows
        ]

    async def fetch_item(self, item_type: str, item_id: str) -> Optional[Dict[str, Any]]:
        _check_type(item_type)
        row = await self.db.fetchone(
            "select * from focus_items where item_type = ? and item_id = ?",
            (item_type, item_id),
        )
        if row is None:
            return None
        return _row_to_record(row)

    async def _save(
        self,
        item_type: str,
        item_id: str,
        date_key: str,
        item: StatefulItem,
        operation_state: Optional[Dict[str, Any]],
    ) -> None:
        await self.db.execute(
            """
            insert into focus_items (
              item_type, item_id, date_key, status, title, data_json,
              state_history_json, operation_state_json, updated_at
            )
            values (?, ?, ?, ?, ?, ?, ?, ?, ?)
            on conflict(item_type, item_id) do update set
              date_key = excluded.date_key,
              status = excluded.status,
              title = excluded.title,
              data_json = excluded.data_json,
              state_history_json = excluded.state_history_json,
              operation_state_json = excluded.operation_state_json,
              updated_at = excluded.updated_at
            """,
            (
                item_type,
                item_id,
                date_key,
                item.state,
                item.data.get("title"),
                json.dumps(item.data),
                json.dumps([entry.model_dump() for entry in item.state_history]),
                json.dumps(operation_state) if operation_state else None,
                utc_now_ms(),
            ),
        )

    async def _load(
        self, item_type: str, item_id: str
    ) -> Optional[tuple[StatefulItem, Dict[str, Any]]]:
        record = await self.fetch_item(item_type, item_id)
        if record is None:
            return None
        item = StatefulItem(
            data=record["data"],
            state_history=[StateTransition(**entry) for entry in record["state_history"]],
        )
        return item, record["metadata"]

    async def put_item(
        self,
        item_type: str,
        item_id: str,
        date_key: str,
        data: Dict[str, Any],
        operation_state: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Write item data; an existing lifecycle history is kept."""
        _check_type(item_type)
        async with self._locks.hold(f"{item_type}:{item_id}"):
            loaded = await self._load(item_type, item_id)
            if loaded is None:
                item = create_stateful_item(
                    data, FOCUS_INITIAL_STATES[item_type], source="generated"
                )
            else:
                item = loaded[0].model_copy(update={"data": dict(data)})
            await self._save(item_type, item_id, date_key, item, operation_state)
        record = await self.fetch_item(item_type, item_id)
        if record is None:
            raise RuntimeError(f"{item_type} {item_id} missing after write")
        return record

    async def transition(
        self,
        item_type: str,
        item_id: str,
        new_state: str,
        source: Optional[str] = None,
        note: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        _check_type(item_type)
        async with self._locks.hold(f"{item_type}:{item_id}"):
            loaded = await self._load(item_type, item_id)
            if loaded is None:
                return None
            item, metadata = loaded
            updated = transition_item(
                item, new_state, FOCUS_TRANSITIONS[item_type], item_type, source, note
            )
            await self._save(
                item_type,
                item_id,
                metadata["date_key"],
                updated,
                metadata.get("operation_state"),
            )
            logger.info(f"Focus {item_type} {item_id}: {item.state} -> {new_state}")
        return await self.fetch_item(item_type, item_id)

    async def set_operation_state(
        self,
        item_type: str,
        item_id: str,
        operation_state: Optional[Dict[str, Any]],
    ) -> bool:
        """Record or clear the regeneration state of an existing item."""
        _check_type(item_type)
        async with self._locks.hold(f"{item_type}:{item_id}"):
            loaded = await self._load(item_type, item_id)
            if loaded is None:
                return False
            item, metadata = loaded
            await self._save(
                item_type, item_id, metadata["date_key"], item, operation_state
            )
        return True
