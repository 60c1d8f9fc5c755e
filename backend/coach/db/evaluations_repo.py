import json
from typing import Any, Dict, Optional

from coach.db.connection import Database
from coach.utils.time import utc_now_ms


def _row_to_evaluation(row: Any) -> Dict[str, Any]:
    return {
        "challenge_id": row["challenge_id"],
        "job_id": row["job_id"],
        "status": row["status"],
        "streaming_feedback": row["streaming_feedback"] or "",
        "partial": json.loads(row["partial_json"]) if row["partial_json"] else None,
        "result": json.loads(row["result_json"]) if row["result_json"] else None,
        "error": row["error"],
        "updated_at": row["updated_at"],
    }


class EvaluationsRepo:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def fetch_evaluation(self, challenge_id: str) -> Optional[Dict[str, Any]]:
        row = await self.db.fetchone(
            "select * from evaluations where challenge_id = ?", (challenge_id,)
        )
        if row is None:
            return None
        return _row_to_evaluation(row)

    async def save_progress(
        self,
        challenge_id: str,
        job_id: Optional[str],
        status: str,
        streaming_feedback: str = "",
        partial: Optional[Dict[str, Any]] = None,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        await self.db.execute(
            """
            insert into evaluations (
              challenge_id, job_id, status, streaming_feedback, partial_json,
              result_json, error, updated_at
            )
            values (?, ?, ?, ?, ?, ?, ?, ?)
            on conflict(challenge_id) do update set
              job_id = excluded.job_id,
              status = excluded.status,
              streaming_feedback = excluded.streaming_feedback,
              partial_json = excluded.partial_json,
              result_json = excluded.result_json,
              error = excluded.error,
              updated_at = excluded.updated_at
            """,
            (
                challenge_id,
                job_id,
                status,
                streaming_feedback,
                json.dumps(partial) if partial is not None else None,
                json.dumps(result) if result is not None else None,
                error,
                utc_now_ms(),
            ),
        )

    async def delete_evaluation(self, challenge_id: str) -> bool:
        deleted = await self.db.execute(
            "delete from evaluations where challenge_id = ?", (challenge_id,)
        )
        return deleted > 0
