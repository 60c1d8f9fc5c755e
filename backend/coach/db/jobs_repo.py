import json
import logging
import time
import uuid
from typing import Any, Dict, List, Optional

from coach.core.config import JOB_MAX_AGE_SEC, JOB_MAX_RETAINED
from coach.db.connection import Database
from coach.schemas.jobs import ACTIVE_JOB_STATUSES, TERMINAL_JOB_STATUSES, JobStatus
from coach.state_machine.core import InvalidTransitionError, validate_transition
from coach.state_machine.tables import JOB_TRANSITIONS
from coach.utils.locks import KeyedLock
from coach.utils.time import parse_iso_to_epoch, utc_now, utc_now_ms

logger = logging.getLogger(__name__)

_JSON_FIELDS = {"input", "result"}
_MUTABLE_FIELDS = {"target_id", "started_at", "completed_at", "input", "result", "error"}


def _row_to_job(row: Any) -> Dict[str, Any]:
    return {
        "job_id": row["job_id"],
        "type": row["type"],
        "target_id": row["target_id"],
        "status": row["status"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
        "started_at": row["started_at"],
        "completed_at": row["completed_at"],
        "input": json.loads(row["input_json"]) if row["input_json"] else {},
        "result": json.loads(row["result_json"]) if row["result_json"] else None,
        "error": row["error"],
    }


class JobsRepo:
    """Durable job records.

    Status changes go through ``transition`` which validates them against
    ``JOB_TRANSITIONS``; completed, failed and cancelled records are
    immutable. Read-modify-write sequences hold a per-job lock so a throttled
    progress write and a finalize for the same job cannot interleave.
    """

    def __init__(
        self,
        db: Database,
        max_retained: int = JOB_MAX_RETAINED,
        max_age_sec: float = JOB_MAX_AGE_SEC,
    ) -> None:
        self.db = db
        self.max_retained = max_retained
        self.max_age_sec = max_age_sec
        self._locks = KeyedLock()

    async def create_job(
        self,
        job_type: str,
        target_id: Optional[str],
        input_payload: Dict[str, Any],
    ) -> Dict[str, Any]:
        await self.prune()
        job_id = f"job_{uuid.uuid4().hex}"
        now = utc_now_ms()
        await self.db.execute(
            """
            insert into jobs (
              job_id, type, target_id, status, created_at, updated_at,
              started_at, completed_at, input_json, result_json, error
            )
            values (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                job_id,
                job_type,
                target_id,
                JobStatus.PENDING.value,
                now,
                now,
                None,
                None,
                json.dumps(input_payload),
                None,
                None,
            ),
        )
        logger.info(f"Created job: {job_id} ({job_type})")
        job = await self.fetch_job(job_id)
        if job is None:
            raise RuntimeError(f"Job {job_id} missing after insert")
        return job

    async def fetch_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        row = await self.db.fetchone("select * from jobs where job_id = ?", (job_id,))
        if row is None:
            return None
        return _row_to_job(row)

    async def fetch_jobs(
        self,
        status: Optional[str] = None,
        job_type: Optional[str] = None,
        limit: int = 200,
    ) -> List[Dict[str, Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if status:
            clauses.append("status = ?")
            params.append(status)
        if job_type:
            clauses.append("type = ?")
            params.append(job_type)
        where = f"where {' and '.join(clauses)}" if clauses else ""
        params.append(limit)
        rows = await self.db.fetchall(
            f"select * from jobs {where} order by created_at desc limit ?",
            tuple(params),
        )
        return [_row_to_job(row) for row in rows]

    async def fetch_active_jobs(self) -> List[Dict[str, Any]]:
        rows = await self.db.fetchall(
            "select * from jobs where status in (?, ?) order by created_at asc",
            ACTIVE_JOB_STATUSES,
        )
        return [_row_to_job(row) for row in rows]

    async def _write(self, job_id: str, fields: Dict[str, Any]) -> None:
        fields["updated_at"] = utc_now_ms()
        columns = []
        values: List[Any] = []
        for key, value in fields.items():
            if key in _JSON_FIELDS:
                columns.append(f"{key}_json = ?")
                values.append(json.dumps(value) if value is not None else None)
            else:
                columns.append(f"{key} = ?")
                values.append(value)
        values.append(job_id)
        await self.db.execute(
            f"update jobs set {', '.join(columns)} where job_id = ?",
            tuple(values),
        )

    async def update_job(self, job_id: str, **fields: Any) -> Optional[Dict[str, Any]]:
        """Overwrite non-status fields of a live job."""
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"cannot update job fields: {', '.join(sorted(unknown))}")
        async with self._locks.hold(job_id):
            job = await self.fetch_job(job_id)
            if job is None:
                return None
            if job["status"] in TERMINAL_JOB_STATUSES:
                raise InvalidTransitionError("job", job["status"], job["status"], [])
            if fields:
                await self._write(job_id, dict(fields))
            return await self.fetch_job(job_id)

    async def transition(
        self, job_id: str, status: JobStatus, **fields: Any
    ) -> Optional[Dict[str, Any]]:
        """Move a job to ``status``; returns None when the job does not exist."""
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"cannot update job fields: {', '.join(sorted(unknown))}")
        async with self._locks.hold(job_id):
            job = await self.fetch_job(job_id)
            if job is None:
                return None
            validate_transition(job["status"], status, JOB_TRANSITIONS, "job")
            if job["status"] == status.value and status.value in TERMINAL_JOB_STATUSES:
                return job
            await self._write(job_id, {"status": status.value, **fields})
            logger.debug(f"Updated job {job_id}: status={status.value}")
            return await self.fetch_job(job_id)

    async def mark_running(self, job_id: str) -> Optional[Dict[str, Any]]:
        return await self.transition(job_id, JobStatus.RUNNING, started_at=utc_now_ms())

    async def mark_completed(
        self, job_id: str, result: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        return await self.transition(
            job_id, JobStatus.COMPLETED, result=result, completed_at=utc_now_ms()
        )

    async def mark_failed(self, job_id: str, error: str) -> Optional[Dict[str, Any]]:
        return await self.transition(
            job_id, JobStatus.FAILED, error=error, completed_at=utc_now_ms()
        )

    async def mark_cancelled(self, job_id: str) -> Optional[Dict[str, Any]]:
        logger.info(f"Marking job {job_id} as cancelled")
        return await self.transition(
            job_id,
            JobStatus.CANCELLED,
            error="Cancelled by user",
            completed_at=utc_now_ms(),
        )

    async def delete_job(self, job_id: str) -> bool:
        async with self._locks.hold(job_id):
            deleted = await self.db.execute(
                "delete from jobs where job_id = ?", (job_id,)
            )
        return deleted > 0

    async def prune(self) -> int:
        """Drop old terminal jobs and cap how many records are retained."""
        rows = await self.db.fetchall(
            "select job_id, status, created_at, completed_at from jobs "
            "order by created_at asc"
        )
        now = time.time()
        to_delete: List[str] = []
        terminal: List[str] = []
        for row in rows:
            if row["status"] not in TERMINAL_JOB_STATUSES:
                continue
            completed_at = row["completed_at"]
            completed_ts = parse_iso_to_epoch(completed_at) if completed_at else 0.0
            if now - completed_ts > self.max_age_sec:
                to_delete.append(row["job_id"])
            else:
                terminal.append(row["job_id"])

        excess = len(rows) - len(to_delete) - self.max_retained
        if excess > 0:
            to_delete.extend(terminal[:excess])

        if to_delete:
            await self.db.executemany(
                "delete from jobs where job_id = ?",
                [(job_id,) for job_id in to_delete],
            )
            logger.debug(f"Cleaned up {len(to_delete)} old jobs")
        return len(to_delete)

    async def record_event(
        self,
        job_id: str,
        level: str,
        message: str,
        meta: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self.db.execute(
            """
            insert into job_events (job_id, created_at, level, message, meta_json)
            values (?, ?, ?, ?, ?)
            """,
            (job_id, utc_now(), level, message, json.dumps(meta) if meta else None),
        )

    async def fetch_events(self, job_id: str) -> List[Dict[str, Any]]:
        rows = await self.db.fetchall(
            "select * from job_events where job_id = ? order by event_id asc",
            (job_id,),
        )
        return [
            {
                "created_at": row["created_at"],
                "level": row["level"],
                "message": row["message"],
                "meta": json.loads(row["meta_json"]) if row["meta_json"] else None,
            }
            for row in rows
        ]
