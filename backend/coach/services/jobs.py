import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

from coach.core.config import BACKEND_WORKERS
from coach.db.jobs_repo import JobsRepo
from coach.schemas.jobs import JOB_INPUT_MODELS, TERMINAL_JOB_STATUSES, JobStatus, JobType
from coach.services.cancellation import SessionRegistry
from coach.services.executors import JobExecutor
from coach.state_machine.core import InvalidTransitionError
from coach.websocket.manager import WebSocketManager

logger = logging.getLogger(__name__)


class JobService:
    """Queue of job ids drained by a fixed pool of worker tasks."""

    def __init__(
        self,
        jobs: JobsRepo,
        executor: JobExecutor,
        sessions: SessionRegistry,
        events: WebSocketManager,
        workers: int = BACKEND_WORKERS,
    ) -> None:
        self.jobs = jobs
        self.executor = executor
        self.sessions = sessions
        self.events = events
        self.workers = workers
        self.job_queue: asyncio.Queue[str] = asyncio.Queue()
        self.active_jobs: set[str] = set()
        self.started_at = time.time()
        self._tasks: List[asyncio.Task] = []

    async def start_workers(self) -> None:
        if self._tasks:
            return
        for worker_id in range(self.workers):
            self._tasks.append(asyncio.create_task(self.worker_loop(worker_id)))

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    async def enqueue(self, job_id: str) -> None:
        await self.job_queue.put(job_id)

    async def submit(
        self, job_type: JobType, target_id: Optional[str], input_payload: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Validate, persist and queue a job; raises pydantic ValidationError on bad input."""
        data = JOB_INPUT_MODELS[job_type].model_validate(input_payload)
        job = await self.jobs.create_job(job_type.value, target_id, data.model_dump())
        await self.jobs.record_event(job["job_id"], "info", "job queued")
        await self.enqueue(job["job_id"])
        await self.events.emit_log("info", f"queued {job_type.value}", job_id=job["job_id"])
        await self.events.job_status(job["job_id"], JobStatus.PENDING.value)
        return job

    async def process_job(self, job_id: str) -> None:
        await self.executor.run(job_id)

    async def worker_loop(self, worker_id: int) -> None:
        await self.events.emit_log("info", f"worker {worker_id} ready")
        while True:
            job_id = await self.job_queue.get()
            self.active_jobs.add(job_id)
            try:
                job = await self.jobs.fetch_job(job_id)
                if not job or job["status"] == JobStatus.CANCELLED.value:
                    await self.events.emit_log(
                        "info", "skipped, cancelled before start", job_id=job_id
                    )
                else:
                    await self.process_job(job_id)
            except Exception:
                logger.exception(f"[Job {job_id}] Worker {worker_id} crashed while processing")
            finally:
                self.active_jobs.discard(job_id)
                self.job_queue.task_done()

    async def cancel(self, job_id: str) -> bool:
        """Mark a live job cancelled and stop its running completion, if any."""
        job = await self.jobs.fetch_job(job_id)
        if job is None or job["status"] in TERMINAL_JOB_STATUSES:
            return False
        try:
            cancelled = await self.jobs.mark_cancelled(job_id)
        except InvalidTransitionError as exc:
            logger.info(f"[Job {job_id}] Cancel lost the race: {exc}")
            return False
        if cancelled is None:
            return False
        if await self.sessions.cancel(job_id):
            logger.info(f"[Job {job_id}] Destroyed running session")
        await self.jobs.record_event(job_id, "info", "job cancelled")
        await self.events.job_status(job_id, JobStatus.CANCELLED.value)
        return True

    async def delete(self, job_id: str) -> bool:
        await self.sessions.cancel(job_id)
        return await self.jobs.delete_job(job_id)

    async def recover(self) -> int:
        """Re-queue jobs a previous process left pending or running."""
        orphaned = await self.jobs.fetch_active_jobs()
        for job in orphaned:
            logger.info(f"[Job {job['job_id']}] Recovering {job['status']} {job['type']} job")
            await self.jobs.record_event(job["job_id"], "info", "job recovered on startup")
            await self.enqueue(job["job_id"])
        return len(orphaned)

    def status_snapshot(self) -> Dict[str, Any]:
        return {
            "uptime_sec": int(time.time() - self.started_at),
            "queue_depth": self.job_queue.qsize(),
            "workers": {
                "active": len(self.active_jobs),
                "idle": max(self.workers - len(self.active_jobs), 0),
            },
            "sessions": len(self.sessions),
        }
