"""Client-side registry of background operations.

An operation tracks one backend job for one target. Its id is
``"{type}:{target_id}"`` so a target has at most one operation in flight;
starting another aborts the previous one. The registry polls the job until
it reaches a terminal status and then drops the entry after a short grace
period, so observers can still see the final state for a moment.
"""

import asyncio
import inspect
import logging
import time
import types
from dataclasses import dataclass, field, replace
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    FrozenSet,
    List,
    Mapping,
    Optional,
    Protocol,
)

from coach.client.api_client import JobNotFoundError
from coach.core.config import MAX_POLL_TIME_SEC, POLL_INTERVAL_SEC
from coach.schemas.jobs import JobType
from coach.state_machine.core import InvalidTransitionError, is_terminal, validate_transition
from coach.state_machine.tables import OPERATION_TRANSITIONS
from coach.utils.time import utc_now_ms

logger = logging.getLogger(__name__)

ACTIVE_OPERATION_STATUSES = ("pending", "in-progress")

DEFAULT_CLEANUP_DELAYS: Dict[str, float] = {
    "complete": 1.0,
    "failed": 5.0,
    "aborted": 0.1,
}

_EMPTY_IDS: FrozenSet[str] = frozenset()

Callback = Callable[..., Any]
CompletionHandler = Callable[[Any, str], Awaitable[None]]


class JobApi(Protocol):
    async def create_job(
        self, job_type: str, target_id: Optional[str], input_payload: Dict[str, Any]
    ) -> Dict[str, Any]: ...

    async def get_job(self, job_id: str) -> Dict[str, Any]: ...

    async def list_jobs(
        self, status: Optional[str] = None, job_type: Optional[str] = None
    ) -> List[Dict[str, Any]]: ...

    async def cancel_job(self, job_id: str) -> Dict[str, Any]: ...


class JobFailedError(RuntimeError):
    def __init__(self, job_id: str, error: str) -> None:
        self.job_id = job_id
        self.error = error
        super().__init__(error)


class OperationTimeoutError(TimeoutError):
    def __init__(self, job_id: str, seconds: float) -> None:
        self.job_id = job_id
        super().__init__(f"Operation timed out after {seconds:.0f}s")


@dataclass(frozen=True)
class OperationMeta:
    type: str
    started_at: str
    target_id: Optional[str] = None
    job_id: Optional[str] = None
    description: Optional[str] = None
    context: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class Operation:
    id: str
    status: str
    meta: OperationMeta
    result: Any = None
    error: Optional[str] = None
    error_kind: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_OPERATION_STATUSES


@dataclass(frozen=True)
class OperationsSnapshot:
    operations: Mapping[str, Operation]
    active_ids_by_type: Mapping[str, FrozenSet[str]]

    @classmethod
    def build(cls, operations: Mapping[str, Operation]) -> "OperationsSnapshot":
        active: Dict[str, set] = {}
        for operation_id, operation in operations.items():
            if operation.is_active:
                target = operation.meta.target_id or operation_id
                active.setdefault(operation.meta.type, set()).add(target)
        return cls(
            operations=types.MappingProxyType(dict(operations)),
            active_ids_by_type=types.MappingProxyType(
                {key: frozenset(value) for key, value in active.items()}
            ),
        )


@dataclass(eq=False)
class _Entry:
    operation: Operation
    on_complete: Optional[Callback] = None
    on_error: Optional[Callback] = None
    task: Optional[asyncio.Task] = None
    cleanup: Optional[asyncio.TimerHandle] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def id(self) -> str:
        return self.operation.id

    @property
    def job_id(self) -> Optional[str]:
        return self.operation.meta.job_id


async def _invoke(callback: Optional[Callback], *args: Any) -> None:
    if callback is None:
        return
    try:
        outcome = callback(*args)
        if inspect.isawaitable(outcome):
            await outcome
    except Exception:
        logger.exception("operation callback failed")


class OperationRegistry:
    def __init__(
        self,
        api: JobApi,
        poll_interval: float = POLL_INTERVAL_SEC,
        max_poll_time: float = MAX_POLL_TIME_SEC,
        cleanup_delays: Optional[Dict[str, float]] = None,
    ) -> None:
        self.api = api
        self.poll_interval = poll_interval
        self.max_poll_time = max_poll_time
        self.cleanup_delays = {**DEFAULT_CLEANUP_DELAYS, **(cleanup_delays or {})}
        self._entries: Dict[str, _Entry] = {}
        self._listeners: List[Callable[[OperationsSnapshot], Any]] = []
        self._handlers: Dict[str, CompletionHandler] = {}
        self._snapshot = OperationsSnapshot.build({})
        self._init_task: Optional[asyncio.Task] = None
        self._background: set[asyncio.Task] = set()

    # Reads

    def get_snapshot(self) -> OperationsSnapshot:
        return self._snapshot

    def get(self, operation_id: str) -> Optional[Operation]:
        return self._snapshot.operations.get(operation_id)

    def is_active(self, operation_id: str) -> bool:
        operation = self.get(operation_id)
        return operation is not None and operation.is_active

    def has_active_of_type(self, operation_type: str) -> bool:
        return bool(self._snapshot.active_ids_by_type.get(operation_type))

    def get_active_ids_of_type(self, operation_type: str) -> FrozenSet[str]:
        return self._snapshot.active_ids_by_type.get(operation_type, _EMPTY_IDS)

    def subscribe(self, listener: Callable[[OperationsSnapshot], Any]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def register_completion_handler(self, job_type: str, handler: CompletionHandler) -> None:
        """Persistence hook run on completion even when the caller has gone away."""
        self._handlers[job_type] = handler

    # Mutation

    def _publish(self) -> None:
        self._snapshot = OperationsSnapshot.build(
            {operation_id: entry.operation for operation_id, entry in self._entries.items()}
        )
        for listener in list(self._listeners):
            try:
                listener(self._snapshot)
            except Exception:
                logger.exception("operations listener failed")

    def _is_current(self, entry: _Entry) -> bool:
        return self._entries.get(entry.id) is entry

    def _update(self, entry: _Entry, **changes: Any) -> bool:
        status = changes.get("status")
        if status is not None:
            try:
                validate_transition(
                    entry.operation.status, status, OPERATION_TRANSITIONS, "operation"
                )
            except InvalidTransitionError as exc:
                logger.debug(f"Ignoring update for {entry.id}: {exc}")
                return False
        entry.operation = replace(entry.operation, **changes)
        if self._is_current(entry):
            self._publish()
        return True

    def _schedule_cleanup(self, entry: _Entry) -> None:
        if entry.cleanup is not None:
            entry.cleanup.cancel()
        delay = self.cleanup_delays.get(entry.operation.status, 1.0)
        loop = asyncio.get_running_loop()
        entry.cleanup = loop.call_later(delay, self._cleanup, entry)

    def _cleanup(self, entry: _Entry) -> None:
        if not self._is_current(entry):
            return
        del self._entries[entry.id]
        self._publish()
        logger.debug(f"Cleaned up operation: {entry.id}")

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def start(
        self,
        operation_type: str,
        target_id: str,
        input_payload: Dict[str, Any],
        on_complete: Optional[Callback] = None,
        on_error: Optional[Callback] = None,
        description: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Create a backend job for ``target_id`` and start tracking it.

        Returns as soon as the job exists; completion is reported through the
        callbacks, the registered completion handler and subscribers.
        """
        try:
            job_type = JobType(operation_type)
        except ValueError:
            raise ValueError(f"Unknown operation type: {operation_type}") from None

        operation_id = f"{job_type.value}:{target_id}"
        if self.is_active(operation_id):
            logger.warning(f"Operation {operation_id} already exists, aborting previous")
            self.abort(operation_id)
        previous = self._entries.get(operation_id)
        if previous is not None and previous.cleanup is not None:
            previous.cleanup.cancel()

        entry = _Entry(
            operation=Operation(
                id=operation_id,
                status="pending",
                meta=OperationMeta(
                    type=job_type.value,
                    started_at=utc_now_ms(),
                    target_id=target_id,
                    description=description,
                    context=context,
                ),
            ),
            on_complete=on_complete,
            on_error=on_error,
        )
        self._entries[operation_id] = entry
        self._publish()

        create = asyncio.ensure_future(
            self.api.create_job(job_type.value, target_id, input_payload)
        )
        try:
            job = await asyncio.shield(create)
        except asyncio.CancelledError:
            logger.info(f"Start of {operation_id} cancelled while its job was being created")
            if self._update(entry, status="aborted"):
                self._schedule_cleanup(entry)
            self._spawn(self._cancel_created(create))
            raise
        except Exception as exc:
            logger.error(f"Failed to start background job for {operation_id}: {exc}")
            if self._update(entry, status="failed", error=str(exc), error_kind="transport"):
                await _invoke(on_error, exc)
                self._schedule_cleanup(entry)
            return operation_id

        job_id = job["job_id"]
        logger.info(f"Created background job: {job_id} for {operation_id}")
        meta = replace(entry.operation.meta, job_id=job_id)
        if not self._update(entry, status="in-progress", meta=meta):
            entry.operation = replace(entry.operation, meta=meta)
            self._spawn(self._cancel_remote(job_id))
            return operation_id
        entry.task = asyncio.create_task(self._poll(entry))
        return operation_id

    def abort(self, operation_id: str) -> bool:
        entry = self._entries.get(operation_id)
        if entry is None or is_terminal(entry.operation.status, OPERATION_TRANSITIONS):
            return False
        if entry.task is not None and entry.task is not asyncio.current_task():
            entry.task.cancel()
        self._update(entry, status="aborted")
        self._schedule_cleanup(entry)
        if entry.job_id:
            self._spawn(self._cancel_remote(entry.job_id))
        logger.debug(f"Aborted operation: {operation_id}")
        return True

    async def _cancel_remote(self, job_id: str) -> None:
        try:
            await self.api.cancel_job(job_id)
        except Exception as exc:
            logger.warning(f"Remote cancel of job {job_id} failed: {exc}")

    async def _cancel_created(self, create: "asyncio.Future[Dict[str, Any]]") -> None:
        """Cancel the job behind an abandoned ``start`` once its creation settles."""
        try:
            job = await create
        except Exception as exc:
            logger.debug(f"Abandoned job creation did not complete: {exc}")
            return
        await self._cancel_remote(job["job_id"])

    # Polling

    async def _poll(self, entry: _Entry) -> None:
        job_id = entry.job_id
        if job_id is None:
            raise ValueError(f"Operation {entry.id} has no job to poll")
        started = time.monotonic()
        while self._is_current(entry) and entry.operation.is_active:
            try:
                job = await self.api.get_job(job_id)
            except JobNotFoundError as exc:
                logger.warning(f"Job {job_id} not found")
                await self._fail(entry, "Job not found", "not_found", exc)
                return
            except Exception as exc:
                logger.error(f"Error polling job {job_id}: {exc}")
            else:
                status = job.get("status")
                if status == "completed":
                    await self._complete(entry, job)
                    return
                if status == "failed":
                    error = job.get("error") or "Job failed"
                    logger.error(f"Job {job_id} failed: {error}")
                    await self._fail(entry, error, "provider", JobFailedError(job_id, error))
                    return
                if status == "cancelled":
                    if self._update(entry, status="aborted"):
                        self._schedule_cleanup(entry)
                    return
                logger.debug(f"Job {job_id} status: {status}")

            if time.monotonic() - started > self.max_poll_time:
                logger.warning(f"Job {job_id} polling timed out")
                await self._fail(
                    entry,
                    "Operation timed out",
                    "timeout",
                    OperationTimeoutError(job_id, self.max_poll_time),
                )
                return
            await asyncio.sleep(self.poll_interval)

    async def _complete(self, entry: _Entry, job: Dict[str, Any]) -> None:
        logger.info(f"Job {entry.job_id} completed")
        result = job.get("result")
        if not self._update(entry, status="complete", result=result):
            return
        meta = entry.operation.meta
        handler = self._handlers.get(meta.type)
        if handler is not None and meta.target_id:
            await _invoke(handler, result, meta.target_id)
        await _invoke(entry.on_complete, result)
        self._schedule_cleanup(entry)

    async def _fail(
        self, entry: _Entry, error: str, error_kind: str, exc: Exception
    ) -> None:
        if not self._update(entry, status="failed", error=error, error_kind=error_kind):
            return
        await _invoke(entry.on_error, exc)
        self._schedule_cleanup(entry)

    # Lifecycle

    async def initialize(self) -> None:
        """Reattach to jobs left pending or running by an earlier session. Runs once."""
        if self._init_task is None:
            self._init_task = asyncio.create_task(self._recover())
        await asyncio.shield(self._init_task)

    async def _recover(self) -> None:
        try:
            jobs = [
                *(await self.api.list_jobs(status="pending")),
                *(await self.api.list_jobs(status="running")),
            ]
        except Exception as exc:
            logger.warning(f"Failed to check for active jobs: {exc}")
            return
        if jobs:
            logger.info(f"Found {len(jobs)} active jobs on init")

        recovered = False
        for job in jobs:
            if job.get("type") not in JobType._value2member_map_:
                logger.warning(f"Skipping job {job.get('job_id')} of unknown type {job.get('type')}")
                continue
            target_id = job.get("target_id") or job["job_id"]
            operation_id = f"{job['type']}:{target_id}"
            if operation_id in self._entries:
                continue
            entry = _Entry(
                operation=Operation(
                    id=operation_id,
                    status="in-progress",
                    meta=OperationMeta(
                        type=job["type"],
                        started_at=job.get("started_at") or job.get("created_at") or utc_now_ms(),
                        target_id=target_id,
                        job_id=job["job_id"],
                    ),
                )
            )
            self._entries[operation_id] = entry
            entry.task = asyncio.create_task(self._poll(entry))
            recovered = True
        if recovered:
            self._publish()

    async def close(self) -> None:
        tasks: List[asyncio.Task] = list(self._background)
        for entry in self._entries.values():
            if entry.cleanup is not None:
                entry.cleanup.cancel()
            if entry.task is not None:
                tasks.append(entry.task)
        if self._init_task is not None:
            tasks.append(self._init_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
