import asyncio
import copy
import itertools
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio

from coach.client.api_client import JobNotFoundError
from coach.db.connection import Database
from coach.db.evaluations_repo import EvaluationsRepo
from coach.db.focus_repo import FocusRepo
from coach.db.jobs_repo import JobsRepo
from coach.db.threads_repo import ThreadsRepo, apply_streaming_message
from coach.schemas.threads import job_placeholder_id
from coach.services.cancellation import SessionRegistry
from coach.services.executors import JobExecutor
from coach.services.jobs import JobService
from coach.services.providers import CompletionEvent, CompletionResult, ProviderError
from coach.utils.time import utc_now_ms
from coach.websocket.manager import WebSocketManager


def delta_events(*chunks: str, total: Optional[str] = None) -> List[CompletionEvent]:
    events = [CompletionEvent(type="delta", content=chunk) for chunk in chunks]
    events.append(
        CompletionEvent(type="done", total_content=total if total is not None else "".join(chunks))
    )
    return events


class FakeSession:
    """Scripted completion session.

    ``events`` replays the script, optionally sleeping between events, then
    raises ``error`` if given or blocks until destroyed when ``block`` is set.
    """

    def __init__(
        self,
        script: Optional[List[CompletionEvent]] = None,
        response: str = "",
        error: Optional[str] = None,
        delay: float = 0.0,
        block: bool = False,
    ) -> None:
        self.script = script or []
        self.response = response
        self.error = error
        self.delay = delay
        self.block = block
        self.prompts: List[str] = []
        self.label: Optional[str] = None
        self.system_prompt: Optional[str] = None
        self.destroyed = asyncio.Event()

    async def events(self, prompt: str):
        self.prompts.append(prompt)
        for event in self.script:
            if self.destroyed.is_set():
                return
            if self.delay:
                await asyncio.sleep(self.delay)
            yield event
        if self.error:
            raise ProviderError(self.error)
        if self.block:
            await self.destroyed.wait()

    async def send_and_wait(self, prompt: str) -> CompletionResult:
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.block:
            await self.destroyed.wait()
            raise ProviderError("session destroyed")
        if self.error:
            raise ProviderError(self.error)
        return CompletionResult(response_text=self.response, total_time_ms=1)

    async def destroy(self) -> None:
        self.destroyed.set()


class FakeProvider:
    def __init__(self) -> None:
        self.sessions: List[FakeSession] = []
        self._queued: List[FakeSession] = []

    def script(self, **kwargs: Any) -> FakeSession:
        session = FakeSession(**kwargs)
        self._queued.append(session)
        return session

    def create_session(self, label: str, system_prompt: Optional[str] = None) -> FakeSession:
        session = self._queued.pop(0) if self._queued else FakeSession()
        session.label = label
        session.system_prompt = system_prompt
        self.sessions.append(session)
        return session


class FakeBackend:
    """In-memory stand-in for BackendClient."""

    def __init__(self) -> None:
        self.jobs: Dict[str, Dict[str, Any]] = {}
        self.threads: Dict[str, Dict[str, Any]] = {}
        self.evaluations: Dict[str, Dict[str, Any]] = {}
        self.focus_writes: List[Dict[str, Any]] = []
        self.streaming_writes: List[Dict[str, Any]] = []
        self.cancelled: List[str] = []
        self.copilot_events: List[Dict[str, Any]] = []
        self.copilot_gate: Optional[asyncio.Event] = None
        self.copilot_payloads: List[Dict[str, Any]] = []
        self.create_error: Optional[Exception] = None
        self.create_gate: Optional[asyncio.Event] = None
        self.create_attempts = 0
        self.cancel_error: Optional[Exception] = None
        self.poll_transport_errors = 0
        self.created: List[Dict[str, Any]] = []
        self.polls: List[str] = []
        self._ids = itertools.count(1)

    # jobs

    async def create_job(
        self, job_type: str, target_id: Optional[str], input_payload: Dict[str, Any]
    ) -> Dict[str, Any]:
        self.create_attempts += 1
        if self.create_gate is not None:
            await self.create_gate.wait()
        if self.create_error is not None:
            raise self.create_error
        job_id = f"job_{next(self._ids)}"
        self.jobs[job_id] = {
            "job_id": job_id,
            "type": job_type,
            "target_id": target_id,
            "status": "pending",
            "input": input_payload,
            "result": None,
            "error": None,
            "created_at": utc_now_ms(),
        }
        self.created.append(self.jobs[job_id])
        return {"job_id": job_id, "status": "pending"}

    async def get_job(self, job_id: str) -> Dict[str, Any]:
        self.polls.append(job_id)
        if self.poll_transport_errors:
            self.poll_transport_errors -= 1
            raise httpx.ConnectError("connection refused")
        if job_id not in self.jobs:
            raise JobNotFoundError(job_id)
        return dict(self.jobs[job_id])

    async def list_jobs(
        self, status: Optional[str] = None, job_type: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        return [
            dict(job)
            for job in self.jobs.values()
            if (status is None or job["status"] == status)
            and (job_type is None or job["type"] == job_type)
        ]

    async def cancel_job(self, job_id: str) -> Dict[str, Any]:
        self.cancelled.append(job_id)
        if self.cancel_error is not None:
            raise self.cancel_error
        job = self.jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        cancelled = job["status"] in ("pending", "running")
        if cancelled:
            job["status"] = "cancelled"
        return {"job_id": job_id, "status": job["status"], "cancelled": cancelled}

    def set_job(self, job_id: str, status: str, result: Any = None, error: Optional[str] = None) -> None:
        self.jobs[job_id].update(status=status, result=result, error=error)

    def add_job(self, job_type: str, target_id: str, status: str = "running") -> str:
        job_id = f"job_{next(self._ids)}"
        self.jobs[job_id] = {
            "job_id": job_id,
            "type": job_type,
            "target_id": target_id,
            "status": status,
            "input": {},
            "result": None,
            "error": None,
            "created_at": utc_now_ms(),
        }
        return job_id

    # threads

    async def get_thread(self, thread_id: str) -> Optional[Dict[str, Any]]:
        thread = self.threads.get(thread_id)
        return copy.deepcopy(thread) if thread else None

    async def append_message(self, thread_id: str, role: str, content: str) -> Dict[str, Any]:
        thread = self.threads.setdefault(
            thread_id,
            {"thread_id": thread_id, "messages": [], "is_streaming": False},
        )
        message = {"id": f"msg_{next(self._ids)}", "role": role, "content": content}
        thread["messages"].append(message)
        return message

    async def put_streaming_message(
        self,
        thread_id: str,
        content: str,
        tool_calls: Optional[List[str]] = None,
        is_final: bool = False,
        note: Optional[str] = None,
    ) -> None:
        self.streaming_writes.append(
            {
                "thread_id": thread_id,
                "content": content,
                "tool_calls": tool_calls or [],
                "is_final": is_final,
                "note": note,
            }
        )

    def write_job_progress(
        self, thread_id: str, job_id: str, content: str, prompt: str, is_final: bool = False
    ) -> None:
        updated = apply_streaming_message(
            self.threads[thread_id],
            job_placeholder_id(job_id),
            content,
            is_final=is_final,
            anchor_prompt=prompt,
        )
        assert updated is not None
        self.threads[thread_id] = updated

    # evaluations and focus

    async def get_evaluation(self, challenge_id: str) -> Optional[Dict[str, Any]]:
        progress = self.evaluations.get(challenge_id)
        return dict(progress) if progress else None

    async def write_focus_item(
        self,
        item_type: str,
        item_id: str,
        date_key: str,
        data: Dict[str, Any],
        operation_state: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        write = {
            "item_type": item_type,
            "item_id": item_id,
            "date_key": date_key,
            "data": data,
            "operation_state": operation_state,
        }
        self.focus_writes.append(write)
        return write

    # push channel

    async def stream_copilot(self, payload: Dict[str, Any]):
        self.copilot_payloads.append(payload)
        for event in self.copilot_events:
            await asyncio.sleep(0)
            if event.get("type") == "gate":
                assert self.copilot_gate is not None
                await self.copilot_gate.wait()
                continue
            yield event


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def eventually() -> Callable[..., Any]:
    async def wait(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.005)

    return wait


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(str(tmp_path / "coach.db"))
    await database.connect()
    yield database
    await database.close()


@pytest.fixture
def jobs_repo(db) -> JobsRepo:
    return JobsRepo(db)


@pytest.fixture
def threads_repo(db) -> ThreadsRepo:
    return ThreadsRepo(db)


@pytest.fixture
def evaluations_repo(db) -> EvaluationsRepo:
    return EvaluationsRepo(db)


@pytest.fixture
def focus_repo(db) -> FocusRepo:
    return FocusRepo(db)


@pytest.fixture
def sessions() -> SessionRegistry:
    return SessionRegistry()


@pytest.fixture
def executor(
    jobs_repo, threads_repo, evaluations_repo, focus_repo, provider, sessions
) -> JobExecutor:
    return JobExecutor(
        jobs_repo,
        threads_repo,
        evaluations_repo,
        focus_repo,
        provider,
        sessions,
        WebSocketManager(),
        save_interval_ms=0,
        evaluation_save_interval_ms=0,
        validity_check_ms=0,
    )


@pytest.fixture
def job_service(jobs_repo, executor, sessions) -> JobService:
    return JobService(jobs_repo, executor, sessions, executor.events, workers=1)


@pytest.fixture
def deltas() -> Callable[..., List[CompletionEvent]]:
    return delta_events
