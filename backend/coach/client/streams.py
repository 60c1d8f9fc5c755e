"""Stream multiplexer for chat answers and evaluations.

A stream is fed by one of two channels. The push channel reads provider
events from ``POST /copilot/stream`` while the client stays connected. The
poll channel follows a background job through the operation registry and
reads its durable progress (the thread placeholder or the evaluation
record). Both channels report into the same ``StreamState`` and durable
observations go through ``apply_snapshot``, which only ever lets content
grow.
"""

import asyncio
import inspect
import logging
from contextlib import aclosing
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Tuple, Union

from coach.client.buffer import BufferedStreamWriter
from coach.client.operations import Operation, OperationRegistry, OperationsSnapshot
from coach.core.config import (
    COMPLETED_STREAM_TTL_SEC,
    STREAM_FLUSH_INTERVAL_SEC,
    STREAM_POLL_INTERVAL_SEC,
)
from coach.schemas.jobs import JobType
from coach.schemas.threads import (
    INTERRUPTED_NOTE,
    STOPPED_NOTE,
    is_placeholder_id,
    job_placeholder_id,
    strip_cursor,
)
from coach.state_machine.core import InvalidTransitionError, is_terminal, validate_transition
from coach.state_machine.tables import STREAM_TRANSITIONS
from coach.utils.time import utc_now_ms

logger = logging.getLogger(__name__)

StreamKind = Literal["chat", "evaluation"]

ACTIVE_STREAM_STATUSES = ("pending", "streaming")

JOB_TYPE_BY_KIND: Dict[str, JobType] = {
    "chat": JobType.CHAT_RESPONSE,
    "evaluation": JobType.CHALLENGE_EVALUATION,
}


class StreamError(RuntimeError):
    pass


@dataclass(frozen=True)
class ToolCall:
    name: str
    args: Any = None
    result: str = ""
    duration_ms: Optional[int] = None


@dataclass(frozen=True)
class StreamState:
    id: str
    kind: StreamKind
    status: str = "pending"
    content: str = ""
    streaming_buffer: str = ""
    tool_calls: Tuple[ToolCall, ...] = ()
    job_id: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    started_at: str = field(default_factory=utc_now_ms)
    updated_at: str = field(default_factory=utc_now_ms)
    completed_at: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STREAM_STATUSES

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.status, STREAM_TRANSITIONS)


@dataclass
class ChatStreamRequest:
    conversation_id: str
    prompt: str
    learning_mode: bool = False
    use_tools: bool = False
    repos: List[str] = field(default_factory=list)
    background: bool = False
    persist: bool = True
    on_complete: Optional[Callable[[StreamState], Any]] = None

    @property
    def stream_id(self) -> str:
        return self.conversation_id


@dataclass
class EvaluationStreamRequest:
    challenge_id: str
    challenge: Dict[str, Any]
    files: List[Dict[str, Any]] = field(default_factory=list)
    on_complete: Optional[Callable[[StreamState], Any]] = None

    @property
    def stream_id(self) -> str:
        return self.challenge_id


StreamRequest = Union[ChatStreamRequest, EvaluationStreamRequest]


@dataclass(frozen=True)
class DurableSnapshot:
    """One observation of a stream's durable progress."""

    content: str = ""
    is_streaming: bool = False
    placeholder_present: bool = False
    status: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @classmethod
    def from_thread(
        cls,
        thread: Dict[str, Any],
        job_id: Optional[str] = None,
        prompt: Optional[str] = None,
    ) -> "DurableSnapshot":
        messages = thread.get("messages") or []
        is_streaming = bool(thread.get("is_streaming"))
        placeholder_id = job_placeholder_id(job_id) if job_id else None
        for message in messages:
            message_id = message.get("id") or ""
            matches = (
                message_id == placeholder_id
                if placeholder_id
                else is_placeholder_id(message_id)
            )
            if matches:
                return cls(
                    content=strip_cursor(message.get("content") or ""),
                    is_streaming=is_streaming,
                    placeholder_present=True,
                )

        start = 0
        if prompt is not None:
            anchors = [
                i
                for i, message in enumerate(messages)
                if message.get("role") == "user" and message.get("content") == prompt
            ]
            if not anchors:
                return cls(is_streaming=is_streaming)
            start = anchors[-1] + 1
        content = ""
        for message in messages[start:]:
            if message.get("role") == "assistant":
                content = message.get("content") or ""
                if prompt is not None:
                    break
        return cls(content=content, is_streaming=is_streaming)

    @classmethod
    def from_evaluation(cls, progress: Dict[str, Any]) -> "DurableSnapshot":
        status = progress.get("status")
        return cls(
            content=progress.get("streaming_feedback") or "",
            is_streaming=status in ("pending", "streaming"),
            placeholder_present=status in ("pending", "streaming"),
            status=status if status in ("completed", "failed") else None,
            result=progress.get("result"),
            error=progress.get("error"),
        )


def append_note(content: str, note: str) -> str:
    if not content or content.endswith(note):
        return content
    return f"{content}\n\n{note}"


@dataclass(eq=False)
class _Stream:
    state: StreamState
    request: Optional[StreamRequest] = None
    prompt: Optional[str] = None
    operation_id: Optional[str] = None
    task: Optional[asyncio.Task] = None
    writer: Optional[BufferedStreamWriter] = None
    cleanup: Optional[asyncio.TimerHandle] = None
    seen_streaming: bool = False
    operation_completed: bool = False
    operation_status: Optional[str] = None
    operation_error: Optional[str] = None
    wake: asyncio.Event = field(default_factory=asyncio.Event)
    done: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def id(self) -> str:
        return self.state.id


class StreamMultiplexer:
    def __init__(
        self,
        api: Any,
        operations: OperationRegistry,
        flush_interval: float = STREAM_FLUSH_INTERVAL_SEC,
        poll_interval: float = STREAM_POLL_INTERVAL_SEC,
        completed_ttl: float = COMPLETED_STREAM_TTL_SEC,
    ) -> None:
        self.api = api
        self.operations = operations
        self.flush_interval = flush_interval
        self.poll_interval = poll_interval
        self.completed_ttl = completed_ttl
        self._streams: Dict[str, _Stream] = {}
        self._subscribers: Dict[str, List[Callable[[StreamState], Any]]] = {}
        self._activity_subscribers: List[Callable[[List[str]], Any]] = []
        self._background: set[asyncio.Task] = set()
        self._unsubscribe_operations = operations.subscribe(self._on_operations)

    # Reads

    def get_stream(self, stream_id: str) -> Optional[StreamState]:
        entry = self._streams.get(stream_id)
        return entry.state if entry else None

    def is_streaming(self, stream_id: str) -> bool:
        entry = self._streams.get(stream_id)
        return entry is not None and entry.state.is_active

    def get_active_stream_ids(self) -> List[str]:
        return [stream_id for stream_id, entry in self._streams.items() if entry.state.is_active]

    def subscribe(self, stream_id: str, callback: Callable[[StreamState], Any]) -> Callable[[], None]:
        self._subscribers.setdefault(stream_id, []).append(callback)
        current = self.get_stream(stream_id)
        if current is not None:
            self._call(callback, current)

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(stream_id)
            if not callbacks:
                return
            if callback in callbacks:
                callbacks.remove(callback)
            if not callbacks:
                del self._subscribers[stream_id]

        return unsubscribe

    def subscribe_to_activity(self, callback: Callable[[List[str]], Any]) -> Callable[[], None]:
        self._activity_subscribers.append(callback)
        self._call(callback, self.get_active_stream_ids())

        def unsubscribe() -> None:
            if callback in self._activity_subscribers:
                self._activity_subscribers.remove(callback)

        return unsubscribe

    async def wait(self, stream_id: str) -> Optional[StreamState]:
        entry = self._streams.get(stream_id)
        if entry is None:
            return None
        await entry.done.wait()
        return entry.state

    # Notification

    @staticmethod
    def _call(callback: Callable[..., Any], *args: Any) -> None:
        try:
            callback(*args)
        except Exception:
            logger.exception("stream subscriber failed")

    def _notify(self, entry: _Stream) -> None:
        for callback in list(self._subscribers.get(entry.id, [])):
            self._call(callback, entry.state)

    def _notify_activity(self) -> None:
        active = self.get_active_stream_ids()
        for callback in list(self._activity_subscribers):
            self._call(callback, active)

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # State changes

    def _update(self, entry: _Stream, **changes: Any) -> bool:
        """Apply changes to a live stream. Terminal streams are frozen."""
        state = entry.state
        if state.is_terminal or self._streams.get(entry.id) is not entry:
            return False
        status = changes.get("status")
        if status is not None and status != state.status:
            try:
                validate_transition(state.status, status, STREAM_TRANSITIONS, "stream")
            except InvalidTransitionError as exc:
                logger.debug(f"Ignoring stream update for {entry.id}: {exc}")
                return False
        elif status is not None:
            del changes["status"]
        content = changes.get("content")
        if content is not None and len(content) < len(state.content):
            del changes["content"]
        changes = {key: value for key, value in changes.items() if getattr(state, key) != value}
        if not changes:
            return False
        entry.state = replace(state, updated_at=utc_now_ms(), **changes)
        if entry.state.status == "streaming":
            entry.seen_streaming = True
        self._notify(entry)
        if "status" in changes:
            self._notify_activity()
        return True

    def _finish(self, entry: _Stream, status: str, **changes: Any) -> bool:
        if not self._update(entry, status=status, completed_at=utc_now_ms(), **changes):
            return False
        logger.info(f"Stream {entry.id} {status}")
        if entry.writer is not None:
            entry.writer.cancel_timer()
        self._schedule_cleanup(entry)
        entry.done.set()
        on_complete = getattr(entry.request, "on_complete", None)
        if on_complete is not None:
            self._spawn(self._invoke(on_complete, entry.state))
        return True

    async def _invoke(self, callback: Callable[..., Any], *args: Any) -> None:
        try:
            outcome = callback(*args)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            logger.exception("stream on_complete callback failed")

    def _schedule_cleanup(self, entry: _Stream) -> None:
        if entry.cleanup is not None:
            entry.cleanup.cancel()
        loop = asyncio.get_running_loop()
        entry.cleanup = loop.call_later(self.completed_ttl, self._cleanup, entry)

    def _cleanup(self, entry: _Stream) -> None:
        if self._streams.get(entry.id) is not entry or not entry.state.is_terminal:
            return
        del self._streams[entry.id]
        self._subscribers.pop(entry.id, None)
        logger.debug(f"Cleaned up stream: {entry.id}")

    def apply_snapshot(self, stream_id: str, snapshot: DurableSnapshot) -> bool:
        """Merge a durable observation into the stream. Returns True if anything changed."""
        entry = self._streams.get(stream_id)
        if entry is None or entry.state.is_terminal:
            return False

        changes: Dict[str, Any] = {}
        if len(snapshot.content) > len(entry.state.content):
            changes["content"] = snapshot.content
        if snapshot.result is not None and snapshot.result != entry.state.result:
            changes["result"] = snapshot.result
        if snapshot.is_streaming or snapshot.placeholder_present:
            entry.seen_streaming = True
            if entry.state.status == "pending":
                changes["status"] = "streaming"

        if snapshot.status == "failed":
            changes.pop("status", None)
            return self._finish(entry, "error", error=snapshot.error or "Job failed", **changes)
        finished = snapshot.status == "completed" or (
            not snapshot.placeholder_present
            and not snapshot.is_streaming
            and (entry.seen_streaming or entry.operation_completed)
        )
        if finished:
            changes.pop("status", None)
            return self._finish(entry, "completed", **changes)
        if not changes:
            return False
        return self._update(entry, **changes)

    # Starting and stopping

    def _register(self, stream_id: str, kind: StreamKind, **fields: Any) -> _Stream:
        previous = self._streams.get(stream_id)
        if previous is not None and previous.cleanup is not None:
            previous.cleanup.cancel()
        entry = _Stream(state=StreamState(id=stream_id, kind=kind), **fields)
        self._streams[stream_id] = entry
        self._notify(entry)
        self._notify_activity()
        return entry

    def start_stream(self, request: StreamRequest) -> StreamState:
        """Start a stream and return its initial state without waiting for it."""
        stream_id = request.stream_id
        existing = self._streams.get(stream_id)
        if existing is not None and existing.state.is_active:
            logger.warning(f"Stream {stream_id} already active, returning existing state")
            return existing.state

        if isinstance(request, ChatStreamRequest):
            entry = self._register(stream_id, "chat", request=request, prompt=request.prompt)
            if request.background:
                entry.task = asyncio.create_task(self._run_background_chat(entry, request))
            else:
                entry.task = asyncio.create_task(self._run_push_chat(entry, request))
        elif isinstance(request, EvaluationStreamRequest):
            entry = self._register(stream_id, "evaluation", request=request)
            entry.task = asyncio.create_task(self._run_evaluation(entry, request))
        else:
            raise TypeError(f"Unknown stream request: {type(request).__name__}")
        return entry.state

    def resume_stream(
        self, stream_id: str, job_id: str, kind: StreamKind, prompt: Optional[str] = None
    ) -> StreamState:
        """Follow an already running job through the poll channel."""
        existing = self._streams.get(stream_id)
        if existing is not None and existing.state.is_active:
            return existing.state
        job_type = JOB_TYPE_BY_KIND[kind]
        entry = self._register(
            stream_id,
            kind,
            prompt=prompt,
            operation_id=f"{job_type.value}:{stream_id}",
        )
        self._update(entry, job_id=job_id)
        operation = self.operations.get(entry.operation_id)
        if operation is not None:
            self._sync_operation(entry, operation)
        entry.task = asyncio.create_task(self._poll_durable(entry))
        logger.info(f"Resumed {kind} stream {stream_id} for job {job_id}")
        return entry.state

    def reattach_background_streams(self) -> List[StreamState]:
        """Resume streams for chat and evaluation jobs the registry is tracking."""
        resumed: List[StreamState] = []
        snapshot = self.operations.get_snapshot()
        for operation in snapshot.operations.values():
            if not operation.is_active or not operation.meta.job_id:
                continue
            for kind, job_type in JOB_TYPE_BY_KIND.items():
                if operation.meta.type == job_type.value and operation.meta.target_id:
                    resumed.append(
                        self.resume_stream(operation.meta.target_id, operation.meta.job_id, kind)
                    )
        return resumed

    def stop_stream(self, stream_id: str) -> bool:
        entry = self._streams.get(stream_id)
        if entry is None or not entry.state.is_active:
            return False
        logger.debug(f"Stopping stream: {stream_id}")
        content = entry.state.content
        if entry.writer is not None:
            entry.writer.cancel_timer()
            content = max(content, entry.writer.content, key=len)
        if entry.task is not None and entry.task is not asyncio.current_task():
            entry.task.cancel()
        if entry.operation_id is not None:
            self.operations.abort(entry.operation_id)
        self._finish(entry, "aborted", content=append_note(content, STOPPED_NOTE))
        return True

    def _on_operations(self, snapshot: OperationsSnapshot) -> None:
        for entry in self._streams.values():
            if entry.operation_id is None or entry.state.is_terminal:
                continue
            operation = snapshot.operations.get(entry.operation_id)
            if operation is not None and self._sync_operation(entry, operation):
                entry.wake.set()

    @staticmethod
    def _sync_operation(entry: _Stream, operation: Operation) -> bool:
        if entry.state.job_id is None or operation.meta.job_id != entry.state.job_id:
            return False
        if operation.status == "complete":
            entry.operation_completed = True
        elif operation.status in ("failed", "aborted"):
            entry.operation_status = operation.status
            entry.operation_error = operation.error
        else:
            return False
        return True

    # Push channel

    async def _run_push_chat(self, entry: _Stream, request: ChatStreamRequest) -> None:
        thread_id = request.conversation_id
        tool_calls: List[ToolCall] = []

        async def write(content: str) -> None:
            self._update(entry, content=content)
            if request.persist:
                try:
                    await self.api.put_streaming_message(
                        thread_id, content, [call.name for call in tool_calls]
                    )
                except Exception as exc:
                    logger.warning(f"Failed to persist stream {thread_id}: {exc}")

        writer = BufferedStreamWriter(write, self.flush_interval)
        entry.writer = writer
        payload = {
            "prompt": request.prompt,
            "thread_id": thread_id,
            "learning_mode": request.learning_mode,
            "use_tools": request.use_tools,
            "repos": request.repos,
        }
        note: Optional[str] = None
        try:
            if request.persist:
                await self.api.append_message(thread_id, "user", request.prompt)
            self._update(entry, status="streaming")
            async with aclosing(self.api.stream_copilot(payload)) as events:
                async for event in events:
                    self._apply_push_event(entry, writer, tool_calls, event)
            await writer.close()
            self._finish(entry, "completed", content=writer.content, streaming_buffer=writer.content)
        except asyncio.CancelledError:
            note = "stopped"
            raise
        except Exception as exc:
            note = "interrupted"
            logger.error(f"Stream {thread_id} failed: {exc}")
            writer.cancel_timer()
            writer.closed = True
            self._finish(
                entry,
                "error",
                error=str(exc) or type(exc).__name__,
                content=append_note(writer.content, INTERRUPTED_NOTE),
            )
        finally:
            if request.persist:
                self._spawn(self._persist_final(thread_id, writer.content, tool_calls, note))

    def _apply_push_event(
        self,
        entry: _Stream,
        writer: BufferedStreamWriter,
        tool_calls: List[ToolCall],
        event: Dict[str, Any],
    ) -> None:
        event_type = event.get("type")
        if event_type == "delta":
            writer.append(event.get("content") or "")
            self._update(entry, streaming_buffer=writer.content)
        elif event_type == "tool_start":
            tool_calls.append(ToolCall(name=event.get("name") or "tool", args=event.get("args")))
            self._update(entry, tool_calls=tuple(tool_calls))
        elif event_type == "tool_complete":
            for index, call in enumerate(tool_calls):
                if call.name == event.get("name") and not call.result:
                    tool_calls[index] = replace(
                        call,
                        result=event.get("result") or "",
                        duration_ms=event.get("duration_ms"),
                    )
                    break
            self._update(entry, tool_calls=tuple(tool_calls))
        elif event_type == "done":
            total = event.get("total_content")
            if total and len(total) >= len(writer.content):
                writer.replace(total)
                self._update(entry, streaming_buffer=total)
        elif event_type == "error":
            raise StreamError(event.get("message") or "Stream failed")

    async def _persist_final(
        self, thread_id: str, content: str, tool_calls: List[ToolCall], note: Optional[str]
    ) -> None:
        try:
            await self.api.put_streaming_message(
                thread_id,
                content,
                [call.name for call in tool_calls],
                is_final=True,
                note=note,
            )
        except Exception as exc:
            logger.warning(f"Failed to finalize stream {thread_id}: {exc}")

    # Poll channel

    async def _start_job(
        self, entry: _Stream, job_type: JobType, target_id: str, input_payload: Dict[str, Any]
    ) -> bool:
        # Known before the job exists so stop_stream can abort a pending start.
        entry.operation_id = f"{job_type.value}:{target_id}"
        operation_id = await self.operations.start(
            job_type.value,
            target_id,
            input_payload,
            description=f"{entry.state.kind} stream {target_id}",
        )
        operation = self.operations.get(operation_id)
        if operation is None or not operation.meta.job_id:
            error = operation.error if operation is not None else None
            self._finish(entry, "error", error=error or "Failed to start background job")
            return False
        self._update(entry, job_id=operation.meta.job_id)
        self._sync_operation(entry, operation)
        return True

    async def _run_background_chat(self, entry: _Stream, request: ChatStreamRequest) -> None:
        try:
            await self.api.append_message(request.conversation_id, "user", request.prompt)
            started = await self._start_job(
                entry,
                JobType.CHAT_RESPONSE,
                request.conversation_id,
                {
                    "thread_id": request.conversation_id,
                    "prompt": request.prompt,
                    "learning_mode": request.learning_mode,
                    "use_tools": request.use_tools,
                    "repos": request.repos,
                },
            )
        except Exception as exc:
            logger.error(f"Failed to start background chat {entry.id}: {exc}")
            self._finish(entry, "error", error=str(exc) or type(exc).__name__)
            return
        if started:
            await self._poll_durable(entry)

    async def _run_evaluation(self, entry: _Stream, request: EvaluationStreamRequest) -> None:
        try:
            started = await self._start_job(
                entry,
                JobType.CHALLENGE_EVALUATION,
                request.challenge_id,
                {
                    "challenge_id": request.challenge_id,
                    "challenge": request.challenge,
                    "files": request.files,
                },
            )
        except Exception as exc:
            logger.error(f"Failed to start evaluation {entry.id}: {exc}")
            self._finish(entry, "error", error=str(exc) or type(exc).__name__)
            return
        if started:
            await self._poll_durable(entry)

    async def _fetch_snapshot(self, entry: _Stream) -> Optional[DurableSnapshot]:
        if entry.state.kind == "evaluation":
            progress = await self.api.get_evaluation(entry.id)
            if progress is None or progress.get("job_id") != entry.state.job_id:
                return None
            return DurableSnapshot.from_evaluation(progress)
        thread = await self.api.get_thread(entry.id)
        if thread is None:
            return None
        return DurableSnapshot.from_thread(thread, entry.state.job_id, entry.prompt)

    async def _poll_durable(self, entry: _Stream) -> None:
        while self._streams.get(entry.id) is entry and not entry.state.is_terminal:
            entry.wake.clear()
            try:
                snapshot = await self._fetch_snapshot(entry)
            except Exception as exc:
                logger.warning(f"Error polling stream {entry.id}: {exc}")
            else:
                if snapshot is not None:
                    self.apply_snapshot(entry.id, snapshot)
            if entry.state.is_terminal:
                return

            if entry.operation_status == "failed":
                error = entry.operation_error or "Job failed"
                content = entry.state.content
                if entry.state.kind == "chat":
                    content = append_note(content, INTERRUPTED_NOTE)
                self._finish(entry, "error", error=error, content=content)
                return
            if entry.operation_status == "aborted":
                self._finish(entry, "aborted", content=append_note(entry.state.content, STOPPED_NOTE))
                return
            if entry.operation_completed:
                self._finish(entry, "completed")
                return

            try:
                await asyncio.wait_for(entry.wake.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    async def close(self) -> None:
        self._unsubscribe_operations()
        tasks: List[asyncio.Task] = list(self._background)
        for entry in self._streams.values():
            if entry.cleanup is not None:
                entry.cleanup.cancel()
            if entry.writer is not None:
                entry.writer.cancel_timer()
            if entry.task is not None:
                tasks.append(entry.task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
