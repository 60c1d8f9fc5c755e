import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel

from coach.core.config import (
    EVALUATION_SAVE_INTERVAL_MS,
    JOB_SAVE_INTERVAL_MS,
    JOB_VALIDITY_CHECK_MS,
)
from coach.db.evaluations_repo import EvaluationsRepo
from coach.db.focus_repo import FocusRepo
from coach.db.jobs_repo import JobsRepo
from coach.db.threads_repo import ThreadsRepo
from coach.schemas.jobs import (
    JOB_INPUT_MODELS,
    TERMINAL_JOB_STATUSES,
    ChallengeEvaluationInput,
    ChatResponseInput,
    JobStatus,
    JobType,
    RegenerationInput,
)
from coach.schemas.threads import job_placeholder_id
from coach.services.cancellation import CancellationToken, JobCancelled, SessionRegistry
from coach.services.parsing import (
    DailyChallenge,
    DailyGoal,
    LearningTopic,
    extract_streaming_feedback,
    parse_evaluation_response,
    parse_partial_evaluation,
    parse_wrapped,
)
from coach.services.prompts import (
    CHAT_SYSTEM_PROMPT,
    COACH_SYSTEM_PROMPT,
    EVALUATION_SYSTEM_PROMPT,
    LEARNING_SYSTEM_PROMPT,
    build_evaluation_prompt,
    build_regeneration_prompt,
    format_chat_prompt,
)
from coach.services.providers import CompletionProvider, ProviderError
from coach.services.streaming import EventChannel
from coach.services.throttle import ThrottledFlusher
from coach.state_machine.core import InvalidTransitionError
from coach.utils.time import utc_now_ms
from coach.websocket.manager import WebSocketManager

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class JobContext:
    job_id: str
    job: Dict[str, Any]
    token: CancellationToken
    last_check: float = field(default_factory=time.monotonic)

    @property
    def target_id(self) -> Optional[str]:
        return self.job.get("target_id")


Handler = Callable[[JobContext, Any], Awaitable[Dict[str, Any]]]


class JobExecutor:
    """Runs one job to a terminal status.

    Each ``JobType`` maps to exactly one handler. A handler returns the
    result payload or raises; ``JobCancelled`` means the job was cancelled or
    deleted underneath it and nothing more is written to the job record.
    """

    def __init__(
        self,
        jobs: JobsRepo,
        threads: ThreadsRepo,
        evaluations: EvaluationsRepo,
        focus: FocusRepo,
        provider: CompletionProvider,
        sessions: SessionRegistry,
        events: WebSocketManager,
        save_interval_ms: int = JOB_SAVE_INTERVAL_MS,
        evaluation_save_interval_ms: int = EVALUATION_SAVE_INTERVAL_MS,
        validity_check_ms: int = JOB_VALIDITY_CHECK_MS,
    ) -> None:
        self.jobs = jobs
        self.threads = threads
        self.evaluations = evaluations
        self.focus = focus
        self.provider = provider
        self.sessions = sessions
        self.events = events
        self.save_interval_ms = save_interval_ms
        self.evaluation_save_interval_ms = evaluation_save_interval_ms
        self.validity_check_ms = validity_check_ms
        self._handlers: Dict[JobType, Handler] = {
            JobType.TOPIC_REGENERATION: self._regenerate_topic,
            JobType.CHALLENGE_REGENERATION: self._regenerate_challenge,
            JobType.GOAL_REGENERATION: self._regenerate_goal,
            JobType.CHAT_RESPONSE: self._chat_response,
            JobType.CHALLENGE_EVALUATION: self._challenge_evaluation,
        }

    async def run(self, job_id: str) -> None:
        job = await self.jobs.fetch_job(job_id)
        if job is None:
            logger.info(f"[Job {job_id}] Job no longer exists - skipping")
            return
        if job["status"] in TERMINAL_JOB_STATUSES:
            logger.info(f"[Job {job_id}] Already {job['status']} - skipping")
            return

        try:
            job_type = JobType(job["type"])
        except ValueError:
            await self._finish_failed(job_id, f"Unknown job type: {job['type']}")
            return

        try:
            if await self.jobs.mark_running(job_id) is None:
                return
        except InvalidTransitionError as exc:
            logger.info(f"[Job {job_id}] Not started: {exc}")
            return
        await self.events.job_status(job_id, JobStatus.RUNNING.value)
        await self.jobs.record_event(job_id, "info", "job started")

        ctx = JobContext(job_id=job_id, job=job, token=self.sessions.token(job_id))
        try:
            payload = JOB_INPUT_MODELS[job_type].model_validate(job["input"])
            result = await self._handlers[job_type](ctx, payload)
        except JobCancelled:
            logger.info(f"[Job {job_id}] Cancelled - stopping")
            return
        except Exception as exc:
            if ctx.token.is_cancelled or not await self._is_still_valid(job_id):
                logger.info(f"[Job {job_id}] Provider error after cancellation: {exc}")
                return
            message = str(exc) or exc.__class__.__name__
            logger.error(f"[Job {job_id}] Failed: {message}")
            await self._finish_failed(job_id, message)
            return
        finally:
            self.sessions.unregister(job_id)

        await self._finish_completed(job_id, result)

    async def _finish_completed(self, job_id: str, result: Dict[str, Any]) -> None:
        try:
            job = await self.jobs.mark_completed(job_id, result)
        except InvalidTransitionError as exc:
            logger.info(f"[Job {job_id}] Result discarded: {exc}")
            return
        if job is None:
            return
        await self.jobs.record_event(job_id, "info", "job completed")
        await self.events.job_status(job_id, JobStatus.COMPLETED.value)
        logger.info(f"[Job {job_id}] Completed successfully")

    async def _finish_failed(self, job_id: str, message: str) -> None:
        try:
            job = await self.jobs.mark_failed(job_id, message)
        except InvalidTransitionError as exc:
            logger.info(f"[Job {job_id}] Failure not recorded: {exc}")
            return
        if job is None:
            return
        await self.jobs.record_event(job_id, "error", "job failed", {"error": message})
        await self.events.job_status(job_id, JobStatus.FAILED.value, error=message)

    async def _is_still_valid(self, job_id: str) -> bool:
        job = await self.jobs.fetch_job(job_id)
        if job is None:
            logger.info(f"[Job {job_id}] Job no longer exists in storage - stopping")
            return False
        if job["status"] == JobStatus.CANCELLED.value:
            logger.info(f"[Job {job_id}] Job marked as cancelled - stopping")
            return False
        return True

    async def _ensure_valid(self, ctx: JobContext) -> None:
        ctx.token.raise_if_cancelled()
        ctx.last_check = time.monotonic()
        if not await self._is_still_valid(ctx.job_id):
            ctx.token.cancel()
            raise JobCancelled(ctx.job_id)

    async def _check_validity(self, ctx: JobContext) -> None:
        """Cheap per-event check; the store is re-read at most every validity interval."""
        ctx.token.raise_if_cancelled()
        if (time.monotonic() - ctx.last_check) * 1000 >= self.validity_check_ms:
            await self._ensure_valid(ctx)

    async def _until_cancelled(self, ctx: JobContext, awaitable: Awaitable[T]) -> T:
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(ctx.token.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            waiter.cancel()
        if task not in done:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise JobCancelled(ctx.job_id)
        return task.result()

    # Regeneration

    async def _regenerate(
        self,
        ctx: JobContext,
        data: RegenerationInput,
        kind: str,
        key: str,
        model: Type[BaseModel],
    ) -> Dict[str, Any]:
        started_at = utc_now_ms()
        await self._set_operation_state(ctx, data, kind, "generating", started_at)
        try:
            await self._ensure_valid(ctx)
            prompt = build_regeneration_prompt(
                kind, data.existing_titles, data.skill_profile
            )
            await self._ensure_valid(ctx)

            session = self.provider.create_session(
                f"Job: {kind}-regeneration", COACH_SYSTEM_PROMPT
            )
            self.sessions.register(ctx.job_id, session)
            logger.info(f"[Job {ctx.job_id}] Sending {kind} prompt ({len(prompt)} chars)...")
            try:
                response = await self._until_cancelled(ctx, session.send_and_wait(prompt))
            finally:
                await session.destroy()
            await self._ensure_valid(ctx)
            logger.info(f"[Job {ctx.job_id}] Complete: {response.total_time_ms}ms")

            item = parse_wrapped(response.response_text, key, model)
        except JobCancelled:
            await self._set_operation_state(ctx, data, kind, None, started_at)
            raise
        except Exception:
            status = None if ctx.token.is_cancelled else "failed"
            await self._set_operation_state(ctx, data, kind, status, started_at)
            raise
        await self._set_operation_state(ctx, data, kind, "complete", started_at)
        return {key: item.model_dump(by_alias=True)}

    async def _set_operation_state(
        self,
        ctx: JobContext,
        data: RegenerationInput,
        kind: str,
        status: Optional[str],
        started_at: str,
    ) -> None:
        """Persist the regeneration state on the focus item; ``None`` clears it."""
        if not data.date_key or not ctx.target_id:
            return
        state = None
        if status is not None:
            state = {"job_id": ctx.job_id, "status": status, "started_at": started_at}
        try:
            found = await self.focus.set_operation_state(kind, ctx.target_id, state)
        except Exception as exc:
            logger.warning(f"[Job {ctx.job_id}] Failed to update {kind} operation state: {exc}")
            return
        if not found:
            logger.debug(f"[Job {ctx.job_id}] No stored {kind} {ctx.target_id} to mark {status}")

    async def _regenerate_topic(self, ctx: JobContext, data: RegenerationInput) -> Dict[str, Any]:
        return await self._regenerate(ctx, data, "topic", "learningTopic", LearningTopic)

    async def _regenerate_challenge(
        self, ctx: JobContext, data: RegenerationInput
    ) -> Dict[str, Any]:
        return await self._regenerate(ctx, data, "challenge", "challenge", DailyChallenge)

    async def _regenerate_goal(self, ctx: JobContext, data: RegenerationInput) -> Dict[str, Any]:
        return await self._regenerate(ctx, data, "goal", "goal", DailyGoal)

    # Chat

    async def _chat_response(self, ctx: JobContext, data: ChatResponseInput) -> Dict[str, Any]:
        logger.info(f"[Job {ctx.job_id}] Starting chat response for thread {data.thread_id}")
        thread = await self.threads.fetch_thread(data.thread_id)
        if thread is None:
            raise LookupError(f"Thread {data.thread_id} not found")
        await self._ensure_valid(ctx)

        prompt = format_chat_prompt(
            thread["messages"], data.prompt, data.repos if data.use_tools else None
        )
        system_prompt = LEARNING_SYSTEM_PROMPT if data.learning_mode else CHAT_SYSTEM_PROMPT
        session = self.provider.create_session(f"Job: {ctx.job_id}", system_prompt)
        self.sessions.register(ctx.job_id, session)

        placeholder_id = job_placeholder_id(ctx.job_id)
        chunks: List[str] = []
        tool_calls: List[str] = []

        async def save(is_final: bool = False, note: Optional[str] = None) -> None:
            content = "".join(chunks)
            try:
                await self.threads.upsert_streaming_message(
                    data.thread_id,
                    placeholder_id,
                    content,
                    tool_calls=tool_calls,
                    is_final=is_final,
                    anchor_prompt=data.prompt,
                    note=note,
                )
            except Exception as exc:
                logger.warning(f"[Job {ctx.job_id}] Failed to save progress: {exc}")
                return
            logger.debug(
                f"[Job {ctx.job_id}] Saved progress: {len(content)} chars, final={is_final}"
            )

        flusher = ThrottledFlusher(save, self.save_interval_ms)
        note: Optional[str] = None
        try:
            async with EventChannel(session.events(prompt), ctx.token) as channel:
                async for event in channel:
                    await self._check_validity(ctx)
                    if event.type == "delta":
                        chunks.append(event.content)
                        if await flusher.maybe_flush():
                            await self.events.job_progress(ctx.job_id, sum(map(len, chunks)))
                    elif event.type == "tool_start":
                        tool_calls.append(event.name or "tool")
                    elif event.type == "done" and event.total_content is not None:
                        chunks[:] = [event.total_content]
                    elif event.type == "error":
                        raise ProviderError(event.message or "completion failed")
            # A destroyed session can end its stream normally.
            await self._ensure_valid(ctx)
        except JobCancelled:
            note = "stopped"
            raise
        except Exception:
            note = "stopped" if ctx.token.is_cancelled else "interrupted"
            raise
        finally:
            await flusher.flush(is_final=True, note=note)
            await session.destroy()

        content = "".join(chunks)
        logger.info(f"[Job {ctx.job_id}] Chat response completed: {len(content)} chars")
        return {
            "threadId": data.thread_id,
            "content": content,
            "toolCalls": tool_calls or None,
        }

    # Evaluation

    async def _challenge_evaluation(
        self, ctx: JobContext, data: ChallengeEvaluationInput
    ) -> Dict[str, Any]:
        challenge_id = data.challenge_id
        logger.info(f"[Job {ctx.job_id}] Starting evaluation for challenge {challenge_id}")
        await self.evaluations.save_progress(challenge_id, ctx.job_id, "pending")

        prompt = build_evaluation_prompt(data.challenge, data.files)
        await self._ensure_valid(ctx)
        session = self.provider.create_session(
            f"Job: {ctx.job_id}", EVALUATION_SYSTEM_PROMPT
        )
        self.sessions.register(ctx.job_id, session)

        chunks: List[str] = []

        async def save(
            status: str = "streaming",
            result: Optional[Dict[str, Any]] = None,
            error: Optional[str] = None,
        ) -> None:
            content = "".join(chunks)
            partial = parse_partial_evaluation(content)
            feedback = extract_streaming_feedback(content) if partial else ""
            try:
                await self.evaluations.save_progress(
                    challenge_id,
                    ctx.job_id,
                    status,
                    streaming_feedback=feedback,
                    partial=partial,
                    result=result,
                    error=error,
                )
            except Exception as exc:
                logger.warning(f"[Job {ctx.job_id}] Failed to save evaluation progress: {exc}")

        flusher = ThrottledFlusher(save, self.evaluation_save_interval_ms)
        # None leaves the last streamed progress in place.
        final: Optional[Dict[str, Any]] = None
        try:
            async with EventChannel(session.events(prompt), ctx.token) as channel:
                async for event in channel:
                    await self._check_validity(ctx)
                    if event.type == "delta":
                        chunks.append(event.content)
                        await flusher.maybe_flush()
                    elif event.type == "done" and event.total_content is not None:
                        chunks[:] = [event.total_content]
                    elif event.type == "error":
                        raise ProviderError(event.message or "completion failed")
            await self._ensure_valid(ctx)
            evaluation = parse_evaluation_response("".join(chunks))
            result = evaluation.model_dump(by_alias=True, exclude_none=True)
            final = {"status": "completed", "result": result}
        except JobCancelled:
            logger.info(f"[Job {ctx.job_id}] Evaluation cancelled - keeping last progress")
            raise
        except Exception as exc:
            if not ctx.token.is_cancelled:
                final = {"status": "failed", "error": str(exc) or exc.__class__.__name__}
            raise
        finally:
            if final is not None:
                await flusher.flush(**final)
            await session.destroy()

        logger.info(
            f"[Job {ctx.job_id}] Evaluation completed: isCorrect={evaluation.is_correct}"
        )
        return {
            "challengeId": challenge_id,
            **result,
            "streamingFeedback": extract_streaming_feedback("".join(chunks)),
        }
