"""Cooperative cancellation for running jobs.

A job's executor checks its ``CancellationToken`` at natural breakpoints;
``SessionRegistry.cancel`` trips the token and destroys the job's completion
session so a blocked provider call returns early.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from coach.services.providers import CompletionSession

logger = logging.getLogger(__name__)


class JobCancelled(Exception):
    """Raised inside an executor once its job has been cancelled or deleted."""


@dataclass
class CancellationToken:
    _event: asyncio.Event = field(default_factory=asyncio.Event, init=False)
    _callbacks: List[Callable[[], Any]] = field(default_factory=list, init=False)

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        if self._event.is_set():
            return
        self._event.set()
        for callback in self._callbacks:
            try:
                callback()
            except Exception:
                logger.exception("cancellation callback failed")

    async def wait(self) -> None:
        await self._event.wait()

    def on_cancel(self, callback: Callable[[], Any]) -> None:
        self._callbacks.append(callback)
        if self._event.is_set():
            callback()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise JobCancelled("Operation was cancelled")


class SessionRegistry:
    """Running completion sessions and cancellation tokens keyed by job id."""

    def __init__(self) -> None:
        self._sessions: Dict[str, CompletionSession] = {}
        self._tokens: Dict[str, CancellationToken] = {}

    def token(self, job_id: str) -> CancellationToken:
        token = self._tokens.get(job_id)
        if token is None:
            token = CancellationToken()
            self._tokens[job_id] = token
        return token

    def register(self, job_id: str, session: CompletionSession) -> CancellationToken:
        self._sessions[job_id] = session
        logger.debug(f"[Job {job_id}] Session registered for cancellation")
        return self.token(job_id)

    def unregister(self, job_id: str) -> None:
        self._sessions.pop(job_id, None)
        self._tokens.pop(job_id, None)

    def get(self, job_id: str) -> Optional[CompletionSession]:
        return self._sessions.get(job_id)

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    async def cancel(self, job_id: str) -> bool:
        """Trip the job's token and destroy its session, if any is registered."""
        token = self._tokens.get(job_id)
        session = self._sessions.get(job_id)
        if token is not None:
            token.cancel()
        if session is not None:
            logger.debug(f"[Job {job_id}] Destroying session via registry")
            try:
                await session.destroy()
            except Exception as exc:
                logger.warning(f"[Job {job_id}] Failed to destroy session: {exc}")
        return token is not None or session is not None
