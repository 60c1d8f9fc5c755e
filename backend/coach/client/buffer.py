import asyncio
import logging
from typing import Awaitable, Callable, Optional

from coach.core.config import STREAM_FLUSH_INTERVAL_SEC

logger = logging.getLogger(__name__)


class BufferedStreamWriter:
    """Accumulates streamed text and hands the full content to ``write``.

    The first append after a flush arms a timer; when it fires everything
    received so far is written in one call. ``close`` performs the final
    flush. A flush with nothing new is a no-op.
    """

    def __init__(
        self,
        write: Callable[[str], Awaitable[None]],
        interval: float = STREAM_FLUSH_INTERVAL_SEC,
    ) -> None:
        self._write = write
        self.interval = interval
        self._content = ""
        self._written = ""
        self._dirty = False
        self._timer: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()
        self.closed = False
        self.writes = 0

    @property
    def content(self) -> str:
        return self._content

    @property
    def pending(self) -> str:
        if self._content.startswith(self._written):
            return self._content[len(self._written) :]
        return self._content

    def append(self, delta: str) -> None:
        if not delta or self.closed:
            return
        self._content += delta
        self._dirty = True
        self._arm()

    def replace(self, content: str) -> None:
        """Swap in the authoritative full text, e.g. the provider's final total."""
        if self.closed or content == self._content:
            return
        self._content = content
        self._dirty = True
        self._arm()

    def _arm(self) -> None:
        if self._timer is None:
            self._timer = asyncio.create_task(self._flush_later())

    async def _flush_later(self) -> None:
        await asyncio.sleep(self.interval)
        self._timer = None
        try:
            await self.flush()
        except Exception as exc:
            logger.warning(f"Buffered flush failed: {exc}")

    async def flush(self) -> bool:
        async with self._lock:
            if not self._dirty:
                return False
            snapshot = self._content
            self._dirty = False
            try:
                await self._write(snapshot)
            except Exception:
                self._dirty = True
                raise
            self._written = snapshot
            self.writes += 1
            return True

    def cancel_timer(self) -> None:
        if self._timer is not None and self._timer is not asyncio.current_task():
            self._timer.cancel()
        self._timer = None

    async def close(self) -> bool:
        self.cancel_timer()
        self.closed = True
        return await self.flush()
