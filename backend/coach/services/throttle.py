import time
from typing import Any, Awaitable, Callable, Optional


class ThrottledFlusher:
    """Writes progress at most once per ``interval_ms``.

    ``maybe_flush`` is called on every incoming chunk; ``flush`` always
    writes, passing its keyword arguments through, and is used for the final
    save.
    """

    def __init__(
        self,
        write: Callable[..., Awaitable[None]],
        interval_ms: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._write = write
        self.interval_ms = interval_ms
        self._clock = clock
        self._last: float = clock()
        self.writes = 0

    def due(self, now: Optional[float] = None) -> bool:
        now = self._clock() if now is None else now
        return (now - self._last) * 1000 >= self.interval_ms

    async def maybe_flush(self) -> bool:
        now = self._clock()
        if not self.due(now):
            return False
        self._last = now
        await self._write()
        self.writes += 1
        return True

    async def flush(self, **kwargs: Any) -> None:
        self._last = self._clock()
        await self._write(**kwargs)
        self.writes += 1
