import asyncio
from typing import AsyncIterator, Optional

from coach.services.cancellation import CancellationToken, JobCancelled
from coach.services.providers import CompletionEvent

_DONE = object()


class EventChannel:
    """Moves provider events from a producer task to the consumer through a queue.

    Iteration raises ``JobCancelled`` as soon as the token trips, even when
    the provider is blocked and has not produced another event.

        async with EventChannel(session.events(prompt), token) as channel:
            async for event in channel:
                ...
    """

    def __init__(
        self,
        source: AsyncIterator[CompletionEvent],
        token: CancellationToken,
    ) -> None:
        self._source = source
        self._token = token
        self._queue: asyncio.Queue = asyncio.Queue()
        self._producer: Optional[asyncio.Task] = None
        self._cancel_waiter: Optional[asyncio.Task] = None

    async def _produce(self) -> None:
        try:
            async for event in self._source:
                await self._queue.put(event)
        except Exception as exc:
            await self._queue.put(exc)
        finally:
            self._queue.put_nowait(_DONE)

    async def __aenter__(self) -> "EventChannel":
        self._producer = asyncio.create_task(self._produce())
        self._cancel_waiter = asyncio.create_task(self._token.wait())
        return self

    async def __aexit__(self, *exc_info) -> None:
        tasks = [task for task in (self._producer, self._cancel_waiter) if task]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        aclose = getattr(self._source, "aclose", None)
        if aclose is not None:
            await aclose()

    def __aiter__(self) -> "EventChannel":
        return self

    async def __anext__(self) -> CompletionEvent:
        if self._producer is None or self._cancel_waiter is None:
            raise RuntimeError("EventChannel used outside 'async with'")
        self._token.raise_if_cancelled()
        getter = asyncio.create_task(self._queue.get())
        done, _ = await asyncio.wait(
            {getter, self._cancel_waiter}, return_when=asyncio.FIRST_COMPLETED
        )
        if getter not in done:
            getter.cancel()
            await asyncio.gather(getter, return_exceptions=True)
            raise JobCancelled("Operation was cancelled")
        item = getter.result()
        if item is _DONE:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item
