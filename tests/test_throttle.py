import pytest

from coach.services.throttle import ThrottledFlusher


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_writes_at_most_once_per_interval_plus_final():
    clock = FakeClock()
    writes = []

    async def write(**kwargs):
        writes.append((clock.now, kwargs))

    flusher = ThrottledFlusher(write, interval_ms=250, clock=clock)

    for _ in range(8):
        clock.now += 0.0625
        await flusher.maybe_flush()
    # 500 ms of chunks every 62.5 ms
    assert [at for at, _ in writes] == [100.25, 100.5]

    await flusher.flush(is_final=True)
    assert len(writes) == 3
    assert writes[-1][1] == {"is_final": True}
    assert flusher.writes == 3


@pytest.mark.asyncio
async def test_first_chunk_does_not_write_immediately():
    clock = FakeClock()
    calls = []

    async def write(**kwargs):
        calls.append(kwargs)

    flusher = ThrottledFlusher(write, interval_ms=500, clock=clock)
    assert await flusher.maybe_flush() is False
    clock.now += 0.5
    assert flusher.due()
    assert await flusher.maybe_flush() is True
    assert await flusher.maybe_flush() is False
    assert calls == [{}]


@pytest.mark.asyncio
async def test_zero_interval_writes_every_time():
    calls = []

    async def write(**kwargs):
        calls.append(kwargs)

    flusher = ThrottledFlusher(write, interval_ms=0)
    for _ in range(3):
        assert await flusher.maybe_flush()
    assert len(calls) == 3
