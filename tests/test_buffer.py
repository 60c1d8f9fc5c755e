import asyncio

import pytest

from coach.client.buffer import BufferedStreamWriter


@pytest.mark.asyncio
async def test_appends_are_batched_into_one_write():
    writes = []

    async def write(content):
        writes.append(content)

    writer = BufferedStreamWriter(write, interval=0.02)
    writer.append("Hel")
    writer.append("lo")
    assert writes == []
    assert writer.pending == "Hello"

    await asyncio.sleep(0.06)
    assert writes == ["Hello"]
    assert writer.pending == ""

    writer.append(" world")
    await writer.close()
    assert writes == ["Hello", "Hello world"]
    assert writer.writes == 2


@pytest.mark.asyncio
async def test_empty_flush_writes_nothing():
    writes = []

    async def write(content):
        writes.append(content)

    writer = BufferedStreamWriter(write, interval=10)
    assert await writer.flush() is False
    assert await writer.close() is False
    assert writes == []


@pytest.mark.asyncio
async def test_close_flushes_unconditionally_and_stops_timer():
    writes = []

    async def write(content):
        writes.append(content)

    writer = BufferedStreamWriter(write, interval=10)
    writer.append("partial")
    assert await writer.close() is True
    assert writes == ["partial"]

    writer.append(" ignored")
    await asyncio.sleep(0)
    assert writer.content == "partial"


@pytest.mark.asyncio
async def test_failed_write_is_retried_on_next_flush():
    writes = []
    failures = [RuntimeError("disk full")]

    async def write(content):
        if failures:
            raise failures.pop()
        writes.append(content)

    writer = BufferedStreamWriter(write, interval=10)
    writer.append("abc")
    with pytest.raises(RuntimeError):
        await writer.flush()
    assert await writer.close() is True
    assert writes == ["abc"]


@pytest.mark.asyncio
async def test_replace_installs_authoritative_total():
    writes = []

    async def write(content):
        writes.append(content)

    writer = BufferedStreamWriter(write, interval=10)
    writer.append("Hel")
    writer.replace("Hello there")
    await writer.close()
    assert writes == ["Hello there"]
