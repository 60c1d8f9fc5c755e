import pytest

from coach.state_machine.core import InvalidTransitionError


@pytest.mark.asyncio
async def test_put_item_starts_history_and_keeps_it_on_rewrite(focus_repo):
    record = await focus_repo.put_item(
        "challenge", "c1", "2026-10-18", {"title": "Parse a CSV"}
    )
    assert record["state_history"][0]["state"] == "not-started"
    assert record["state_history"][0]["source"] == "generated"

    await focus_repo.transition("challenge", "c1", "in-progress", source="user")
    rewritten = await focus_repo.put_item(
        "challenge",
        "c1",
        "2026-10-18",
        {"title": "Parse a TSV"},
        operation_state={"status": "complete"},
    )
    assert rewritten["data"]["title"] == "Parse a TSV"
    assert [entry["state"] for entry in rewritten["state_history"]] == [
        "not-started",
        "in-progress",
    ]
    assert rewritten["metadata"]["operation_state"] == {"status": "complete"}


@pytest.mark.asyncio
async def test_transition_rejects_illegal_moves(focus_repo):
    await focus_repo.put_item("topic", "t1", "2026-10-18", {"title": "Closures"})
    await focus_repo.transition("topic", "t1", "explored")

    with pytest.raises(InvalidTransitionError):
        await focus_repo.transition("topic", "t1", "skipped")
    assert await focus_repo.transition("topic", "missing", "explored") is None


@pytest.mark.asyncio
async def test_index_and_operation_state(focus_repo):
    await focus_repo.put_item("goal", "g1", "2026-10-18", {"title": "Ship"})
    await focus_repo.put_item("goal", "g2", "2026-10-17", {"title": "Old"})

    index = await focus_repo.fetch_index(date_key="2026-10-18")
    assert [(entry["id"], entry["status"], entry["title"]) for entry in index] == [
        ("g1", "not-started", "Ship")
    ]

    assert await focus_repo.set_operation_state("goal", "g1", {"status": "generating"})
    assert not await focus_repo.set_operation_state("goal", "nope", {"status": "generating"})
    record = await focus_repo.fetch_item("goal", "g1")
    assert record["metadata"]["operation_state"] == {"status": "generating"}


@pytest.mark.asyncio
async def test_unknown_item_type(focus_repo):
    with pytest.raises(ValueError):
        await focus_repo.fetch_item("habit", "h1")
