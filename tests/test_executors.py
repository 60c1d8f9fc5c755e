import asyncio

import pytest
from pydantic import ValidationError

from coach.client.streams import DurableSnapshot
from coach.schemas.jobs import JobType
from coach.schemas.threads import INTERRUPTED_NOTE, STOPPED_NOTE, job_placeholder_id
from coach.services.providers import CompletionEvent

GOAL_RESPONSE = '```json\n{"goal": {"title": "Ship the parser", "description": "Finish it"}}\n```'

EVALUATION_TEXT = (
    '```json\n{"isCorrect": false, "score": 40, "strengths": ["readable"], '
    '"improvements": ["handle empty input"]}\n```\n'
    "---FEEDBACK---\nClose, but empty input crashes.\n---END FEEDBACK---"
)


async def placeholder_content(threads_repo, thread_id, job_id):
    for _ in range(400):
        thread = await threads_repo.fetch_thread(thread_id)
        for message in thread["messages"]:
            if message["id"] == job_placeholder_id(job_id):
                return message["content"]
        await asyncio.sleep(0.005)
    raise AssertionError("placeholder never written")


async def wait_for_status(jobs_repo, job_id, *statuses):
    for _ in range(400):
        job = await jobs_repo.fetch_job(job_id)
        if job["status"] in statuses:
            return job
        await asyncio.sleep(0.005)
    raise AssertionError(f"job {job_id} never reached {statuses}")


@pytest.mark.asyncio
async def test_goal_regeneration_completes_and_marks_focus_item(
    executor, jobs_repo, focus_repo, provider
):
    await focus_repo.put_item("goal", "g1", "2026-10-18", {"title": "Old goal"})
    provider.script(response=GOAL_RESPONSE)
    job = await jobs_repo.create_job(
        "goal-regeneration", "g1", {"existing_titles": ["Old goal"], "date_key": "2026-10-18"}
    )

    await executor.run(job["job_id"])

    job = await jobs_repo.fetch_job(job["job_id"])
    assert job["status"] == "completed"
    assert job["result"]["goal"]["title"] == "Ship the parser"
    record = await focus_repo.fetch_item("goal", "g1")
    assert record["metadata"]["operation_state"]["status"] == "complete"
    assert record["metadata"]["operation_state"]["job_id"] == job["job_id"]
    assert "Old goal" in provider.sessions[0].prompts[0]
    assert provider.sessions[0].destroyed.is_set()


@pytest.mark.asyncio
async def test_unparseable_regeneration_fails_without_default_data(
    executor, jobs_repo, focus_repo, provider
):
    await focus_repo.put_item("topic", "t1", "2026-10-18", {"title": "Old"})
    provider.script(response="Sorry, I cannot help with that.")
    job = await jobs_repo.create_job("topic-regeneration", "t1", {"date_key": "2026-10-18"})

    await executor.run(job["job_id"])

    job = await jobs_repo.fetch_job(job["job_id"])
    assert job["status"] == "failed"
    assert job["error"] == "Failed to parse learningTopic response"
    assert job["result"] is None
    record = await focus_repo.fetch_item("topic", "t1")
    assert record["metadata"]["operation_state"]["status"] == "failed"
    assert record["data"] == {"title": "Old"}


@pytest.mark.asyncio
async def test_unknown_job_type_fails(executor, jobs_repo):
    job = await jobs_repo.create_job("habit-regeneration", None, {})
    await executor.run(job["job_id"])

    job = await jobs_repo.fetch_job(job["job_id"])
    assert job["status"] == "failed"
    assert job["error"] == "Unknown job type: habit-regeneration"


@pytest.mark.asyncio
async def test_terminal_and_missing_jobs_are_skipped(executor, jobs_repo, provider):
    job = await jobs_repo.create_job("goal-regeneration", "g1", {})
    await jobs_repo.mark_cancelled(job["job_id"])

    await executor.run(job["job_id"])
    await executor.run("job_missing")

    assert (await jobs_repo.fetch_job(job["job_id"]))["status"] == "cancelled"
    assert provider.sessions == []


@pytest.mark.asyncio
async def test_chat_response_streams_into_thread(executor, jobs_repo, threads_repo, provider, deltas):
    await threads_repo.append_message("t1", "user", "What is a monad?")
    provider.script(script=deltas("A monad ", "is a ", "pattern."))
    job = await jobs_repo.create_job(
        "chat-response", "t1", {"thread_id": "t1", "prompt": "What is a monad?"}
    )

    await executor.run(job["job_id"])

    job = await jobs_repo.fetch_job(job["job_id"])
    assert job["status"] == "completed"
    assert job["result"]["content"] == "A monad is a pattern."
    thread = await threads_repo.fetch_thread("t1")
    assert [message["role"] for message in thread["messages"]] == ["user", "assistant"]
    assert thread["messages"][1]["content"] == "A monad is a pattern."
    assert thread["is_streaming"] is False


@pytest.mark.asyncio
async def test_cancel_mid_stream_keeps_partial_content(
    executor, job_service, jobs_repo, threads_repo, provider, sessions
):
    await threads_repo.append_message("t1", "user", "Explain async")
    session = provider.script(
        script=[
            CompletionEvent(type="delta", content="Async "),
            CompletionEvent(type="delta", content="lets you"),
        ],
        block=True,
    )
    job = await job_service.submit(
        JobType.CHAT_RESPONSE, "t1", {"thread_id": "t1", "prompt": "Explain async"}
    )
    job_id = job["job_id"]
    run = asyncio.create_task(executor.run(job_id))

    for _ in range(400):
        content = await placeholder_content(threads_repo, "t1", job_id)
        if content.startswith("Async lets you"):
            break
        await asyncio.sleep(0.005)

    assert await job_service.cancel(job_id) is True
    await asyncio.wait_for(run, timeout=2)

    job = await jobs_repo.fetch_job(job_id)
    assert job["status"] == "cancelled"
    assert session.destroyed.is_set()
    assert job_id not in sessions
    thread = await threads_repo.fetch_thread("t1")
    assert thread["messages"][-1]["content"] == f"Async lets you\n\n{STOPPED_NOTE}"
    assert thread["is_streaming"] is False
    assert await job_service.cancel(job_id) is False


@pytest.mark.asyncio
async def test_provider_error_fails_chat_and_marks_interrupted(
    executor, jobs_repo, threads_repo, provider
):
    await threads_repo.append_message("t1", "user", "hi")
    provider.script(
        script=[
            CompletionEvent(type="delta", content="Partial"),
            CompletionEvent(type="error", message="rate limited"),
        ]
    )
    job = await jobs_repo.create_job("chat-response", "t1", {"thread_id": "t1", "prompt": "hi"})

    await executor.run(job["job_id"])

    job = await jobs_repo.fetch_job(job["job_id"])
    assert job["status"] == "failed"
    assert job["error"] == "rate limited"
    thread = await threads_repo.fetch_thread("t1")
    assert thread["messages"][-1]["content"] == f"Partial\n\n{INTERRUPTED_NOTE}"


@pytest.mark.asyncio
async def test_cancelled_regeneration_is_not_marked_failed(
    executor, job_service, jobs_repo, focus_repo, provider
):
    await focus_repo.put_item("goal", "g1", "2026-10-18", {"title": "Old goal"})
    session = provider.script(block=True)
    job = await job_service.submit(JobType.GOAL_REGENERATION, "g1", {"date_key": "2026-10-18"})
    run = asyncio.create_task(executor.run(job["job_id"]))
    await wait_for_status(jobs_repo, job["job_id"], "running")
    for _ in range(400):
        if session.prompts:
            break
        await asyncio.sleep(0.005)
    record = await focus_repo.fetch_item("goal", "g1")
    assert record["metadata"]["operation_state"]["status"] == "generating"

    assert await job_service.cancel(job["job_id"])
    await asyncio.wait_for(run, timeout=2)

    job = await jobs_repo.fetch_job(job["job_id"])
    assert job["status"] == "cancelled"
    assert job["error"] == "Cancelled by user"
    record = await focus_repo.fetch_item("goal", "g1")
    assert record["metadata"]["operation_state"] is None
    assert record["data"] == {"title": "Old goal"}


@pytest.mark.asyncio
async def test_challenge_evaluation_streams_progress(
    executor, jobs_repo, evaluations_repo, provider
):
    middle = len(EVALUATION_TEXT) // 2
    provider.script(
        script=[
            CompletionEvent(type="delta", content=EVALUATION_TEXT[:middle]),
            CompletionEvent(type="delta", content=EVALUATION_TEXT[middle:]),
            CompletionEvent(type="done", total_content=EVALUATION_TEXT),
        ]
    )
    job = await jobs_repo.create_job(
        "challenge-evaluation",
        "c1",
        {
            "challenge_id": "c1",
            "challenge": {"title": "Sum a list", "description": "..."},
            "files": [{"name": "sum.py", "content": "def total(xs): return sum(xs)"}],
        },
    )

    await executor.run(job["job_id"])

    job = await jobs_repo.fetch_job(job["job_id"])
    assert job["status"] == "completed"
    assert job["result"]["challengeId"] == "c1"
    assert job["result"]["isCorrect"] is False
    assert job["result"]["streamingFeedback"] == "Close, but empty input crashes."
    progress = await evaluations_repo.fetch_evaluation("c1")
    assert progress["status"] == "completed"
    assert progress["job_id"] == job["job_id"]
    assert progress["result"]["score"] == 40


@pytest.mark.asyncio
async def test_submit_validates_input(job_service, jobs_repo):
    with pytest.raises(ValidationError):
        await job_service.submit(JobType.CHAT_RESPONSE, "t1", {"prompt": "missing thread"})
    assert await jobs_repo.fetch_jobs() == []


@pytest.mark.asyncio
async def test_workers_drain_queue_and_recover(job_service, jobs_repo, provider):
    orphan = await jobs_repo.create_job("goal-regeneration", "g0", {})
    assert await job_service.recover() == 1
    provider.script(response=GOAL_RESPONSE)
    provider.script(response=GOAL_RESPONSE)

    await job_service.start_workers()
    try:
        job = await job_service.submit(JobType.GOAL_REGENERATION, "g1", {})
        await wait_for_status(jobs_repo, orphan["job_id"], "completed")
        await wait_for_status(jobs_repo, job["job_id"], "completed")
        snapshot = job_service.status_snapshot()
        assert snapshot["queue_depth"] == 0
        assert snapshot["workers"]["active"] + snapshot["workers"]["idle"] == 1
    finally:
        await job_service.stop()


EVALUATION_INPUT = {
    "challenge_id": "c1",
    "challenge": {"title": "Sum a list", "description": "..."},
    "files": [{"name": "sum.py", "content": "def total(xs): return sum(xs)"}],
}


async def wait_for_progress(evaluations_repo, challenge_id, status):
    for _ in range(400):
        progress = await evaluations_repo.fetch_evaluation(challenge_id)
        if progress is not None and progress["status"] == status:
            return progress
        await asyncio.sleep(0.005)
    raise AssertionError(f"evaluation {challenge_id} never reached {status}")


@pytest.mark.asyncio
async def test_chat_stream_ending_after_external_cancel_is_marked_stopped(
    executor, jobs_repo, threads_repo, provider
):
    # The job is cancelled in storage by another process and the session ends
    # its stream normally; the token in this process never trips.
    await threads_repo.append_message("t1", "user", "Explain async")
    session = provider.script(
        script=[CompletionEvent(type="delta", content="Async lets you")], block=True
    )
    job = await jobs_repo.create_job(
        "chat-response", "t1", {"thread_id": "t1", "prompt": "Explain async"}
    )
    job_id = job["job_id"]
    run = asyncio.create_task(executor.run(job_id))
    for _ in range(400):
        content = await placeholder_content(threads_repo, "t1", job_id)
        if content.startswith("Async lets you"):
            break
        await asyncio.sleep(0.005)

    await jobs_repo.mark_cancelled(job_id)
    await session.destroy()
    await asyncio.wait_for(run, timeout=2)

    job = await jobs_repo.fetch_job(job_id)
    assert job["status"] == "cancelled"
    assert job["result"] is None
    thread = await threads_repo.fetch_thread("t1")
    assert thread["messages"][-1]["content"] == f"Async lets you\n\n{STOPPED_NOTE}"
    assert thread["is_streaming"] is False


@pytest.mark.asyncio
async def test_evaluation_stream_ending_after_external_cancel_is_not_a_failure(
    executor, jobs_repo, evaluations_repo, provider
):
    session = provider.script(
        script=[CompletionEvent(type="delta", content=EVALUATION_TEXT[:40])], block=True
    )
    job = await jobs_repo.create_job("challenge-evaluation", "c1", EVALUATION_INPUT)
    job_id = job["job_id"]
    run = asyncio.create_task(executor.run(job_id))
    await wait_for_progress(evaluations_repo, "c1", "streaming")

    await jobs_repo.mark_cancelled(job_id)
    await session.destroy()
    await asyncio.wait_for(run, timeout=2)

    job = await jobs_repo.fetch_job(job_id)
    assert job["status"] == "cancelled"
    progress = await evaluations_repo.fetch_evaluation("c1")
    assert progress["status"] == "streaming"
    assert progress["error"] is None
    assert DurableSnapshot.from_evaluation(progress).status is None


@pytest.mark.asyncio
async def test_cancelled_evaluation_keeps_last_progress(
    executor, job_service, jobs_repo, evaluations_repo, provider, sessions
):
    session = provider.script(
        script=[CompletionEvent(type="delta", content=EVALUATION_TEXT[:40])], block=True
    )
    job = await job_service.submit(JobType.CHALLENGE_EVALUATION, "c1", EVALUATION_INPUT)
    job_id = job["job_id"]
    run = asyncio.create_task(executor.run(job_id))
    await wait_for_progress(evaluations_repo, "c1", "streaming")

    assert await job_service.cancel(job_id) is True
    await asyncio.wait_for(run, timeout=2)

    assert (await jobs_repo.fetch_job(job_id))["status"] == "cancelled"
    assert session.destroyed.is_set()
    assert job_id not in sessions
    progress = await evaluations_repo.fetch_evaluation("c1")
    assert progress["status"] != "failed"
    assert progress["job_id"] == job_id
    assert DurableSnapshot.from_evaluation(progress).status != "failed"
