from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException

from coach.api.deps import get_threads_repo, verify_token
from coach.db.threads_repo import ThreadsRepo
from coach.schemas.threads import (
    STREAMING_MESSAGE_ID,
    MessageCreate,
    StreamingMessageUpdate,
    Thread,
    ThreadListResponse,
    ThreadUpsert,
)

router = APIRouter()


@router.get("/threads", response_model=ThreadListResponse)
async def list_threads(
    limit: int = 100,
    threads_repo: ThreadsRepo = Depends(get_threads_repo),
    _: None = Depends(verify_token),
) -> ThreadListResponse:
    threads = await threads_repo.fetch_threads(limit=limit)
    return ThreadListResponse(threads=[Thread(**thread) for thread in threads])


@router.get("/threads/{thread_id}", response_model=Thread)
async def get_thread(
    thread_id: str,
    threads_repo: ThreadsRepo = Depends(get_threads_repo),
    _: None = Depends(verify_token),
) -> Thread:
    thread = await threads_repo.fetch_thread(thread_id)
    if not thread:
        raise HTTPException(status_code=404, detail="thread not found")
    return Thread(**thread)


@router.put("/threads/{thread_id}", response_model=Thread)
async def put_thread(
    thread_id: str,
    request: ThreadUpsert,
    threads_repo: ThreadsRepo = Depends(get_threads_repo),
    _: None = Depends(verify_token),
) -> Thread:
    saved = await threads_repo.save_thread({"thread_id": thread_id, **request.model_dump()})
    return Thread(**saved)


@router.delete("/threads/{thread_id}")
async def delete_thread(
    thread_id: str,
    threads_repo: ThreadsRepo = Depends(get_threads_repo),
    _: None = Depends(verify_token),
) -> Dict[str, Any]:
    if not await threads_repo.delete_thread(thread_id):
        raise HTTPException(status_code=404, detail="thread not found")
    return {"thread_id": thread_id, "deleted": True}


@router.post("/threads/{thread_id}/messages")
async def append_message(
    thread_id: str,
    request: MessageCreate,
    threads_repo: ThreadsRepo = Depends(get_threads_repo),
    _: None = Depends(verify_token),
) -> Dict[str, Any]:
    return await threads_repo.append_message(thread_id, request.role, request.content)


@router.put("/threads/{thread_id}/streaming")
async def put_streaming_message(
    thread_id: str,
    request: StreamingMessageUpdate,
    threads_repo: ThreadsRepo = Depends(get_threads_repo),
    _: None = Depends(verify_token),
) -> Dict[str, Any]:
    saved = await threads_repo.upsert_streaming_message(
        thread_id,
        STREAMING_MESSAGE_ID,
        request.content,
        tool_calls=request.tool_calls,
        is_final=request.is_final,
        note=request.note,
    )
    if not saved:
        raise HTTPException(status_code=404, detail="thread not found")
    return {"thread_id": thread_id, "saved": True}


@router.post("/threads/{thread_id}/finalize")
async def finalize_thread(
    thread_id: str,
    threads_repo: ThreadsRepo = Depends(get_threads_repo),
    _: None = Depends(verify_token),
) -> Dict[str, Any]:
    finalized = await threads_repo.finalize_interrupted(thread_id)
    return {"thread_id": thread_id, "finalized": finalized}
