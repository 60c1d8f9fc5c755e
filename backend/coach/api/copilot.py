import json
import logging
from typing import AsyncIterator, List

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from coach.api.deps import get_provider, get_threads_repo, verify_token
from coach.db.threads_repo import ThreadsRepo
from coach.schemas.copilot import CopilotStreamRequest
from coach.services.prompts import (
    CHAT_SYSTEM_PROMPT,
    LEARNING_SYSTEM_PROMPT,
    format_chat_prompt,
)
from coach.services.providers import CompletionProvider

logger = logging.getLogger(__name__)

router = APIRouter()


def sse(payload: str) -> str:
    return f"data: {payload}\n\n"


@router.post("/copilot/stream")
async def copilot_stream(
    request: CopilotStreamRequest,
    provider: CompletionProvider = Depends(get_provider),
    threads_repo: ThreadsRepo = Depends(get_threads_repo),
    _: None = Depends(verify_token),
) -> StreamingResponse:
    messages: List[dict] = []
    if request.thread_id:
        thread = await threads_repo.fetch_thread(request.thread_id)
        if thread:
            messages = thread["messages"]
    prompt = format_chat_prompt(
        messages, request.prompt, request.repos if request.use_tools else None
    )
    system_prompt = LEARNING_SYSTEM_PROMPT if request.learning_mode else CHAT_SYSTEM_PROMPT
    session = provider.create_session("copilot-stream", system_prompt)

    async def event_stream() -> AsyncIterator[str]:
        try:
            async for event in session.events(prompt):
                yield sse(json.dumps(event.model_dump(exclude_none=True)))
        except Exception as exc:
            logger.error(f"copilot stream failed: {exc}")
            yield sse(json.dumps({"type": "error", "message": str(exc) or "stream failed"}))
        finally:
            await session.destroy()
        yield sse("[DONE]")

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
