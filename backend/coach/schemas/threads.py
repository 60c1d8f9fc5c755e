import uuid
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

# In-progress assistant answers are stored as a placeholder message whose id
# is STREAMING_MESSAGE_ID (client-originated stream) or
# "streaming-{job_id}" (background job). Non-final placeholder content ends
# with STREAMING_CURSOR.
STREAMING_MESSAGE_ID = "streaming"
STREAMING_CURSOR = " ▊"
INTERRUPTED_NOTE = "*(Response interrupted)*"
STOPPED_NOTE = "*(Response stopped)*"


def job_placeholder_id(job_id: str) -> str:
    return f"{STREAMING_MESSAGE_ID}-{job_id}"


def is_placeholder_id(message_id: str) -> bool:
    return message_id == STREAMING_MESSAGE_ID or message_id.startswith(
        f"{STREAMING_MESSAGE_ID}-"
    )


def strip_cursor(content: str) -> str:
    if content.endswith(STREAMING_CURSOR):
        return content[: -len(STREAMING_CURSOR)]
    return content


def generate_message_id() -> str:
    return f"msg_{uuid.uuid4().hex}"


class Message(BaseModel):
    id: str = Field(default_factory=generate_message_id)
    role: Literal["user", "assistant", "system"]
    content: str
    timestamp: Optional[str] = None
    tool_calls: Optional[List[str]] = None


class Thread(BaseModel):
    thread_id: str
    title: str = "New conversation"
    context: Dict[str, Any] = Field(default_factory=dict)
    messages: List[Message] = Field(default_factory=list)
    created_at: str
    updated_at: str
    is_streaming: bool = False


class ThreadUpsert(BaseModel):
    title: str = "New conversation"
    context: Dict[str, Any] = Field(default_factory=dict)
    messages: List[Message] = Field(default_factory=list)
    is_streaming: bool = False


class MessageCreate(BaseModel):
    role: Literal["user", "assistant", "system"] = "user"
    content: str = Field(..., min_length=1)


class StreamingMessageUpdate(BaseModel):
    content: str = ""
    tool_calls: List[str] = Field(default_factory=list)
    is_final: bool = False
    note: Optional[Literal["interrupted", "stopped"]] = None


class ThreadListResponse(BaseModel):
    threads: List[Thread]
