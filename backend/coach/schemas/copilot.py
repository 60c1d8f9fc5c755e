from typing import List, Optional

from pydantic import BaseModel, Field


class CopilotStreamRequest(BaseModel):
    prompt: str = Field(..., min_length=1)
    thread_id: Optional[str] = None
    learning_mode: bool = False
    use_tools: bool = False
    repos: List[str] = Field(default_factory=list)
