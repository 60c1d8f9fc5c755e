from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel

EvaluationStatus = Literal["pending", "streaming", "completed", "failed"]


class EvaluationProgress(BaseModel):
    challenge_id: str
    job_id: Optional[str] = None
    status: EvaluationStatus
    streaming_feedback: str = ""
    partial: Optional[Dict[str, Any]] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    updated_at: str
