from enum import Enum
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, Field


class JobType(str, Enum):
    TOPIC_REGENERATION = "topic-regeneration"
    CHALLENGE_REGENERATION = "challenge-regeneration"
    GOAL_REGENERATION = "goal-regeneration"
    CHAT_RESPONSE = "chat-response"
    CHALLENGE_EVALUATION = "challenge-evaluation"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_JOB_STATUSES = (JobStatus.PENDING.value, JobStatus.RUNNING.value)
TERMINAL_JOB_STATUSES = (
    JobStatus.COMPLETED.value,
    JobStatus.FAILED.value,
    JobStatus.CANCELLED.value,
)


class RegenerationInput(BaseModel):
    existing_titles: List[str] = Field(default_factory=list)
    skill_profile: Optional[Dict[str, Any]] = None
    date_key: Optional[str] = None


class ChatResponseInput(BaseModel):
    thread_id: str = Field(..., min_length=1)
    prompt: str = Field(..., min_length=1)
    learning_mode: bool = False
    use_tools: bool = False
    repos: List[str] = Field(default_factory=list)


class EvaluationFile(BaseModel):
    name: str
    content: str


class ChallengeEvaluationInput(BaseModel):
    challenge_id: str = Field(..., min_length=1)
    challenge: Dict[str, Any] = Field(default_factory=dict)
    files: List[EvaluationFile] = Field(default_factory=list)


JOB_INPUT_MODELS: Dict[JobType, Type[BaseModel]] = {
    JobType.TOPIC_REGENERATION: RegenerationInput,
    JobType.CHALLENGE_REGENERATION: RegenerationInput,
    JobType.GOAL_REGENERATION: RegenerationInput,
    JobType.CHAT_RESPONSE: ChatResponseInput,
    JobType.CHALLENGE_EVALUATION: ChallengeEvaluationInput,
}


class JobCreate(BaseModel):
    type: JobType
    target_id: Optional[str] = None
    input: Dict[str, Any] = Field(default_factory=dict)


class JobResponse(BaseModel):
    job_id: str
    status: str


class JobCancelResponse(BaseModel):
    job_id: str
    status: str
    cancelled: bool


class JobRecord(BaseModel):
    job_id: str
    type: str
    target_id: Optional[str] = None
    status: str
    created_at: str
    updated_at: str
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    input: Dict[str, Any] = Field(default_factory=dict)
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class JobListResponse(BaseModel):
    jobs: List[JobRecord]
