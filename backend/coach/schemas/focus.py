from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from coach.state_machine.core import StateTransition

FocusItemType = Literal["challenge", "goal", "topic"]


class OperationState(BaseModel):
    job_id: Optional[str] = None
    status: Literal["generating", "complete", "failed"]
    started_at: Optional[str] = None


class FocusMetadata(BaseModel):
    date_key: str
    operation_state: Optional[OperationState] = None


class FocusItemRecord(BaseModel):
    metadata: FocusMetadata
    data: Dict[str, Any] = Field(default_factory=dict)
    state_history: List[StateTransition] = Field(default_factory=list)


class FocusItemWrite(BaseModel):
    date_key: str
    data: Dict[str, Any] = Field(default_factory=dict)
    operation_state: Optional[OperationState] = None


class FocusIndexEntry(BaseModel):
    id: str
    type: FocusItemType
    date_key: str
    status: str
    title: Optional[str] = None
    updated_at: str


class FocusIndexResponse(BaseModel):
    items: List[FocusIndexEntry]


class FocusTransitionRequest(BaseModel):
    state: str
    source: Optional[str] = None
    note: Optional[str] = None
