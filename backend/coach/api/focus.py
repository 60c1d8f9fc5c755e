from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException

from coach.api.deps import get_focus_repo, verify_token
from coach.db.focus_repo import FocusRepo
from coach.schemas.focus import (
    FocusIndexEntry,
    FocusIndexResponse,
    FocusItemType,
    FocusItemWrite,
    FocusTransitionRequest,
)
from coach.state_machine.core import InvalidTransitionError

router = APIRouter()


@router.get("/focus/index", response_model=FocusIndexResponse)
async def focus_index(
    date_key: Optional[str] = None,
    type: Optional[FocusItemType] = None,
    focus_repo: FocusRepo = Depends(get_focus_repo),
    _: None = Depends(verify_token),
) -> FocusIndexResponse:
    items = await focus_repo.fetch_index(date_key=date_key, item_type=type)
    return FocusIndexResponse(items=[FocusIndexEntry(**item) for item in items])


@router.get("/focus/items/{item_type}/{item_id}")
async def get_focus_item(
    item_type: FocusItemType,
    item_id: str,
    focus_repo: FocusRepo = Depends(get_focus_repo),
    _: None = Depends(verify_token),
) -> Dict[str, Any]:
    record = await focus_repo.fetch_item(item_type, item_id)
    if not record:
        raise HTTPException(status_code=404, detail="focus item not found")
    return record


@router.put("/focus/items/{item_type}/{item_id}")
async def put_focus_item(
    item_type: FocusItemType,
    item_id: str,
    request: FocusItemWrite,
    focus_repo: FocusRepo = Depends(get_focus_repo),
    _: None = Depends(verify_token),
) -> Dict[str, Any]:
    operation_state = request.operation_state.model_dump() if request.operation_state else None
    return await focus_repo.put_item(
        item_type, item_id, request.date_key, request.data, operation_state
    )


@router.post("/focus/items/{item_type}/{item_id}/transition")
async def transition_focus_item(
    item_type: FocusItemType,
    item_id: str,
    request: FocusTransitionRequest,
    focus_repo: FocusRepo = Depends(get_focus_repo),
    _: None = Depends(verify_token),
) -> Dict[str, Any]:
    try:
        record = await focus_repo.transition(
            item_type, item_id, request.state, source=request.source, note=request.note
        )
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    if not record:
        raise HTTPException(status_code=404, detail="focus item not found")
    return record
