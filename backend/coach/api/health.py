from typing import Any, Dict

from fastapi import APIRouter, Depends, Request

from coach.api.deps import verify_token
from coach.utils.time import utc_now

router = APIRouter()


@router.get("/health")
async def health(request: Request, _: None = Depends(verify_token)) -> Dict[str, Any]:
    return {"status": "ok", "time": utc_now(), "version": request.app.version}
