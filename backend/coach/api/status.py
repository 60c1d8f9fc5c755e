from typing import Any, Dict

from fastapi import APIRouter, Depends

from coach.api.deps import get_job_service, verify_token
from coach.services.jobs import JobService

router = APIRouter()


@router.get("/status")
async def status(
    service: JobService = Depends(get_job_service), _: None = Depends(verify_token)
) -> Dict[str, Any]:
    return service.status_snapshot()
