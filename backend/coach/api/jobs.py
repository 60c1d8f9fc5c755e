from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import ValidationError

from coach.api.deps import get_job_service, get_jobs_repo, verify_token
from coach.db.jobs_repo import JobsRepo
from coach.schemas.jobs import (
    JobCancelResponse,
    JobCreate,
    JobListResponse,
    JobRecord,
    JobResponse,
)
from coach.services.jobs import JobService

router = APIRouter()


@router.post("/jobs", response_model=JobResponse)
async def create_job_api(
    request: JobCreate,
    service: JobService = Depends(get_job_service),
    _: None = Depends(verify_token),
) -> JobResponse:
    try:
        job = await service.submit(request.type, request.target_id, request.input)
    except ValidationError as exc:
        raise HTTPException(
            status_code=422, detail=exc.errors(include_url=False, include_context=False)
        ) from exc
    return JobResponse(job_id=job["job_id"], status=job["status"])


@router.get("/jobs", response_model=JobListResponse)
async def list_jobs(
    status: Optional[str] = None,
    type: Optional[str] = None,
    limit: int = 200,
    jobs_repo: JobsRepo = Depends(get_jobs_repo),
    _: None = Depends(verify_token),
) -> JobListResponse:
    jobs = await jobs_repo.fetch_jobs(status=status, job_type=type, limit=limit)
    return JobListResponse(jobs=[JobRecord(**job) for job in jobs])


@router.get("/jobs/{job_id}", response_model=JobRecord)
async def get_job(
    job_id: str,
    jobs_repo: JobsRepo = Depends(get_jobs_repo),
    _: None = Depends(verify_token),
) -> JobRecord:
    job = await jobs_repo.fetch_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="job not found")
    return JobRecord(**job)


@router.get("/jobs/{job_id}/events")
async def get_job_events(
    job_id: str,
    jobs_repo: JobsRepo = Depends(get_jobs_repo),
    _: None = Depends(verify_token),
) -> Dict[str, Any]:
    if not await jobs_repo.fetch_job(job_id):
        raise HTTPException(status_code=404, detail="job not found")
    return {"events": await jobs_repo.fetch_events(job_id)}


@router.post("/jobs/{job_id}/cancel", response_model=JobCancelResponse)
async def cancel_job(
    job_id: str,
    service: JobService = Depends(get_job_service),
    jobs_repo: JobsRepo = Depends(get_jobs_repo),
    _: None = Depends(verify_token),
) -> JobCancelResponse:
    if not await jobs_repo.fetch_job(job_id):
        raise HTTPException(status_code=404, detail="job not found")
    cancelled = await service.cancel(job_id)
    job = await jobs_repo.fetch_job(job_id)
    status = job["status"] if job else "cancelled"
    return JobCancelResponse(job_id=job_id, status=status, cancelled=cancelled)


@router.delete("/jobs/{job_id}")
async def delete_job(
    job_id: str,
    service: JobService = Depends(get_job_service),
    _: None = Depends(verify_token),
) -> Dict[str, Any]:
    if not await service.delete(job_id):
        raise HTTPException(status_code=404, detail="job not found")
    return {"job_id": job_id, "deleted": True}
