from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException

from coach.api.deps import get_evaluations_repo, verify_token
from coach.db.evaluations_repo import EvaluationsRepo
from coach.schemas.evaluations import EvaluationProgress

router = APIRouter()


@router.get("/evaluations/{challenge_id}", response_model=EvaluationProgress)
async def get_evaluation(
    challenge_id: str,
    evaluations_repo: EvaluationsRepo = Depends(get_evaluations_repo),
    _: None = Depends(verify_token),
) -> EvaluationProgress:
    evaluation = await evaluations_repo.fetch_evaluation(challenge_id)
    if not evaluation:
        raise HTTPException(status_code=404, detail="evaluation not found")
    return EvaluationProgress(**evaluation)


@router.delete("/evaluations/{challenge_id}")
async def delete_evaluation(
    challenge_id: str,
    evaluations_repo: EvaluationsRepo = Depends(get_evaluations_repo),
    _: None = Depends(verify_token),
) -> Dict[str, Any]:
    deleted = await evaluations_repo.delete_evaluation(challenge_id)
    return {"challenge_id": challenge_id, "deleted": deleted}
