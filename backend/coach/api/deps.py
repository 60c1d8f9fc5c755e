from fastapi import HTTPException, Request, WebSocket

from coach.core.config import BACKEND_TOKEN
from coach.db.evaluations_repo import EvaluationsRepo
from coach.db.focus_repo import FocusRepo
from coach.db.jobs_repo import JobsRepo
from coach.db.threads_repo import ThreadsRepo
from coach.services.jobs import JobService
from coach.services.providers import CompletionProvider
from coach.websocket.manager import WebSocketManager


async def verify_token(request: Request) -> None:
    if BACKEND_TOKEN and request.headers.get("X-Backend-Token") != BACKEND_TOKEN:
        raise HTTPException(status_code=401, detail="unauthorized")


async def verify_ws_token(websocket: WebSocket) -> bool:
    if BACKEND_TOKEN and websocket.headers.get("x-backend-token") != BACKEND_TOKEN:
        await websocket.close(code=1008)
        return False
    return True


def get_jobs_repo(request: Request) -> JobsRepo:
    return request.app.state.jobs_repo


def get_threads_repo(request: Request) -> ThreadsRepo:
    return request.app.state.threads_repo


def get_evaluations_repo(request: Request) -> EvaluationsRepo:
    return request.app.state.evaluations_repo


def get_focus_repo(request: Request) -> FocusRepo:
    return request.app.state.focus_repo


def get_job_service(request: Request) -> JobService:
    return request.app.state.job_service


def get_provider(request: Request) -> CompletionProvider:
    return request.app.state.provider


def get_events(request: Request) -> WebSocketManager:
    return request.app.state.events
