from typing import Optional

from fastapi import FastAPI

from coach.api import copilot, evaluations, events, focus, health, jobs, status, threads
from coach.core.config import BACKEND_PORT, DB_PATH, ensure_dirs
from coach.core.logging import configure_logging, logger
from coach.db.connection import Database
from coach.db.evaluations_repo import EvaluationsRepo
from coach.db.focus_repo import FocusRepo
from coach.db.jobs_repo import JobsRepo
from coach.db.threads_repo import ThreadsRepo
from coach.services.cancellation import SessionRegistry
from coach.services.executors import JobExecutor
from coach.services.jobs import JobService
from coach.services.providers import ClaudeCliProvider, CompletionProvider
from coach.websocket.manager import WebSocketManager


def create_app(
    provider: Optional[CompletionProvider] = None,
    db_path: Optional[str] = None,
    workers: Optional[int] = None,
) -> FastAPI:
    app = FastAPI(title="Coach Backend", version="0.1.0")

    db = Database(db_path or DB_PATH)
    jobs_repo = JobsRepo(db)
    threads_repo = ThreadsRepo(db)
    evaluations_repo = EvaluationsRepo(db)
    focus_repo = FocusRepo(db)
    manager = WebSocketManager()
    sessions = SessionRegistry()
    provider = provider or ClaudeCliProvider()
    executor = JobExecutor(
        jobs_repo,
        threads_repo,
        evaluations_repo,
        focus_repo,
        provider,
        sessions,
        manager,
    )
    service_kwargs = {"workers": workers} if workers is not None else {}
    job_service = JobService(jobs_repo, executor, sessions, manager, **service_kwargs)

    app.state.db = db
    app.state.jobs_repo = jobs_repo
    app.state.threads_repo = threads_repo
    app.state.evaluations_repo = evaluations_repo
    app.state.focus_repo = focus_repo
    app.state.events = manager
    app.state.sessions = sessions
    app.state.provider = provider
    app.state.executor = executor
    app.state.job_service = job_service

    app.include_router(health.router)
    app.include_router(status.router)
    app.include_router(jobs.router)
    app.include_router(threads.router)
    app.include_router(evaluations.router)
    app.include_router(focus.router)
    app.include_router(copilot.router)
    app.include_router(events.router)

    @app.on_event("startup")
    async def on_startup() -> None:
        await db.connect()
        recovered = await job_service.recover()
        if recovered:
            logger.info(f"recovered {recovered} orphaned jobs")
        await job_service.start_workers()
        await manager.emit_log("info", "backend started")

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        await job_service.stop()
        await db.close()

    return app


def run() -> None:
    import uvicorn

    ensure_dirs()
    configure_logging()
    uvicorn.run(
        create_app(),
        host="127.0.0.1",
        port=BACKEND_PORT,
        log_level="info",
    )


if __name__ == "__main__":
    run()
