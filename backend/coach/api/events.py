from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from coach.api.deps import verify_ws_token
from coach.utils.time import utc_now

router = APIRouter()


@router.websocket("/events")
async def events(websocket: WebSocket) -> None:
    """Push channel for job status, progress and log lines.

    On connect the client gets the ids of jobs currently being worked on so
    it can reconcile before the first status event arrives.
    """
    if not await verify_ws_token(websocket):
        return
    manager = websocket.app.state.events
    job_service = websocket.app.state.job_service
    await manager.connect(websocket)
    try:
        await websocket.send_json(
            {
                "type": "connected",
                "timestamp": utc_now(),
                "active_jobs": sorted(job_service.active_jobs),
            }
        )
        while True:
            if await websocket.receive_text() == "ping":
                await websocket.send_json({"type": "pong", "timestamp": utc_now()})
    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(websocket)
