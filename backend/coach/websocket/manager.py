import logging
from typing import Any, Dict, Optional

from fastapi import WebSocket

from coach.core.logging import logger
from coach.utils.time import utc_now

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


class WebSocketManager:
    """Fans job and log notifications out to every connected `/events` client."""

    def __init__(self) -> None:
        self.connections: set[WebSocket] = set()

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self.connections.add(websocket)

    def disconnect(self, websocket: WebSocket) -> None:
        self.connections.discard(websocket)

    async def broadcast(self, event_type: str, **fields: Any) -> int:
        """Send one event to all clients; returns how many received it.

        Connections that fail on send are dropped.
        """
        payload = {"type": event_type, "timestamp": utc_now(), **fields}
        delivered = 0
        for conn in list(self.connections):
            try:
                await conn.send_json(payload)
            except RuntimeError:
                self.connections.discard(conn)
                continue
            delivered += 1
        return delivered

    async def job_status(self, job_id: str, status: str, **extra: Any) -> None:
        await self.broadcast("job.status", job_id=job_id, status=status, **extra)

    async def job_progress(self, job_id: str, chars: int) -> None:
        await self.broadcast("job.progress", job_id=job_id, chars=chars)

    async def emit_log(
        self,
        level: str,
        message: str,
        job_id: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> None:
        text = message.strip()
        if not text:
            return
        logger.log(LOG_LEVELS.get(level, logging.INFO), f"[Job {job_id}] {text}" if job_id else text)
        await self.broadcast("log", level=level, message=text, job_id=job_id, meta=meta)
