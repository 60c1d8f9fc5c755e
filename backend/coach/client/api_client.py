import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from coach.core.config import BACKEND_TOKEN, BACKEND_URL

logger = logging.getLogger(__name__)


class ApiError(RuntimeError):
    def __init__(self, status_code: int, detail: str) -> None:
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"Backend API error {status_code}: {detail}")


class JobNotFoundError(ApiError):
    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(404, f"job {job_id} not found")


async def request_json(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    headers: Dict[str, str],
    params: Optional[Dict[str, Any]] = None,
    json_body: Optional[Dict[str, Any]] = None,
    retries: int = 2,
) -> Any:
    attempt = 0
    while True:
        response = await client.request(
            method,
            url,
            headers=headers,
            params=params,
            json=json_body,
        )
        if response.status_code == 429 and attempt < retries:
            retry_after = response.headers.get("Retry-After")
            delay = 1.0
            if retry_after and retry_after.isdigit():
                delay = max(1.0, float(retry_after))
            await asyncio.sleep(delay)
            attempt += 1
            continue
        if response.status_code >= 500 and attempt < retries:
            await asyncio.sleep(0.5 * (attempt + 1))
            attempt += 1
            continue
        if response.status_code >= 400:
            detail = response.text.strip() or response.reason_phrase
            raise ApiError(response.status_code, detail)
        if not response.content:
            return None
        return response.json()


class BackendClient:
    """Async HTTP client for the coach backend."""

    def __init__(
        self,
        base_url: str = BACKEND_URL,
        token: str = BACKEND_TOKEN,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers: Dict[str, str] = {"X-Backend-Token": token} if token else {}
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        return await request_json(
            self._client,
            method,
            self._url(path),
            self.headers,
            params=params,
            json_body=json_body,
        )

    async def create_job(
        self, job_type: str, target_id: Optional[str], input_payload: Dict[str, Any]
    ) -> Dict[str, Any]:
        return await self._request(
            "POST",
            "/jobs",
            json_body={"type": job_type, "target_id": target_id, "input": input_payload},
        )

    async def get_job(self, job_id: str) -> Dict[str, Any]:
        try:
            return await self._request("GET", f"/jobs/{job_id}")
        except ApiError as exc:
            if exc.status_code == 404:
                raise JobNotFoundError(job_id) from exc
            raise

    async def list_jobs(
        self, status: Optional[str] = None, job_type: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        params = {key: value for key, value in (("status", status), ("type", job_type)) if value}
        data = await self._request("GET", "/jobs", params=params or None)
        return data.get("jobs", []) if data else []

    async def cancel_job(self, job_id: str) -> Dict[str, Any]:
        try:
            return await self._request("POST", f"/jobs/{job_id}/cancel")
        except ApiError as exc:
            if exc.status_code == 404:
                raise JobNotFoundError(job_id) from exc
            raise

    async def get_thread(self, thread_id: str) -> Optional[Dict[str, Any]]:
        try:
            return await self._request("GET", f"/threads/{thread_id}")
        except ApiError as exc:
            if exc.status_code == 404:
                return None
            raise

    async def append_message(self, thread_id: str, role: str, content: str) -> Dict[str, Any]:
        return await self._request(
            "POST",
            f"/threads/{thread_id}/messages",
            json_body={"role": role, "content": content},
        )

    async def put_streaming_message(
        self,
        thread_id: str,
        content: str,
        tool_calls: Optional[List[str]] = None,
        is_final: bool = False,
        note: Optional[str] = None,
    ) -> None:
        await self._request(
            "PUT",
            f"/threads/{thread_id}/streaming",
            json_body={
                "content": content,
                "tool_calls": tool_calls or [],
                "is_final": is_final,
                "note": note,
            },
        )

    async def get_evaluation(self, challenge_id: str) -> Optional[Dict[str, Any]]:
        try:
            return await self._request("GET", f"/evaluations/{challenge_id}")
        except ApiError as exc:
            if exc.status_code == 404:
                return None
            raise

    async def write_focus_item(
        self,
        item_type: str,
        item_id: str,
        date_key: str,
        data: Dict[str, Any],
        operation_state: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        return await self._request(
            "PUT",
            f"/focus/items/{item_type}/{item_id}",
            json_body={
                "date_key": date_key,
                "data": data,
                "operation_state": operation_state,
            },
        )

    async def stream_copilot(self, payload: Dict[str, Any]) -> AsyncIterator[Dict[str, Any]]:
        """Yield provider events from the SSE push channel until ``[DONE]``."""
        async with self._client.stream(
            "POST", self._url("/copilot/stream"), headers=self.headers, json=payload
        ) as response:
            if response.status_code >= 400:
                body = await response.aread()
                raise ApiError(response.status_code, body.decode(errors="replace").strip())
            async for line in response.aiter_lines():
                if not line.startswith("data: "):
                    continue
                data = line[len("data: ") :]
                if data == "[DONE]":
                    return
                try:
                    yield json.loads(data)
                except json.JSONDecodeError:
                    logger.warning(f"Skipping malformed SSE payload: {data[:80]}")

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
