import asyncio
import codecs
import logging
import os
import shutil
import time
from typing import Any, AsyncIterator, Dict, List, Literal, Optional, Protocol

from pydantic import BaseModel

from coach.core.config import CLAUDE_CODE_CLI_PATH

logger = logging.getLogger(__name__)

STDERR_TAIL_LINES = 50


class ProviderError(RuntimeError):
    pass


class CompletionEvent(BaseModel):
    type: Literal["delta", "tool_start", "tool_complete", "done", "error"]
    content: str = ""
    name: Optional[str] = None
    args: Optional[Dict[str, Any]] = None
    result: Optional[str] = None
    duration_ms: Optional[int] = None
    total_content: Optional[str] = None
    message: Optional[str] = None


class CompletionResult(BaseModel):
    response_text: str
    total_time_ms: int


class CompletionSession(Protocol):
    async def send_and_wait(self, prompt: str) -> CompletionResult: ...

    def events(self, prompt: str) -> AsyncIterator[CompletionEvent]: ...

    async def destroy(self) -> None: ...


class CompletionProvider(Protocol):
    def create_session(
        self, label: str, system_prompt: Optional[str] = None
    ) -> CompletionSession: ...


async def collect_response(session: CompletionSession, prompt: str) -> CompletionResult:
    """Drain ``session.events`` into a single result; an error event raises."""
    started = time.time()
    chunks: List[str] = []
    total: Optional[str] = None
    async for event in session.events(prompt):
        if event.type == "delta":
            chunks.append(event.content)
        elif event.type == "done":
            total = event.total_content
        elif event.type == "error":
            raise ProviderError(event.message or "completion failed")
    text = total if total is not None else "".join(chunks)
    return CompletionResult(
        response_text=text, total_time_ms=int((time.time() - started) * 1000)
    )


def resolve_claude_path(cli_path: Optional[str] = None) -> Optional[str]:
    cli_path = cli_path or CLAUDE_CODE_CLI_PATH
    if cli_path and os.path.exists(cli_path):
        return cli_path
    return shutil.which("claude")


async def read_stream_lines(
    stream: asyncio.StreamReader, collector: List[str], limit: int
) -> None:
    while True:
        line = await stream.readline()
        if not line:
            break
        collector.append(line.decode(errors="replace").rstrip())
        if len(collector) > limit:
            collector.pop(0)


class ClaudeCliSession:
    """One ``claude --print`` invocation per prompt, stdout streamed as deltas."""

    def __init__(
        self,
        cli_path: Optional[str],
        label: str,
        system_prompt: Optional[str] = None,
        chunk_size: int = 256,
    ) -> None:
        self.cli_path = cli_path
        self.label = label
        self.system_prompt = system_prompt
        self.chunk_size = chunk_size
        self._process: Optional[asyncio.subprocess.Process] = None
        self._destroyed = False

    def _build_args(self, prompt: str) -> List[str]:
        args = ["--print", prompt]
        if self.system_prompt:
            args.extend(["--append-system-prompt", self.system_prompt])
        return args

    async def events(self, prompt: str) -> AsyncIterator[CompletionEvent]:
        if not self.cli_path:
            yield CompletionEvent(type="error", message="claude cli not found")
            return
        if self._destroyed:
            yield CompletionEvent(type="error", message="session destroyed")
            return

        logger.debug(f"{self.label}: spawning claude ({len(prompt)} chars)")
        process = await asyncio.create_subprocess_exec(
            self.cli_path,
            *self._build_args(prompt),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=os.environ.copy(),
        )
        self._process = process
        stderr_lines: List[str] = []
        stderr_task = asyncio.create_task(
            read_stream_lines(process.stderr, stderr_lines, STDERR_TAIL_LINES)
        )
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        total: List[str] = []
        try:
            while True:
                chunk = await process.stdout.read(self.chunk_size)
                if not chunk:
                    break
                text = decoder.decode(chunk)
                if text:
                    total.append(text)
                    yield CompletionEvent(type="delta", content=text)
            tail = decoder.decode(b"", final=True)
            if tail:
                total.append(tail)
                yield CompletionEvent(type="delta", content=tail)

            exit_code = await process.wait()
            await stderr_task
            if self._destroyed:
                return
            if exit_code != 0:
                detail = "\n".join(stderr_lines[-5:]) or f"exit code {exit_code}"
                yield CompletionEvent(type="error", message=f"claude cli failed: {detail}")
                return
            yield CompletionEvent(type="done", total_content="".join(total))
        finally:
            if process.returncode is None:
                process.kill()
            if not stderr_task.done():
                stderr_task.cancel()
            self._process = None

    async def send_and_wait(self, prompt: str) -> CompletionResult:
        return await collect_response(self, prompt)

    async def destroy(self) -> None:
        self._destroyed = True
        process = self._process
        if process is not None and process.returncode is None:
            logger.debug(f"{self.label}: killing claude process {process.pid}")
            process.kill()


class ClaudeCliProvider:
    def __init__(self, cli_path: Optional[str] = None) -> None:
        self.cli_path = resolve_claude_path(cli_path)
        if not self.cli_path:
            logger.warning("claude cli not found; completions will fail")

    def create_session(
        self, label: str, system_prompt: Optional[str] = None
    ) -> ClaudeCliSession:
        return ClaudeCliSession(self.cli_path, label, system_prompt)
