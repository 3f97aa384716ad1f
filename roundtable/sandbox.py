"""Async request/response client for the isolated interpreter worker."""

import asyncio
import json
import logging
import os
import sys
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from .config import SANDBOX_PYTHON, SANDBOX_TIMEOUT
from .errors import SandboxError

logger = logging.getLogger("roundtable.sandbox")

_PROJECT_ROOT = Path(__file__).resolve().parents[1]
# Results travel as a single JSON line
_STREAM_LIMIT = 32 * 1024 * 1024
# Everything else in the server environment (API keys included) stays out of the worker
_WORKER_ENV_KEYS = ("PATH", "HOME", "LANG", "LC_ALL", "SYSTEMROOT")


def worker_env() -> Dict[str, str]:
    env = {key: os.environ[key] for key in _WORKER_ENV_KEYS if key in os.environ}
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(_PROJECT_ROOT), os.environ.get("PYTHONPATH")]))
    return env


@dataclass
class WorkerResponse:
    id: str
    result: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class SandboxWorker:
    """
    Runs code in a separate interpreter process.

    Requests are correlated to responses by a unique id; several requests may
    be outstanding at once. A request that times out kills the worker so that
    runaway code cannot block later requests; the next call starts a new one.
    """

    def __init__(self, python: Optional[str] = None, timeout: float = SANDBOX_TIMEOUT):
        self.python = python or SANDBOX_PYTHON or sys.executable
        self.timeout = timeout
        self._process: Optional[asyncio.subprocess.Process] = None
        self._reader: Optional[asyncio.Task] = None
        self._pending: Dict[str, asyncio.Future] = {}
        self._start_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def start(self) -> None:
        async with self._start_lock:
            if self.running:
                return
            self._process = await asyncio.create_subprocess_exec(
                self.python,
                "-m",
                "roundtable.pyworker",
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                env=worker_env(),
                limit=_STREAM_LIMIT,
            )
            self._reader = asyncio.create_task(self._read_loop(self._process))
            logger.info(f"Sandbox worker started (pid {self._process.pid})")

    async def _read_loop(self, process: asyncio.subprocess.Process) -> None:
        try:
            while True:
                line = await process.stdout.readline()
                if not line:
                    break
                try:
                    message = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning(f"Discarding malformed worker output: {line[:200]!r}")
                    continue
                future = self._pending.pop(message.get("id"), None)
                if future is None:
                    logger.warning(f"No pending request for worker response {message.get('id')}")
                    continue
                if not future.done():
                    future.set_result(
                        WorkerResponse(id=message.get("id"), result=message.get("result"), error=message.get("error"))
                    )
        finally:
            if process is self._process:
                self._fail_pending(SandboxError("Sandbox worker exited"))

    def _fail_pending(self, error: Exception) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(error)

    async def run(
        self,
        code: str,
        data: Any,
        context: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> WorkerResponse:
        """
        Submit code for execution and wait for the matching response.

        Interpreter-side exceptions come back as WorkerResponse.error.

        Cancelling the call kills the worker along with the abandoned code.

        Raises:
            SandboxError: the worker could not be started, reached or timed out
        """
        try:
            await self.start()
        except OSError as e:
            raise SandboxError(f"Sandbox worker could not be started: {e}") from e
        request_id = uuid.uuid4().hex
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        message = {"id": request_id, "code": code, "data": data, "context": context or {}}

        try:
            try:
                line = json.dumps(message, default=str).encode("utf-8") + b"\n"
                async with self._write_lock:
                    self._process.stdin.write(line)
                    await self._process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                raise SandboxError(f"Sandbox worker unavailable: {e}") from e

            try:
                return await asyncio.wait_for(future, timeout or self.timeout)
            except asyncio.TimeoutError:
                logger.error(f"Sandbox request {request_id} timed out; restarting worker")
                await self.close()
                raise SandboxError(f"Execution timed out after {timeout or self.timeout}s")
        except asyncio.CancelledError:
            logger.info(f"Sandbox request {request_id} cancelled; stopping worker")
            await self.close()
            raise
        finally:
            self._pending.pop(request_id, None)

    async def close(self) -> None:
        process, self._process = self._process, None
        reader, self._reader = self._reader, None
        self._fail_pending(SandboxError("Sandbox worker closed"))
        if process is not None and process.returncode is None:
            process.kill()
            await process.wait()
        if reader is not None:
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
