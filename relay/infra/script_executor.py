from __future__ import annotations

import asyncio
import os
import signal
import sys
from typing import Any, Protocol

from relay.infra.logfmt import short_text
from relay.service.errors import ScriptError


class ScriptExecutor(Protocol):
    async def execute(self, script: str, response_text: str, timeout_s: float) -> None: ...


class SubprocessScriptExecutor:
    """
    Runs a post-processing script in a child process.

    The script is appended to `command` (default: the current interpreter with
    `-c`) and receives the response body on stdin. A non-zero exit or running
    past `timeout_s` fails the task.
    """

    def __init__(
        self,
        command: list[str] | None = None,
        *,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        logger: Any | None = None,
    ) -> None:
        self.command = list(command) if command else [sys.executable, "-c"]
        self.cwd = cwd
        self.env = env
        self.logger = logger

    async def execute(self, script: str, response_text: str, timeout_s: float) -> None:
        env = os.environ.copy()
        if self.env:
            env.update(self.env)
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.command,
                script,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
                env=env,
            )
        except OSError as e:
            raise ScriptError(f"script start failed: {type(e).__name__}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate((response_text or "").encode("utf-8")),
                timeout=timeout_s,
            )
        except asyncio.TimeoutError:
            await self._kill(proc)
            raise ScriptError(f"script timed out after {timeout_s:.1f}s") from None
        except asyncio.CancelledError:
            await self._kill(proc)
            raise

        if self.logger is not None and stdout:
            self.logger.info(f"op=script.stdout bytes={len(stdout)} text={short_text(stdout.decode('utf-8', errors='ignore'), 500)}")
        if proc.returncode != 0:
            err = short_text(stderr.decode("utf-8", errors="ignore"), 300)
            raise ScriptError(f"script exited with code {proc.returncode}: {err}" if err else f"script exited with code {proc.returncode}")

    @staticmethod
    async def _kill(proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        try:
            proc.send_signal(signal.SIGTERM)
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=3.0)
        except asyncio.TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
