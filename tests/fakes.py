# tests/fakes.py

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx


@dataclass
class FakeGateway:
    """
    Records transfer_result / transfer_error calls in order.

    `events` can be shared with an EventLogHandler so tests can assert the
    relative order of reports and log lines.
    """

    events: list[tuple[str, Any]] = field(default_factory=list)
    results: list[tuple[str, str, int]] = field(default_factory=list)
    errors: list[tuple[str, str, int]] = field(default_factory=list)

    def transfer_result(self, task_id: str, response: str, status: int) -> None:
        self.results.append((task_id, response, status))
        self.events.append(("result", task_id))

    def transfer_error(self, task_id: str, error: str, code: int) -> None:
        self.errors.append((task_id, error, code))
        self.events.append(("error", task_id))

    @property
    def report_count(self) -> int:
        return len(self.results) + len(self.errors)


class EventLogHandler(logging.Handler):
    def __init__(self, events: list[tuple[str, Any]]) -> None:
        super().__init__(level=logging.DEBUG)
        self.events = events

    def emit(self, record: logging.LogRecord) -> None:
        self.events.append(("log", record.getMessage()))


@dataclass
class FakeScriptExecutor:
    error: Exception | None = None
    calls: list[tuple[str, str, float]] = field(default_factory=list)

    async def execute(self, script: str, response_text: str, timeout_s: float) -> None:
        self.calls.append((script, response_text, timeout_s))
        if self.error is not None:
            raise self.error


@dataclass
class FakeClientFactory:
    """
    client_factory stand-in that serves every request from `handler` through
    httpx.MockTransport and remembers what it was asked to build.
    """

    handler: Callable[[httpx.Request], Any]
    built: list[tuple[str | None, float]] = field(default_factory=list)
    requests: list[httpx.Request] = field(default_factory=list)

    def __call__(self, proxy: str | None, timeout_s: float) -> httpx.AsyncClient:
        self.built.append((proxy, timeout_s))

        async def _handle(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            ret = self.handler(request)
            if hasattr(ret, "__await__"):
                ret = await ret
            return ret

        return httpx.AsyncClient(transport=httpx.MockTransport(_handle))


async def wait_until(pred: Callable[[], bool], timeout_s: float = 3.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout_s
    while not pred():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)
