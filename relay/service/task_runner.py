from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Protocol

import httpx

from relay.infra.http_client import ClientFactory, build_http_client
from relay.infra.logfmt import kv, short_text
from relay.infra.script_executor import ScriptExecutor
from relay.service.errors import (
    HTTPStatusError,
    ScriptError,
    TransportError,
    error_code,
    error_message,
)
from relay.service.task_models import TaskOutcome, TaskSpec, TaskState


CANCELLED_MESSAGE = "cancelled"
CANCELLED_CODE = 500


class OutcomeSink(Protocol):
    def transfer_result(self, task_id: str, response: str, status: int) -> None: ...

    def transfer_error(self, task_id: str, error: str, code: int) -> None: ...


def is_success_status(status: int) -> bool:
    return 200 <= status < 300


class RelayTask:
    """
    One outbound HTTP call tracked to a single reported outcome.

    The asyncio task created by `start()` doubles as the cancellation token:
    `cancel()` interrupts whatever the task is awaiting (the HTTP call or the
    script). Reports go through the gateway synchronously, so once a report
    has been issued nothing can interrupt or repeat it.
    """

    def __init__(
        self,
        spec: TaskSpec,
        gateway: OutcomeSink,
        *,
        script_executor: ScriptExecutor | None = None,
        client_factory: ClientFactory | None = None,
        logger: Any | None = None,
    ) -> None:
        self.spec = spec
        self.gateway = gateway
        self.script_executor = script_executor
        self.client_factory = client_factory or build_http_client
        self.logger = logger or logging.getLogger("relay.task")
        self.state = TaskState.PENDING
        self._task: asyncio.Task[None] | None = None
        self._completion_logged = False
        self.outcome: asyncio.Future[TaskOutcome] = asyncio.get_running_loop().create_future()

    @property
    def task_id(self) -> str:
        return self.spec.task_id

    def start(self) -> RelayTask:
        if self._task is not None or self.state.terminal:
            return self
        self.state = TaskState.RUNNING
        self._task = asyncio.create_task(self._run(), name=f"relay_task:{self.task_id}")
        self._task.add_done_callback(self._on_task_done)
        return self

    def cancel(self) -> bool:
        if self.outcome.done():
            return False
        if self._task is None:
            self._report_cancelled()
            self._log_completion()
            return True
        return self._task.cancel()

    async def wait(self) -> TaskOutcome:
        return await asyncio.shield(self.outcome)

    async def _run(self) -> None:
        spec = self.spec
        self.logger.info(kv(op="task.start", task_id=spec.task_id, method=spec.method, url=spec.url, proxy=spec.proxy, timeout_s=spec.timeout_s))
        try:
            status, text = await self._fetch()
            self.logger.info(kv(op="task.response", task_id=spec.task_id, status=status, body=short_text(text, 2000)))

            if spec.script:
                await self._post_process(text)

            if is_success_status(status):
                self._report_result(text, status)
            else:
                raise HTTPStatusError(status)
        except asyncio.CancelledError:
            self._report_cancelled()
            raise
        except Exception as e:
            self.logger.error(kv(op="task.failed", task_id=spec.task_id, error=error_message(e)))
            self._report_error(error_message(e), error_code(e))
        finally:
            self._log_completion()

    async def _fetch(self) -> tuple[int, str]:
        spec = self.spec
        try:
            async with self.client_factory(spec.proxy, spec.timeout_s) as client:
                request = client.build_request(
                    spec.method,
                    spec.url,
                    headers=spec.headers or None,
                    content=spec.body if spec.sends_body else None,
                )
                response = await client.send(request)
                return response.status_code, response.text
        except httpx.HTTPError as e:
            raise TransportError(f"{type(e).__name__}: {e}" if str(e) else type(e).__name__) from e

    async def _post_process(self, text: str) -> None:
        if self.script_executor is None:
            raise ScriptError("no script executor configured")
        t0 = time.time()
        await self.script_executor.execute(self.spec.script or "", text, self.spec.timeout_s)
        latency_ms = int((time.time() - t0) * 1000.0)
        self.logger.info(kv(op="task.script.done", task_id=self.task_id, latency_ms=latency_ms))

    def _report_result(self, text: str, status: int) -> None:
        if not self._settle(TaskOutcome(self.task_id, TaskState.COMPLETED, status, response=text)):
            return
        self.gateway.transfer_result(self.task_id, text, status)

    def _report_error(self, message: str, code: int) -> None:
        if not self._settle(TaskOutcome(self.task_id, TaskState.FAILED, code, error=message)):
            return
        self.gateway.transfer_error(self.task_id, message, code)

    def _report_cancelled(self) -> None:
        outcome = TaskOutcome(self.task_id, TaskState.CANCELLED, CANCELLED_CODE, error=CANCELLED_MESSAGE)
        if not self._settle(outcome):
            return
        self.logger.warning(kv(op="task.cancelled", task_id=self.task_id))
        self.gateway.transfer_error(self.task_id, CANCELLED_MESSAGE, CANCELLED_CODE)

    def _settle(self, outcome: TaskOutcome) -> bool:
        if self.outcome.done():
            return False
        self.state = outcome.state
        self.outcome.set_result(outcome)
        return True

    def _log_completion(self) -> None:
        if self._completion_logged:
            return
        self._completion_logged = True
        latency_ms = int((time.time() - self.spec.created_at) * 1000.0)
        self.logger.info(kv(op="task.done", task_id=self.task_id, state=self.state.value, latency_ms=latency_ms))

    def _on_task_done(self, task: asyncio.Task[None]) -> None:
        # Cancelled before the coroutine ever ran: no except/finally inside _run fired.
        if task.cancelled() and not self.outcome.done():
            self._report_cancelled()
            self._log_completion()


def start_task(
    task_id: str,
    method: str,
    url: str,
    headers: dict[str, str] | None,
    body: str | None,
    script: str | None,
    timeout_s: float,
    gateway: OutcomeSink,
    proxy: str | None = None,
    *,
    script_executor: ScriptExecutor | None = None,
    client_factory: ClientFactory | None = None,
    logger: Any | None = None,
) -> RelayTask:
    spec = TaskSpec(
        task_id=task_id,
        method=method,
        url=url,
        headers=dict(headers or {}),
        body=body,
        script=script,
        timeout_s=float(timeout_s),
        proxy=proxy or None,
    )
    task = RelayTask(
        spec,
        gateway,
        script_executor=script_executor,
        client_factory=client_factory,
        logger=logger,
    )
    return task.start()
