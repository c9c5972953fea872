from __future__ import annotations

import asyncio
import logging
from typing import Any

from relay.infra.http_client import ClientFactory
from relay.infra.logfmt import kv
from relay.infra.script_executor import ScriptExecutor
from relay.service.task_models import JsonDict
from relay.service.task_runner import OutcomeSink, RelayTask, start_task


DEFAULT_TIMEOUT_S = 30.0
MIN_TIMEOUT_S = 1.0
MAX_TIMEOUT_S = 3600.0


def _parse_timeout(v: Any) -> float:
    try:
        timeout_s = float(v) if v is not None else DEFAULT_TIMEOUT_S
    except (TypeError, ValueError):
        timeout_s = DEFAULT_TIMEOUT_S
    return min(MAX_TIMEOUT_S, max(MIN_TIMEOUT_S, timeout_s))


def _parse_headers(v: Any) -> dict[str, str]:
    if not isinstance(v, dict):
        return {}
    return {str(k): str(val) for k, val in v.items() if val is not None}


def _opt_str(v: Any) -> str | None:
    return v if isinstance(v, str) and v else None


class DispatchService:
    def __init__(
        self,
        gateway: OutcomeSink,
        *,
        script_executor: ScriptExecutor | None = None,
        client_factory: ClientFactory | None = None,
        max_pending: int = 100,
        logger: Any | None = None,
    ) -> None:
        self.gateway = gateway
        self.script_executor = script_executor
        self.client_factory = client_factory
        self.max_pending = max(1, int(max_pending))
        self.logger = logger or logging.getLogger("relay.dispatch")
        self.tasks: dict[str, RelayTask] = {}

    @property
    def running_count(self) -> int:
        return len(self.tasks)

    async def handle_frame(self, msg: JsonDict) -> None:
        mtype = msg.get("type")
        if mtype == "task":
            self.start(msg)
        elif mtype == "cancel":
            self.cancel(str(msg.get("taskid") or ""))

    def start(self, msg: JsonDict) -> RelayTask | None:
        task_id = str(msg.get("taskid") or "")
        url = str(msg.get("url") or "")
        if not task_id or not url:
            self.logger.warning(kv(op="dispatch.reject", task_id=task_id or "?", reason="bad_request"))
            self.gateway.transfer_error(task_id or "?", "missing taskid/url", 400)
            return None
        if len(self.tasks) >= self.max_pending:
            self.logger.warning(kv(op="dispatch.reject", task_id=task_id, reason="queue_full", running=len(self.tasks)))
            self.gateway.transfer_error(task_id, f"gateway queue full (max={self.max_pending})", 503)
            return None

        task = start_task(
            task_id,
            str(msg.get("method") or "GET"),
            url,
            _parse_headers(msg.get("headers")),
            _opt_str(msg.get("body")),
            _opt_str(msg.get("script")),
            _parse_timeout(msg.get("timeout")),
            self.gateway,
            _opt_str(msg.get("proxy")),
            script_executor=self.script_executor,
            client_factory=self.client_factory,
        )
        self.tasks[task_id] = task
        task.outcome.add_done_callback(lambda _fut: self._forget(task))
        self.logger.info(kv(op="dispatch.start", task_id=task_id, running=len(self.tasks), max_pending=self.max_pending))
        return task

    def cancel(self, task_id: str) -> bool:
        task = self.tasks.get(task_id)
        if task is None:
            self.logger.info(kv(op="dispatch.cancel", task_id=task_id or "?", found=False))
            return False
        self.logger.info(kv(op="dispatch.cancel", task_id=task_id, found=True))
        return task.cancel()

    async def cancel_all(self) -> None:
        tasks = list(self.tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*(t.wait() for t in tasks), return_exceptions=True)

    def _forget(self, task: RelayTask) -> None:
        if self.tasks.get(task.task_id) is task:
            self.tasks.pop(task.task_id, None)
