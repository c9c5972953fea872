# tests/test_app.py

from __future__ import annotations

import logging

import httpx
import pytest

from relay.entry.app import build_gateway
from relay.entry.config import GatewayConfig
from relay.infra.script_executor import SubprocessScriptExecutor

from .fakes import FakeClientFactory, wait_until


@pytest.mark.asyncio
async def test_inbound_task_frame_is_reported_through_gateway() -> None:
    cfg = GatewayConfig(server="relay.example.test", user="alice", dev="box-1", max_pending=3)
    gateway, dispatch = build_gateway(cfg, logging.getLogger("tests.app"))
    dispatch.client_factory = FakeClientFactory(lambda req: httpx.Response(200, text="ok"))

    assert gateway.url == "wss://relay.example.test/connect"
    assert isinstance(dispatch.script_executor, SubprocessScriptExecutor)
    assert dispatch.max_pending == 3

    await gateway.on_message({"type": "task", "taskid": "t1", "method": "GET", "url": "https://api.example.test/"})
    await wait_until(lambda: gateway.pending_count == 1)

    assert gateway.pending_frames() == [{"type": "response", "taskid": "t1", "response": "ok", "status": 200}]
