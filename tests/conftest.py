# tests/conftest.py

from __future__ import annotations

import logging

import pytest

from .fakes import EventLogHandler, FakeGateway


@pytest.fixture()
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture()
def task_logger(gateway: FakeGateway):
    """
    Logger whose records land in the same event list as the gateway reports.
    """
    logger = logging.getLogger(f"tests.relay.task.{id(gateway)}")
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    handler = EventLogHandler(gateway.events)
    logger.addHandler(handler)
    yield logger
    logger.removeHandler(handler)

