from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


JsonDict = dict[str, Any]

BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})


class TaskState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (TaskState.COMPLETED, TaskState.FAILED, TaskState.CANCELLED)


@dataclass
class TaskSpec:
    task_id: str
    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    body: str | None = None
    script: str | None = None
    timeout_s: float = 30.0
    proxy: str | None = None
    created_at: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        self.method = (self.method or "GET").strip().upper()

    @property
    def sends_body(self) -> bool:
        return bool(self.body) and self.method in BODY_METHODS


@dataclass
class TaskOutcome:
    task_id: str
    state: TaskState
    status: int
    response: str = ""
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.state == TaskState.COMPLETED
