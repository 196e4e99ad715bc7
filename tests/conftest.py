"""Shared test fixtures: an in-memory control host with a virtual clock."""

from __future__ import annotations

import asyncio
import inspect
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import pytest
from temporalio.exceptions import ApplicationError

from features.control import (
    ContinuationRequested,
    ControlConfiguration,
    ControlDispatcher,
    ControlInput,
    ControlLoop,
    ControlState,
    Task,
)
from features.resilience import CircuitBreaker

START = datetime(2026, 1, 1, tzinfo=timezone.utc)

# Spins a timed wait allows other coroutines before the virtual clock jumps
SPINS_BEFORE_TIMEOUT = 20
MAX_SPINS = 200_000


def fail(kind: str, message: str = "") -> ApplicationError:
    return ApplicationError(message or f"{kind} raised", type=kind, non_retryable=True)


class FakeHost:
    """ControlHost running on plain asyncio with a virtual clock."""

    def __init__(self, handler: Callable[[Task, int], Any] | None = None):
        self.handler = handler or (lambda task, attempt: {"task": task.id})
        self.clock_sec = 0.0
        self.calls: list[tuple[str, int]] = []
        self.validated: list[str] = []
        self.invalid: set[str] = set()
        self.sleeps: list[float] = []
        self.notifications: list[tuple[str, str]] = []
        self.reports: list = []
        self.checkpoints: list = []
        self.suggest_continuation = False
        self.fail_report = False
        self.fail_checkpoint = False

    async def execute_task(self, task: Task, attempt: int) -> Any:
        self.calls.append((task.id, attempt))
        outcome = self.handler(task, attempt)
        if inspect.isawaitable(outcome):
            outcome = await outcome
        return outcome

    async def validate_task(self, task: Task) -> None:
        self.validated.append(task.id)
        if task.id in self.invalid:
            raise fail("ValidationError", f"Task {task.id} is invalid")

    async def notify(self, task: Task, result: Any, recipient: str) -> None:
        self.notifications.append((task.id, recipient))

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.clock_sec += seconds
        await asyncio.sleep(0)

    async def wait_condition(self, predicate: Callable[[], bool], timeout: float | None = None) -> bool:
        spins = 0
        while not predicate():
            spins += 1
            if timeout is not None and spins > SPINS_BEFORE_TIMEOUT:
                self.clock_sec += timeout
                return False
            if spins > MAX_SPINS:
                raise RuntimeError("wait_condition never satisfied")
            await asyncio.sleep(0)
        return True

    def now(self) -> datetime:
        return START + timedelta(seconds=self.clock_sec)

    def time(self) -> float:
        return self.clock_sec

    def run_info(self) -> dict:
        return {"workflow_id": "wf-test", "run_id": "run-1"}

    def continue_as_new_suggested(self) -> bool:
        return self.suggest_continuation

    async def checkpoint(self, snapshot) -> None:
        if self.fail_checkpoint:
            raise RuntimeError("checkpoint store unavailable")
        self.checkpoints.append(snapshot)

    async def report(self, result) -> None:
        if self.fail_report:
            raise RuntimeError("report store unavailable")
        self.reports.append(result)

    async def continue_as_new(self, next_input: ControlInput):
        raise ContinuationRequested(next_input)


class Harness:
    """One control loop wired to a FakeHost, the way the workflow wires it."""

    def __init__(self, tasks=(), handler=None, paused=False, **config_changes):
        self.host = FakeHost(handler)
        configuration = ControlConfiguration().merged(config_changes)
        control_input = ControlInput(tasks=list(tasks), configuration=configuration, paused=paused)
        self.state = ControlState.from_input(control_input, clock=self.host.now)
        self.breaker = CircuitBreaker(name="tasks", threshold=5, reset_timeout=30.0, clock=self.host.time)
        self.dispatcher = ControlDispatcher(
            self.state, breaker=self.breaker, run_info=self.host.run_info, elapsed=self.host.time,
        )
        self.loop = ControlLoop(self.state, self.host, breaker=self.breaker)

    def run(self):
        return asyncio.run(self.loop.run())


def make_tasks(n: int, type: str = "noop", prefix: str = "t") -> list[Task]:
    return [Task(id=f"{prefix}{i}", type=type) for i in range(1, n + 1)]


@pytest.fixture()
def harness_factory():
    return Harness
