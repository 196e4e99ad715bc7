"""
ControlHost — what the control loop needs from its execution host.

The Temporal workflow (workflows/control.py) is the production host; tests
drive the loop with an in-memory asyncio host.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, NoReturn, Protocol

from features.control.models import ControlInput, ControlResult, Snapshot, Task


class ContinuationRequested(BaseException):
    """Raised by hosts without a native continue-as-new primitive.

    A BaseException so the loop's loop-level failure handling never treats a
    continuation as a failure, matching Temporal's ContinueAsNewError.
    """

    def __init__(self, next_input: ControlInput):
        self.next_input = next_input
        super().__init__(f"continue with {len(next_input.tasks)} pending tasks")


class ControlHost(Protocol):
    async def execute_task(self, task: Task, attempt: int) -> Any:
        """Run the external operation for `task`; raise on failure."""

    async def validate_task(self, task: Task) -> None:
        """Raise if the task is not acceptable for execution."""

    async def notify(self, task: Task, result: Any, recipient: str) -> None:
        ...

    async def sleep(self, seconds: float) -> None:
        ...

    async def wait_condition(self, predicate: Callable[[], bool], timeout: float | None = None) -> bool:
        """Wait until `predicate()` holds; return False if `timeout` elapsed first."""

    def now(self) -> datetime:
        ...

    def time(self) -> float:
        ...

    def run_info(self) -> dict:
        ...

    def continue_as_new_suggested(self) -> bool:
        ...

    async def checkpoint(self, snapshot: Snapshot) -> None:
        """Durably record a snapshot before history is discarded."""

    async def report(self, result: ControlResult) -> None:
        ...

    async def continue_as_new(self, next_input: ControlInput) -> NoReturn:
        """Restart the loop fresh with `next_input`. Never returns."""
