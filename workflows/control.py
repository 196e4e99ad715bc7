"""
Temporal Workflow: Task Control Loop

Runs the control loop (features.control) as a long-lived workflow:
  signals  → commands (pause, resume, cancel, terminate, task edits, ...)
  queries  → read-only views of the control state
  updates  → mutations that return a result to the caller
  activities → task operations, validation, notifications, persistence
  continue-as-new → history-bound continuation

Signal, query and update handlers are synchronous, so Temporal's single
workflow event loop applies each one atomically between the loop's awaits.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict
from datetime import timedelta
from typing import Any, Callable, NoReturn

from temporalio import workflow
from temporalio.common import RetryPolicy
from temporalio.exceptions import ApplicationError

with workflow.unsafe.imports_passed_through():
    import config
    from activities.persistence import save_checkpoint, save_run_record
    from activities.tasks import process_task, send_notification, validate_task
    from features.control import (
        ContinuationPlanner,
        ControlDispatcher,
        ControlInput,
        ControlLoop,
        ControlResult,
        ControlState,
        LoopTerminatedError,
        Task,
    )
    from features.control.models import Snapshot, task_timeout
    from features.resilience import CircuitBreaker, CompensationManager, PolicyEngine

log = logging.getLogger(__name__)

# The loop owns retries; each task activity call is a single attempt
SINGLE_ATTEMPT = RetryPolicy(maximum_attempts=1)
# Side-effect activities get a short bounded retry so a broken store cannot stall the loop
BOUNDED_RETRY = RetryPolicy(maximum_attempts=config.SIDE_EFFECT_ATTEMPTS)


class TemporalControlHost:
    """ControlHost backed by the running workflow."""

    def __init__(self, state: ControlState):
        self.state = state

    async def execute_task(self, task: Task, attempt: int) -> Any:
        timeout = task_timeout(task, self.state.configuration)
        return await workflow.execute_activity(
            process_task, args=[task, attempt],
            start_to_close_timeout=timedelta(seconds=timeout),
            retry_policy=SINGLE_ATTEMPT,
        )

    async def validate_task(self, task: Task) -> None:
        await workflow.execute_activity(
            validate_task, task,
            start_to_close_timeout=timedelta(seconds=config.VALIDATION_TIMEOUT),
            retry_policy=SINGLE_ATTEMPT,
        )

    async def notify(self, task: Task, result: Any, recipient: str) -> None:
        await workflow.execute_activity(
            send_notification, args=[task.id, recipient, f"Task {task.id} completed successfully"],
            start_to_close_timeout=timedelta(seconds=config.NOTIFICATION_TIMEOUT),
            retry_policy=BOUNDED_RETRY,
        )

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    async def wait_condition(self, predicate: Callable[[], bool], timeout: float | None = None) -> bool:
        try:
            await workflow.wait_condition(predicate, timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def now(self):
        return workflow.now()

    def time(self) -> float:
        return workflow.time()

    def run_info(self) -> dict:
        info = workflow.info()
        return {
            "workflow_id": info.workflow_id,
            "run_id": info.run_id,
            "task_queue": info.task_queue,
            "workflow_type": info.workflow_type,
        }

    def continue_as_new_suggested(self) -> bool:
        return workflow.info().is_continue_as_new_suggested()

    async def checkpoint(self, snapshot: Snapshot) -> None:
        info = workflow.info()
        await workflow.execute_activity(
            save_checkpoint, args=[info.workflow_id, info.run_id, asdict(snapshot)],
            start_to_close_timeout=timedelta(seconds=config.PERSISTENCE_TIMEOUT),
            retry_policy=BOUNDED_RETRY,
        )

    async def report(self, result: ControlResult) -> None:
        info = workflow.info()
        await workflow.execute_activity(
            save_run_record, args=[info.workflow_id, info.run_id, result.to_dict()],
            start_to_close_timeout=timedelta(seconds=config.PERSISTENCE_TIMEOUT),
            retry_policy=BOUNDED_RETRY,
        )

    async def continue_as_new(self, next_input: ControlInput) -> NoReturn:
        await workflow.wait_condition(workflow.all_handlers_finished)
        workflow.continue_as_new(next_input)


def _rejected(e: ValueError) -> ApplicationError:
    return ApplicationError(str(e), type="ValidationError", non_retryable=True)


@workflow.defn
class TaskControlWorkflow:
    """Long-lived control loop over a mutable task queue."""

    @workflow.init
    def __init__(self, control_input: ControlInput) -> None:
        self._init_error: ValueError | None = None
        try:
            self.state = ControlState.from_input(control_input, clock=workflow.now)
        except ValueError as e:
            # Surfaced from run() so the workflow fails instead of the workflow task
            self._init_error = e
            self.state = ControlState(clock=workflow.now)

        self.host = TemporalControlHost(self.state)
        self.engine = PolicyEngine()
        self.breaker = CircuitBreaker(
            name="process_task",
            threshold=config.CIRCUIT_BREAKER_THRESHOLD,
            timeout=config.CIRCUIT_BREAKER_TIMEOUT,
            reset_timeout=config.CIRCUIT_BREAKER_RESET_TIMEOUT,
            clock=workflow.time,
        )
        self._started = workflow.time()
        self.dispatcher = ControlDispatcher(
            self.state,
            engine=self.engine,
            breaker=self.breaker,
            run_info=self.host.run_info,
            elapsed=lambda: workflow.time() - self._started,
        )
        self.loop = ControlLoop(
            self.state,
            self.host,
            engine=self.engine,
            breaker=self.breaker,
            compensations=CompensationManager(),
            continuation=ContinuationPlanner(),
        )

    @workflow.run
    async def run(self, control_input: ControlInput) -> ControlResult:
        if self._init_error is not None:
            raise _rejected(self._init_error)

        if control_input.metadata.get("continued_from_run"):
            log.info("Continuing from run %s (continuation #%s)",
                     control_input.metadata["continued_from_run"],
                     control_input.metadata.get("continuation_count"))
        try:
            return await self.loop.run()
        except LoopTerminatedError as e:
            raise ApplicationError(str(e), type="WorkflowTerminated", non_retryable=True) from e
        except Exception as e:
            raise ApplicationError(
                f"Control loop failed: {e}", type="ControlLoopFailure", non_retryable=True,
            ) from e

    # ━━ Commands (signals) ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    @workflow.signal
    def pause(self) -> None:
        self.dispatcher.pause()

    @workflow.signal
    def resume(self) -> None:
        self.dispatcher.resume()

    @workflow.signal
    def cancel(self, reason: str | None = None, hard: bool = False) -> None:
        self.dispatcher.cancel(reason, hard)

    @workflow.signal
    def terminate(self, reason: str) -> None:
        self.dispatcher.terminate(reason)

    @workflow.signal
    def update_configuration(self, changes: dict) -> None:
        self.dispatcher.update_configuration(changes)

    @workflow.signal
    def update_priority(self, priority: str) -> None:
        self.dispatcher.update_priority(priority)

    @workflow.signal
    def update_timeout(self, timeout_sec: float) -> None:
        self.dispatcher.update_timeout(timeout_sec)

    @workflow.signal
    def update_retry_policy(self, policy: str | None) -> None:
        self.dispatcher.update_retry_policy(policy)

    @workflow.signal
    def update_schedule(self, interval_sec: float) -> None:
        self.dispatcher.update_schedule(interval_sec)

    @workflow.signal
    def add_task(self, task: Task) -> None:
        self.dispatcher.add_task(task)

    @workflow.signal
    def remove_task(self, task_id: str) -> None:
        self.dispatcher.remove_task(task_id)

    @workflow.signal
    def skip_task(self, task_id: str) -> None:
        self.dispatcher.skip_task(task_id)

    @workflow.signal
    def reschedule_task(self, task_id: str, when: str) -> None:
        self.dispatcher.reschedule_task(task_id, when)

    @workflow.signal
    def trigger_manual_execution(self, task: Task) -> None:
        self.dispatcher.trigger_manual_execution(task)

    @workflow.signal
    def enable_debug_mode(self, enabled: bool) -> None:
        self.dispatcher.enable_debug_mode(enabled)

    @workflow.signal
    def take_snapshot(self) -> None:
        self.dispatcher.take_snapshot()

    # ━━ Queries ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    @workflow.query
    def get_state(self) -> dict:
        return self.dispatcher.get_state()

    @workflow.query
    def get_progress(self) -> dict:
        return self.dispatcher.get_progress()

    @workflow.query
    def get_status(self) -> str:
        return self.dispatcher.get_status()

    @workflow.query
    def is_paused(self) -> bool:
        return self.dispatcher.is_paused()

    @workflow.query
    def get_configuration(self) -> dict:
        return self.dispatcher.get_configuration()

    @workflow.query
    def get_active_retry_policy(self) -> dict | None:
        return self.dispatcher.get_active_retry_policy()

    @workflow.query
    def get_metadata(self) -> dict:
        return self.dispatcher.get_metadata()

    @workflow.query
    def get_pending_tasks(self) -> list[dict]:
        return self.dispatcher.get_pending_tasks()

    @workflow.query
    def get_completed_tasks(self) -> list[dict]:
        return self.dispatcher.get_completed_tasks()

    @workflow.query
    def get_failed_tasks(self) -> list[dict]:
        return self.dispatcher.get_failed_tasks()

    @workflow.query
    def get_task_by_id(self, task_id: str) -> dict | None:
        return self.dispatcher.get_task_by_id(task_id)

    @workflow.query
    def get_metrics(self) -> dict:
        return self.dispatcher.get_metrics()

    @workflow.query
    def get_execution_time(self) -> float:
        return self.dispatcher.get_execution_time()

    @workflow.query
    def get_debug_info(self) -> dict:
        return self.dispatcher.get_debug_info()

    @workflow.query
    def get_latest_snapshot(self) -> dict | None:
        return self.dispatcher.get_latest_snapshot()

    @workflow.query
    def get_interaction_history(self) -> list[dict]:
        return self.dispatcher.get_interaction_history()

    @workflow.query
    def get_health(self) -> dict:
        return self.dispatcher.get_health()

    @workflow.query
    def get_last_error(self) -> dict | None:
        return self.dispatcher.get_last_error()

    @workflow.query
    def get_circuit_state(self) -> dict | None:
        return self.dispatcher.get_circuit_state()

    # ━━ Updates ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    @workflow.update
    def enqueue_task(self, task: Task) -> str:
        try:
            return self.dispatcher.enqueue_task(task)
        except ValueError as e:
            raise _rejected(e) from e

    @enqueue_task.validator
    def validate_enqueue_task(self, task: Task) -> None:
        self.dispatcher.validate_enqueue(task)

    @workflow.update
    def dequeue_task(self, task_id: str) -> bool:
        return self.dispatcher.dequeue_task(task_id)

    @workflow.update
    def modify_task(self, task_id: str, changes: dict) -> bool:
        try:
            return self.dispatcher.modify_task(task_id, changes)
        except ValueError as e:
            raise _rejected(e) from e

    @workflow.update
    def reschedule(self, task_id: str, when: str) -> bool:
        try:
            return self.dispatcher.reschedule(task_id, when)
        except ValueError as e:
            raise _rejected(e) from e

    @workflow.update
    def configure(self, changes: dict) -> dict:
        try:
            return self.dispatcher.configure(changes)
        except ValueError as e:
            raise _rejected(e) from e

    @configure.validator
    def validate_configure(self, changes: dict) -> None:
        self.dispatcher.validate_configure(changes)

    @workflow.update
    def set_priority(self, priority: str) -> dict:
        try:
            return self.dispatcher.set_priority(priority)
        except ValueError as e:
            raise _rejected(e) from e

    @workflow.update
    def set_metadata(self, values: dict) -> dict:
        return self.dispatcher.set_metadata(values)
