"""
Control loop — pulls tasks off the pending queue and runs them one at a time.

Each task:
  1. optional validation (failure = task failure, never retried)
  2. the external operation, through the circuit breaker, retried under the
     policy chosen for the classified failure category
  3. completion → metrics, completed list, notification, compensation entry
     failure    → failed list, errors; stop_on_failure ends the run

The only suspension points are the host's awaits: pause waits, the
in-flight operation, retry backoff, and the inter-task interval. Commands
interleave only there.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from typing import Any

from features.control.continuation import ContinuationPlanner
from features.control.host import ControlHost
from features.control.models import (
    ControlResult,
    ControlStatus,
    Task,
    TaskRecord,
    TaskStatus,
)
from features.control.state import ControlState
from features.resilience.circuit_breaker import CircuitBreaker, CircuitOpenError
from features.resilience.classifier import Classification
from features.resilience.compensation import CompensationError, CompensationManager
from features.resilience.engine import PolicyEngine

log = logging.getLogger(__name__)


class TaskFailedError(Exception):
    """Terminal failure of one task, after validation or retries."""

    def __init__(self, error: BaseException, classification: Classification, attempts: int):
        self.error = error
        self.classification = classification
        self.attempts = attempts
        super().__init__(classification.message)


class LoopTerminatedError(Exception):
    """Raised when a terminate command stops the loop."""

    def __init__(self, reason: str | None):
        self.reason = reason
        super().__init__(f"Workflow terminated: {reason}")


class ControlLoop:
    def __init__(
        self,
        state: ControlState,
        host: ControlHost,
        engine: PolicyEngine | None = None,
        breaker: CircuitBreaker | None = None,
        compensations: CompensationManager | None = None,
        continuation: ContinuationPlanner | None = None,
    ):
        self.state = state
        self.host = host
        self.engine = engine or PolicyEngine()
        self.breaker = breaker or CircuitBreaker(name="tasks", clock=host.time)
        self.compensations = compensations or CompensationManager()
        self.continuation = continuation or ContinuationPlanner()
        self.compensation_error: dict | None = None
        self._started = 0.0

    # ── Entry point ───────────────────────────────────────────────────

    async def run(self) -> ControlResult:
        state = self.state
        self._started = self.host.time()

        if state.status == ControlStatus.INITIALIZING:
            state.set_status(ControlStatus.RUNNING)
        log.info("Control loop started with %d pending tasks", len(state.pending_tasks))

        try:
            while state.pending_tasks and state.is_running:
                await self.host.wait_condition(lambda: not state.is_paused or not state.is_running)
                if not state.is_running:
                    break

                task = state.pop_next_ready()
                if task is None:
                    await self._wait_for_due_task()
                    continue

                outcome = await self._run_task(task)

                if state.status == ControlStatus.TERMINATED:
                    break
                if outcome == TaskStatus.FAILED and state.is_running and state.configuration.stop_on_failure:
                    state.set_status(ControlStatus.FAILED, f"task {task.id} failed with stop_on_failure set")
                    await self._unwind()
                    break
                if outcome == TaskStatus.COMPLETED:
                    self._maybe_auto_snapshot()

                interval = state.configuration.schedule_interval_sec
                if interval > 0 and state.pending_tasks and state.is_running:
                    await self.host.wait_condition(lambda: not state.is_running, timeout=interval)

                if outcome == TaskStatus.COMPLETED and state.is_running and self.continuation.due(
                    state, self.host.continue_as_new_suggested()
                ):
                    await self._continue_as_new()

            if state.status == ControlStatus.TERMINATED:
                await self._terminate()

            if state.is_running:
                state.set_status(
                    ControlStatus.COMPLETED_WITH_FAILURES if state.failed_tasks else ControlStatus.COMPLETED
                )

        except LoopTerminatedError:
            raise
        except asyncio.CancelledError:
            if state.current_task is not None:
                state.requeue_front(state.current_task)
            state.set_status(ControlStatus.CANCELLED, "cancelled by host")
            raise
        except Exception as e:
            state.set_status(ControlStatus.FAILED, f"loop failure: {e}")
            state.record_error(str(e), kind=type(e).__name__, loop_level=True)
            log.error("Control loop failed: %s", e, exc_info=True)
            await self._unwind()
            raise

        result = self._result()
        self.compensations.clear()
        if state.configuration.generate_report:
            try:
                await self.host.report(result)
            except Exception as e:
                log.warning("Could not persist run report: %s", e)
                state.record_error(f"report failed: {e}", kind=type(e).__name__)

        log.info(
            "Control loop finished — status=%s completed=%d failed=%d skipped=%d in %.1fs",
            result.status.value, len(result.completed_tasks), len(result.failed_tasks),
            len(result.skipped_tasks), result.execution_sec,
        )
        return result

    # ── One task ──────────────────────────────────────────────────────

    async def _run_task(self, task: Task) -> TaskStatus | None:
        """Run one task to completion, failure, or interruption (returns None)."""
        state = self.state
        state.start_task(task)
        started = self.host.time()
        started_at = state.now_iso()
        if state.is_debug_mode:
            log.info("[TASK] Started %s (%s) payload=%s", task.id, task.type, task.payload)
        else:
            log.info("[TASK] Started %s (%s)", task.id, task.type)

        operation = asyncio.ensure_future(self._execute(task))
        interrupt = asyncio.ensure_future(self.host.wait_condition(lambda: state.interrupt_requested))
        try:
            done, _ = await asyncio.wait({operation, interrupt}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for fut in (operation, interrupt):
                if not fut.done():
                    fut.cancel()

        if operation not in done:
            await asyncio.gather(operation, return_exceptions=True)
            state.interrupt_requested = False
            state.requeue_front(task)
            log.warning("[TASK] Interrupted %s — returned to the head of the queue", task.id)
            return None

        duration = round(self.host.time() - started, 6)
        try:
            result, attempts = operation.result()
        except TaskFailedError as failure:
            c = failure.classification
            state.record_failure(TaskRecord(
                task=task,
                status=TaskStatus.FAILED,
                error=c.message,
                error_kind=c.kind,
                error_category=c.category.value,
                attempts=failure.attempts,
                started_at=started_at,
                finished_at=state.now_iso(),
                duration_sec=duration,
            ))
            log.error("[TASK] Failed %s after %d attempt(s) [%s]: %s",
                      task.id, failure.attempts, c.category.value, c.message)
            return TaskStatus.FAILED

        state.record_completion(TaskRecord(
            task=task,
            status=TaskStatus.COMPLETED,
            result=result,
            attempts=attempts,
            started_at=started_at,
            finished_at=state.now_iso(),
            duration_sec=duration,
        ))
        log.info("[TASK] Completed %s in %.2fs (%d attempt(s))", task.id, duration, attempts)

        self._register_compensation(task, result)
        if state.configuration.notify_on_completion:
            try:
                await self.host.notify(task, result, state.configuration.notification_recipient)
            except Exception as e:
                log.warning("[TASK] Notification for %s failed: %s", task.id, e)
                state.record_error(f"notification failed: {e}", task_id=task.id)
        return TaskStatus.COMPLETED

    async def _execute(self, task: Task) -> tuple[Any, int]:
        """Validate, then call the operation with classified retries."""
        if self.state.configuration.validate_tasks:
            try:
                await self.host.validate_task(task)
            except Exception as e:
                raise TaskFailedError(e, self.engine.classify(e), 0) from e

        attempts = 0
        while True:
            attempt = attempts + 1
            try:
                result = await self.breaker.call(lambda: self.host.execute_task(task, attempt))
                return result, attempt
            except CircuitOpenError as e:
                if not self.state.configuration.wait_on_open_circuit:
                    raise TaskFailedError(e, self.engine.classify(e), attempts) from e
                log.warning("[TASK] %s waiting %.1fs for circuit cool-down", task.id, e.remaining)
                await self.host.sleep(e.remaining)
                continue
            except Exception as e:
                attempts = attempt
                classification = self.engine.classify(e)
                policy = self.engine.select_policy(classification, self.state.configuration.retry_policy)
                if not self.engine.should_retry(classification, policy, attempts):
                    raise TaskFailedError(e, classification, attempts) from e
                delay = policy.delay_for(attempts)
                self.state.metrics.retries += 1
                log.warning(
                    "[TASK] %s attempt %d/%d failed [%s], retrying in %.1fs: %s",
                    task.id, attempts, policy.maximum_attempts, classification.category.value,
                    delay, classification.message,
                )
                await self.host.sleep(delay)

    # ── Compensation ──────────────────────────────────────────────────

    def _register_compensation(self, task: Task, result: Any) -> None:
        """Queue a rollback when the operation's result describes one."""
        if not isinstance(result, dict) or not isinstance(result.get("compensation"), dict):
            return
        descriptor = result["compensation"]
        rollback = Task(
            id=f"{task.id}:compensate",
            type=descriptor.get("type", task.type),
            payload=dict(descriptor.get("payload") or {}),
            priority=task.priority,
            timeout_sec=task.timeout_sec,
            metadata={"compensates": task.id},
        )

        async def action() -> None:
            await self.host.execute_task(rollback, 1)

        self.compensations.add_compensation(f"undo-{task.id}", action, critical=bool(descriptor.get("critical")))

    async def _unwind(self) -> None:
        if not self.state.configuration.compensate_on_failure or not self.compensations.count:
            self.compensations.clear()
            return
        log.warning("[SAGA] Unwinding %d compensation(s)", self.compensations.count)
        try:
            await self.compensations.execute_compensations()
        except CompensationError as e:
            self.compensation_error = e.to_dict()
            self.state.record_error(str(e), kind="CompensationError", failed=e.failed_names)

    async def _terminate(self) -> None:
        """Unwind only what is already queued, then stop the run for good."""
        reason = self.state.status_reason
        await self._unwind()
        raise LoopTerminatedError(reason)

    # ── Scheduling, snapshots, continuation ───────────────────────────

    async def _wait_for_due_task(self) -> None:
        delay = self.state.seconds_until_next_due()
        if delay is None:
            return
        version = self.state.version
        log.debug("No task due yet, waiting up to %.1fs", delay)
        await self.host.wait_condition(
            lambda: self.state.version != version or not self.state.is_running,
            timeout=delay,
        )

    def _maybe_auto_snapshot(self) -> None:
        every = self.state.configuration.snapshot_interval
        if every > 0 and self.state.metrics.tasks_completed % every == 0:
            self.state.take_snapshot("auto", self.host.run_info())

    async def _continue_as_new(self) -> None:
        state = self.state
        run_info = self.host.run_info()
        snapshot = state.take_snapshot("continuation", run_info)
        try:
            await self.host.checkpoint(snapshot)
        except Exception as e:
            log.warning("Checkpoint before continuation failed: %s", e)
            state.record_error(f"checkpoint failed: {e}", kind=type(e).__name__)

        next_input = self.continuation.plan(state, run_info)
        self.compensations.clear()
        await self.host.continue_as_new(next_input)

    # ── Result ────────────────────────────────────────────────────────

    def _result(self) -> ControlResult:
        state = self.state
        return ControlResult(
            status=state.status,
            completed_tasks=copy.deepcopy(state.completed_tasks),
            failed_tasks=copy.deepcopy(state.failed_tasks),
            skipped_tasks=copy.deepcopy(state.skipped_tasks),
            metrics=copy.deepcopy(state.metrics),
            interactions_received=state.interactions_received,
            snapshots_taken=state.snapshots_taken,
            execution_sec=round(self.host.time() - self._started, 3),
            compensation_error=self.compensation_error,
        )
