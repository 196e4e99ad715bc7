"""
Command / Query / Update dispatcher.

  commands  fire-and-forget mutations; bad input is logged and recorded as
            an error instead of raising into the host
  queries   read-only; always return detached copies
  updates   mutations that return a result; bad input raises ValueError
            so the host can reject the update

Every command and update is appended to the interaction log. No method
awaits, so each one is atomic relative to the control loop.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, fields
from datetime import datetime
from typing import Callable

from features.control.models import TERMINAL_STATUSES, ControlStatus, Task, check_task_changes
from features.control.state import SCHEDULED_FOR, ControlState, parse_when
from features.resilience.circuit_breaker import BreakerState, CircuitBreaker
from features.resilience.engine import PolicyEngine

log = logging.getLogger(__name__)

COMMAND = "command"
UPDATE = "update"


def as_task(task: Task | dict) -> Task:
    return task if isinstance(task, Task) else Task.from_dict(task)


class ControlDispatcher:
    def __init__(
        self,
        state: ControlState,
        engine: PolicyEngine | None = None,
        breaker: CircuitBreaker | None = None,
        run_info: Callable[[], dict] = dict,
        elapsed: Callable[[], float] = lambda: 0.0,
    ):
        self.state = state
        self.engine = engine or PolicyEngine()
        self.breaker = breaker
        self.run_info = run_info
        self.elapsed = elapsed

    def _rejected(self, name: str, error: Exception) -> None:
        log.warning("[CMD] %s rejected: %s", name, error)
        self.state.record_error(f"{name} rejected: {error}", interaction=name)

    # ══ Commands ══════════════════════════════════════════════════════

    def pause(self) -> None:
        self.state.log_interaction(COMMAND, "pause")
        self.state.is_paused = True
        self.state.touch()
        log.info("[CMD] Paused")

    def resume(self) -> None:
        self.state.log_interaction(COMMAND, "resume")
        self.state.is_paused = False
        self.state.touch()
        log.info("[CMD] Resumed")

    def cancel(self, reason: str | None = None, hard: bool = False) -> None:
        """Stop pulling new tasks; with hard=True also interrupt the in-flight one."""
        self.state.log_interaction(COMMAND, "cancel", {"reason": reason, "hard": hard})
        if self.state.status in TERMINAL_STATUSES:
            log.info("[CMD] Cancel ignored, loop already %s", self.state.status.value)
            return
        self.state.set_status(ControlStatus.CANCELLED, reason)
        if hard:
            self.state.interrupt_requested = True
        log.warning("[CMD] Cancelled (hard=%s): %s", hard, reason)

    def terminate(self, reason: str) -> None:
        """Fatal stop: interrupts the in-flight task and fails the run."""
        self.state.log_interaction(COMMAND, "terminate", {"reason": reason})
        if self.state.status in TERMINAL_STATUSES - {ControlStatus.CANCELLED}:
            log.info("[CMD] Terminate ignored, loop already %s", self.state.status.value)
            return
        self.state.set_status(ControlStatus.TERMINATED, reason)
        self.state.interrupt_requested = True
        log.error("[CMD] Terminated: %s", reason)

    def update_configuration(self, changes: dict) -> None:
        self.state.log_interaction(COMMAND, "update_configuration", changes)
        try:
            self._apply_configuration(changes)
        except ValueError as e:
            self._rejected("update_configuration", e)

    def update_priority(self, priority: str) -> None:
        self.update_configuration({"priority": priority})

    def update_timeout(self, timeout_sec: float) -> None:
        self.update_configuration({"timeout_sec": timeout_sec})

    def update_retry_policy(self, policy: str | None) -> None:
        self.update_configuration({"retry_policy": policy})

    def update_schedule(self, interval_sec: float) -> None:
        self.update_configuration({"schedule_interval_sec": interval_sec})

    def add_task(self, task: Task | dict) -> None:
        task = as_task(task)
        self.state.log_interaction(COMMAND, "add_task", asdict(task))
        try:
            self.state.enqueue(task)
        except ValueError as e:
            self._rejected("add_task", e)
            return
        log.info("[CMD] Task added: %s", task.id)

    def remove_task(self, task_id: str) -> None:
        self.state.log_interaction(COMMAND, "remove_task", task_id)
        if self.state.remove(task_id) is None:
            log.info("[CMD] Remove ignored, %s is not pending", task_id)
        else:
            log.info("[CMD] Task removed: %s", task_id)

    def skip_task(self, task_id: str) -> None:
        self.state.log_interaction(COMMAND, "skip_task", task_id)
        task = self.state.remove(task_id)
        if task is None:
            log.info("[CMD] Skip ignored, %s is not pending", task_id)
            return
        self.state.record_skip(task, reason="skipped by command")
        log.info("[CMD] Task skipped: %s", task_id)

    def reschedule_task(self, task_id: str, when: str) -> None:
        self.state.log_interaction(COMMAND, "reschedule_task", {"task_id": task_id, "when": when})
        try:
            if not self._reschedule(task_id, when):
                log.info("[CMD] Reschedule ignored, %s is not pending", task_id)
        except ValueError as e:
            self._rejected("reschedule_task", e)

    def trigger_manual_execution(self, task: Task | dict) -> None:
        """Insert a task at the head of the queue so it runs next."""
        task = as_task(task)
        self.state.log_interaction(COMMAND, "trigger_manual_execution", asdict(task))
        try:
            self.state.push_front(task)
        except ValueError as e:
            self._rejected("trigger_manual_execution", e)
            return
        log.info("[CMD] Manual execution triggered: %s", task.id)

    def enable_debug_mode(self, enabled: bool) -> None:
        self.state.log_interaction(COMMAND, "enable_debug_mode", enabled)
        self.state.is_debug_mode = bool(enabled)
        self.state.touch()
        log.info("[CMD] Debug mode %s", "on" if enabled else "off")

    def take_snapshot(self) -> None:
        self.state.log_interaction(COMMAND, "take_snapshot")
        self.state.take_snapshot("manual", self.run_info())
        log.info("[CMD] Snapshot taken (%d kept)", len(self.state.snapshots))

    # ══ Updates ═══════════════════════════════════════════════════════

    def validate_enqueue(self, task: Task | dict) -> None:
        task = as_task(task)
        if not task.id or not task.type:
            raise ValueError("Task must have id and type")
        if self.state.has_task(task.id):
            raise ValueError(f"Duplicate task id: {task.id}")

    def enqueue_task(self, task: Task | dict) -> str:
        task = as_task(task)
        self.state.log_interaction(UPDATE, "enqueue_task", asdict(task))
        self.validate_enqueue(task)
        self.state.enqueue(task)
        log.info("[CMD] Task enqueued via update: %s", task.id)
        return task.id

    def dequeue_task(self, task_id: str) -> bool:
        self.state.log_interaction(UPDATE, "dequeue_task", task_id)
        return self.state.remove(task_id) is not None

    def modify_task(self, task_id: str, changes: dict) -> bool:
        self.state.log_interaction(UPDATE, "modify_task", {"task_id": task_id, "changes": changes})
        task = self.state.find_pending(task_id)
        if task is None:
            return False
        allowed = {f.name for f in fields(Task)} - {"id"}
        unknown = sorted(set(changes) - allowed)
        if unknown:
            raise ValueError(f"Cannot modify task fields: {', '.join(unknown)}")
        check_task_changes(changes)
        for key, value in changes.items():
            if key == "metadata":
                task.metadata.update({k: str(v) for k, v in (value or {}).items()})
            else:
                setattr(task, key, value)
        self.state.touch()
        log.info("[CMD] Task modified: %s %s", task_id, sorted(changes))
        return True

    def reschedule(self, task_id: str, when: str) -> bool:
        self.state.log_interaction(UPDATE, "reschedule", {"task_id": task_id, "when": when})
        return self._reschedule(task_id, when)

    def validate_configure(self, changes: dict) -> None:
        self.state.configuration.merged(changes)

    def configure(self, changes: dict) -> dict:
        self.state.log_interaction(UPDATE, "configure", changes)
        self._apply_configuration(changes)
        return asdict(self.state.configuration)

    def set_priority(self, priority: str) -> dict:
        return self.configure({"priority": priority})

    def set_metadata(self, values: dict) -> dict:
        self.state.log_interaction(UPDATE, "set_metadata", values)
        self.state.metadata.update(values)
        self.state.touch()
        return dict(self.state.metadata)

    # ── Shared mutation helpers ───────────────────────────────────────

    def _apply_configuration(self, changes: dict) -> None:
        self.state.configuration = self.state.configuration.merged(changes)
        self.state.touch()
        log.info("[CMD] Configuration updated: %s", changes)

    def _reschedule(self, task_id: str, when: str | datetime) -> bool:
        task = self.state.find_pending(task_id)
        if task is None:
            return False
        task.metadata[SCHEDULED_FOR] = parse_when(when).isoformat()
        self.state.touch()
        log.info("[CMD] Task %s rescheduled for %s", task_id, task.metadata[SCHEDULED_FOR])
        return True

    # ══ Queries ═══════════════════════════════════════════════════════

    def get_state(self) -> dict:
        return self.state.to_dict()

    def get_progress(self) -> dict:
        return self.state.progress()

    def get_status(self) -> str:
        return self.state.effective_status.value

    def is_paused(self) -> bool:
        return self.state.is_paused

    def get_configuration(self) -> dict:
        return asdict(self.state.configuration)

    def get_active_retry_policy(self) -> dict | None:
        name = self.state.configuration.retry_policy
        if name is None:
            return None
        return self.engine.policies[name].to_dict()

    def get_metadata(self) -> dict:
        return self.state.to_dict(include_history=False)["metadata"]

    def get_pending_tasks(self) -> list[dict]:
        return [asdict(t) for t in self.state.pending_tasks]

    def get_completed_tasks(self) -> list[dict]:
        return [asdict(r) for r in self.state.completed_tasks]

    def get_failed_tasks(self) -> list[dict]:
        return [asdict(r) for r in self.state.failed_tasks]

    def get_task_by_id(self, task_id: str) -> dict | None:
        return self.state.find_task(task_id)

    def get_metrics(self) -> dict:
        return asdict(self.state.metrics)

    def get_execution_time(self) -> float:
        return round(self.elapsed(), 3)

    def get_debug_info(self) -> dict:
        return {
            **self.run_info(),
            "is_debug_mode": self.state.is_debug_mode,
            "interaction_count": self.state.interactions_received,
            "snapshot_count": self.state.snapshots_taken,
            "error_count": len(self.state.errors),
            "state_version": self.state.version,
            "execution_sec": self.get_execution_time(),
        }

    def get_latest_snapshot(self) -> dict | None:
        if not self.state.snapshots:
            return None
        return asdict(self.state.snapshots[-1])

    def get_interaction_history(self) -> list[dict]:
        return [asdict(i) for i in self.state.interactions]

    def get_last_error(self) -> dict | None:
        return dict(self.state.errors[-1]) if self.state.errors else None

    def get_circuit_state(self) -> dict | None:
        return self.breaker.snapshot() if self.breaker else None

    def get_health(self) -> dict:
        st = self.state
        issues: list[str] = []
        if len(st.failed_tasks) > len(st.completed_tasks):
            issues.append("High failure rate detected")
        if len(st.errors) > 10:
            issues.append("Multiple errors recorded")
        if st.is_paused:
            issues.append("Workflow is paused")
        if self.breaker is not None and self.breaker.state != BreakerState.CLOSED:
            issues.append(f"Circuit breaker is {self.breaker.state.value}")

        if not issues:
            status = "healthy"
        elif len(issues) <= 2:
            status = "degraded"
        else:
            status = "unhealthy"
        return {"status": status, "issues": issues}


COMMANDS = frozenset({
    "pause", "resume", "cancel", "terminate", "update_configuration",
    "update_priority", "update_timeout", "update_retry_policy", "update_schedule",
    "add_task", "remove_task", "skip_task", "reschedule_task",
    "trigger_manual_execution", "enable_debug_mode", "take_snapshot",
})

QUERIES = frozenset({
    "get_state", "get_progress", "get_status", "is_paused", "get_configuration",
    "get_active_retry_policy", "get_metadata", "get_pending_tasks",
    "get_completed_tasks", "get_failed_tasks", "get_task_by_id", "get_metrics",
    "get_execution_time", "get_debug_info", "get_latest_snapshot",
    "get_interaction_history", "get_health", "get_last_error", "get_circuit_state",
})

UPDATES = frozenset({
    "enqueue_task", "dequeue_task", "modify_task", "reschedule",
    "configure", "set_priority", "set_metadata",
})
