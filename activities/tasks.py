"""
Activities: task operations — the external work the control loop drives.

`process_task` dispatches on `task.type` to a handler in TASK_HANDLERS.
Handlers signal failure by raising ApplicationError with a `type` naming the
failure kind (ValidationError, NetworkError, ...) so the loop can classify
it. Activities never retry on their own: the loop owns the retry policy.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

from temporalio import activity
from temporalio.exceptions import ApplicationError

from features.control.models import Task

log = logging.getLogger(__name__)


def _maybe_fail(task: Task, attempt: int) -> None:
    """Honor `payload.simulate_error` = {kind, message, until_attempt}."""
    failure = task.payload.get("simulate_error")
    if not failure:
        return
    until = failure.get("until_attempt")
    if until is not None and attempt > int(until):
        return
    raise ApplicationError(
        failure.get("message", f"Simulated failure for {task.id}"),
        type=failure.get("kind", "TaskProcessingError"),
        non_retryable=True,
    )


def _heartbeat(details: dict) -> None:
    if activity.in_activity():
        activity.heartbeat(details)


def _noop(task: Task, attempt: int) -> dict:
    return {"echo": task.payload.get("echo")}


def _data_processing(task: Task, attempt: int) -> dict:
    steps = int(task.payload.get("steps", 10))
    step_delay = float(task.payload.get("step_delay_sec", 0.0))
    started = time.monotonic()
    for i in range(steps):
        _heartbeat({"step": i + 1, "total_steps": steps})
        if step_delay:
            time.sleep(step_delay)
    return {
        "processed_records": steps,
        "processing_sec": round(time.monotonic() - started, 3),
        "data_size": task.payload.get("data_size", 0),
    }


def _api_call(task: Task, attempt: int) -> dict:
    endpoint = task.payload.get("endpoint") or f"/api/task/{task.id}"
    status_code = int(task.payload.get("status_code", 200))
    if status_code >= 400:
        kind = {
            401: "AuthenticationError",
            403: "AuthorizationError",
            409: "BusinessError",
            429: "RateLimitError",
        }.get(status_code, "NetworkError" if status_code >= 500 else "ValidationError")
        raise ApplicationError(f"{endpoint} returned HTTP {status_code}", type=kind, non_retryable=True)
    return {
        "endpoint": endpoint,
        "status_code": status_code,
        "response": task.payload.get("response_data") or {"processed": True},
    }


def _notification(task: Task, attempt: int) -> dict:
    recipient = task.payload["recipient"]
    channel = task.payload.get("channel", "email")
    log.info("Notifying %s via %s for task %s", recipient, channel, task.id)
    return {
        "message_id": f"msg-{task.id}",
        "recipient": recipient,
        "channel": channel,
        "delivery_status": "sent",
    }


TASK_HANDLERS: dict[str, Callable[[Task, int], Any]] = {
    "noop": _noop,
    "data_processing": _data_processing,
    "api_call": _api_call,
    "notification": _notification,
}


@activity.defn
def process_task(task: Task, attempt: int = 1) -> dict:
    """Run the operation for one task and return its result."""
    log.info("Processing task %s (%s), attempt %d", task.id, task.type, attempt)
    handler = TASK_HANDLERS.get(task.type)
    if handler is None:
        raise ApplicationError(f"Unknown task type: {task.type}", type="UnknownTaskType", non_retryable=True)

    _maybe_fail(task, attempt)
    result = handler(task, attempt)
    if "compensation" in task.payload:
        result["compensation"] = task.payload["compensation"]
    return result


@activity.defn
def validate_task(task: Task) -> bool:
    """Reject tasks that cannot be executed."""
    if not task.id or not task.type:
        raise ApplicationError("Task must have id and type", type="ValidationError", non_retryable=True)
    if not isinstance(task.payload, dict):
        raise ApplicationError("Task payload must be a mapping", type="ValidationError", non_retryable=True)
    if task.type not in TASK_HANDLERS:
        raise ApplicationError(f"Unknown task type: {task.type}", type="ValidationError", non_retryable=True)
    if task.type == "api_call" and not task.payload.get("endpoint"):
        raise ApplicationError("API call tasks must specify endpoint", type="ValidationError", non_retryable=True)
    if task.type == "notification" and not task.payload.get("recipient"):
        raise ApplicationError("Notification tasks must specify recipient", type="ValidationError", non_retryable=True)
    return True


@activity.defn
def send_notification(task_id: str, recipient: str, message: str) -> dict:
    """Completion notice for a finished task."""
    log.info("Notification to %s: %s", recipient, message)
    return {"task_id": task_id, "recipient": recipient, "status": "sent"}
