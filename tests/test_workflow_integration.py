"""End-to-end runs against Temporal's time-skipping test server.

Downloads the test server on first use, so these are opt-in:
    pytest -m integration
"""

from __future__ import annotations

import asyncio
import uuid
from concurrent.futures import ThreadPoolExecutor

import pytest
from temporalio.client import WorkflowFailureError
from temporalio.testing import WorkflowEnvironment
from temporalio.worker import Worker

from activities.persistence import save_checkpoint, save_run_record
from activities.tasks import process_task, send_notification, validate_task
from features.control import ControlConfiguration, ControlInput, Task
from workflows.control import TaskControlWorkflow

pytestmark = pytest.mark.integration

QUEUE = "task-control-test"
ACTIVITIES = [process_task, validate_task, send_notification, save_run_record, save_checkpoint]


async def _run(scenario):
    async with await WorkflowEnvironment.start_time_skipping() as env:
        with ThreadPoolExecutor(max_workers=4) as executor:
            async with Worker(
                env.client,
                task_queue=QUEUE,
                workflows=[TaskControlWorkflow],
                activities=ACTIVITIES,
                activity_executor=executor,
            ):
                return await scenario(env.client)


def _start(client, control_input: ControlInput):
    return client.start_workflow(
        TaskControlWorkflow.run, control_input,
        id=f"wf-{uuid.uuid4().hex[:8]}", task_queue=QUEUE,
    )


def test_business_failure_completes_with_failures(tmp_path, monkeypatch) -> None:
    monkeypatch.setattr("config.CONTROL_RUNS_DIR", tmp_path)
    tasks = [
        Task(id="a", type="noop"),
        Task(id="b", type="noop"),
        Task(id="c", type="noop", payload={"simulate_error": {"kind": "BusinessError", "message": "rule broken"}}),
    ]

    async def scenario(client):
        handle = await _start(client, ControlInput(tasks=tasks))
        return await handle.result()

    result = asyncio.run(_run(scenario))
    assert result.status.value == "completed_with_failures"
    assert [r.task.id for r in result.completed_tasks] == ["a", "b"]
    assert result.failed_tasks[0].error_category == "business"


def test_queries_and_updates_while_paused(tmp_path, monkeypatch) -> None:
    monkeypatch.setattr("config.CONTROL_RUNS_DIR", tmp_path)

    async def scenario(client):
        handle = await _start(client, ControlInput(tasks=[Task(id="a", type="noop")], paused=True))
        assert await handle.query(TaskControlWorkflow.get_status) == "paused"
        assert await handle.execute_update(TaskControlWorkflow.enqueue_task, Task(id="b", type="noop")) == "b"
        pending = await handle.query(TaskControlWorkflow.get_pending_tasks)
        await handle.signal(TaskControlWorkflow.resume)
        return pending, await handle.result()

    pending, result = asyncio.run(_run(scenario))
    assert [t["id"] for t in pending] == ["a", "b"]
    assert [r.task.id for r in result.completed_tasks] == ["a", "b"]


def test_terminate_fails_the_workflow(tmp_path, monkeypatch) -> None:
    monkeypatch.setattr("config.CONTROL_RUNS_DIR", tmp_path)
    configuration = ControlConfiguration(schedule_interval_sec=60)

    async def scenario(client):
        handle = await _start(client, ControlInput(
            tasks=[Task(id="a", type="noop"), Task(id="b", type="noop")], configuration=configuration,
        ))
        await handle.signal(TaskControlWorkflow.terminate, "operator abort")
        with pytest.raises(WorkflowFailureError) as exc:
            await handle.result()
        return exc.value

    error = asyncio.run(_run(scenario))
    assert "operator abort" in str(error.cause)
