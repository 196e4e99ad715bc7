"""TemporalControlHost activity options, checked without a Temporal server."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from types import SimpleNamespace

import pytest

import config
from conftest import Harness
from features.control import ControlConfiguration, ControlState, Task
from features.control.models import Snapshot
from workflows import control as control_workflow
from workflows.control import TemporalControlHost


@pytest.fixture()
def activity_calls(monkeypatch):
    calls = []

    async def execute_activity(fn, *args, **kwargs):
        calls.append((fn.__name__, kwargs))

    monkeypatch.setattr(control_workflow.workflow, "execute_activity", execute_activity)
    monkeypatch.setattr(
        control_workflow.workflow, "info",
        lambda: SimpleNamespace(workflow_id="wf-1", run_id="run-1"),
    )
    return calls


def _host(**changes) -> TemporalControlHost:
    configuration = ControlConfiguration().merged(changes)
    return TemporalControlHost(ControlState(configuration=configuration))


def test_task_timeout_follows_configuration(activity_calls) -> None:
    host = _host(timeout_sec=5)
    asyncio.run(host.execute_task(Task(id="a", type="noop"), 1))
    assert activity_calls[0][1]["start_to_close_timeout"] == timedelta(seconds=5)

    host.state.configuration = host.state.configuration.merged({"timeout_sec": 42})
    asyncio.run(host.execute_task(Task(id="b", type="noop"), 1))
    assert activity_calls[1][1]["start_to_close_timeout"] == timedelta(seconds=42)


def test_task_timeout_overrides_configuration(activity_calls) -> None:
    host = _host(timeout_sec=5)
    asyncio.run(host.execute_task(Task(id="a", type="noop", timeout_sec=90), 1))
    assert activity_calls[0][1]["start_to_close_timeout"] == timedelta(seconds=90)
    assert activity_calls[0][1]["retry_policy"].maximum_attempts == 1


def test_side_effect_activities_have_bounded_retries(activity_calls) -> None:
    host = _host()
    result = Harness().run()
    snapshot = Snapshot(timestamp="2026-01-01T00:00:00+00:00", reason="manual", state={})

    async def side_effects():
        await host.notify(Task(id="a", type="noop"), {}, "ops")
        await host.checkpoint(snapshot)
        await host.report(result)

    asyncio.run(side_effects())
    policies = {name: kwargs.get("retry_policy") for name, kwargs in activity_calls}
    assert set(policies) == {"send_notification", "save_checkpoint", "save_run_record"}
    for policy in policies.values():
        assert policy is not None
        assert policy.maximum_attempts == config.SIDE_EFFECT_ATTEMPTS
