from __future__ import annotations

import asyncio

import pytest

from conftest import Harness, fail, make_tasks
from features.control import (
    ContinuationRequested,
    ControlStatus,
    LoopTerminatedError,
    Task,
)


def _ids(records) -> list[str]:
    return [r.task.id for r in records]


def test_mixed_outcomes_complete_with_failures() -> None:
    def handler(task, attempt):
        if task.id == "t3":
            raise fail("BusinessError", "business rule violated: credit limit")
        return {"ok": task.id}

    h = Harness(make_tasks(3), handler=handler)
    result = h.run()

    assert result.status == ControlStatus.COMPLETED_WITH_FAILURES
    assert _ids(result.completed_tasks) == ["t1", "t2"]
    assert _ids(result.failed_tasks) == ["t3"]
    assert result.metrics.tasks_completed == 2
    assert result.metrics.tasks_failed == 1
    assert result.failed_tasks[0].error_category == "business"
    assert result.failed_tasks[0].attempts == 1
    assert h.host.calls.count(("t3", 1)) == 1
    assert h.host.reports == [result]


def test_all_success_completes() -> None:
    h = Harness(make_tasks(2))
    result = h.run()
    assert result.status == ControlStatus.COMPLETED
    assert result.completed_tasks[0].result == {"task": "t1"}
    assert result.metrics.tasks_started == 2
    assert h.host.validated == ["t1", "t2"]


def test_network_failures_follow_the_network_policy() -> None:
    def handler(task, attempt):
        raise fail("NetworkError", "connection reset by peer")

    h = Harness([Task(id="flaky", type="api_call")], handler=handler)
    result = h.run()

    assert [attempt for _, attempt in h.host.calls] == list(range(1, 9))
    assert result.status == ControlStatus.COMPLETED_WITH_FAILURES
    assert result.failed_tasks[0].attempts == 8
    assert result.failed_tasks[0].error_category == "network"
    assert result.metrics.retries == 7


def test_transient_failure_recovers_on_retry() -> None:
    def handler(task, attempt):
        if attempt < 3:
            raise RuntimeError("worker crashed unexpectedly")
        return {"attempt": attempt}

    h = Harness(make_tasks(1), handler=handler)
    result = h.run()

    assert result.status == ControlStatus.COMPLETED
    assert result.completed_tasks[0].attempts == 3
    assert h.host.sleeps == [1.0, 2.0]


def test_retry_policy_override_applies() -> None:
    def handler(task, attempt):
        raise RuntimeError("worker crashed unexpectedly")

    h = Harness(make_tasks(1), handler=handler, retry_policy="fast")
    result = h.run()
    assert result.failed_tasks[0].attempts == 3


def test_non_retryable_override_is_ignored() -> None:
    def handler(task, attempt):
        raise fail("AuthenticationError", "token expired")

    h = Harness(make_tasks(1), handler=handler, retry_policy="aggressive")
    result = h.run()
    assert h.host.calls == [("t1", 1)]
    assert result.failed_tasks[0].error_category == "authentication"


def test_validation_failure_is_not_executed() -> None:
    h = Harness(make_tasks(2))
    h.host.invalid.add("t1")
    result = h.run()
    assert _ids(result.failed_tasks) == ["t1"]
    assert result.failed_tasks[0].attempts == 0
    assert h.host.calls == [("t2", 1)]


def test_terminate_while_in_flight() -> None:
    ran_compensations = []
    h = None

    async def handler(task, attempt):
        if task.id == "compensate-me:compensate":
            ran_compensations.append(task.id)
            return {}
        if task.id == "t2":
            h.dispatcher.terminate("operator abort")
            await asyncio.Event().wait()
        return {"ok": True, "compensation": {"type": "noop"}} if task.id == "compensate-me" else {}

    h = Harness([Task(id="compensate-me", type="noop"), *make_tasks(3)], handler=handler)
    with pytest.raises(LoopTerminatedError, match="operator abort"):
        h.run()

    assert h.state.status == ControlStatus.TERMINATED
    assert [t.id for t in h.state.pending_tasks] == ["t2", "t3"]
    assert _ids(h.state.completed_tasks) == ["compensate-me", "t1"]
    assert ran_compensations == ["compensate-me:compensate"]
    assert h.host.calls.count(("t3", 1)) == 0
    assert h.host.reports == []


def test_soft_cancel_lets_in_flight_task_finish() -> None:
    h = None

    def handler(task, attempt):
        if task.id == "t1":
            h.dispatcher.cancel("enough")
        return {}

    h = Harness(make_tasks(3), handler=handler)
    result = h.run()
    assert result.status == ControlStatus.CANCELLED
    assert _ids(result.completed_tasks) == ["t1"]
    assert [t.id for t in h.state.pending_tasks] == ["t2", "t3"]


def test_soft_cancel_survives_a_failing_in_flight_task() -> None:
    h = None
    undone = []

    def handler(task, attempt):
        if task.id.endswith(":compensate"):
            undone.append(task.metadata["compensates"])
            return {}
        if task.id == "t2":
            h.dispatcher.cancel("operator stop")
            raise fail("BusinessError", "business rule violated: quota")
        return {"compensation": {"type": "noop"}}

    h = Harness(make_tasks(3), handler=handler, stop_on_failure=True)
    result = h.run()

    assert result.status == ControlStatus.CANCELLED
    assert h.state.status_reason == "operator stop"
    assert _ids(result.failed_tasks) == ["t2"]
    assert undone == []
    assert [t.id for t in h.state.pending_tasks] == ["t3"]


def test_hard_cancel_requeues_in_flight_task() -> None:
    h = None

    async def handler(task, attempt):
        h.dispatcher.cancel("now", hard=True)
        await asyncio.Event().wait()

    h = Harness(make_tasks(2), handler=handler)
    result = h.run()
    assert result.status == ControlStatus.CANCELLED
    assert result.completed_tasks == []
    assert [t.id for t in h.state.pending_tasks] == ["t1", "t2"]
    assert h.state.current_task is None


def test_paused_loop_waits_for_resume() -> None:
    h = Harness(make_tasks(2), paused=True)

    async def scenario():
        run = asyncio.ensure_future(h.loop.run())
        for _ in range(50):
            await asyncio.sleep(0)
        assert h.host.calls == []
        assert h.dispatcher.get_status() == "paused"
        h.dispatcher.add_task(Task(id="late", type="noop"))
        h.dispatcher.resume()
        return await run

    result = asyncio.run(scenario())
    assert _ids(result.completed_tasks) == ["t1", "t2", "late"]


def test_pause_mid_run_finishes_in_flight_task() -> None:
    h = None

    def handler(task, attempt):
        if task.id == "t1":
            h.dispatcher.pause()
        return {}

    h = Harness(make_tasks(3), handler=handler)

    async def scenario():
        run = asyncio.ensure_future(h.loop.run())
        for _ in range(50):
            await asyncio.sleep(0)
        assert _ids(h.state.completed_tasks) == ["t1"]
        assert [t.id for t in h.state.pending_tasks] == ["t2", "t3"]
        h.dispatcher.resume()
        return await run

    result = asyncio.run(scenario())
    assert result.status == ControlStatus.COMPLETED
    assert len(result.completed_tasks) == 3


def test_tasks_added_mid_run_are_executed() -> None:
    h = None

    def handler(task, attempt):
        if task.id == "t1":
            h.dispatcher.add_task(Task(id="extra", type="noop"))
            h.dispatcher.trigger_manual_execution(Task(id="urgent", type="noop"))
        return {}

    h = Harness(make_tasks(2), handler=handler)
    result = h.run()
    assert _ids(result.completed_tasks) == ["t1", "urgent", "t2", "extra"]


def test_skip_removes_task_before_it_runs() -> None:
    h = None

    def handler(task, attempt):
        if task.id == "t1":
            h.dispatcher.skip_task("t2")
        return {}

    h = Harness(make_tasks(3), handler=handler)
    result = h.run()
    assert result.status == ControlStatus.COMPLETED
    assert _ids(result.skipped_tasks) == ["t2"]
    assert ("t2", 1) not in h.host.calls


def test_stop_on_failure_unwinds_compensations() -> None:
    undone = []

    def handler(task, attempt):
        if task.id.endswith(":compensate"):
            undone.append(task.metadata["compensates"])
            return {}
        if task.id == "t3":
            raise fail("ValidationError", "missing required field: amount")
        return {"compensation": {"type": "noop", "payload": {"undo": task.id}}}

    h = Harness(make_tasks(4), handler=handler, stop_on_failure=True)
    result = h.run()

    assert result.status == ControlStatus.FAILED
    assert undone == ["t2", "t1"]
    assert [t.id for t in h.state.pending_tasks] == ["t4"]
    assert result.compensation_error is None


def test_failed_compensation_is_reported() -> None:
    def handler(task, attempt):
        if task.id == "t1:compensate":
            raise RuntimeError("rollback endpoint down")
        if task.id == "t2":
            raise fail("BusinessError", "conflict")
        return {"compensation": {"type": "noop", "critical": True}}

    h = Harness(make_tasks(2), handler=handler, stop_on_failure=True)
    result = h.run()
    assert result.compensation_error["halted_at"] == "undo-t1"
    assert any(e.get("kind") == "CompensationError" for e in h.state.errors)


def test_compensation_disabled() -> None:
    def handler(task, attempt):
        if task.id == "t2":
            raise fail("BusinessError", "conflict")
        return {"compensation": {"type": "noop"}}

    h = Harness(make_tasks(2), handler=handler, stop_on_failure=True, compensate_on_failure=False)
    h.run()
    assert ("t1:compensate", 1) not in h.host.calls


def test_notifications_are_sent_when_enabled() -> None:
    h = Harness(make_tasks(2), notify_on_completion=True, notification_recipient="ops")
    h.run()
    assert h.host.notifications == [("t1", "ops"), ("t2", "ops")]


def test_report_failure_does_not_fail_the_run() -> None:
    h = Harness(make_tasks(1))
    h.host.fail_report = True
    result = h.run()
    assert result.status == ControlStatus.COMPLETED
    assert "report failed" in h.state.errors[-1]["error"]


def test_rescheduled_task_waits_until_due() -> None:
    h = Harness(make_tasks(2))
    h.dispatcher.reschedule("t1", "2026-01-01T00:10:00+00:00")
    result = h.run()
    assert _ids(result.completed_tasks) == ["t2", "t1"]
    assert h.host.time() >= 600


def test_schedule_interval_spaces_tasks() -> None:
    h = Harness(make_tasks(3), schedule_interval_sec=5)
    h.run()
    assert h.host.time() == pytest.approx(10.0)


def test_snapshots_taken_every_interval() -> None:
    h = Harness(make_tasks(5), snapshot_interval=2)
    result = h.run()
    assert result.snapshots_taken == 2
    assert all(s.reason == "auto" for s in h.state.snapshots)


def test_open_circuit_wait_does_not_consume_attempts() -> None:
    def handler(task, attempt):
        if task.id == "down":
            raise fail("NetworkError", "connection refused")
        return {}

    h = Harness([Task(id="down", type="noop"), *make_tasks(1)], handler=handler)
    h.breaker.threshold = 2
    result = h.run()
    assert result.failed_tasks[0].attempts == 8
    # backoff of 4s after the circuit opened, then the remaining 26s of cool-down
    assert h.host.sleeps[:3] == [2.0, 4.0, 26.0]
    assert _ids(result.completed_tasks) == ["t1"]
    assert h.breaker.state.value == "closed"


def test_open_circuit_fails_fast_when_not_waiting() -> None:
    def handler(task, attempt):
        raise fail("NetworkError", "connection refused")

    h = Harness(make_tasks(2), handler=handler, wait_on_open_circuit=False)
    h.breaker.threshold = 3
    result = h.run()
    assert result.failed_tasks[0].attempts == 3
    assert result.failed_tasks[1].error_kind == "CircuitOpenError"
    assert result.failed_tasks[1].error_category == "circuit_open"
    assert result.failed_tasks[1].attempts == 0


def test_continuation_after_threshold() -> None:
    h = Harness(make_tasks(1500), continuation_threshold=1000, snapshot_interval=0)
    with pytest.raises(ContinuationRequested) as exc:
        h.run()

    next_input = exc.value.next_input
    assert len(h.state.completed_tasks) == 1000
    assert [t.id for t in next_input.tasks] == [f"t{i}" for i in range(1001, 1501)]
    assert next_input.metadata["continuation_count"] == 1
    assert next_input.metadata["continued_from_run"] == "run-1"
    assert next_input.metadata["cumulative_tasks_completed"] == 1000
    assert next_input.configuration.continuation_threshold == 1000
    assert h.host.checkpoints[-1].reason == "continuation"


def test_continuation_carries_flags_and_survives_checkpoint_failure() -> None:
    h = Harness(make_tasks(3), continuation_threshold=1)
    h.host.fail_checkpoint = True
    h.dispatcher.enable_debug_mode(True)
    with pytest.raises(ContinuationRequested) as exc:
        h.run()
    assert exc.value.next_input.debug_mode is True
    assert [t.id for t in exc.value.next_input.tasks] == ["t2", "t3"]
    assert "checkpoint failed" in h.state.errors[-1]["error"]


def test_host_suggested_continuation() -> None:
    h = Harness(make_tasks(2))
    h.host.suggest_continuation = True
    with pytest.raises(ContinuationRequested) as exc:
        h.run()
    assert [t.id for t in exc.value.next_input.tasks] == ["t2"]


def test_no_continuation_when_queue_is_empty() -> None:
    h = Harness(make_tasks(2), continuation_threshold=2)
    assert h.run().status == ControlStatus.COMPLETED


def test_loop_failure_sets_failed_status() -> None:
    h = Harness(make_tasks(1))

    def explode(*args, **kwargs):
        raise KeyError("state corrupted")

    h.state.record_completion = explode
    with pytest.raises(KeyError):
        h.run()
    assert h.state.status == ControlStatus.FAILED
    assert h.state.errors[-1]["loop_level"] is True
