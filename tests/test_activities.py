from __future__ import annotations

import json

import pytest
from temporalio.exceptions import ApplicationError

import config
from activities import persistence
from activities.tasks import process_task, send_notification, validate_task
from features.control import Task
from features.resilience import ErrorCategory, classify_error


def test_noop_echoes_payload() -> None:
    assert process_task(Task(id="a", type="noop", payload={"echo": 5})) == {"echo": 5}


def test_data_processing_reports_steps() -> None:
    result = process_task(Task(id="d", type="data_processing", payload={"steps": 3, "data_size": 10}))
    assert result["processed_records"] == 3
    assert result["data_size"] == 10


def test_unknown_type_is_a_validation_failure() -> None:
    with pytest.raises(ApplicationError) as exc:
        process_task(Task(id="x", type="teleport"))
    assert exc.value.type == "UnknownTaskType"
    assert classify_error(exc.value).category == ErrorCategory.VALIDATION


@pytest.mark.parametrize("status_code, category", [
    (401, ErrorCategory.AUTHENTICATION),
    (403, ErrorCategory.AUTHORIZATION),
    (409, ErrorCategory.BUSINESS),
    (429, ErrorCategory.RATE_LIMIT),
    (503, ErrorCategory.NETWORK),
    (422, ErrorCategory.VALIDATION),
])
def test_api_errors_carry_a_classifiable_kind(status_code, category) -> None:
    task = Task(id="api", type="api_call", payload={"endpoint": "/orders", "status_code": status_code})
    with pytest.raises(ApplicationError) as exc:
        process_task(task)
    assert exc.value.non_retryable
    assert classify_error(exc.value).category == category


def test_simulated_error_clears_after_attempt() -> None:
    task = Task(id="s", type="noop", payload={
        "simulate_error": {"kind": "NetworkError", "message": "reset", "until_attempt": 2},
    })
    for attempt in (1, 2):
        with pytest.raises(ApplicationError, match="reset"):
            process_task(task, attempt)
    assert process_task(task, 3) == {"echo": None}


def test_compensation_descriptor_is_returned() -> None:
    task = Task(id="c", type="noop", payload={"compensation": {"type": "noop", "critical": True}})
    assert process_task(task)["compensation"] == {"type": "noop", "critical": True}


def test_validate_task_rules() -> None:
    assert validate_task(Task(id="ok", type="noop")) is True
    with pytest.raises(ApplicationError, match="endpoint"):
        validate_task(Task(id="api", type="api_call"))
    with pytest.raises(ApplicationError, match="recipient"):
        validate_task(Task(id="n", type="notification"))
    with pytest.raises(ApplicationError, match="Unknown task type"):
        validate_task(Task(id="u", type="teleport"))


def test_send_notification() -> None:
    assert send_notification("t1", "ops", "done")["status"] == "sent"


def test_run_record_falls_back_to_json(tmp_path, monkeypatch) -> None:
    monkeypatch.setattr(config, "CONTROL_RUNS_DIR", tmp_path)

    def unavailable(record):
        raise ConnectionError("no postgres")

    monkeypatch.setattr(persistence.run_db, "upsert_run", unavailable)
    path = persistence.save_run_record("wf-1", "run-1", {"status": "completed", "metrics": {}})

    data = json.loads((tmp_path / "wf-1" / "run-1.json").read_text())
    assert path.endswith("run-1.json")
    assert data["workflow_id"] == "wf-1"
    assert data["status"] == "completed"


def test_checkpoint_written_and_upserted(tmp_path, monkeypatch) -> None:
    monkeypatch.setattr(config, "CONTROL_RUNS_DIR", tmp_path)
    stored = []
    monkeypatch.setattr(persistence.run_db, "insert_checkpoint", stored.append)

    path = persistence.save_checkpoint("wf-1", "run-1", {"reason": "continuation", "state": {}})
    assert path.endswith("run-1-continuation-checkpoint.json")
    assert stored[0]["reason"] == "continuation"
    assert stored[0]["run_id"] == "run-1"
