"""
Activities: persistence — run records and checkpoints.

Every record is written as a JSON file under CONTROL_RUNS_DIR and, when
Postgres is reachable, upserted there too.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from temporalio import activity

import config
from features.runs import db as run_db

log = logging.getLogger(__name__)


def _write_json(path: Path, data: dict) -> str:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(data, f, indent=2, default=str)
    return str(path)


@activity.defn
def save_run_record(workflow_id: str, run_id: str, result: dict) -> str:
    """Persist the terminal result of one run."""
    record = {"workflow_id": workflow_id, "run_id": run_id, **result}
    file_path = _write_json(config.CONTROL_RUNS_DIR / workflow_id / f"{run_id}.json", record)
    log.info("Run record saved: %s", file_path)

    try:
        run_db.upsert_run(record)
    except Exception as e:
        log.warning("Could not persist run %s to Postgres: %s", run_id, e)
    return file_path


@activity.defn
def save_checkpoint(workflow_id: str, run_id: str, snapshot: dict) -> str:
    """Persist a state snapshot before its run's history is discarded."""
    checkpoint = {"workflow_id": workflow_id, "run_id": run_id, **snapshot}
    name = f"{run_id}-{snapshot.get('reason', 'manual')}-checkpoint.json"
    file_path = _write_json(config.CONTROL_RUNS_DIR / workflow_id / name, checkpoint)
    log.info("Checkpoint saved: %s", file_path)

    try:
        run_db.insert_checkpoint(checkpoint)
    except Exception as e:
        log.warning("Could not persist checkpoint for %s to Postgres: %s", run_id, e)
    return file_path
