"""
FastAPI application — REST API for the task control loop.

Endpoints:
  POST /runs                                  — Start a control loop workflow
  GET  /runs                                  — List persisted run records
  GET  /runs/{workflow_id}                    — Workflow status (Temporal) or persisted record
  POST /runs/{workflow_id}/commands/{name}    — Send a command (signal)
  GET  /runs/{workflow_id}/queries/{name}     — Run a query
  POST /runs/{workflow_id}/updates/{name}     — Send an update and wait for its result
  GET  /runs/{workflow_id}/records/{run_id}   — Persisted result of one run
  GET  /runs/{workflow_id}/checkpoints        — Checkpoints recorded before continuations
  GET  /health                                — Health check
"""

from __future__ import annotations

import json
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

import config
from temporalio.client import Client, WorkflowUpdateFailedError
from temporalio.service import RPCError
from workflows.control import TaskControlWorkflow
from features.control import COMMANDS, QUERIES, UPDATES, ControlConfiguration, ControlInput, Task
from features.runs import db as run_db

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger(__name__)

temporal_client: Client | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global temporal_client
    # Initialize Postgres
    try:
        run_db.init_db()
        log.info("Postgres database initialized")
    except Exception as e:
        log.warning("Could not connect to Postgres: %s (run records will be JSON files only)", e)
    # Connect to Temporal
    try:
        temporal_client = await Client.connect(config.TEMPORAL_HOST, namespace=config.TEMPORAL_NAMESPACE)
        log.info("Connected to Temporal at %s", config.TEMPORAL_HOST)
    except Exception as e:
        log.warning("Could not connect to Temporal: %s (runs cannot be started)", e)
        temporal_client = None
    yield


app = FastAPI(
    title="Task Control",
    description="Long-running task orchestration loop with Temporal signals, queries and updates",
    version="1.0.0",
    lifespan=lifespan,
)


class RunStartRequest(BaseModel):
    tasks: list[dict[str, Any]] = Field(default_factory=list)
    configuration: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    workflow_id: str | None = None
    paused: bool = False
    debug_mode: bool = False


class RunStartResponse(BaseModel):
    workflow_id: str
    run_id: str | None = None
    status: str
    message: str


class InteractionRequest(BaseModel):
    args: list[Any] = Field(default_factory=list)


def _client() -> Client:
    if temporal_client is None:
        raise HTTPException(status_code=503, detail="Temporal is not connected")
    return temporal_client


def _build_input(req: RunStartRequest) -> ControlInput:
    try:
        tasks = [Task.from_dict(t) for t in req.tasks]
        configuration = ControlConfiguration().merged(req.configuration)
    except (TypeError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))

    ids = [t.id for t in tasks]
    if len(ids) != len(set(ids)):
        raise HTTPException(status_code=400, detail="Task ids must be unique")
    return ControlInput(
        tasks=tasks,
        configuration=configuration,
        metadata=req.metadata,
        paused=req.paused,
        debug_mode=req.debug_mode,
    )


# ── Health ────────────────────────────────────────────────────────────

@app.get("/health")
def health():
    return {
        "status": "ok",
        "service": "task-control",
        "temporal_connected": temporal_client is not None,
    }


# ── Runs ──────────────────────────────────────────────────────────────

@app.post("/runs", response_model=RunStartResponse)
async def start_run(req: RunStartRequest):
    """Start a control loop workflow over the given tasks."""
    client = _client()
    control_input = _build_input(req)
    workflow_id = req.workflow_id or (
        f"{config.WORKFLOW_ID_PREFIX}-{datetime.now(timezone.utc).strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:6]}"
    )

    handle = await client.start_workflow(
        TaskControlWorkflow.run,
        control_input,
        id=workflow_id,
        task_queue=config.TEMPORAL_TASK_QUEUE,
    )
    return RunStartResponse(
        workflow_id=workflow_id,
        run_id=handle.result_run_id,
        status="started",
        message=f"Control loop started with {len(control_input.tasks)} task(s)",
    )


@app.get("/runs")
async def list_runs(status: str | None = None, workflow_id: str | None = None, limit: int = 50):
    """List persisted run records."""
    # Try Postgres first
    try:
        runs = run_db.list_runs(limit=limit, status=status, workflow_id=workflow_id)
        return {"runs": [_serialize(r) for r in runs]}
    except Exception as e:
        log.debug("Postgres unavailable, listing JSON records: %s", e)

    # Fallback: JSON files
    runs = []
    if config.CONTROL_RUNS_DIR.exists():
        for record_file in sorted(config.CONTROL_RUNS_DIR.glob("*/*.json"), reverse=True):
            if record_file.name.endswith("-checkpoint.json"):
                continue
            try:
                with open(record_file) as f:
                    data = json.load(f)
            except (OSError, ValueError) as e:
                log.warning("Skipping unreadable run record %s: %s", record_file, e)
                continue
            if status and data.get("status") != status:
                continue
            if workflow_id and data.get("workflow_id") != workflow_id:
                continue
            runs.append({
                "workflow_id": data.get("workflow_id"),
                "run_id": data.get("run_id"),
                "status": data.get("status"),
                "execution_sec": data.get("execution_sec"),
                "completed": len(data.get("completed_tasks", [])),
                "failed": len(data.get("failed_tasks", [])),
            })
    return {"runs": runs[:limit]}


@app.get("/runs/{workflow_id}")
async def get_run(workflow_id: str):
    """Live status from Temporal, or the latest persisted record."""
    if temporal_client:
        try:
            handle = temporal_client.get_workflow_handle(workflow_id)
            desc = await handle.describe()
            return {
                "workflow_id": workflow_id,
                "run_id": desc.run_id,
                "temporal_status": desc.status.name if desc.status else None,
                "start_time": _serialize(desc.start_time),
                "close_time": _serialize(desc.close_time),
            }
        except RPCError as e:
            log.info("Workflow %s not found in Temporal: %s", workflow_id, e)

    try:
        records = run_db.list_runs(limit=1, workflow_id=workflow_id)
        if records:
            return _serialize(records[0])
    except Exception as e:
        log.debug("Postgres unavailable, reading JSON records: %s", e)

    run_dir = config.CONTROL_RUNS_DIR / workflow_id
    if run_dir.is_dir():
        records = sorted(
            (p for p in run_dir.glob("*.json") if not p.name.endswith("-checkpoint.json")),
            key=lambda p: p.stat().st_mtime,
        )
        if records:
            with open(records[-1]) as f:
                return json.load(f)

    raise HTTPException(status_code=404, detail=f"Run not found: {workflow_id}")


@app.get("/runs/{workflow_id}/records/{run_id}")
async def get_run_record(workflow_id: str, run_id: str):
    """The persisted result of one run (one link of a continuation chain)."""
    try:
        row = run_db.get_run(run_id)
        if row:
            return _serialize(row)
    except Exception as e:
        log.debug("Postgres unavailable, reading JSON record: %s", e)

    record_file = config.CONTROL_RUNS_DIR / workflow_id / f"{run_id}.json"
    if record_file.exists():
        with open(record_file) as f:
            return json.load(f)
    raise HTTPException(status_code=404, detail=f"Run record not found: {run_id}")


@app.get("/runs/{workflow_id}/checkpoints")
async def get_checkpoints(workflow_id: str, limit: int = 20):
    try:
        checkpoints = run_db.get_checkpoints(workflow_id, limit=limit)
        return {"workflow_id": workflow_id, "checkpoints": [_serialize(c) for c in checkpoints]}
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Database error: {e}")


# ── Commands / queries / updates ──────────────────────────────────────

@app.post("/runs/{workflow_id}/commands/{name}")
async def send_command(workflow_id: str, name: str, req: InteractionRequest):
    """Fire-and-forget; bad arguments are recorded in the run's error log."""
    if name not in COMMANDS:
        raise HTTPException(status_code=404, detail=f"Unknown command: {name}")
    handle = _client().get_workflow_handle(workflow_id)
    try:
        await handle.signal(name, args=req.args)
    except RPCError as e:
        raise HTTPException(status_code=404, detail=f"Could not signal {workflow_id}: {e}")
    return {"workflow_id": workflow_id, "command": name, "status": "sent"}


@app.get("/runs/{workflow_id}/queries/{name}")
async def run_query(workflow_id: str, name: str, arg: str | None = None):
    if name not in QUERIES:
        raise HTTPException(status_code=404, detail=f"Unknown query: {name}")
    handle = _client().get_workflow_handle(workflow_id)
    try:
        result = await handle.query(name, args=[arg] if arg is not None else [])
    except RPCError as e:
        raise HTTPException(status_code=404, detail=f"Could not query {workflow_id}: {e}")
    return {"workflow_id": workflow_id, "query": name, "result": _serialize(result)}


@app.post("/runs/{workflow_id}/updates/{name}")
async def send_update(workflow_id: str, name: str, req: InteractionRequest):
    if name not in UPDATES:
        raise HTTPException(status_code=404, detail=f"Unknown update: {name}")
    handle = _client().get_workflow_handle(workflow_id)
    try:
        result = await handle.execute_update(name, args=req.args)
    except WorkflowUpdateFailedError as e:
        detail = str(e.cause) if e.cause else str(e)
        raise HTTPException(status_code=400, detail=f"Update {name} rejected: {detail}")
    except RPCError as e:
        raise HTTPException(status_code=404, detail=f"Could not update {workflow_id}: {e}")
    return {"workflow_id": workflow_id, "update": name, "result": _serialize(result)}


def _serialize(obj: Any) -> Any:
    """Make a dict JSON-serializable (handle datetimes, Decimals, etc)."""
    if isinstance(obj, dict):
        return {k: _serialize(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_serialize(v) for v in obj]
    if hasattr(obj, "isoformat"):
        return obj.isoformat()
    return obj
