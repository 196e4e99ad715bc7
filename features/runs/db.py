"""
Postgres backing store for control-loop runs and checkpoints.

Tables:
  control_runs         — one row per workflow run (final status, metrics, task lists)
  control_checkpoints  — snapshots recorded before a continuation or on demand

Written from activities only; the workflow itself never touches the DB.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from typing import Any

import psycopg2
import psycopg2.extras

import config

log = logging.getLogger(__name__)

# ── Connection ────────────────────────────────────────────────────────

_pool: list[Any] = []


def _get_conn():
    """Get a Postgres connection (simple single-connection reuse)."""
    if _pool:
        conn = _pool[0]
        if not conn.closed:
            return conn
        _pool.clear()

    conn = psycopg2.connect(config.DATABASE_URL)
    conn.autocommit = True
    _pool.append(conn)
    return conn


@contextmanager
def get_cursor():
    """Yield a dict cursor."""
    conn = _get_conn()
    cur = conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
    try:
        yield cur
    finally:
        cur.close()


# ── Schema ────────────────────────────────────────────────────────────

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS control_runs (
    run_id                  TEXT PRIMARY KEY,
    workflow_id             TEXT NOT NULL,
    status                  TEXT NOT NULL,
    execution_sec           DOUBLE PRECISION,
    interactions_received   INTEGER DEFAULT 0,
    snapshots_taken         INTEGER DEFAULT 0,
    metrics                 JSONB DEFAULT '{}'::jsonb,
    completed_tasks         JSONB DEFAULT '[]'::jsonb,
    failed_tasks            JSONB DEFAULT '[]'::jsonb,
    skipped_tasks           JSONB DEFAULT '[]'::jsonb,
    compensation_error      JSONB,
    created_at              TIMESTAMPTZ DEFAULT now(),
    updated_at              TIMESTAMPTZ DEFAULT now()
);

CREATE TABLE IF NOT EXISTS control_checkpoints (
    id              BIGSERIAL PRIMARY KEY,
    workflow_id     TEXT NOT NULL,
    run_id          TEXT NOT NULL,
    reason          TEXT NOT NULL,
    taken_at        TIMESTAMPTZ,
    state           JSONB NOT NULL,
    created_at      TIMESTAMPTZ DEFAULT now()
);

CREATE INDEX IF NOT EXISTS idx_control_runs_workflow ON control_runs(workflow_id);
CREATE INDEX IF NOT EXISTS idx_control_runs_status ON control_runs(status);
CREATE INDEX IF NOT EXISTS idx_control_checkpoints_workflow ON control_checkpoints(workflow_id);
"""


def init_db():
    """Create tables if they don't exist."""
    try:
        with get_cursor() as cur:
            cur.execute(SCHEMA_SQL)
        log.info("Database schema initialized")
    except Exception as e:
        log.error("Failed to initialize database: %s", e)
        raise


# ── Run records ───────────────────────────────────────────────────────

def upsert_run(run: dict) -> None:
    """Insert or update a run record."""
    with get_cursor() as cur:
        cur.execute("""
            INSERT INTO control_runs (
                run_id, workflow_id, status, execution_sec,
                interactions_received, snapshots_taken, metrics,
                completed_tasks, failed_tasks, skipped_tasks, compensation_error
            ) VALUES (
                %(run_id)s, %(workflow_id)s, %(status)s, %(execution_sec)s,
                %(interactions_received)s, %(snapshots_taken)s, %(metrics)s,
                %(completed_tasks)s, %(failed_tasks)s, %(skipped_tasks)s, %(compensation_error)s
            )
            ON CONFLICT (run_id) DO UPDATE SET
                status = EXCLUDED.status,
                execution_sec = EXCLUDED.execution_sec,
                interactions_received = EXCLUDED.interactions_received,
                snapshots_taken = EXCLUDED.snapshots_taken,
                metrics = EXCLUDED.metrics,
                completed_tasks = EXCLUDED.completed_tasks,
                failed_tasks = EXCLUDED.failed_tasks,
                skipped_tasks = EXCLUDED.skipped_tasks,
                compensation_error = EXCLUDED.compensation_error,
                updated_at = now()
        """, {
            "run_id": run.get("run_id"),
            "workflow_id": run.get("workflow_id", ""),
            "status": run.get("status", "completed"),
            "execution_sec": run.get("execution_sec"),
            "interactions_received": run.get("interactions_received", 0),
            "snapshots_taken": run.get("snapshots_taken", 0),
            "metrics": json.dumps(run.get("metrics", {}), default=str),
            "completed_tasks": json.dumps(run.get("completed_tasks", []), default=str),
            "failed_tasks": json.dumps(run.get("failed_tasks", []), default=str),
            "skipped_tasks": json.dumps(run.get("skipped_tasks", []), default=str),
            "compensation_error": json.dumps(run["compensation_error"]) if run.get("compensation_error") else None,
        })


def get_run(run_id: str) -> dict | None:
    """Fetch a run record by Temporal run ID."""
    with get_cursor() as cur:
        cur.execute("SELECT * FROM control_runs WHERE run_id = %s", (run_id,))
        row = cur.fetchone()
        return dict(row) if row else None


def list_runs(limit: int = 50, status: str | None = None, workflow_id: str | None = None) -> list[dict]:
    """List run records, newest first."""
    clauses, params = [], []
    if status:
        clauses.append("status = %s")
        params.append(status)
    if workflow_id:
        clauses.append("workflow_id = %s")
        params.append(workflow_id)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    with get_cursor() as cur:
        cur.execute(
            f"SELECT * FROM control_runs {where} ORDER BY created_at DESC LIMIT %s",
            (*params, limit),
        )
        return [dict(row) for row in cur.fetchall()]


# ── Checkpoints ───────────────────────────────────────────────────────

def insert_checkpoint(checkpoint: dict) -> None:
    with get_cursor() as cur:
        cur.execute("""
            INSERT INTO control_checkpoints (workflow_id, run_id, reason, taken_at, state)
            VALUES (%(workflow_id)s, %(run_id)s, %(reason)s, %(taken_at)s, %(state)s)
        """, {
            "workflow_id": checkpoint.get("workflow_id", ""),
            "run_id": checkpoint.get("run_id", ""),
            "reason": checkpoint.get("reason", "manual"),
            "taken_at": checkpoint.get("timestamp"),
            "state": json.dumps(checkpoint.get("state", {}), default=str),
        })


def get_checkpoints(workflow_id: str, limit: int = 20) -> list[dict]:
    """Fetch the most recent checkpoints for a workflow, across all its runs."""
    with get_cursor() as cur:
        cur.execute(
            "SELECT * FROM control_checkpoints WHERE workflow_id = %s ORDER BY id DESC LIMIT %s",
            (workflow_id, limit),
        )
        return [dict(row) for row in cur.fetchall()]
