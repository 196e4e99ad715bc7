"""
Configuration — loads settings from environment / .env file.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Paths
PROJECT_ROOT = Path(__file__).parent
CONTROL_RUNS_DIR = Path(os.getenv("CONTROL_RUNS_DIR", str(PROJECT_ROOT / "control_runs")))

# Postgres (run records + checkpoints); JSON files are written regardless
DATABASE_URL = os.getenv("DATABASE_URL", "postgresql://localhost:5432/task_control")

# Temporal
TEMPORAL_HOST = os.getenv("TEMPORAL_HOST", "localhost:7233")
TEMPORAL_TASK_QUEUE = os.getenv("TEMPORAL_TASK_QUEUE", "task-control-queue")
TEMPORAL_NAMESPACE = os.getenv("TEMPORAL_NAMESPACE", "default")
WORKFLOW_ID_PREFIX = "task-control"

# Activities (seconds)
DEFAULT_TASK_TIMEOUT = float(os.getenv("DEFAULT_TASK_TIMEOUT", "300"))
VALIDATION_TIMEOUT = 30
NOTIFICATION_TIMEOUT = 30
PERSISTENCE_TIMEOUT = 60
SIDE_EFFECT_ATTEMPTS = int(os.getenv("SIDE_EFFECT_ATTEMPTS", "3"))
ACTIVITY_WORKERS = int(os.getenv("ACTIVITY_WORKERS", "10"))

# Control loop
CONTINUATION_THRESHOLD = int(os.getenv("CONTINUATION_THRESHOLD", "1000"))
SNAPSHOT_INTERVAL = int(os.getenv("SNAPSHOT_INTERVAL", "10"))

# History ceilings — oldest entries dropped once reached
MAX_ERRORS = int(os.getenv("MAX_ERRORS", "100"))
MAX_SNAPSHOTS = int(os.getenv("MAX_SNAPSHOTS", "20"))
MAX_INTERACTIONS = int(os.getenv("MAX_INTERACTIONS", "500"))

# Circuit breaker around the task operation
CIRCUIT_BREAKER_THRESHOLD = int(os.getenv("CIRCUIT_BREAKER_THRESHOLD", "5"))
CIRCUIT_BREAKER_RESET_TIMEOUT = float(os.getenv("CIRCUIT_BREAKER_RESET_TIMEOUT", "30"))
# 0 disables the breaker's own call timeout; the activity timeout still applies
CIRCUIT_BREAKER_TIMEOUT = float(os.getenv("CIRCUIT_BREAKER_TIMEOUT", "0")) or None
