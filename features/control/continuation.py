"""
History-bound continuation.

A run that has completed `continuation_threshold` tasks (or whose host says
its history is getting large) is restarted with only the remaining pending
queue and the current configuration. Completed tasks, errors, snapshots and
interaction history are dropped; the host checkpoints a snapshot first.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import asdict

from features.control.models import ControlInput
from features.control.state import ControlState

log = logging.getLogger(__name__)


class ContinuationPlanner:
    def __init__(self, threshold: int | None = None):
        # None = read the threshold from the run's configuration each time
        self.threshold = threshold

    def threshold_for(self, state: ControlState) -> int:
        return self.threshold or state.configuration.continuation_threshold

    def due(self, state: ControlState, suggested: bool = False) -> bool:
        if not state.pending_tasks:
            return False
        return suggested or state.metrics.tasks_completed >= self.threshold_for(state)

    def plan(self, state: ControlState, run_info: dict | None = None) -> ControlInput:
        run_info = run_info or {}
        metadata = copy.deepcopy(state.metadata)
        previous = asdict(state.metrics)
        metadata["previous_run_metrics"] = previous
        metadata["continued_from_run"] = run_info.get("run_id")
        metadata["continuation_count"] = int(metadata.get("continuation_count", 0)) + 1
        metadata["cumulative_tasks_completed"] = (
            int(metadata.get("cumulative_tasks_completed", 0)) + previous["tasks_completed"]
        )
        metadata["cumulative_tasks_failed"] = (
            int(metadata.get("cumulative_tasks_failed", 0)) + previous["tasks_failed"]
        )

        next_input = ControlInput(
            tasks=copy.deepcopy(state.pending_tasks),
            configuration=copy.deepcopy(state.configuration),
            metadata=metadata,
            paused=state.is_paused,
            debug_mode=state.is_debug_mode,
        )
        log.info(
            "Continuation #%d planned: %d pending tasks carried, %d completed this run",
            metadata["continuation_count"], len(next_input.tasks), previous["tasks_completed"],
        )
        return next_input
