"""
Compensation Manager — saga-style rollback of completed steps.

Entries are appended as forward steps succeed and unwound in reverse order.
A failing rollback is recorded and the unwind continues, unless the entry is
critical, in which case the unwind stops there.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

log = logging.getLogger(__name__)


class CompensationError(Exception):
    """Aggregate failure for one unwind."""

    def __init__(self, failures: list[tuple[str, str]], succeeded: int, total: int, halted_at: str | None = None):
        self.failures = failures
        self.succeeded = succeeded
        self.total = total
        self.halted_at = halted_at
        names = ", ".join(name for name, _ in failures)
        msg = f"Saga compensation failed: {len(failures)} of {total} compensations failed ({names}); {succeeded} succeeded"
        if halted_at:
            msg += f"; unwind halted at critical step '{halted_at}'"
        super().__init__(msg)

    @property
    def failed_names(self) -> list[str]:
        return [name for name, _ in self.failures]

    def to_dict(self) -> dict:
        return {
            "message": str(self),
            "failed": [{"name": n, "error": e} for n, e in self.failures],
            "succeeded": self.succeeded,
            "total": self.total,
            "halted_at": self.halted_at,
        }


@dataclass
class Compensation:
    name: str
    action: Callable[[], Awaitable[None]]
    critical: bool = False


class CompensationManager:
    """Owns the compensation ledger for one logical saga."""

    def __init__(self):
        self._ledger: list[Compensation] = []

    @property
    def count(self) -> int:
        return len(self._ledger)

    def names(self) -> list[str]:
        return [c.name for c in self._ledger]

    def add_compensation(self, name: str, action: Callable[[], Awaitable[None]], critical: bool = False) -> None:
        self._ledger.append(Compensation(name=name, action=action, critical=critical))
        log.debug("[SAGA] Registered compensation %s (critical=%s)", name, critical)

    async def execute_compensations(self) -> int:
        """Unwind the ledger in reverse order; returns the number of rollbacks run.

        Raises CompensationError if any rollback failed. The ledger is
        cleared either way.
        """
        entries = list(reversed(self._ledger))
        total = len(entries)
        self._ledger = []
        failures: list[tuple[str, str]] = []
        succeeded = 0
        halted_at = None

        for entry in entries:
            log.info("[SAGA] Executing compensation: %s", entry.name)
            try:
                await entry.action()
            except Exception as e:
                failures.append((entry.name, str(e)))
                log.error("[SAGA] Compensation failed: %s — %s", entry.name, e)
                if entry.critical:
                    log.error("[SAGA] Critical compensation failed, stopping rollback")
                    halted_at = entry.name
                    break
            else:
                succeeded += 1
                log.info("[SAGA] Compensation completed: %s", entry.name)

        if failures:
            raise CompensationError(failures, succeeded, total, halted_at)
        return succeeded

    def clear(self) -> None:
        self._ledger = []
