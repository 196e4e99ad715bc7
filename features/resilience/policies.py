"""
Retry policy presets and the category → policy table.

Every failure category maps to exactly one named preset. The categories in
NON_RETRYABLE_CATEGORIES always resolve to the "none" preset, whatever
policy the caller asked for.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum

from temporalio.common import RetryPolicy as TemporalRetryPolicy


class ErrorCategory(str, Enum):
    VALIDATION = "validation"
    NETWORK = "network"
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    RATE_LIMIT = "rate_limit"
    RESOURCE = "resource"
    BUSINESS = "business"
    CIRCUIT_OPEN = "circuit_open"
    SYSTEM = "system"


NON_RETRYABLE_CATEGORIES = frozenset({
    ErrorCategory.VALIDATION,
    ErrorCategory.AUTHENTICATION,
    ErrorCategory.AUTHORIZATION,
    ErrorCategory.BUSINESS,
    ErrorCategory.CIRCUIT_OPEN,
})


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff and attempt limits for one failure category."""
    name: str
    initial_interval_sec: float = 1.0
    backoff_coefficient: float = 2.0
    maximum_interval_sec: float = 60.0
    maximum_attempts: int = 5  # total attempts, first call included
    non_retryable_kinds: frozenset = field(default_factory=lambda: NON_RETRYABLE_CATEGORIES)

    def delay_for(self, attempt: int) -> float:
        """Delay before retrying after the given (1-based) failed attempt."""
        delay = self.initial_interval_sec * (self.backoff_coefficient ** max(attempt - 1, 0))
        return min(delay, self.maximum_interval_sec)

    def allows_retry(self, category: ErrorCategory, attempts: int) -> bool:
        if category in self.non_retryable_kinds:
            return False
        return attempts < self.maximum_attempts

    def to_temporal(self) -> TemporalRetryPolicy:
        """Convert to the Temporal SDK's RetryPolicy for activity options."""
        return TemporalRetryPolicy(
            initial_interval=timedelta(seconds=self.initial_interval_sec),
            backoff_coefficient=self.backoff_coefficient,
            maximum_interval=timedelta(seconds=self.maximum_interval_sec),
            maximum_attempts=self.maximum_attempts,
            non_retryable_error_types=sorted(c.value for c in self.non_retryable_kinds),
        )

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "initial_interval_sec": self.initial_interval_sec,
            "backoff_coefficient": self.backoff_coefficient,
            "maximum_interval_sec": self.maximum_interval_sec,
            "maximum_attempts": self.maximum_attempts,
            "non_retryable_kinds": sorted(c.value for c in self.non_retryable_kinds),
        }


RETRY_POLICIES: dict[str, RetryPolicy] = {
    # Critical operations: slow backoff, many attempts
    "conservative": RetryPolicy("conservative", 1.0, 1.5, 30.0, 10),
    "standard": RetryPolicy("standard", 1.0, 2.0, 60.0, 5),
    # Unreliable external services
    "aggressive": RetryPolicy("aggressive", 0.5, 2.0, 120.0, 15),
    "fast": RetryPolicy("fast", 0.1, 1.5, 5.0, 3),
    "network": RetryPolicy("network", 2.0, 2.0, 30.0, 8),
    "rate_limited": RetryPolicy("rate_limited", 10.0, 3.0, 300.0, 20),
    "none": RetryPolicy("none", 0.0, 1.0, 0.0, 1),
}

CATEGORY_POLICIES: dict[ErrorCategory, str] = {
    ErrorCategory.VALIDATION: "none",
    ErrorCategory.AUTHENTICATION: "none",
    ErrorCategory.AUTHORIZATION: "none",
    ErrorCategory.BUSINESS: "none",
    ErrorCategory.CIRCUIT_OPEN: "none",
    ErrorCategory.NETWORK: "network",
    ErrorCategory.RATE_LIMIT: "rate_limited",
    ErrorCategory.RESOURCE: "aggressive",
    ErrorCategory.SYSTEM: "standard",
}


def get_policy(name: str) -> RetryPolicy:
    """Look up a preset by name, raising ValueError for unknown names."""
    try:
        return RETRY_POLICIES[name]
    except KeyError:
        raise ValueError(
            f"Unknown retry policy: {name!r} (expected one of {', '.join(RETRY_POLICIES)})"
        ) from None


def policy_for_category(category: ErrorCategory) -> RetryPolicy:
    return RETRY_POLICIES[CATEGORY_POLICIES[category]]
