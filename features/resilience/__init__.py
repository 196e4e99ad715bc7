"""
Resilience feature — failure classification, retry policies, circuit
breaking and compensating rollback around each unit of work.

Public API:
    from features.resilience import PolicyEngine, CircuitBreaker, CompensationManager
"""

from features.resilience.circuit_breaker import BreakerState, CircuitBreaker, CircuitOpenError
from features.resilience.classifier import Classification, classify_error
from features.resilience.compensation import CompensationError, CompensationManager
from features.resilience.engine import PolicyEngine
from features.resilience.policies import (
    CATEGORY_POLICIES,
    NON_RETRYABLE_CATEGORIES,
    RETRY_POLICIES,
    ErrorCategory,
    RetryPolicy,
    get_policy,
)

__all__ = [
    "BreakerState",
    "CATEGORY_POLICIES",
    "CircuitBreaker",
    "CircuitOpenError",
    "Classification",
    "classify_error",
    "CompensationError",
    "CompensationManager",
    "ErrorCategory",
    "NON_RETRYABLE_CATEGORIES",
    "PolicyEngine",
    "RETRY_POLICIES",
    "RetryPolicy",
    "get_policy",
]
