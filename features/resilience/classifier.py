"""
Failure classification — maps an exception to an ErrorCategory.

Lookup order:
  1. the failure kind (exception class name, or an ApplicationError's type)
     against KIND_CATEGORIES
  2. the message against CATEGORY_PATTERNS, first match wins
  3. default: retryable SYSTEM
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass

from temporalio.exceptions import ActivityError, ApplicationError
from temporalio.exceptions import TimeoutError as TemporalTimeoutError

from features.resilience.policies import (
    NON_RETRYABLE_CATEGORIES,
    ErrorCategory,
    policy_for_category,
)

KIND_CATEGORIES: dict[str, ErrorCategory] = {
    "ValidationError": ErrorCategory.VALIDATION,
    "UnknownTaskType": ErrorCategory.VALIDATION,
    "NetworkError": ErrorCategory.NETWORK,
    "TimeoutError": ErrorCategory.NETWORK,
    "ConnectionError": ErrorCategory.NETWORK,
    "ConnectionRefusedError": ErrorCategory.NETWORK,
    "ConnectionResetError": ErrorCategory.NETWORK,
    "AuthenticationError": ErrorCategory.AUTHENTICATION,
    "AuthorizationError": ErrorCategory.AUTHORIZATION,
    "PermissionError": ErrorCategory.AUTHORIZATION,
    "RateLimitError": ErrorCategory.RATE_LIMIT,
    "ResourceError": ErrorCategory.RESOURCE,
    "MemoryError": ErrorCategory.RESOURCE,
    "BusinessError": ErrorCategory.BUSINESS,
    "CircuitOpenError": ErrorCategory.CIRCUIT_OPEN,
}

# Ordered: validation before network so "invalid input timeout" stays a validation error
CATEGORY_PATTERNS: list[tuple[ErrorCategory, list[re.Pattern]]] = [
    (ErrorCategory.VALIDATION, [
        re.compile(r"invalid.*input", re.I),
        re.compile(r"missing.*required", re.I),
        re.compile(r"validation.*failed", re.I),
        re.compile(r"schema.*error", re.I),
        re.compile(r"malformed.*request", re.I),
    ]),
    (ErrorCategory.NETWORK, [
        re.compile(r"connection.*refused", re.I),
        re.compile(r"network.*error", re.I),
        re.compile(r"timeout|timed out", re.I),
        re.compile(r"ECONNREFUSED|ENOTFOUND|ECONNRESET", re.I),
    ]),
    (ErrorCategory.AUTHENTICATION, [
        re.compile(r"unauthorized", re.I),
        re.compile(r"authentication.*failed", re.I),
        re.compile(r"invalid.*credentials", re.I),
        re.compile(r"token.*expired", re.I),
        re.compile(r"\b401\b"),
    ]),
    (ErrorCategory.AUTHORIZATION, [
        re.compile(r"forbidden", re.I),
        re.compile(r"access.*denied", re.I),
        re.compile(r"insufficient.*permissions", re.I),
        re.compile(r"\b403\b"),
    ]),
    (ErrorCategory.RATE_LIMIT, [
        re.compile(r"rate.*limit", re.I),
        re.compile(r"too.*many.*requests", re.I),
        re.compile(r"quota.*exceeded", re.I),
        re.compile(r"\b429\b"),
    ]),
    (ErrorCategory.RESOURCE, [
        re.compile(r"out.*of.*memory", re.I),
        re.compile(r"disk.*full", re.I),
        re.compile(r"resource.*exhausted", re.I),
        re.compile(r"\b50[37]\b"),
    ]),
    (ErrorCategory.BUSINESS, [
        re.compile(r"business.*rule", re.I),
        re.compile(r"constraint.*violation", re.I),
        re.compile(r"duplicate.*key", re.I),
        re.compile(r"conflict", re.I),
        re.compile(r"\b409\b"),
    ]),
]


@dataclass(frozen=True)
class Classification:
    """Result of classifying one failure."""
    category: ErrorCategory
    retryable: bool
    kind: str
    message: str
    retry_delay_sec: float | None = None
    max_attempts: int | None = None
    backoff_coefficient: float | None = None

    def to_dict(self) -> dict:
        return {
            "category": self.category.value,
            "retryable": self.retryable,
            "kind": self.kind,
            "message": self.message,
            "retry_delay_sec": self.retry_delay_sec,
            "max_attempts": self.max_attempts,
            "backoff_coefficient": self.backoff_coefficient,
        }


def describe_error(error: BaseException | str) -> tuple[str, str]:
    """Return (kind, message) for an error, unwrapping Temporal activity failures."""
    if isinstance(error, str):
        return "Error", error
    if isinstance(error, ActivityError) and error.cause is not None:
        return describe_error(error.cause)
    if isinstance(error, ApplicationError):
        return error.type or "ApplicationError", error.message
    if isinstance(error, (TemporalTimeoutError, asyncio.TimeoutError)):
        return "TimeoutError", str(error) or "operation timed out"
    message = getattr(error, "message", None) or str(error)
    return type(error).__name__, message


def _match_category(kind: str, message: str) -> ErrorCategory | None:
    if kind in KIND_CATEGORIES:
        return KIND_CATEGORIES[kind]
    for category, patterns in CATEGORY_PATTERNS:
        if any(p.search(message) for p in patterns):
            return category
    return None


def classify_error(error: BaseException | str) -> Classification:
    kind, message = describe_error(error)
    category = _match_category(kind, message) or ErrorCategory.SYSTEM

    if category in NON_RETRYABLE_CATEGORIES:
        return Classification(category=category, retryable=False, kind=kind, message=message)

    policy = policy_for_category(category)
    return Classification(
        category=category,
        retryable=True,
        kind=kind,
        message=message,
        retry_delay_sec=policy.initial_interval_sec,
        max_attempts=policy.maximum_attempts,
        backoff_coefficient=policy.backoff_coefficient,
    )
