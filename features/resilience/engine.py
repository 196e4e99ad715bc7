"""
Resilience Policy Engine — decides how a failed task attempt is handled.
"""

from __future__ import annotations

import logging

from features.resilience.classifier import Classification, classify_error
from features.resilience.policies import (
    NON_RETRYABLE_CATEGORIES,
    RETRY_POLICIES,
    RetryPolicy,
    get_policy,
    policy_for_category,
)

log = logging.getLogger(__name__)


class PolicyEngine:
    """Classifies failures and selects the retry policy to apply.

    One instance per control loop; it holds no mutable state, but keeping it
    an injected object lets tests and alternate hosts swap the tables.
    """

    def __init__(self, policies: dict[str, RetryPolicy] | None = None):
        self.policies = dict(policies or RETRY_POLICIES)

    def classify(self, error: BaseException | str) -> Classification:
        return classify_error(error)

    def select_policy(
        self,
        classification: Classification,
        requested: str | RetryPolicy | None = None,
    ) -> RetryPolicy:
        """Pick the policy for a classified failure.

        Non-retryable categories always get the "none" policy; a caller's
        requested policy can never make them retryable.
        """
        if classification.category in NON_RETRYABLE_CATEGORIES:
            return self.policies["none"]

        if isinstance(requested, RetryPolicy):
            policy = requested
        elif requested:
            policy = self.policies.get(requested) or get_policy(requested)
        else:
            policy = policy_for_category(classification.category)

        if classification.category in policy.non_retryable_kinds:
            return self.policies["none"]
        return policy

    def should_retry(self, classification: Classification, policy: RetryPolicy, attempts: int) -> bool:
        if not classification.retryable:
            return False
        return policy.allows_retry(classification.category, attempts)
