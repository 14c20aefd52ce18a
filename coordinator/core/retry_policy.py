"""Retry decisions and backoff delays"""
import random
from typing import Callable, Optional

from coordinator.core.state_manager import StateManager
from shared.enums import BackoffStrategy, ErrorClass, RETRYABLE_ERROR_CLASSES
from shared.models import RetryPolicy

DEFAULT_POLICY = RetryPolicy(max_retries=3,
                             backoff_strategy=BackoffStrategy.EXPONENTIAL,
                             initial_delay=5.0,
                             max_delay=300.0,
                             jitter_enabled=True)


def next_delay(policy: RetryPolicy,
               attempt: int,
               rand: Callable[[], float] = random.random) -> float:
    """Seconds to wait before retry number `attempt` (1-based)"""
    attempt = max(1, attempt)
    if policy.backoff_strategy == BackoffStrategy.FIXED:
        delay = policy.initial_delay
    elif policy.backoff_strategy == BackoffStrategy.LINEAR:
        delay = policy.initial_delay * attempt
    else:
        delay = policy.initial_delay * (2**(attempt - 1))
    delay = min(delay, policy.max_delay)

    if policy.jitter_enabled:
        delay *= 0.5 + rand()
    return delay


def should_retry(policy: RetryPolicy, attempt: int,
                 error_class: Optional[ErrorClass]) -> bool:
    """True iff attempts remain and the failure class is transient"""
    if error_class is None:
        return False
    return attempt < policy.max_retries and error_class in RETRYABLE_ERROR_CLASSES


class RetryPolicyEngine:
    """Policy lookup per (agent, error class) with a system default"""

    def __init__(self,
                 state: StateManager,
                 default_policy: RetryPolicy = DEFAULT_POLICY,
                 rand: Callable[[], float] = random.random):
        self.state = state
        self.default_policy = default_policy
        self.rand = rand

    async def get_policy(self, agent_id: str,
                         error_class: Optional[ErrorClass]) -> RetryPolicy:
        if error_class is not None:
            policy = await self.state.get_retry_policy(agent_id, error_class)
            if policy is not None:
                return policy
        return self.default_policy

    async def set_policy(self, policy: RetryPolicy) -> None:
        if policy.agent_id is None or policy.error_class is None:
            raise ValueError("Retry policy needs agent_id and error_class")
        await self.state.save_retry_policy(policy)

    def next_delay(self, policy: RetryPolicy, attempt: int) -> float:
        return next_delay(policy, attempt, self.rand)

    def should_retry(self, policy: RetryPolicy, attempt: int,
                     error_class: Optional[ErrorClass]) -> bool:
        return should_retry(policy, attempt, error_class)
