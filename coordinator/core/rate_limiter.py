"""Per (agent, user, window) admission counters"""
import logging
from datetime import datetime, timedelta, UTC
from typing import Dict, List, Optional, Tuple

from coordinator.core.state_manager import StateManager
from shared.enums import LimitType, WINDOW_SECONDS
from shared.models import RateLimitCounter

logger = logging.getLogger(__name__)


def evaluate_counters(
        agent_id: str, user_id: str, limits: Dict[LimitType, int],
        counters: List[RateLimitCounter],
        now: datetime) -> Tuple[bool, List[RateLimitCounter]]:
    """Decide admission over every configured window at once.

    Expired windows are reset first. The request is allowed only if every
    window is below its limit, in which case every window is incremented.
    On rejection only the diagnostics of the exhausted windows change.

    Returns:
        (allowed, counters to store)
    """
    existing = {counter.limit_type: counter for counter in counters}
    current: List[RateLimitCounter] = []

    for limit_type, limit in limits.items():
        counter = existing.get(limit_type)
        window = timedelta(seconds=WINDOW_SECONDS[limit_type])
        if counter is None:
            counter = RateLimitCounter(agent_id=agent_id,
                                       user_id=user_id,
                                       limit_type=limit_type,
                                       limit=limit,
                                       window_reset_at=now + window)
        else:
            counter = counter.model_copy(update={"limit": limit})
            if counter.window_reset_at <= now:
                counter.count = 0
                counter.window_reset_at = now + window
        current.append(counter)

    exhausted = [c for c in current if c.count >= c.limit]
    if exhausted:
        for counter in exhausted:
            counter.exceeded_count += 1
            counter.last_exceeded_at = now
        # Reset windows are stored too, so the next check sees the new window
        return False, current

    for counter in current:
        counter.count += 1
    return True, current


class RateLimiter:
    """Admission control against per-window ceilings"""

    def __init__(self, state: StateManager,
                 default_limits: Dict[LimitType, int]):
        self.state = state
        self.default_limits = dict(default_limits)

    async def limits_for(self, agent_id: str) -> Dict[LimitType, int]:
        """Configured ceilings for an agent, over the defaults"""
        limits = dict(self.default_limits)
        limits.update(await self.state.get_agent_limits(agent_id))
        return limits

    async def check_and_reserve(self,
                                agent_id: str,
                                user_id: str,
                                now: Optional[datetime] = None) -> bool:
        """Atomically check every window and reserve one slot in each"""
        now = now or datetime.now(UTC)
        limits = await self.limits_for(agent_id)

        def evaluate(counters):
            return evaluate_counters(agent_id, user_id, limits, counters, now)

        allowed = await self.state.reserve_rate_limits(agent_id, user_id,
                                                        evaluate)
        if not allowed:
            logger.warning(
                f"Rate limit exceeded for agent {agent_id} user {user_id}")
            await self.state.record_metric("rate_limit_rejections")
        return allowed

    async def configure_limits(self, agent_id: str,
                               limits: Dict[LimitType, int]) -> None:
        """Set per-agent ceilings; existing counters adopt the new limits"""
        for limit_type, limit in limits.items():
            if limit < 0:
                raise ValueError(f"{limit_type.value} limit must be >= 0")
        await self.state.save_agent_limits(agent_id, limits)
        summary = {k.value: v for k, v in limits.items()}
        logger.info(f"Configured rate limits for agent {agent_id}: {summary}")

    async def get_counters(self, agent_id: str,
                           user_id: str) -> List[RateLimitCounter]:
        return await self.state.list_rate_limit_counters(agent_id, user_id)
