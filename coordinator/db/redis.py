"""Redis presence, metrics, caching and lock operations"""
import json
from typing import Optional, List, Dict
import redis.asyncio as redis
from shared.models import Agent


class RedisCache:
    """Redis cache and coordination helper"""

    def __init__(self, redis_url: str):
        self.redis_url = redis_url
        self.client: Optional[redis.Redis] = None

    async def connect(self):
        """Connect to Redis"""
        self.client = await redis.from_url(self.redis_url,
                                           decode_responses=True)

    async def close(self):
        """Close Redis connection"""
        if self.client:
            await self.client.close()

    # Worker presence tracking
    async def mark_worker_active(self, worker_id: str, ttl: int = 60) -> None:
        """Mark worker as active with TTL"""
        await self.client.setex(f"worker:heartbeat:{worker_id}", ttl, "1")
        await self.client.sadd("set:active_workers", worker_id)

    async def is_worker_active(self, worker_id: str) -> bool:
        """Check if worker is active"""
        return await self.client.exists(f"worker:heartbeat:{worker_id}") > 0

    async def get_active_workers(self) -> List[str]:
        """Get all active worker IDs"""
        return list(await self.client.smembers("set:active_workers"))

    async def remove_worker(self, worker_id: str) -> None:
        """Remove worker from active set"""
        await self.client.delete(f"worker:heartbeat:{worker_id}")
        await self.client.srem("set:active_workers", worker_id)

    # Agent metadata cache
    async def cache_agent(self, agent: Agent) -> None:
        """Cache agent metadata"""
        await self.client.hset("cache:agents", agent.id,
                               agent.model_dump_json())

    async def get_cached_agent(self, agent_id: str) -> Optional[Dict]:
        """Get cached agent metadata"""
        data = await self.client.hget("cache:agents", agent_id)
        return json.loads(data) if data else None

    async def invalidate_agent(self, agent_id: str) -> None:
        """Invalidate agent cache"""
        await self.client.hdel("cache:agents", agent_id)

    # Distributed locks
    async def acquire_lock(self, lock_key: str, ttl: int = 10) -> bool:
        """Acquire a distributed lock"""
        return bool(await self.client.set(f"lock:{lock_key}",
                                          "1",
                                          nx=True,
                                          ex=ttl))

    async def release_lock(self, lock_key: str) -> None:
        """Release a distributed lock"""
        await self.client.delete(f"lock:{lock_key}")

    # Metrics and monitoring
    async def increment_metric(self, metric: str) -> None:
        """Increment a counter metric"""
        await self.client.incr(f"metric:{metric}")

    async def get_metric(self, metric: str) -> int:
        """Get metric value"""
        value = await self.client.get(f"metric:{metric}")
        return int(value) if value else 0
