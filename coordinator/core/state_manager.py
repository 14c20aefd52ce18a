"""Runtime state with in-memory fallback, PostgreSQL persistence and Redis helpers"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from coordinator.db.postgres import PostgresDB
from coordinator.db.redis import RedisCache
from shared.enums import JobStatus, WorkerStatus, ErrorClass, LimitType
from shared.models import (ExecutionJob, Worker, RateLimitCounter, RetryPolicy,
                           Schedule, ExecutionHistoryEntry, Agent,
                           Installation, UserCredential)

logger = logging.getLogger(__name__)

RUNTIME_METRICS = [
    "jobs_enqueued", "jobs_queued", "jobs_completed", "jobs_failed",
    "jobs_timed_out", "rate_limit_rejections"
]

WorkerMerge = Callable[[Optional[Worker]], Worker]
RateLimitEvaluator = Callable[[List[RateLimitCounter]],
                              Tuple[bool, List[RateLimitCounter]]]


class StateManager:
    """Centralized runtime state with optional PostgreSQL + Redis backends.

    With PostgreSQL configured every call goes to the database, which is the
    only place concurrent coordinators can agree on claims. Without it the
    state lives in this process and a single lock makes each operation
    atomic. Callers always receive copies; mutation happens only through
    these methods.
    """

    def __init__(self,
                 postgres: Optional[PostgresDB] = None,
                 redis: Optional[RedisCache] = None):
        # In-memory state (used when no database is configured)
        self.jobs: Dict[str, ExecutionJob] = {}
        self.workers: Dict[str, Worker] = {}
        self.rate_limits: Dict[Tuple[str, str, LimitType],
                               RateLimitCounter] = {}
        self.agent_limits: Dict[str, Dict[LimitType, int]] = {}
        self.retry_policies: Dict[Tuple[str, ErrorClass], RetryPolicy] = {}
        self.schedules: Dict[str, Schedule] = {}
        self.history: List[ExecutionHistoryEntry] = []
        self.agents: Dict[str, Agent] = {}
        self.installations: Dict[Tuple[str, str], Installation] = {}
        self.credentials: Dict[Tuple[str, str], UserCredential] = {}
        self._lock = asyncio.Lock()

        # Backends (optional)
        self.postgres = postgres
        self.redis = redis

    # Job methods
    async def insert_job(self, job: ExecutionJob) -> None:
        """Persist a newly enqueued job"""
        if self.postgres:
            await self.postgres.insert_job(job)
        else:
            async with self._lock:
                self.jobs[job.id] = job.model_copy(deep=True)
        await self.record_metric("jobs_enqueued")

    async def get_job(self, job_id: str) -> Optional[ExecutionJob]:
        if self.postgres:
            return await self.postgres.get_job(job_id)
        job = self.jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def claim_next_job(self, worker_id: str,
                             now: datetime) -> Optional[ExecutionJob]:
        """Atomically move the most urgent due job to running"""
        if self.postgres:
            return await self.postgres.claim_next_job(worker_id, now)

        async with self._lock:
            candidates = [
                job for job in self.jobs.values()
                if job.status == JobStatus.QUEUED and job.scheduled_for <= now
                and job.attempt < job.max_attempts
            ]
            if not candidates:
                return None

            # min() keeps the first of equal keys, i.e. insertion order
            job = min(candidates,
                      key=lambda j: (j.priority, j.scheduled_for, j.created_at))
            job.status = JobStatus.RUNNING
            job.lease_owner = worker_id
            job.started_at = now
            job.updated_at = now
            return job.model_copy(deep=True)

    async def transition_job(
            self,
            job_id: str,
            expected_status: JobStatus,
            changes: Dict[str, Any],
            expected_owner: Optional[str] = None) -> Optional[ExecutionJob]:
        """Apply changes only if the job is still in the expected state"""
        if self.postgres:
            return await self.postgres.transition_job(job_id, expected_status,
                                                      changes, expected_owner)

        async with self._lock:
            job = self.jobs.get(job_id)
            if job is None or job.status != expected_status:
                return None
            if expected_owner is not None and job.lease_owner != expected_owner:
                return None
            updated = job.model_copy(update=changes, deep=True)
            self.jobs[job_id] = updated
            return updated.model_copy(deep=True)

    async def list_running_jobs(self) -> List[ExecutionJob]:
        if self.postgres:
            return await self.postgres.list_running_jobs()
        return [
            job.model_copy(deep=True) for job in self.jobs.values()
            if job.status == JobStatus.RUNNING
        ]

    async def list_jobs_for_user(self,
                                 user_id: str,
                                 agent_id: Optional[str] = None,
                                 limit: int = 50) -> List[ExecutionJob]:
        if self.postgres:
            return await self.postgres.list_jobs_for_user(
                user_id, agent_id, limit)
        jobs = [
            job for job in self.jobs.values() if job.user_id == user_id and (
                agent_id is None or job.agent_id == agent_id)
        ]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return [job.model_copy(deep=True) for job in jobs[:limit]]

    async def list_finished_jobs_for_agent(
            self, agent_id: str, since: datetime) -> List[ExecutionJob]:
        if self.postgres:
            return await self.postgres.list_finished_jobs_for_agent(
                agent_id, since)
        finished = {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.TIMED_OUT}
        return [
            job.model_copy(deep=True) for job in self.jobs.values()
            if job.agent_id == agent_id and job.status in finished
            and job.completed_at is not None and job.completed_at >= since
        ]

    async def count_jobs_by_status(self) -> Dict[str, int]:
        if self.postgres:
            return await self.postgres.count_jobs_by_status()
        counts: Dict[str, int] = {}
        for job in self.jobs.values():
            counts[job.status.value] = counts.get(job.status.value, 0) + 1
        return counts

    # Worker methods
    async def record_heartbeat(self,
                               worker_id: str,
                               merge: WorkerMerge,
                               ttl: int = 60) -> Worker:
        """Apply merge to the stored worker (None if unknown) as one atomic step"""
        if self.postgres:
            worker = await self.postgres.record_heartbeat(worker_id, merge)
        else:
            async with self._lock:
                existing = self.workers.get(worker_id)
                worker = merge(existing.model_copy() if existing else None)
                self.workers[worker_id] = worker.model_copy()

        if self.redis:
            await self.redis.mark_worker_active(worker_id, ttl=ttl)
        return worker

    async def get_worker(self, worker_id: str) -> Optional[Worker]:
        if self.postgres:
            return await self.postgres.get_worker(worker_id)
        worker = self.workers.get(worker_id)
        return worker.model_copy() if worker else None

    async def list_workers(self) -> List[Worker]:
        if self.postgres:
            return await self.postgres.list_workers()
        return [worker.model_copy() for worker in self.workers.values()]

    async def adjust_worker_load(self, worker_id: str,
                                 delta: int) -> Optional[Worker]:
        """Change a worker's load by delta (clamped at zero)"""
        if self.postgres:
            return await self.postgres.adjust_worker_load(worker_id, delta)

        async with self._lock:
            worker = self.workers.get(worker_id)
            if worker is None:
                return None
            worker.current_load = max(0, worker.current_load + delta)
            if worker.status != WorkerStatus.OFFLINE:
                worker.status = (WorkerStatus.BUSY
                                 if worker.current_load else WorkerStatus.IDLE)
            return worker.model_copy()

    async def set_worker_status(self, worker_id: str,
                                status: WorkerStatus) -> None:
        if self.postgres:
            await self.postgres.set_worker_status(worker_id, status)
        else:
            async with self._lock:
                if worker_id in self.workers:
                    self.workers[worker_id].status = status

        if self.redis and status == WorkerStatus.OFFLINE:
            await self.redis.remove_worker(worker_id)

    # Rate limit methods
    async def reserve_rate_limits(self, agent_id: str, user_id: str,
                                  evaluate: RateLimitEvaluator) -> bool:
        """Run evaluate over the (agent, user) counters as one atomic step.

        evaluate receives the current counters and returns (allowed,
        counters to store).
        """
        if self.postgres:
            return await self.postgres.reserve_rate_limits(
                agent_id, user_id, evaluate)

        async with self._lock:
            counters = [
                counter.model_copy()
                for key, counter in self.rate_limits.items()
                if key[0] == agent_id and key[1] == user_id
            ]
            allowed, updated = evaluate(counters)
            for counter in updated:
                key = (counter.agent_id, counter.user_id, counter.limit_type)
                self.rate_limits[key] = counter.model_copy()
            return allowed

    async def list_rate_limit_counters(
            self, agent_id: str, user_id: str) -> List[RateLimitCounter]:
        if self.postgres:
            return await self.postgres.list_rate_limit_counters(
                agent_id, user_id)
        return [
            counter.model_copy() for key, counter in self.rate_limits.items()
            if key[0] == agent_id and key[1] == user_id
        ]

    async def save_agent_limits(self, agent_id: str,
                                limits: Dict[LimitType, int]) -> None:
        if self.postgres:
            await self.postgres.save_agent_limits(agent_id, limits)
            return

        async with self._lock:
            self.agent_limits.setdefault(agent_id, {}).update(limits)
            for key, counter in self.rate_limits.items():
                if key[0] == agent_id and counter.limit_type in limits:
                    counter.limit = limits[counter.limit_type]

    async def get_agent_limits(self, agent_id: str) -> Dict[LimitType, int]:
        if self.postgres:
            return await self.postgres.get_agent_limits(agent_id)
        return dict(self.agent_limits.get(agent_id, {}))

    # Retry policy methods
    async def save_retry_policy(self, policy: RetryPolicy) -> None:
        if self.postgres:
            await self.postgres.save_retry_policy(policy)
        else:
            self.retry_policies[(policy.agent_id,
                                 policy.error_class)] = policy.model_copy()

    async def get_retry_policy(
            self, agent_id: str,
            error_class: ErrorClass) -> Optional[RetryPolicy]:
        if self.postgres:
            return await self.postgres.get_retry_policy(agent_id, error_class)
        policy = self.retry_policies.get((agent_id, error_class))
        return policy.model_copy() if policy else None

    # Schedule methods
    async def save_schedule(self, schedule: Schedule) -> None:
        if self.postgres:
            await self.postgres.save_schedule(schedule)
        else:
            async with self._lock:
                self.schedules[schedule.id] = schedule.model_copy(deep=True)

    async def update_schedule(
            self, schedule_id: str,
            apply: Callable[[Schedule], None]) -> Optional[Schedule]:
        """Read-modify-write a schedule as one atomic step.

        apply mutates the current stored copy in place. Returns the updated
        schedule, or None if it does not exist.
        """
        if self.postgres:
            return await self.postgres.update_schedule(schedule_id, apply)

        async with self._lock:
            stored = self.schedules.get(schedule_id)
            if stored is None:
                return None
            schedule = stored.model_copy(deep=True)
            apply(schedule)
            self.schedules[schedule_id] = schedule
            return schedule.model_copy(deep=True)

    async def get_schedule(self, schedule_id: str) -> Optional[Schedule]:
        if self.postgres:
            return await self.postgres.get_schedule(schedule_id)
        schedule = self.schedules.get(schedule_id)
        return schedule.model_copy(deep=True) if schedule else None

    async def list_schedules(self) -> List[Schedule]:
        if self.postgres:
            return await self.postgres.list_schedules()
        return [s.model_copy(deep=True) for s in self.schedules.values()]

    async def list_due_schedules(self, now: datetime) -> List[Schedule]:
        if self.postgres:
            return await self.postgres.list_due_schedules(now)
        due = [
            s for s in self.schedules.values()
            if s.active and s.next_run is not None and s.next_run <= now
        ]
        due.sort(key=lambda s: s.next_run)
        return [s.model_copy(deep=True) for s in due]

    # History methods
    async def append_history(self, entry: ExecutionHistoryEntry) -> None:
        if self.postgres:
            await self.postgres.append_history(entry)
        else:
            self.history.append(entry.model_copy(deep=True))

    async def list_history(self, job_id: str) -> List[ExecutionHistoryEntry]:
        if self.postgres:
            return await self.postgres.list_history(job_id)
        return [e.model_copy(deep=True) for e in self.history
                if e.job_id == job_id]

    # Collaborator records
    async def save_agent(self, agent: Agent) -> None:
        if self.postgres:
            await self.postgres.save_agent(agent)
        else:
            self.agents[agent.id] = agent.model_copy(deep=True)

        if self.redis:
            await self.redis.invalidate_agent(agent.id)

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        """Get agent metadata from cache or store"""
        if self.redis:
            cached = await self.redis.get_cached_agent(agent_id)
            if cached:
                return Agent(**cached)

        if self.postgres:
            agent = await self.postgres.get_agent(agent_id)
        else:
            agent = self.agents.get(agent_id)
            agent = agent.model_copy(deep=True) if agent else None

        if agent and self.redis:
            await self.redis.cache_agent(agent)
        return agent

    async def save_installation(self, installation: Installation) -> None:
        if self.postgres:
            await self.postgres.save_installation(installation)
        else:
            key = (installation.user_id, installation.agent_id)
            self.installations[key] = installation.model_copy()

    async def get_installation(self, user_id: str,
                               agent_id: str) -> Optional[Installation]:
        if self.postgres:
            return await self.postgres.get_installation(user_id, agent_id)
        installation = self.installations.get((user_id, agent_id))
        return installation.model_copy() if installation else None

    async def save_credential(self, credential: UserCredential) -> None:
        if self.postgres:
            await self.postgres.save_credential(credential)
        else:
            key = (credential.user_id, credential.field_name)
            self.credentials[key] = credential.model_copy()

    async def get_credential(self, user_id: str,
                             field_name: str) -> Optional[UserCredential]:
        if self.postgres:
            return await self.postgres.get_credential(user_id, field_name)
        credential = self.credentials.get((user_id, field_name))
        return credential.model_copy() if credential else None

    # Redis helpers
    async def record_metric(self, metric: str) -> None:
        """Increment a runtime counter when Redis is configured"""
        if self.redis:
            await self.redis.increment_metric(metric)

    async def get_metrics(self) -> Dict[str, int]:
        """Runtime counters; empty without Redis"""
        if not self.redis:
            return {}
        return {
            metric: await self.redis.get_metric(metric)
            for metric in RUNTIME_METRICS
        }

    async def list_live_workers(self) -> Optional[List[str]]:
        """Workers whose presence key has not expired, or None without Redis"""
        if not self.redis:
            return None
        return [
            worker_id for worker_id in await self.redis.get_active_workers()
            if await self.redis.is_worker_active(worker_id)
        ]

    async def acquire_lock(self, lock_key: str, ttl: int = 10) -> bool:
        """Cross-process lock; always granted without Redis"""
        if self.redis:
            return await self.redis.acquire_lock(lock_key, ttl=ttl)
        return True

    async def release_lock(self, lock_key: str) -> None:
        if self.redis:
            await self.redis.release_lock(lock_key)

    async def close(self) -> None:
        if self.postgres:
            await self.postgres.close()
        if self.redis:
            await self.redis.close()


# Global state instance
_state: Optional[StateManager] = None


def state_manager() -> StateManager:
    """Dependency injection function for FastAPI"""
    global _state
    if _state is None:
        _state = StateManager()
    return _state


async def init_state_manager(database_url: Optional[str] = None,
                             redis_url: Optional[str] = None) -> StateManager:
    """Initialize state manager with database backends"""
    global _state

    postgres = None
    redis_cache = None

    if database_url:
        postgres = PostgresDB(database_url)
        await postgres.init_db()

    if redis_url:
        redis_cache = RedisCache(redis_url)
        await redis_cache.connect()

    _state = StateManager(postgres=postgres, redis=redis_cache)
    logger.info(
        f"State manager ready (PostgreSQL: {bool(postgres)}, Redis: {bool(redis_cache)})"
    )
    return _state
