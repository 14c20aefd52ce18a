"""Root conftest.py - Shared fixtures for all tests"""
import pytest
import os
from datetime import datetime, UTC
from typing import Callable, AsyncGenerator
from unittest.mock import MagicMock, AsyncMock

from cryptography.fernet import Fernet

from coordinator.core.credentials import CredentialResolver, encrypt_secret
from coordinator.core.execution_queue import ExecutionQueue
from coordinator.core.history import ExecutionHistoryRecorder
from coordinator.core.lease_manager import LeaseManager
from coordinator.core.rate_limiter import RateLimiter
from coordinator.core.retry_policy import RetryPolicyEngine, DEFAULT_POLICY
from coordinator.core.scheduler import Scheduler
from coordinator.core.state_manager import StateManager
from shared.enums import JobStatus, TriggerType, LimitType
from shared.models import (ExecutionJob, Agent, Installation,
                           UserCredential)

AGENT_ID = "agent-a"
USER_ID = "user-u"
WEBHOOK_URL = "https://agents.example.com/hooks/a"

# ============================================================================
# Database Fixtures (for integration tests)
# ============================================================================


@pytest.fixture
async def postgres_db() -> AsyncGenerator:
    """Create a test database connection"""
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        pytest.skip("DATABASE_URL not set - skipping PostgreSQL tests")

    from coordinator.db.postgres import PostgresDB
    db = PostgresDB(database_url)
    await db.init_db()
    yield db
    await db.close()


@pytest.fixture
async def redis_cache() -> AsyncGenerator:
    """Create a test Redis connection"""
    redis_url = os.getenv("REDIS_URL")
    if not redis_url:
        pytest.skip("REDIS_URL not set - skipping Redis tests")

    from coordinator.db.redis import RedisCache
    cache = RedisCache(redis_url)
    await cache.connect()
    yield cache
    await cache.close()


# ============================================================================
# Data Factories
# ============================================================================


@pytest.fixture
def job_factory() -> Callable:
    """Factory for creating test ExecutionJob instances"""

    def _create_job(job_id: str = "test-job-1",
                    agent_id: str = AGENT_ID,
                    user_id: str = USER_ID,
                    status: JobStatus = JobStatus.QUEUED,
                    **kwargs) -> ExecutionJob:
        now = datetime.now(UTC)
        kwargs.setdefault("scheduled_for", now)
        kwargs.setdefault("created_at", now)
        kwargs.setdefault("updated_at", now)
        return ExecutionJob(id=job_id,
                            agent_id=agent_id,
                            user_id=user_id,
                            trigger_type=kwargs.pop("trigger_type",
                                                    TriggerType.WEBHOOK),
                            status=status,
                            **kwargs)

    return _create_job


# ============================================================================
# Component Fixtures
# ============================================================================


@pytest.fixture
def fernet_key() -> str:
    return Fernet.generate_key().decode()


@pytest.fixture
def state_manager() -> StateManager:
    """Create a fresh StateManager instance for testing"""
    return StateManager()


@pytest.fixture
def rate_limiter(state_manager: StateManager) -> RateLimiter:
    return RateLimiter(state_manager, {
        LimitType.PER_MINUTE: 60,
        LimitType.PER_HOUR: 1000,
        LimitType.PER_DAY: 10000,
    })


@pytest.fixture
def retry_engine(state_manager: StateManager) -> RetryPolicyEngine:
    """Retry engine with jitter off so delays are deterministic"""
    return RetryPolicyEngine(
        state_manager,
        default_policy=DEFAULT_POLICY.model_copy(
            update={"jitter_enabled": False}))


@pytest.fixture
def credential_resolver(state_manager: StateManager,
                        fernet_key: str) -> CredentialResolver:
    return CredentialResolver(state_manager, fernet_key)


@pytest.fixture
def history(state_manager: StateManager) -> ExecutionHistoryRecorder:
    return ExecutionHistoryRecorder(state_manager)


@pytest.fixture
def execution_queue(state_manager: StateManager, rate_limiter: RateLimiter,
                    retry_engine: RetryPolicyEngine,
                    credential_resolver: CredentialResolver,
                    history: ExecutionHistoryRecorder) -> ExecutionQueue:
    return ExecutionQueue(state_manager, rate_limiter, retry_engine,
                          credential_resolver, history)


@pytest.fixture
def scheduler(state_manager: StateManager,
              execution_queue: ExecutionQueue) -> Scheduler:
    return Scheduler(state_manager, execution_queue)


@pytest.fixture
def lease_manager(state_manager: StateManager,
                  execution_queue: ExecutionQueue) -> LeaseManager:
    return LeaseManager(state_manager, execution_queue, grace_seconds=60)


@pytest.fixture
def seed_agent(state_manager: StateManager, fernet_key: str) -> Callable:
    """Seed an agent, an active installation and its credentials"""

    async def _seed(agent_id: str = AGENT_ID,
                    user_id: str = USER_ID,
                    required_credentials: list[str] | None = None,
                    secrets: dict[str, str] | None = None,
                    **agent_kwargs) -> Agent:
        required = (["api_key"] if required_credentials is None else
                    required_credentials)
        secrets = secrets if secrets is not None else {
            name: f"secret-{name}"
            for name in required
        }
        agent = Agent(id=agent_id,
                      name=agent_kwargs.pop("name", "Agent A"),
                      webhook_url=agent_kwargs.pop("webhook_url", WEBHOOK_URL),
                      required_credentials=required,
                      **agent_kwargs)
        await state_manager.save_agent(agent)
        await state_manager.save_installation(
            Installation(user_id=user_id, agent_id=agent_id))
        for field_name, value in secrets.items():
            await state_manager.save_credential(
                UserCredential(user_id=user_id,
                               field_name=field_name,
                               encrypted_value=encrypt_secret(
                                   fernet_key, value)))
        return agent

    return _seed


# ============================================================================
# Mock Fixtures
# ============================================================================


@pytest.fixture
def mock_websocket() -> MagicMock:
    """Mock coordinator connection as seen by a worker"""
    ws = MagicMock()
    ws.send = AsyncMock()
    ws.close = AsyncMock()
    return ws
