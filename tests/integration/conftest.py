"""Integration test fixtures"""
import pytest
from typing import Callable

from cryptography.fernet import Fernet
from fastapi.testclient import TestClient

import coordinator.core.state_manager as state_module
from coordinator.core.dependencies import reset_dependencies
from coordinator.core.state_manager import StateManager
from coordinator.main import app

AGENT_ID = "agent-a"
USER_ID = "user-u"


@pytest.fixture
def client(monkeypatch: pytest.MonkeyPatch) -> TestClient:
    """Test client over a fresh in-memory coordinator"""
    monkeypatch.setenv("CREDENTIAL_ENCRYPTION_KEY",
                       Fernet.generate_key().decode())
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("REDIS_URL", raising=False)
    monkeypatch.setattr(state_module, "_state", None)
    reset_dependencies()
    yield TestClient(app)
    reset_dependencies()


@pytest.fixture
def registered_agent(client: TestClient) -> Callable:
    """Register an agent, install it for a user and store its credentials"""

    def _register(agent_id: str = AGENT_ID,
                  user_id: str = USER_ID,
                  required_credentials: list[str] | None = None,
                  secrets: dict[str, str] | None = None) -> dict:
        required = (["api_key"] if required_credentials is None else
                    required_credentials)
        secrets = secrets if secrets is not None else {
            name: f"secret-{name}"
            for name in required
        }

        response = client.put(
            f"/agents/{agent_id}",
            json={
                "id": agent_id,
                "name": "Agent A",
                "webhook_url": "https://agents.example.com/hooks/a",
                "required_credentials": required,
            })
        assert response.status_code == 200
        agent = response.json()

        response = client.put(f"/agents/{agent_id}/installations/{user_id}",
                              json={"status": "active"})
        assert response.status_code == 200

        for field_name, value in secrets.items():
            response = client.put(
                f"/agents/{agent_id}/credentials/{user_id}/{field_name}",
                json={"value": value})
            assert response.status_code == 204
        return agent

    return _register


@pytest.fixture
def enqueue_job(client: TestClient) -> Callable:
    """POST /jobs and return the response"""

    def _enqueue(agent_id: str = AGENT_ID, user_id: str = USER_ID, **fields):
        body = {
            "agent_id": agent_id,
            "user_id": user_id,
            "trigger_type": fields.pop("trigger_type", "api"),
        }
        body.update(fields)
        return client.post("/jobs", json=body)

    return _enqueue


@pytest.fixture
async def full_state_manager(postgres_db, redis_cache) -> StateManager:
    """StateManager backed by both PostgreSQL and Redis"""
    return StateManager(postgres=postgres_db, redis=redis_cache)
