"""Pytest fixtures for E2E tests.

These run against a live coordinator with at least one worker connected:

    E2E_COORDINATOR_URL     coordinator base URL (tests skip when unset)
    E2E_AGENT_WEBHOOK_URL   an endpoint answering POSTs with 2xx JSON
"""
import os
import time
import uuid
import requests
import pytest
from typing import Callable, Dict

from client.runtime_client import RuntimeClient

MAX_STARTUP_WAIT = 60  # seconds


def _wait_for_coordinator(url: str) -> None:
    """Wait for the coordinator to be ready."""
    print(f"⏳ Waiting for coordinator at {url}...")

    start_time = time.time()
    while time.time() - start_time < MAX_STARTUP_WAIT:
        try:
            response = requests.get(f"{url}/health", timeout=2)
            if response.status_code == 200:
                print("✓ Coordinator is healthy")
                return
        except requests.exceptions.RequestException:
            pass
        time.sleep(1)

    raise TimeoutError(
        f"Coordinator did not become healthy within {MAX_STARTUP_WAIT} seconds"
    )


@pytest.fixture(scope="session")
def coordinator_url() -> str:
    """Get the coordinator URL."""
    url = os.getenv("E2E_COORDINATOR_URL")
    if not url:
        pytest.skip("E2E_COORDINATOR_URL not set - skipping E2E tests")
    _wait_for_coordinator(url)
    return url.rstrip("/")


@pytest.fixture(scope="session")
def agent_webhook_url() -> str:
    url = os.getenv("E2E_AGENT_WEBHOOK_URL")
    if not url:
        pytest.skip("E2E_AGENT_WEBHOOK_URL not set")
    return url


@pytest.fixture
def e2e_client(coordinator_url: str) -> RuntimeClient:
    """Create a runtime client for E2E tests."""
    return RuntimeClient(base_url=coordinator_url)


@pytest.fixture
def wait_for_workers(e2e_client: RuntimeClient, min_workers: int = 1) -> None:
    """Wait for minimum number of workers to be connected."""
    print(f"⏳ Waiting for at least {min_workers} workers...")

    workers = []
    start_time = time.time()
    while time.time() - start_time < 30:
        workers = [
            w for w in e2e_client.get_workers() if w.status.value != "offline"
        ]
        if len(workers) >= min_workers:
            print(f"✓ {len(workers)} workers connected")
            return
        time.sleep(1)

    raise TimeoutError(
        f"Expected at least {min_workers} workers, but only got {len(workers)}"
    )


@pytest.fixture
def installed_agent(e2e_client: RuntimeClient) -> Callable:
    """Factory registering a fresh agent installed for a fresh user.

    Returns a dict with agent_id and user_id; ids are unique per call so
    runs against a shared coordinator do not collide on rate limits.
    """

    def _install(webhook_url: str,
                 required_credentials: list[str] | None = None,
                 secrets: Dict[str, str] | None = None) -> Dict[str, str]:
        suffix = uuid.uuid4().hex[:8]
        agent_id = f"e2e-agent-{suffix}"
        user_id = f"e2e-user-{suffix}"
        required = (["api_key"] if required_credentials is None else
                    required_credentials)

        e2e_client.register_agent(agent_id, "E2E Agent", webhook_url, required)
        e2e_client.install_agent(agent_id, user_id)
        for field_name, value in (secrets if secrets is not None else {
                name: f"e2e-{name}"
                for name in required
        }).items():
            e2e_client.store_credential(agent_id, user_id, field_name, value)
        return {"agent_id": agent_id, "user_id": user_id}

    return _install
