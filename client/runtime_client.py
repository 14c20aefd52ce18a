"""Client for the agent execution runtime's trigger and history surfaces."""
import requests
import time
from pathlib import Path
from datetime import datetime
from typing import List, Dict, Any, Optional
from shared.enums import TERMINAL_STATUSES, TriggerType, InstallationStatus
from shared.models import (Agent, ExecutionJob, ExecutionHistoryEntry,
                           Installation, Schedule, Worker)
from shared.schemas import AgentAnalytics, PolicyDocument


class RuntimeClient:
    """Client for interacting with the runtime coordinator."""

    def __init__(self, base_url: str = "http://localhost:8000"):
        """Initialize the client."""
        self.base_url = base_url

    def register_agent(self,
                       agent_id: str,
                       name: str,
                       webhook_url: str,
                       required_credentials: Optional[List[str]] = None
                       ) -> Agent:
        """Mirror an agent's catalog entry into the runtime."""
        agent = Agent(id=agent_id,
                      name=name,
                      webhook_url=webhook_url,
                      required_credentials=required_credentials or [])
        response = requests.put(f"{self.base_url}/agents/{agent_id}",
                                json=agent.model_dump(mode="json"))
        response.raise_for_status()
        return Agent.model_validate(response.json())

    def install_agent(self,
                      agent_id: str,
                      user_id: str,
                      status: InstallationStatus = InstallationStatus.ACTIVE
                      ) -> Installation:
        response = requests.put(
            f"{self.base_url}/agents/{agent_id}/installations/{user_id}",
            json={"status": status.value})
        response.raise_for_status()
        return Installation.model_validate(response.json())

    def store_credential(self,
                         agent_id: str,
                         user_id: str,
                         field_name: str,
                         value: str,
                         expires_at: Optional[datetime] = None) -> None:
        """Store a user secret; the coordinator encrypts it at rest."""
        body = {"value": value}
        if expires_at is not None:
            body["expires_at"] = expires_at.isoformat()
        response = requests.put(
            f"{self.base_url}/agents/{agent_id}/credentials/{user_id}/{field_name}",
            json=body)
        response.raise_for_status()

    def get_workers(self) -> List[Worker]:
        """Get list of known workers."""
        response = requests.get(f"{self.base_url}/workers")
        response.raise_for_status()
        return [Worker.model_validate(worker) for worker in response.json()]

    def enqueue(self,
                agent_id: str,
                user_id: str,
                trigger_type: TriggerType = TriggerType.API,
                payload: Optional[Dict[str, Any]] = None,
                priority: int = 5,
                scheduled_for: Optional[datetime] = None) -> str:
        """Trigger an agent execution.

        Returns:
            str: The job id

        Raises:
            requests.HTTPError: On admission failure (429 rate limited,
                403 not entitled, 404 unknown agent, 409 inactive agent,
                422 missing credential)
        """
        body = {
            "agent_id": agent_id,
            "user_id": user_id,
            "trigger_type": trigger_type.value,
            "payload": payload or {},
            "priority": priority,
        }
        if scheduled_for is not None:
            body["scheduled_for"] = scheduled_for.isoformat()

        response = requests.post(f"{self.base_url}/jobs", json=body)
        response.raise_for_status()
        return response.json()["job_id"]

    def get_job(self, job_id: str) -> ExecutionJob:
        response = requests.get(f"{self.base_url}/jobs/{job_id}")
        response.raise_for_status()
        return ExecutionJob.model_validate(response.json())

    def get_job_history(self, job_id: str) -> List[ExecutionHistoryEntry]:
        response = requests.get(f"{self.base_url}/jobs/{job_id}/history")
        response.raise_for_status()
        return [
            ExecutionHistoryEntry.model_validate(entry)
            for entry in response.json()
        ]

    def list_jobs(self,
                  user_id: str,
                  agent_id: Optional[str] = None,
                  limit: int = 50) -> List[ExecutionJob]:
        """Execution history for a user, most recent first."""
        params = {"user_id": user_id, "limit": limit}
        if agent_id:
            params["agent_id"] = agent_id
        response = requests.get(f"{self.base_url}/jobs", params=params)
        response.raise_for_status()
        return [ExecutionJob.model_validate(job) for job in response.json()]

    def cancel_job(self, job_id: str) -> ExecutionJob:
        """Cancel a queued job (409 if it was already claimed)."""
        response = requests.post(f"{self.base_url}/jobs/{job_id}/cancel")
        response.raise_for_status()
        return ExecutionJob.model_validate(response.json())

    def wait_for_job(self,
                     job_id: str,
                     timeout: float = 60,
                     interval: float = 0.5) -> ExecutionJob:
        """Poll until the job reaches a terminal state.

        Raises:
            TimeoutError: If the job is still active after timeout seconds
        """
        deadline = time.monotonic() + timeout
        while True:
            job = self.get_job(job_id)
            if job.status in TERMINAL_STATUSES:
                return job
            if time.monotonic() >= deadline:
                raise TimeoutError(
                    f"Job {job_id} still {job.status.value} after {timeout}s")
            time.sleep(interval)

    def create_schedule(self,
                        agent_id: str,
                        user_id: str,
                        name: str,
                        cron_expression: str,
                        timezone: str = "UTC",
                        payload: Optional[Dict[str, Any]] = None,
                        max_consecutive_failures: int = 5) -> Schedule:
        response = requests.post(f"{self.base_url}/schedules",
                                 json={
                                     "agent_id": agent_id,
                                     "user_id": user_id,
                                     "name": name,
                                     "cron_expression": cron_expression,
                                     "timezone": timezone,
                                     "payload": payload or {},
                                     "max_consecutive_failures":
                                     max_consecutive_failures,
                                 })
        response.raise_for_status()
        return Schedule.model_validate(response.json())

    def set_schedule_active(self, schedule_id: str, active: bool) -> Schedule:
        response = requests.patch(f"{self.base_url}/schedules/{schedule_id}",
                                  json={"active": active})
        response.raise_for_status()
        return Schedule.model_validate(response.json())

    def load_policies_from_yaml(self, agent_id: str,
                                yaml_path: str) -> PolicyDocument:
        """Load retry and rate-limit policies from a YAML file.

        Raises:
            FileNotFoundError: If the YAML file doesn't exist
            requests.HTTPError: If the API request fails
        """
        path = Path(yaml_path)
        if not path.exists():
            raise FileNotFoundError(f"YAML file not found: {yaml_path}")

        response = requests.post(
            f"{self.base_url}/agents/{agent_id}/policies/from-yaml",
            data=path.read_text(),
            headers={"Content-Type": "text/plain"})
        response.raise_for_status()
        return PolicyDocument.model_validate(response.json())

    def get_analytics(self, agent_id: str, days: int = 30) -> AgentAnalytics:
        response = requests.get(f"{self.base_url}/agents/{agent_id}/analytics",
                                params={"days": days})
        response.raise_for_status()
        return AgentAnalytics.model_validate(response.json())
