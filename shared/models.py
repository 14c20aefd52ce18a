"""Domain model definitions for jobs, workers, limits, policies and schedules"""
from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime, date

from .enums import (
    JobStatus,
    TriggerType,
    WorkerStatus,
    ErrorClass,
    OutcomeKind,
    BackoffStrategy,
    LimitType,
    HistoryPhase,
    AgentStatus,
    InstallationStatus,
    CredentialStatus,
)


class ExecutionJob(BaseModel):
    """A unit of work: one webhook call for an agent+user trigger"""
    id: str
    agent_id: str
    user_id: str
    trigger_type: TriggerType
    trigger_payload: Dict[str, Any] = {}
    priority: int = Field(default=5, ge=1, le=10)
    scheduled_for: datetime
    attempt: int = 0
    max_attempts: int = 3
    timeout_seconds: int = 300
    status: JobStatus = JobStatus.QUEUED
    lease_owner: Optional[str] = None
    schedule_id: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    error_class: Optional[ErrorClass] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    created_at: datetime
    updated_at: datetime


class JobOutcome(BaseModel):
    """Outcome of one dispatch attempt, fed into Complete"""
    kind: OutcomeKind
    result: Optional[Dict[str, Any]] = None
    error_class: Optional[ErrorClass] = None
    message: Optional[str] = None
    status_code: Optional[int] = None
    duration_ms: Optional[int] = None

    @classmethod
    def success(cls, result: Dict[str, Any], **kwargs) -> "JobOutcome":
        return cls(kind=OutcomeKind.SUCCESS, result=result, **kwargs)

    @classmethod
    def failure(cls, error_class: ErrorClass, message: str,
                **kwargs) -> "JobOutcome":
        return cls(kind=OutcomeKind.FAILURE,
                   error_class=error_class,
                   message=message,
                   **kwargs)

    @classmethod
    def timeout(cls, message: str = "Webhook call timed out",
                **kwargs) -> "JobOutcome":
        return cls(kind=OutcomeKind.TIMEOUT,
                   error_class=ErrorClass.TIMEOUT,
                   message=message,
                   **kwargs)


class Worker(BaseModel):
    """A dispatch worker process holding job leases"""
    id: str
    status: WorkerStatus = WorkerStatus.IDLE
    capacity: int = 5
    current_load: int = 0
    last_heartbeat: datetime
    registered_at: datetime


class RateLimitCounter(BaseModel):
    """Request count for one (agent, user, window)"""
    agent_id: str
    user_id: str
    limit_type: LimitType
    count: int = 0
    limit: int
    window_reset_at: datetime
    exceeded_count: int = 0
    last_exceeded_at: Optional[datetime] = None


class RetryPolicy(BaseModel):
    """Retry behaviour for one (agent, error class)"""
    agent_id: Optional[str] = None
    error_class: Optional[ErrorClass] = None
    max_retries: int = 3
    backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    initial_delay: float = 5.0  # seconds
    max_delay: float = 300.0
    jitter_enabled: bool = True


class Schedule(BaseModel):
    """Recurring cron trigger for an agent+user"""
    id: str
    agent_id: str
    user_id: str
    name: str
    cron_expression: str
    timezone: str = "UTC"
    payload: Dict[str, Any] = {}
    priority: int = Field(default=5, ge=1, le=10)
    next_run: Optional[datetime] = None
    last_run: Optional[datetime] = None
    run_count: int = 0
    consecutive_failures: int = 0
    max_consecutive_failures: int = 5
    active: bool = True
    created_at: datetime
    updated_at: datetime


class ExecutionHistoryEntry(BaseModel):
    """Append-only record of one phase of a job"""
    job_id: str
    phase: HistoryPhase
    duration_ms: Optional[int] = None
    log_lines: List[str] = []
    timestamp: datetime


class Agent(BaseModel):
    """Agent metadata owned by the marketplace catalog"""
    id: str
    name: str
    webhook_url: str
    status: AgentStatus = AgentStatus.ACTIVE
    required_credentials: List[str] = []


class Installation(BaseModel):
    """A user's installation of an agent"""
    user_id: str
    agent_id: str
    status: InstallationStatus = InstallationStatus.ACTIVE


class UserCredential(BaseModel):
    """Encrypted secret for one integration field of a user"""
    user_id: str
    field_name: str
    encrypted_value: str
    status: CredentialStatus = CredentialStatus.ACTIVE
    expires_at: Optional[datetime] = None


class DailyAgentStats(BaseModel):
    """Daily execution rollup for developer dashboards"""
    agent_id: str
    date: date
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    unique_users: int = 0
    avg_duration_ms: float = 0.0
