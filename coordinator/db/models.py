"""SQLAlchemy ORM models for persistent storage"""
from datetime import datetime, UTC
from sqlalchemy import (Column, String, DateTime, JSON, Integer, Float, Boolean,
                        Enum as SQLEnum, Index)
from sqlalchemy.orm import declarative_base
from shared.enums import (JobStatus, TriggerType, WorkerStatus, ErrorClass,
                          BackoffStrategy, LimitType, HistoryPhase,
                          AgentStatus, InstallationStatus, CredentialStatus)

Base = declarative_base()


class ExecutionJobModel(Base):
    """Execution queue; terminal rows are kept as history"""
    __tablename__ = "execution_jobs"
    __table_args__ = (
        Index("ix_execution_jobs_claim", "status", "priority",
              "scheduled_for"),
        Index("ix_execution_jobs_user_agent", "user_id", "agent_id",
              "created_at"),
    )

    id = Column(String, primary_key=True)
    agent_id = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=False)
    trigger_type = Column(SQLEnum(TriggerType), nullable=False)
    trigger_payload = Column(JSON, nullable=False, default=dict)
    priority = Column(Integer, nullable=False, default=5)
    scheduled_for = Column(DateTime(timezone=True), nullable=False)
    attempt = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    timeout_seconds = Column(Integer, nullable=False, default=300)
    status = Column(SQLEnum(JobStatus), nullable=False)
    lease_owner = Column(String, nullable=True, index=True)
    schedule_id = Column(String, nullable=True, index=True)
    result = Column(JSON, nullable=True)
    error_message = Column(String, nullable=True)
    error_class = Column(SQLEnum(ErrorClass), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    duration_ms = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class WorkerModel(Base):
    """Live dispatch workers and their leases"""
    __tablename__ = "workers"

    id = Column(String, primary_key=True)
    status = Column(SQLEnum(WorkerStatus), nullable=False)
    capacity = Column(Integer, nullable=False, default=5)
    current_load = Column(Integer, nullable=False, default=0)
    last_heartbeat = Column(DateTime(timezone=True), nullable=False)
    registered_at = Column(DateTime(timezone=True), nullable=False)


class RateLimitCounterModel(Base):
    """Per (agent, user, window) admission counter"""
    __tablename__ = "rate_limit_counters"

    agent_id = Column(String, primary_key=True)
    user_id = Column(String, primary_key=True)
    limit_type = Column(SQLEnum(LimitType), primary_key=True)
    count = Column(Integer, nullable=False, default=0)
    limit = Column(Integer, nullable=False)
    window_reset_at = Column(DateTime(timezone=True), nullable=False)
    exceeded_count = Column(Integer, nullable=False, default=0)
    last_exceeded_at = Column(DateTime(timezone=True), nullable=True)


class AgentRateLimitModel(Base):
    """Configured ceilings for an agent, applied to new counters"""
    __tablename__ = "agent_rate_limits"

    agent_id = Column(String, primary_key=True)
    limit_type = Column(SQLEnum(LimitType), primary_key=True)
    limit = Column(Integer, nullable=False)


class RetryPolicyModel(Base):
    """Retry policy per (agent, error class)"""
    __tablename__ = "retry_policies"

    agent_id = Column(String, primary_key=True)
    error_class = Column(SQLEnum(ErrorClass), primary_key=True)
    max_retries = Column(Integer, nullable=False, default=3)
    backoff_strategy = Column(SQLEnum(BackoffStrategy), nullable=False)
    initial_delay = Column(Float, nullable=False, default=5.0)
    max_delay = Column(Float, nullable=False, default=300.0)
    jitter_enabled = Column(Boolean, nullable=False, default=True)


class ScheduleModel(Base):
    """Recurring cron triggers"""
    __tablename__ = "schedules"
    __table_args__ = (Index("ix_schedules_due", "active", "next_run"), )

    id = Column(String, primary_key=True)
    agent_id = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=False)
    name = Column(String, nullable=False)
    cron_expression = Column(String, nullable=False)
    timezone = Column(String, nullable=False, default="UTC")
    payload = Column(JSON, nullable=False, default=dict)
    priority = Column(Integer, nullable=False, default=5)
    next_run = Column(DateTime(timezone=True), nullable=True)
    last_run = Column(DateTime(timezone=True), nullable=True)
    run_count = Column(Integer, nullable=False, default=0)
    consecutive_failures = Column(Integer, nullable=False, default=0)
    max_consecutive_failures = Column(Integer, nullable=False, default=5)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class ExecutionHistoryModel(Base):
    """Append-only phase log per job"""
    __tablename__ = "execution_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String, nullable=False, index=True)
    phase = Column(SQLEnum(HistoryPhase), nullable=False)
    duration_ms = Column(Integer, nullable=True)
    log_lines = Column(JSON, nullable=False, default=list)
    timestamp = Column(DateTime(timezone=True),
                       nullable=False,
                       default=lambda: datetime.now(UTC))


# ============================================================================
# External collaborators (catalog, installations, credential vault)
# ============================================================================


class AgentModel(Base):
    __tablename__ = "agents"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    webhook_url = Column(String, nullable=False)
    status = Column(SQLEnum(AgentStatus), nullable=False)
    required_credentials = Column(JSON, nullable=False, default=list)


class InstallationModel(Base):
    __tablename__ = "installations"

    user_id = Column(String, primary_key=True)
    agent_id = Column(String, primary_key=True)
    status = Column(SQLEnum(InstallationStatus), nullable=False)


class UserCredentialModel(Base):
    __tablename__ = "user_credentials"

    user_id = Column(String, primary_key=True)
    field_name = Column(String, primary_key=True)
    encrypted_value = Column(String, nullable=False)
    status = Column(SQLEnum(CredentialStatus), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)
