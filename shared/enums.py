"""Enum definitions for the agent execution runtime"""
from enum import Enum


class JobStatus(str, Enum):
    """Status values for an execution job"""
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    JobStatus.COMPLETED,
    JobStatus.FAILED,
    JobStatus.TIMED_OUT,
    JobStatus.CANCELLED,
})


class TriggerType(str, Enum):
    """What caused a job to be enqueued"""
    WEBHOOK = "webhook"
    SCHEDULE = "schedule"
    MANUAL = "manual"
    API = "api"
    TEST = "test"


class WorkerStatus(str, Enum):
    """Status values for worker availability"""
    IDLE = "idle"
    BUSY = "busy"
    OFFLINE = "offline"


class ErrorClass(str, Enum):
    """Classified cause of a failed dispatch"""
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    SERVER_ERROR = "server_error"
    RATE_LIMITED_BY_REMOTE = "rate_limited_by_remote"
    CLIENT_ERROR = "client_error"
    MALFORMED_PAYLOAD = "malformed_payload"
    MISSING_CREDENTIAL = "missing_credential"
    WORKER_LOST = "worker_lost"


RETRYABLE_ERROR_CLASSES = frozenset({
    ErrorClass.NETWORK_ERROR,
    ErrorClass.TIMEOUT,
    ErrorClass.SERVER_ERROR,
    ErrorClass.RATE_LIMITED_BY_REMOTE,
    ErrorClass.WORKER_LOST,
})


class OutcomeKind(str, Enum):
    """Result of one dispatch attempt as reported to Complete"""
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"


class BackoffStrategy(str, Enum):
    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


class LimitType(str, Enum):
    """Rate limit windows"""
    PER_MINUTE = "per_minute"
    PER_HOUR = "per_hour"
    PER_DAY = "per_day"


WINDOW_SECONDS = {
    LimitType.PER_MINUTE: 60,
    LimitType.PER_HOUR: 3600,
    LimitType.PER_DAY: 86400,
}


class HistoryPhase(str, Enum):
    INIT = "init"
    DISPATCHING = "dispatching"
    AWAITING_RESPONSE = "awaiting_response"
    COMPLETED = "completed"
    ERROR = "error"


class AgentStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class InstallationStatus(str, Enum):
    INSTALLED = "installed"
    ACTIVE = "active"
    PAUSED = "paused"
    UNINSTALLED = "uninstalled"


class CredentialStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


class MessageType(str, Enum):
    """Types of messages exchanged between coordinator and workers"""
    # Worker -> Coordinator
    REGISTER = "register"
    HEARTBEAT = "heartbeat"
    READY = "ready"
    JOB_RESULT = "job_result"

    # Coordinator -> Worker
    REGISTRATION_ACK = "registration_ack"
    HEARTBEAT_ACK = "heartbeat_ack"
    JOB_ASSIGNMENT = "job_assignment"
