"""Dependency injection and singleton initialization"""
from coordinator.core.credentials import CredentialResolver
from coordinator.core.execution_queue import ExecutionQueue
from coordinator.core.history import ExecutionHistoryRecorder
from coordinator.core.lease_manager import LeaseManager
from coordinator.core.rate_limiter import RateLimiter
from coordinator.core.retry_policy import RetryPolicyEngine
from coordinator.core.scheduler import Scheduler
from coordinator.core.settings import RuntimeSettings
from coordinator.core.state_manager import state_manager

# Singletons - initialized once on startup
_settings = None
_credential_resolver = None
_rate_limiter = None
_retry_engine = None
_history = None
_execution_queue = None
_lease_manager = None
_scheduler = None


def get_settings() -> RuntimeSettings:
    global _settings
    if _settings is None:
        _settings = RuntimeSettings.from_env()
    return _settings


def get_credential_resolver() -> CredentialResolver:
    global _credential_resolver
    if _credential_resolver is None:
        _credential_resolver = CredentialResolver(
            state_manager(),
            get_settings().credential_encryption_key)
    return _credential_resolver


def get_rate_limiter() -> RateLimiter:
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter(state_manager(),
                                    get_settings().default_rate_limits)
    return _rate_limiter


def get_retry_engine() -> RetryPolicyEngine:
    global _retry_engine
    if _retry_engine is None:
        _retry_engine = RetryPolicyEngine(state_manager())
    return _retry_engine


def get_history() -> ExecutionHistoryRecorder:
    global _history
    if _history is None:
        _history = ExecutionHistoryRecorder(state_manager())
    return _history


def get_execution_queue() -> ExecutionQueue:
    """Get or create ExecutionQueue singleton"""
    global _execution_queue
    if _execution_queue is None:
        settings = get_settings()
        _execution_queue = ExecutionQueue(
            state_manager(),
            get_rate_limiter(),
            get_retry_engine(),
            get_credential_resolver(),
            get_history(),
            default_timeout_seconds=settings.default_job_timeout_seconds,
            default_max_attempts=settings.default_max_attempts)
        # The scheduler subscribes to terminal jobs on construction
        get_scheduler()
    return _execution_queue


def get_lease_manager() -> LeaseManager:
    """Get or create LeaseManager singleton"""
    global _lease_manager
    if _lease_manager is None:
        _lease_manager = LeaseManager(state_manager(),
                                      get_execution_queue(),
                                      get_settings().lease_grace_seconds)
    return _lease_manager


def get_scheduler() -> Scheduler:
    """Get or create Scheduler singleton"""
    global _scheduler
    if _scheduler is None:
        queue = get_execution_queue()
        # Building the queue may already have created the scheduler
        if _scheduler is None:
            _scheduler = Scheduler(state_manager(), queue)
    return _scheduler


def reset_dependencies() -> None:
    """Drop all singletons so they are rebuilt against the current state
    manager (after init_state_manager, or between tests)"""
    global _settings, _credential_resolver, _rate_limiter, _retry_engine
    global _history, _execution_queue, _lease_manager, _scheduler
    _settings = None
    _credential_resolver = None
    _rate_limiter = None
    _retry_engine = None
    _history = None
    _execution_queue = None
    _lease_manager = None
    _scheduler = None
