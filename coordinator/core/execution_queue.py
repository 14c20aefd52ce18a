"""Execution queue: admission, atomic claim, completion and retry transitions"""
import logging
import uuid
from datetime import datetime, timedelta, UTC
from typing import Any, Awaitable, Callable, Dict, List, Optional

from coordinator.core.credentials import CredentialResolver
from coordinator.core.errors import (AgentNotFound, AgentInactive,
                                     UserNotEntitled, RateLimitExceeded,
                                     JobNotFound, InvalidJobTransition)
from coordinator.core.history import ExecutionHistoryRecorder
from coordinator.core.rate_limiter import RateLimiter
from coordinator.core.retry_policy import RetryPolicyEngine
from coordinator.core.state_manager import StateManager
from shared.enums import (JobStatus, TriggerType, OutcomeKind, ErrorClass,
                          HistoryPhase, AgentStatus, InstallationStatus)
from shared.models import ExecutionJob, JobOutcome

logger = logging.getLogger(__name__)

TerminalListener = Callable[[ExecutionJob], Awaitable[None]]


def _as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class ExecutionQueue:
    """Durable job queue shared by triggers, the scheduler and workers.

    Every mutation goes through the store's atomic primitives: claim is a
    single select-and-transition, and completion is a compare-and-swap on
    (status=running, lease owner), so a late or duplicate result can never
    overwrite a job that was already reaped or finished.
    """

    def __init__(self,
                 state: StateManager,
                 rate_limiter: RateLimiter,
                 retry_engine: RetryPolicyEngine,
                 credentials: CredentialResolver,
                 history: ExecutionHistoryRecorder,
                 default_timeout_seconds: int = 300,
                 default_max_attempts: int = 3):
        self.state = state
        self.rate_limiter = rate_limiter
        self.retry_engine = retry_engine
        self.credentials = credentials
        self.history = history
        self.default_timeout_seconds = default_timeout_seconds
        self.default_max_attempts = default_max_attempts
        self._terminal_listeners: List[TerminalListener] = []

    def add_terminal_listener(self, listener: TerminalListener) -> None:
        """Register a coroutine called with every job that reaches a
        completed, failed or timed_out state"""
        self._terminal_listeners.append(listener)

    # ========================================================================
    # Enqueue
    # ========================================================================

    async def enqueue(self,
                      agent_id: str,
                      user_id: str,
                      trigger_type: TriggerType,
                      payload: Optional[Dict[str, Any]] = None,
                      priority: int = 5,
                      scheduled_for: Optional[datetime] = None,
                      timeout_seconds: Optional[int] = None,
                      max_attempts: Optional[int] = None,
                      schedule_id: Optional[str] = None,
                      now: Optional[datetime] = None) -> str:
        """Admit a trigger and create a queued job.

        Returns:
            str: The new job id

        Raises:
            AgentNotFound, AgentInactive, UserNotEntitled: Entitlement checks
            MissingCredential: A required credential cannot be resolved
            RateLimitExceeded: An admission window is exhausted
            ValueError: Priority outside 1..10
        """
        if not 1 <= priority <= 10:
            raise ValueError(f"priority must be between 1 and 10, got {priority}")

        now = now or datetime.now(UTC)
        await self._check_entitlement(agent_id, user_id)
        await self.credentials.resolve_credentials(agent_id, user_id, now=now)

        if not await self.rate_limiter.check_and_reserve(agent_id, user_id,
                                                         now=now):
            raise RateLimitExceeded(agent_id, user_id)

        job = ExecutionJob(
            id=str(uuid.uuid4()),
            agent_id=agent_id,
            user_id=user_id,
            trigger_type=trigger_type,
            trigger_payload=payload or {},
            priority=priority,
            scheduled_for=_as_utc(scheduled_for) if scheduled_for else now,
            max_attempts=max_attempts or self.default_max_attempts,
            timeout_seconds=timeout_seconds or self.default_timeout_seconds,
            schedule_id=schedule_id,
            created_at=now,
            updated_at=now)
        await self.state.insert_job(job)
        await self.history.record(
            job.id,
            HistoryPhase.INIT,
            log_lines=[f"Enqueued by {trigger_type.value} trigger"],
            timestamp=now)

        logger.info(
            f"Enqueued job {job.id} for agent {agent_id} user {user_id} (priority {priority})"
        )
        return job.id

    async def _check_entitlement(self, agent_id: str, user_id: str) -> None:
        agent = await self.state.get_agent(agent_id)
        if agent is None:
            raise AgentNotFound(agent_id)
        if agent.status != AgentStatus.ACTIVE:
            raise AgentInactive(agent_id)

        installation = await self.state.get_installation(user_id, agent_id)
        if installation is None or installation.status != InstallationStatus.ACTIVE:
            raise UserNotEntitled(agent_id, user_id)

    # ========================================================================
    # Claim
    # ========================================================================

    async def claim_next(self,
                         worker_id: str,
                         capacity_remaining: int = 1,
                         now: Optional[datetime] = None
                         ) -> Optional[ExecutionJob]:
        """Atomically take the most urgent due job for a worker.

        Lower priority value wins, then earlier scheduled_for, then earlier
        creation. Returns None when nothing is due or the worker is full.
        """
        if capacity_remaining <= 0:
            return None

        now = now or datetime.now(UTC)
        job = await self.state.claim_next_job(worker_id, now)
        if job is None:
            return None

        await self.history.record(
            job.id,
            HistoryPhase.DISPATCHING,
            log_lines=[f"Claimed by {worker_id} (attempt {job.attempt + 1})"],
            timestamp=now)
        logger.info(f"Job {job.id} claimed by worker {worker_id}")
        return job

    # ========================================================================
    # Complete
    # ========================================================================

    async def complete(self,
                       job_id: str,
                       outcome: JobOutcome,
                       worker_id: Optional[str] = None,
                       now: Optional[datetime] = None
                       ) -> Optional[ExecutionJob]:
        """Apply a dispatch outcome to a running job.

        Success completes the job. Failure or timeout either requeues it with
        backoff (attempt + 1, lease cleared) or moves it to failed/timed_out.

        Returns:
            The updated job, or None if the job was no longer running under
            that worker (stale result)

        Raises:
            JobNotFound: If the job does not exist
        """
        now = now or datetime.now(UTC)
        job = await self.state.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)

        if job.status != JobStatus.RUNNING:
            logger.warning(
                f"Ignoring result for job {job_id}: status is {job.status.value}"
            )
            return None

        owner = worker_id or job.lease_owner
        duration_ms = outcome.duration_ms
        if duration_ms is None and job.started_at is not None:
            duration_ms = int((now - job.started_at).total_seconds() * 1000)

        if outcome.kind == OutcomeKind.SUCCESS:
            changes, phase, log_line = self._success_changes(
                outcome, duration_ms, now)
        else:
            changes, phase, log_line = await self._failure_changes(
                job, outcome, duration_ms, now)

        updated = await self.state.transition_job(job_id,
                                                  JobStatus.RUNNING,
                                                  changes,
                                                  expected_owner=owner)
        if updated is None:
            logger.warning(
                f"Ignoring stale result for job {job_id} from worker {owner}")
            return None

        if owner:
            await self.state.adjust_worker_load(owner, -1)
        await self.history.record(job_id,
                                  phase,
                                  duration_ms=duration_ms,
                                  log_lines=[log_line],
                                  timestamp=now)
        await self.state.record_metric(f"jobs_{updated.status.value}")

        if updated.status in (JobStatus.COMPLETED, JobStatus.FAILED,
                              JobStatus.TIMED_OUT):
            await self._notify_terminal(updated)
        return updated

    def _success_changes(self, outcome: JobOutcome, duration_ms: Optional[int],
                         now: datetime):
        changes = {
            "status": JobStatus.COMPLETED,
            "result": outcome.result or {},
            "error_message": None,
            "error_class": None,
            "lease_owner": None,
            "completed_at": now,
            "duration_ms": duration_ms,
            "updated_at": now,
        }
        return changes, HistoryPhase.COMPLETED, "Webhook call succeeded"

    async def _failure_changes(self, job: ExecutionJob, outcome: JobOutcome,
                               duration_ms: Optional[int], now: datetime):
        error_class = outcome.error_class
        if error_class is None and outcome.kind == OutcomeKind.TIMEOUT:
            error_class = ErrorClass.TIMEOUT
        message = outcome.message or (error_class.value
                                      if error_class else "unknown error")

        policy = await self.retry_engine.get_policy(job.agent_id, error_class)
        next_attempt = job.attempt + 1

        if (next_attempt < job.max_attempts and
                self.retry_engine.should_retry(policy, next_attempt,
                                               error_class)):
            delay = self.retry_engine.next_delay(policy, next_attempt)
            changes = {
                "status": JobStatus.QUEUED,
                "attempt": next_attempt,
                "scheduled_for": now + timedelta(seconds=delay),
                "lease_owner": None,
                "error_message": message,
                "error_class": error_class,
                "duration_ms": duration_ms,
                "updated_at": now,
            }
            logger.warning(
                f"Job {job.id} failed ({message}); retry {next_attempt} in {delay:.1f}s"
            )
            return (changes, HistoryPhase.ERROR,
                    f"Attempt {next_attempt} failed: {message}; retrying in {delay:.1f}s")

        status = (JobStatus.TIMED_OUT
                  if outcome.kind == OutcomeKind.TIMEOUT else JobStatus.FAILED)
        changes = {
            "status": status,
            "attempt": next_attempt,
            "lease_owner": None,
            "error_message": message,
            "error_class": error_class,
            "completed_at": now,
            "duration_ms": duration_ms,
            "updated_at": now,
        }
        logger.error(
            f"Job {job.id} {status.value} after {next_attempt} attempt(s): {message}"
        )
        return changes, HistoryPhase.ERROR, f"Attempt {next_attempt} failed: {message}"

    async def _notify_terminal(self, job: ExecutionJob) -> None:
        for listener in self._terminal_listeners:
            try:
                await listener(job)
            except Exception as e:
                logger.error(f"Terminal listener failed for job {job.id}: {e}")

    # ========================================================================
    # Cancel / lookup
    # ========================================================================

    async def cancel(self,
                     job_id: str,
                     now: Optional[datetime] = None) -> ExecutionJob:
        """Cancel a job that has not been claimed yet.

        Raises:
            JobNotFound: If the job does not exist
            InvalidJobTransition: If the job is not queued
        """
        now = now or datetime.now(UTC)
        job = await self.get_job(job_id)
        cancelled = await self.state.transition_job(
            job_id, JobStatus.QUEUED, {
                "status": JobStatus.CANCELLED,
                "completed_at": now,
                "updated_at": now,
            })
        if cancelled is None:
            current = await self.state.get_job(job_id) or job
            raise InvalidJobTransition(
                f"Job {job_id} is {current.status.value}; only queued jobs can be cancelled"
            )

        logger.info(f"Cancelled job {job_id}")
        return cancelled

    async def get_job(self, job_id: str) -> ExecutionJob:
        job = await self.state.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job
