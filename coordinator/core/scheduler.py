import asyncio
import logging
import uuid
from datetime import datetime, UTC
from typing import List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from coordinator.core.errors import (AdmissionError, CredentialError,
                                     InvalidSchedule, RateLimitExceeded,
                                     ScheduleNotFound)
from coordinator.core.execution_queue import ExecutionQueue
from coordinator.core.state_manager import StateManager
from shared.enums import JobStatus, TriggerType
from shared.models import ExecutionJob, Schedule
from shared.schemas import ScheduleCreate

logger = logging.getLogger(__name__)

TICK_LOCK = "scheduler:tick"


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise InvalidSchedule(f"Unknown timezone: {name}")


def compute_next_run(cron_expression: str, timezone: str,
                     after: datetime) -> datetime:
    """Next fire time strictly after `after`, evaluated in the schedule's
    timezone and returned in UTC"""
    if not croniter.is_valid(cron_expression):
        raise InvalidSchedule(f"Invalid cron expression: {cron_expression}")
    base = after.astimezone(_zone(timezone))
    return croniter(cron_expression, base).get_next(datetime).astimezone(UTC)


class Scheduler:
    """Turns recurring cron schedules into queue entries."""

    def __init__(self, state: StateManager, queue: ExecutionQueue):
        self.state = state
        self.queue = queue
        queue.add_terminal_listener(self.record_outcome)

    async def create_schedule(self,
                              request: ScheduleCreate,
                              now: Optional[datetime] = None) -> Schedule:
        """Validate and store a schedule; first run is the next cron match"""
        now = now or datetime.now(UTC)
        next_run = compute_next_run(request.cron_expression, request.timezone,
                                    now)
        schedule = Schedule(id=str(uuid.uuid4()),
                            next_run=next_run,
                            created_at=now,
                            updated_at=now,
                            **request.model_dump())
        await self.state.save_schedule(schedule)
        logger.info(
            f"Created schedule {schedule.id} ({schedule.cron_expression} {schedule.timezone}), next run {next_run.isoformat()}"
        )
        return schedule

    async def get_schedule(self, schedule_id: str) -> Schedule:
        schedule = await self.state.get_schedule(schedule_id)
        if schedule is None:
            raise ScheduleNotFound(schedule_id)
        return schedule

    async def set_active(self,
                         schedule_id: str,
                         active: bool,
                         now: Optional[datetime] = None) -> Schedule:
        """Enable or disable a schedule; re-enabling clears the failure streak"""
        now = now or datetime.now(UTC)

        def apply(schedule: Schedule) -> None:
            schedule.active = active
            if active:
                schedule.consecutive_failures = 0
                schedule.next_run = compute_next_run(schedule.cron_expression,
                                                     schedule.timezone, now)
            schedule.updated_at = now

        schedule = await self.state.update_schedule(schedule_id, apply)
        if schedule is None:
            raise ScheduleNotFound(schedule_id)
        logger.info(
            f"Schedule {schedule_id} {'activated' if active else 'deactivated'}")
        return schedule

    async def tick(self, now: Optional[datetime] = None) -> List[str]:
        """Enqueue every active schedule that is due.

        Returns:
            List of enqueued job ids
        """
        now = now or datetime.now(UTC)
        job_ids = []

        for due in await self.state.list_due_schedules(now):
            job_id = None
            failed = False
            try:
                job_id = await self.queue.enqueue(due.agent_id,
                                                  due.user_id,
                                                  TriggerType.SCHEDULE,
                                                  payload=due.payload,
                                                  priority=due.priority,
                                                  schedule_id=due.id,
                                                  now=now)
                job_ids.append(job_id)
            except RateLimitExceeded:
                logger.warning(
                    f"Schedule {due.id} skipped this run: rate limited")
            except (AdmissionError, CredentialError) as e:
                logger.error(f"Schedule {due.id} could not enqueue: {e}")
                failed = True

            # Applied to the current row; outcomes may have landed meanwhile
            def apply(schedule: Schedule) -> None:
                if job_id is not None:
                    schedule.last_run = now
                    schedule.run_count += 1
                if failed:
                    self._count_failure(schedule)
                schedule.next_run = compute_next_run(schedule.cron_expression,
                                                     schedule.timezone, now)
                schedule.updated_at = now

            await self.state.update_schedule(due.id, apply)

        if job_ids:
            logger.info(f"Scheduler tick enqueued {len(job_ids)} job(s)")
        return job_ids

    async def record_outcome(self, job: ExecutionJob) -> None:
        """Track the failure streak of the schedule that produced a job"""
        if job.schedule_id is None:
            return
        if job.status not in (JobStatus.COMPLETED, JobStatus.FAILED,
                              JobStatus.TIMED_OUT):
            return

        def apply(schedule: Schedule) -> None:
            if job.status == JobStatus.COMPLETED:
                schedule.consecutive_failures = 0
            else:
                self._count_failure(schedule)
            schedule.updated_at = datetime.now(UTC)

        await self.state.update_schedule(job.schedule_id, apply)

    def _count_failure(self, schedule: Schedule) -> None:
        schedule.consecutive_failures += 1
        if (schedule.active and schedule.consecutive_failures >=
                schedule.max_consecutive_failures):
            schedule.active = False
            logger.warning(
                f"Schedule {schedule.id} disabled after {schedule.consecutive_failures} consecutive failures"
            )

    async def run(self, interval_seconds: int = 30):
        """Periodic tick; only one coordinator ticks at a time"""
        while True:
            await asyncio.sleep(interval_seconds)
            if not await self.state.acquire_lock(TICK_LOCK,
                                                 ttl=interval_seconds):
                continue
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Scheduler tick failed: {e}")
            finally:
                await self.state.release_lock(TICK_LOCK)
