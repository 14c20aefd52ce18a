"""Unit tests for the cron scheduler"""
import pytest
from datetime import datetime, timedelta, UTC
from typing import Callable

from coordinator.core.errors import InvalidSchedule, ScheduleNotFound
from coordinator.core.execution_queue import ExecutionQueue
from coordinator.core.rate_limiter import RateLimiter
from coordinator.core.scheduler import Scheduler, compute_next_run
from coordinator.core.state_manager import StateManager
from shared.enums import ErrorClass, JobStatus, LimitType, TriggerType
from shared.models import JobOutcome
from shared.schemas import ScheduleCreate

AGENT_ID = "agent-a"
USER_ID = "user-u"
T0 = datetime(2026, 1, 15, 12, 0, 30, tzinfo=UTC)


def _request(**kwargs) -> ScheduleCreate:
    kwargs.setdefault("cron_expression", "* * * * *")
    return ScheduleCreate(agent_id=AGENT_ID,
                          user_id=USER_ID,
                          name=kwargs.pop("name", "every minute"),
                          **kwargs)


@pytest.mark.unit
class TestComputeNextRun:

    def test_next_match_is_strictly_after(self) -> None:
        at_boundary = datetime(2026, 1, 15, 12, 0, 0, tzinfo=UTC)

        assert compute_next_run("*/5 * * * *", "UTC",
                                at_boundary) == datetime(2026,
                                                         1,
                                                         15,
                                                         12,
                                                         5,
                                                         tzinfo=UTC)

    def test_evaluated_in_schedule_timezone(self) -> None:
        # 07:00 in New York (EST, UTC-5)
        after = datetime(2026, 1, 15, 12, 0, tzinfo=UTC)

        next_run = compute_next_run("0 9 * * *", "America/New_York", after)

        assert next_run == datetime(2026, 1, 15, 14, 0, tzinfo=UTC)
        assert next_run.tzinfo == UTC

    def test_invalid_cron(self) -> None:
        with pytest.raises(InvalidSchedule):
            compute_next_run("not a cron", "UTC", T0)

    def test_unknown_timezone(self) -> None:
        with pytest.raises(InvalidSchedule):
            compute_next_run("* * * * *", "Mars/Olympus_Mons", T0)


@pytest.mark.unit
@pytest.mark.asyncio
class TestScheduleLifecycle:

    async def test_create_sets_first_run(self, scheduler: Scheduler,
                                         state_manager: StateManager) -> None:
        schedule = await scheduler.create_schedule(_request(), now=T0)

        assert schedule.active is True
        assert schedule.next_run == datetime(2026, 1, 15, 12, 1, tzinfo=UTC)
        assert await state_manager.get_schedule(schedule.id) == schedule

    async def test_create_rejects_bad_cron(self,
                                           scheduler: Scheduler) -> None:
        with pytest.raises(InvalidSchedule):
            await scheduler.create_schedule(
                _request(cron_expression="61 * * * *"), now=T0)

    async def test_get_unknown_schedule(self, scheduler: Scheduler) -> None:
        with pytest.raises(ScheduleNotFound):
            await scheduler.get_schedule("missing")

    async def test_reactivate_resets_failures(self,
                                              scheduler: Scheduler) -> None:
        schedule = await scheduler.create_schedule(_request(), now=T0)
        await scheduler.set_active(schedule.id, False, now=T0)

        later = T0 + timedelta(hours=1)
        reactivated = await scheduler.set_active(schedule.id, True, now=later)

        assert reactivated.active is True
        assert reactivated.consecutive_failures == 0
        assert reactivated.next_run > later


@pytest.mark.unit
@pytest.mark.asyncio
class TestTick:
    """Test scheduler ticks"""

    async def test_due_schedule_enqueues_job(
            self, scheduler: Scheduler, seed_agent: Callable,
            state_manager: StateManager) -> None:
        await seed_agent()
        schedule = await scheduler.create_schedule(
            _request(payload={"report": "daily"}, priority=2), now=T0)

        tick_at = datetime(2026, 1, 15, 12, 1, tzinfo=UTC)
        job_ids = await scheduler.tick(now=tick_at)

        assert len(job_ids) == 1
        job = await state_manager.get_job(job_ids[0])
        assert job.trigger_type == TriggerType.SCHEDULE
        assert job.schedule_id == schedule.id
        assert job.trigger_payload == {"report": "daily"}
        assert job.priority == 2

        stored = await state_manager.get_schedule(schedule.id)
        assert stored.run_count == 1
        assert stored.last_run == tick_at
        assert stored.next_run == datetime(2026, 1, 15, 12, 2, tzinfo=UTC)

    async def test_not_due_schedule_is_left_alone(
            self, scheduler: Scheduler, seed_agent: Callable) -> None:
        await seed_agent()
        await scheduler.create_schedule(_request(), now=T0)

        assert await scheduler.tick(now=T0 + timedelta(seconds=10)) == []

    async def test_inactive_schedule_never_fires(
            self, scheduler: Scheduler, seed_agent: Callable) -> None:
        await seed_agent()
        schedule = await scheduler.create_schedule(_request(), now=T0)
        await scheduler.set_active(schedule.id, False, now=T0)

        assert await scheduler.tick(now=T0 + timedelta(hours=1)) == []

    async def test_rate_limited_run_is_skipped(
            self, scheduler: Scheduler, seed_agent: Callable,
            rate_limiter: RateLimiter, state_manager: StateManager) -> None:
        await seed_agent()
        await rate_limiter.configure_limits(AGENT_ID, {LimitType.PER_MINUTE: 0})
        schedule = await scheduler.create_schedule(_request(), now=T0)

        tick_at = datetime(2026, 1, 15, 12, 1, tzinfo=UTC)
        assert await scheduler.tick(now=tick_at) == []

        stored = await state_manager.get_schedule(schedule.id)
        assert stored.run_count == 0
        assert stored.consecutive_failures == 0
        assert stored.active is True
        assert stored.next_run == datetime(2026, 1, 15, 12, 2, tzinfo=UTC)

    async def test_missing_credential_counts_as_failure(
            self, scheduler: Scheduler, seed_agent: Callable,
            state_manager: StateManager) -> None:
        await seed_agent(secrets={})
        schedule = await scheduler.create_schedule(_request(), now=T0)

        await scheduler.tick(now=datetime(2026, 1, 15, 12, 1, tzinfo=UTC))

        stored = await state_manager.get_schedule(schedule.id)
        assert stored.consecutive_failures == 1
        assert stored.run_count == 0


@pytest.mark.unit
@pytest.mark.asyncio
class TestFailureStreak:
    """Schedules disable themselves after repeated terminal failures"""

    async def _run_once(self, scheduler: Scheduler,
                        execution_queue: ExecutionQueue, tick_at: datetime,
                        outcome: JobOutcome) -> str:
        job_ids = await scheduler.tick(now=tick_at)
        assert len(job_ids) == 1
        job = await execution_queue.claim_next("w1", now=tick_at)
        assert job.id == job_ids[0]
        await execution_queue.complete(job.id,
                                       outcome,
                                       worker_id="w1",
                                       now=tick_at)
        return job.id

    async def test_auto_disable_after_threshold(
            self, scheduler: Scheduler, execution_queue: ExecutionQueue,
            seed_agent: Callable, state_manager: StateManager) -> None:
        await seed_agent()
        schedule = await scheduler.create_schedule(
            _request(max_consecutive_failures=3), now=T0)
        failure = JobOutcome.failure(ErrorClass.CLIENT_ERROR, "HTTP 400")

        for minute in (1, 2, 3):
            tick_at = datetime(2026, 1, 15, 12, minute, tzinfo=UTC)
            job_id = await self._run_once(scheduler, execution_queue, tick_at,
                                          failure)
            assert (await state_manager.get_job(job_id)).status == JobStatus.FAILED

        stored = await state_manager.get_schedule(schedule.id)
        assert stored.consecutive_failures == 3
        assert stored.active is False
        assert await scheduler.tick(
            now=datetime(2026, 1, 15, 12, 4, tzinfo=UTC)) == []

    async def test_success_resets_streak(self, scheduler: Scheduler,
                                         execution_queue: ExecutionQueue,
                                         seed_agent: Callable,
                                         state_manager: StateManager) -> None:
        await seed_agent()
        schedule = await scheduler.create_schedule(
            _request(max_consecutive_failures=3), now=T0)
        failure = JobOutcome.failure(ErrorClass.CLIENT_ERROR, "HTTP 400")

        await self._run_once(scheduler, execution_queue,
                             datetime(2026, 1, 15, 12, 1, tzinfo=UTC), failure)
        await self._run_once(scheduler, execution_queue,
                             datetime(2026, 1, 15, 12, 2, tzinfo=UTC), failure)
        await self._run_once(scheduler, execution_queue,
                             datetime(2026, 1, 15, 12, 3, tzinfo=UTC),
                             JobOutcome.success({"ok": True}))

        stored = await state_manager.get_schedule(schedule.id)
        assert stored.consecutive_failures == 0
        assert stored.active is True

    async def test_retry_does_not_count_as_failure(
            self, scheduler: Scheduler, execution_queue: ExecutionQueue,
            seed_agent: Callable, state_manager: StateManager) -> None:
        await seed_agent()
        schedule = await scheduler.create_schedule(_request(), now=T0)

        await self._run_once(scheduler, execution_queue,
                             datetime(2026, 1, 15, 12, 1, tzinfo=UTC),
                             JobOutcome.failure(ErrorClass.SERVER_ERROR,
                                                "HTTP 503"))

        stored = await state_manager.get_schedule(schedule.id)
        assert stored.consecutive_failures == 0

    async def test_outcome_during_tick_is_kept(
            self, scheduler: Scheduler, execution_queue: ExecutionQueue,
            seed_agent: Callable, state_manager: StateManager,
            monkeypatch: pytest.MonkeyPatch) -> None:
        """A terminal result that lands while a tick enqueues still counts"""
        await seed_agent()
        schedule = await scheduler.create_schedule(_request(), now=T0)
        first_tick = datetime(2026, 1, 15, 12, 1, tzinfo=UTC)
        await scheduler.tick(now=first_tick)
        previous = await execution_queue.claim_next("w1", now=first_tick)

        enqueue = execution_queue.enqueue

        async def enqueue_while_previous_fails(*args, **kwargs):
            await execution_queue.complete(
                previous.id,
                JobOutcome.failure(ErrorClass.CLIENT_ERROR, "HTTP 400"),
                worker_id="w1")
            return await enqueue(*args, **kwargs)

        monkeypatch.setattr(execution_queue, "enqueue",
                            enqueue_while_previous_fails)
        await scheduler.tick(now=datetime(2026, 1, 15, 12, 2, tzinfo=UTC))

        stored = await state_manager.get_schedule(schedule.id)
        assert stored.consecutive_failures == 1
        assert stored.run_count == 2
