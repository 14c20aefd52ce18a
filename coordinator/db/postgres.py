"""PostgreSQL database connection and operations"""
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.future import select
from sqlalchemy import update, func
from sqlalchemy.dialects.postgresql import insert as pg_insert

from coordinator.db.models import (Base, ExecutionJobModel, WorkerModel,
                                   RateLimitCounterModel, AgentRateLimitModel,
                                   RetryPolicyModel, ScheduleModel,
                                   ExecutionHistoryModel, AgentModel,
                                   InstallationModel, UserCredentialModel)
from shared.enums import JobStatus, WorkerStatus, ErrorClass, LimitType
from shared.models import (ExecutionJob, Worker, RateLimitCounter, RetryPolicy,
                           Schedule, ExecutionHistoryEntry, Agent,
                           Installation, UserCredential)

WorkerMerge = Callable[[Optional[Worker]], Worker]
RateLimitEvaluator = Callable[[List[RateLimitCounter]],
                              Tuple[bool, List[RateLimitCounter]]]


def _to_job(model: ExecutionJobModel) -> ExecutionJob:
    return ExecutionJob.model_validate(model, from_attributes=True)


def _to_worker(model: WorkerModel) -> Worker:
    return Worker.model_validate(model, from_attributes=True)


def _to_schedule(model: ScheduleModel) -> Schedule:
    return Schedule.model_validate(model, from_attributes=True)


class PostgresDB:
    """PostgreSQL database manager.

    Every queue mutation is a single statement or a single transaction so
    that concurrent coordinators sharing the database never hand the same
    job to two workers.
    """

    def __init__(self, database_url: str):
        self.engine = create_async_engine(database_url,
                                          echo=False,
                                          pool_pre_ping=True)
        self.async_session = async_sessionmaker(self.engine,
                                                class_=AsyncSession,
                                                expire_on_commit=False)

    async def init_db(self):
        """Initialize database schema"""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        """Close database connections"""
        await self.engine.dispose()

    # Job operations
    async def insert_job(self, job: ExecutionJob) -> None:
        """Insert a new queued job"""
        async with self.async_session() as session:
            session.add(ExecutionJobModel(**job.model_dump()))
            await session.commit()

    async def get_job(self, job_id: str) -> Optional[ExecutionJob]:
        """Get a job by ID"""
        async with self.async_session() as session:
            result = await session.execute(
                select(ExecutionJobModel).where(
                    ExecutionJobModel.id == job_id))
            model = result.scalar_one_or_none()
            return _to_job(model) if model else None

    async def claim_next_job(self, worker_id: str,
                             now: datetime) -> Optional[ExecutionJob]:
        """Lock the most urgent due job and mark it running for worker_id.

        Rows already locked by a concurrent claimant are skipped, so
        parallel callers never observe the same job.
        """
        async with self.async_session() as session:
            async with session.begin():
                result = await session.execute(
                    select(ExecutionJobModel).where(
                        ExecutionJobModel.status == JobStatus.QUEUED,
                        ExecutionJobModel.scheduled_for <= now,
                        ExecutionJobModel.attempt <
                        ExecutionJobModel.max_attempts,
                    ).order_by(
                        ExecutionJobModel.priority.asc(),
                        ExecutionJobModel.scheduled_for.asc(),
                        ExecutionJobModel.created_at.asc(),
                    ).limit(1).with_for_update(skip_locked=True))
                model = result.scalar_one_or_none()
                if model is None:
                    return None

                model.status = JobStatus.RUNNING
                model.lease_owner = worker_id
                model.started_at = now
                model.updated_at = now
            return _to_job(model)

    async def transition_job(
            self,
            job_id: str,
            expected_status: JobStatus,
            changes: Dict[str, Any],
            expected_owner: Optional[str] = None) -> Optional[ExecutionJob]:
        """Compare-and-swap update; returns None when the job moved on"""
        stmt = update(ExecutionJobModel).where(
            ExecutionJobModel.id == job_id,
            ExecutionJobModel.status == expected_status)
        if expected_owner is not None:
            stmt = stmt.where(ExecutionJobModel.lease_owner == expected_owner)
        stmt = stmt.values(**changes).returning(ExecutionJobModel)

        async with self.async_session() as session:
            result = await session.execute(
                stmt, execution_options={"synchronize_session": False})
            model = result.scalar_one_or_none()
            await session.commit()
            return _to_job(model) if model else None

    async def list_running_jobs(self) -> List[ExecutionJob]:
        """List all jobs currently held by a worker"""
        async with self.async_session() as session:
            result = await session.execute(
                select(ExecutionJobModel).where(
                    ExecutionJobModel.status == JobStatus.RUNNING))
            return [_to_job(m) for m in result.scalars().all()]

    async def list_jobs_for_user(self, user_id: str, agent_id: Optional[str],
                                 limit: int) -> List[ExecutionJob]:
        """Most recent jobs of a user, optionally for one agent"""
        stmt = select(ExecutionJobModel).where(
            ExecutionJobModel.user_id == user_id)
        if agent_id:
            stmt = stmt.where(ExecutionJobModel.agent_id == agent_id)
        stmt = stmt.order_by(ExecutionJobModel.created_at.desc()).limit(limit)
        async with self.async_session() as session:
            result = await session.execute(stmt)
            return [_to_job(m) for m in result.scalars().all()]

    async def list_finished_jobs_for_agent(
            self, agent_id: str, since: datetime) -> List[ExecutionJob]:
        """Jobs of an agent that reached a terminal run state since a time"""
        async with self.async_session() as session:
            result = await session.execute(
                select(ExecutionJobModel).where(
                    ExecutionJobModel.agent_id == agent_id,
                    ExecutionJobModel.completed_at >= since,
                    ExecutionJobModel.status.in_([
                        JobStatus.COMPLETED, JobStatus.FAILED,
                        JobStatus.TIMED_OUT
                    ])))
            return [_to_job(m) for m in result.scalars().all()]

    async def count_jobs_by_status(self) -> Dict[str, int]:
        async with self.async_session() as session:
            result = await session.execute(
                select(ExecutionJobModel.status,
                       func.count()).group_by(ExecutionJobModel.status))
            return {status.value: count for status, count in result.all()}

    # Worker operations
    async def record_heartbeat(self, worker_id: str,
                               merge: WorkerMerge) -> Worker:
        """Apply merge to the worker row while holding its lock"""
        async with self.async_session() as session:
            async with session.begin():
                seed = merge(None)
                inserted = await session.execute(
                    pg_insert(WorkerModel).values(
                        **seed.model_dump()).on_conflict_do_nothing().returning(
                            WorkerModel.id))
                if inserted.scalar_one_or_none() is not None:
                    return seed

                result = await session.execute(
                    select(WorkerModel).where(
                        WorkerModel.id == worker_id).with_for_update())
                worker = merge(_to_worker(result.scalar_one()))
                await session.execute(
                    update(WorkerModel).where(
                        WorkerModel.id == worker_id).values(
                            **worker.model_dump(exclude={"id"})))
            return worker

    async def get_worker(self, worker_id: str) -> Optional[Worker]:
        """Get a worker by ID"""
        async with self.async_session() as session:
            result = await session.execute(
                select(WorkerModel).where(WorkerModel.id == worker_id))
            model = result.scalar_one_or_none()
            return _to_worker(model) if model else None

    async def list_workers(self) -> List[Worker]:
        """List all workers"""
        async with self.async_session() as session:
            result = await session.execute(select(WorkerModel))
            return [_to_worker(m) for m in result.scalars().all()]

    async def adjust_worker_load(self, worker_id: str,
                                 delta: int) -> Optional[Worker]:
        """Atomically change a worker's load, never below zero"""
        async with self.async_session() as session:
            async with session.begin():
                result = await session.execute(
                    select(WorkerModel).where(
                        WorkerModel.id == worker_id).with_for_update())
                model = result.scalar_one_or_none()
                if model is None:
                    return None
                model.current_load = max(0, model.current_load + delta)
                if model.status != WorkerStatus.OFFLINE:
                    model.status = (WorkerStatus.BUSY if model.current_load
                                    else WorkerStatus.IDLE)
            return _to_worker(model)

    async def set_worker_status(self, worker_id: str,
                                status: WorkerStatus) -> None:
        async with self.async_session() as session:
            await session.execute(
                update(WorkerModel).where(WorkerModel.id == worker_id).values(
                    status=status))
            await session.commit()

    # Rate limit operations
    async def reserve_rate_limits(self, agent_id: str, user_id: str,
                                  evaluate: RateLimitEvaluator) -> bool:
        """Run the admission decision with the counter rows locked"""
        async with self.async_session() as session:
            async with session.begin():
                # Make sure the rows exist so FOR UPDATE has something to lock
                _, fresh = evaluate([])
                seeds = [
                    counter.model_copy(update={
                        "count": 0,
                        "exceeded_count": 0,
                        "last_exceeded_at": None
                    }).model_dump() for counter in fresh
                ]
                if seeds:
                    await session.execute(
                        pg_insert(RateLimitCounterModel).values(
                            seeds).on_conflict_do_nothing())

                result = await session.execute(
                    select(RateLimitCounterModel).where(
                        RateLimitCounterModel.agent_id == agent_id,
                        RateLimitCounterModel.user_id ==
                        user_id).with_for_update())
                counters = [
                    RateLimitCounter.model_validate(m, from_attributes=True)
                    for m in result.scalars().all()
                ]
                allowed, updated = evaluate(counters)
                for counter in updated:
                    await session.merge(
                        RateLimitCounterModel(**counter.model_dump()))
            return allowed

    async def list_rate_limit_counters(
            self, agent_id: str, user_id: str) -> List[RateLimitCounter]:
        async with self.async_session() as session:
            result = await session.execute(
                select(RateLimitCounterModel).where(
                    RateLimitCounterModel.agent_id == agent_id,
                    RateLimitCounterModel.user_id == user_id))
            return [
                RateLimitCounter.model_validate(m, from_attributes=True)
                for m in result.scalars().all()
            ]

    async def save_agent_limits(self, agent_id: str,
                                limits: Dict[LimitType, int]) -> None:
        async with self.async_session() as session:
            for limit_type, limit in limits.items():
                await session.merge(
                    AgentRateLimitModel(agent_id=agent_id,
                                        limit_type=limit_type,
                                        limit=limit))
            # Existing counters pick up the new ceiling immediately
            for limit_type, limit in limits.items():
                await session.execute(
                    update(RateLimitCounterModel).where(
                        RateLimitCounterModel.agent_id == agent_id,
                        RateLimitCounterModel.limit_type ==
                        limit_type).values(limit=limit))
            await session.commit()

    async def get_agent_limits(self, agent_id: str) -> Dict[LimitType, int]:
        async with self.async_session() as session:
            result = await session.execute(
                select(AgentRateLimitModel).where(
                    AgentRateLimitModel.agent_id == agent_id))
            return {m.limit_type: m.limit for m in result.scalars().all()}

    # Retry policy operations
    async def save_retry_policy(self, policy: RetryPolicy) -> None:
        async with self.async_session() as session:
            await session.merge(RetryPolicyModel(**policy.model_dump()))
            await session.commit()

    async def get_retry_policy(
            self, agent_id: str,
            error_class: ErrorClass) -> Optional[RetryPolicy]:
        async with self.async_session() as session:
            result = await session.execute(
                select(RetryPolicyModel).where(
                    RetryPolicyModel.agent_id == agent_id,
                    RetryPolicyModel.error_class == error_class))
            model = result.scalar_one_or_none()
            return (RetryPolicy.model_validate(model, from_attributes=True)
                    if model else None)

    # Schedule operations
    async def save_schedule(self, schedule: Schedule) -> None:
        async with self.async_session() as session:
            await session.merge(ScheduleModel(**schedule.model_dump()))
            await session.commit()

    async def update_schedule(
            self, schedule_id: str,
            apply: Callable[[Schedule], None]) -> Optional[Schedule]:
        """Apply a change to the schedule row while holding its lock"""
        async with self.async_session() as session:
            async with session.begin():
                result = await session.execute(
                    select(ScheduleModel).where(
                        ScheduleModel.id == schedule_id).with_for_update())
                model = result.scalar_one_or_none()
                if model is None:
                    return None
                schedule = _to_schedule(model)
                apply(schedule)
                await session.execute(
                    update(ScheduleModel).where(
                        ScheduleModel.id == schedule_id).values(
                            **schedule.model_dump(exclude={"id"})),
                    execution_options={"synchronize_session": False})
            return schedule

    async def get_schedule(self, schedule_id: str) -> Optional[Schedule]:
        async with self.async_session() as session:
            result = await session.execute(
                select(ScheduleModel).where(ScheduleModel.id == schedule_id))
            model = result.scalar_one_or_none()
            return _to_schedule(model) if model else None

    async def list_schedules(self) -> List[Schedule]:
        async with self.async_session() as session:
            result = await session.execute(select(ScheduleModel))
            return [_to_schedule(m) for m in result.scalars().all()]

    async def list_due_schedules(self, now: datetime) -> List[Schedule]:
        async with self.async_session() as session:
            result = await session.execute(
                select(ScheduleModel).where(
                    ScheduleModel.active.is_(True),
                    ScheduleModel.next_run <= now).order_by(
                        ScheduleModel.next_run.asc()))
            return [_to_schedule(m) for m in result.scalars().all()]

    # History operations
    async def append_history(self, entry: ExecutionHistoryEntry) -> None:
        async with self.async_session() as session:
            session.add(ExecutionHistoryModel(**entry.model_dump()))
            await session.commit()

    async def list_history(self,
                           job_id: str) -> List[ExecutionHistoryEntry]:
        async with self.async_session() as session:
            result = await session.execute(
                select(ExecutionHistoryModel).where(
                    ExecutionHistoryModel.job_id == job_id).order_by(
                        ExecutionHistoryModel.id.asc()))
            return [
                ExecutionHistoryEntry.model_validate(m, from_attributes=True)
                for m in result.scalars().all()
            ]

    # Collaborator records
    async def save_agent(self, agent: Agent) -> None:
        async with self.async_session() as session:
            await session.merge(AgentModel(**agent.model_dump()))
            await session.commit()

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        async with self.async_session() as session:
            result = await session.execute(
                select(AgentModel).where(AgentModel.id == agent_id))
            model = result.scalar_one_or_none()
            return (Agent.model_validate(model, from_attributes=True)
                    if model else None)

    async def save_installation(self, installation: Installation) -> None:
        async with self.async_session() as session:
            await session.merge(InstallationModel(**installation.model_dump()))
            await session.commit()

    async def get_installation(self, user_id: str,
                               agent_id: str) -> Optional[Installation]:
        async with self.async_session() as session:
            result = await session.execute(
                select(InstallationModel).where(
                    InstallationModel.user_id == user_id,
                    InstallationModel.agent_id == agent_id))
            model = result.scalar_one_or_none()
            return (Installation.model_validate(model, from_attributes=True)
                    if model else None)

    async def save_credential(self, credential: UserCredential) -> None:
        async with self.async_session() as session:
            await session.merge(UserCredentialModel(**credential.model_dump()))
            await session.commit()

    async def get_credential(self, user_id: str,
                             field_name: str) -> Optional[UserCredential]:
        async with self.async_session() as session:
            result = await session.execute(
                select(UserCredentialModel).where(
                    UserCredentialModel.user_id == user_id,
                    UserCredentialModel.field_name == field_name))
            model = result.scalar_one_or_none()
            return (UserCredential.model_validate(model, from_attributes=True)
                    if model else None)
