"""Execution history: append-only phase log and the analytics read side"""
import logging
from collections import defaultdict
from datetime import datetime, timedelta, UTC
from typing import Dict, List, Optional

from coordinator.core.errors import JobNotFound
from coordinator.core.state_manager import StateManager
from shared.enums import HistoryPhase, JobStatus
from shared.models import DailyAgentStats, ExecutionHistoryEntry, ExecutionJob
from shared.schemas import AgentAnalytics, AnalyticsTotals

logger = logging.getLogger(__name__)


class ExecutionHistoryRecorder:
    """Records job phases and aggregates finished jobs into daily rollups"""

    def __init__(self, state: StateManager):
        self.state = state

    async def record(self,
                     job_id: str,
                     phase: HistoryPhase,
                     duration_ms: Optional[int] = None,
                     log_lines: Optional[List[str]] = None,
                     timestamp: Optional[datetime] = None
                     ) -> ExecutionHistoryEntry:
        entry = ExecutionHistoryEntry(job_id=job_id,
                                      phase=phase,
                                      duration_ms=duration_ms,
                                      log_lines=log_lines or [],
                                      timestamp=timestamp or datetime.now(UTC))
        await self.state.append_history(entry)
        logger.debug(f"Job {job_id} history: {phase.value}")
        return entry

    async def get_execution_history(self,
                                    user_id: str,
                                    agent_id: Optional[str] = None,
                                    limit: int = 50) -> List[ExecutionJob]:
        """Jobs for a user (optionally one agent), most recent first"""
        return await self.state.list_jobs_for_user(user_id, agent_id, limit)

    async def get_job_history(self,
                              job_id: str) -> List[ExecutionHistoryEntry]:
        """Phase entries for one job in the order they were written"""
        if await self.state.get_job(job_id) is None:
            raise JobNotFound(job_id)
        return await self.state.list_history(job_id)

    async def get_daily_stats(self,
                              agent_id: str,
                              days: int = 30,
                              now: Optional[datetime] = None
                              ) -> AgentAnalytics:
        """
        Daily rollups over finished jobs of an agent.

        A run counts once it reaches completed, failed or timed_out; failed
        and timed-out runs both count as failed. Days are UTC calendar days
        of the completion time, oldest first.
        """
        now = now or datetime.now(UTC)
        since = (now - timedelta(days=days)).replace(hour=0,
                                                     minute=0,
                                                     second=0,
                                                     microsecond=0)
        jobs = await self.state.list_finished_jobs_for_agent(agent_id, since)

        by_day: Dict = defaultdict(list)
        for job in jobs:
            by_day[job.completed_at.astimezone(UTC).date()].append(job)

        daily = [
            self._rollup(agent_id, day, day_jobs)
            for day, day_jobs in sorted(by_day.items())
        ]

        totals = AnalyticsTotals(
            total_runs=sum(d.total_runs for d in daily),
            successful_runs=sum(d.successful_runs for d in daily),
            failed_runs=sum(d.failed_runs for d in daily),
            unique_users=len({job.user_id for job in jobs}),
            avg_duration_ms=_average_duration(jobs))
        success_rate = (totals.successful_runs / totals.total_runs *
                        100 if totals.total_runs else 0.0)

        return AgentAnalytics(agent_id=agent_id,
                              daily=daily,
                              totals=totals,
                              success_rate=round(success_rate, 2))

    @staticmethod
    def _rollup(agent_id: str, day, jobs: List[ExecutionJob]) -> DailyAgentStats:
        successful = [j for j in jobs if j.status == JobStatus.COMPLETED]
        return DailyAgentStats(agent_id=agent_id,
                               date=day,
                               total_runs=len(jobs),
                               successful_runs=len(successful),
                               failed_runs=len(jobs) - len(successful),
                               unique_users=len({j.user_id for j in jobs}),
                               avg_duration_ms=_average_duration(jobs))


def _average_duration(jobs: List[ExecutionJob]) -> float:
    durations = [j.duration_ms for j in jobs if j.duration_ms is not None]
    if not durations:
        return 0.0
    return round(sum(durations) / len(durations), 2)
