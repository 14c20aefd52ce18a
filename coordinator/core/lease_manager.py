import asyncio
import logging
from datetime import datetime, timedelta, UTC
from typing import List, Optional

from coordinator.core.execution_queue import ExecutionQueue
from coordinator.core.state_manager import StateManager
from shared.enums import ErrorClass, WorkerStatus
from shared.models import ExecutionJob, JobOutcome, Worker

logger = logging.getLogger(__name__)


class LeaseManager:
    """Tracks worker liveness and reclaims jobs from workers that went quiet."""

    def __init__(self,
                 state: StateManager,
                 queue: ExecutionQueue,
                 grace_seconds: int = 60):
        self.state = state
        self.queue = queue
        self.grace_seconds = grace_seconds

    async def heartbeat(self,
                        worker_id: str,
                        capacity: int,
                        current_load: Optional[int] = None,
                        now: Optional[datetime] = None) -> Worker:
        """Upsert worker state and refresh its lease.

        The coordinator's own claim/complete count is authoritative. A
        reported load can only raise it, never lower it.
        """
        now = now or datetime.now(UTC)
        revived = []

        def merge(existing: Optional[Worker]) -> Worker:
            load = max(existing.current_load if existing else 0,
                       current_load or 0)
            revived.append(existing is None or
                           existing.status == WorkerStatus.OFFLINE)
            return Worker(
                id=worker_id,
                status=WorkerStatus.BUSY if load else WorkerStatus.IDLE,
                capacity=capacity,
                current_load=load,
                last_heartbeat=now,
                registered_at=existing.registered_at if existing else now)

        worker = await self.state.record_heartbeat(worker_id,
                                                   merge,
                                                   ttl=self.grace_seconds)
        if revived and revived[-1]:
            logger.info(f"Worker {worker_id} registered with capacity {capacity}")
        return worker

    async def register(self,
                       worker_id: str,
                       capacity: int,
                       now: Optional[datetime] = None) -> Worker:
        """Handle a fresh worker connection.

        A registering process has nothing in flight, so jobs still leased
        under its id belong to a previous run and are reclaimed as
        worker_lost.
        """
        now = now or datetime.now(UTC)
        for job in await self.state.list_running_jobs():
            if job.lease_owner != worker_id:
                continue
            logger.warning(
                f"Worker {worker_id} re-registered; reclaiming job {job.id}")
            await self.queue.complete(
                job.id,
                JobOutcome.failure(ErrorClass.WORKER_LOST,
                                   f"Worker {worker_id} restarted"),
                worker_id=worker_id,
                now=now)
        return await self.heartbeat(worker_id, capacity, current_load=0, now=now)

    async def claim_next(self,
                         worker_id: str,
                         now: Optional[datetime] = None
                         ) -> Optional[ExecutionJob]:
        """Claim one job for a worker that still has free capacity"""
        worker = await self.state.get_worker(worker_id)
        if worker is None or worker.status == WorkerStatus.OFFLINE:
            logger.warning(f"Claim from unknown or offline worker {worker_id}")
            return None
        if worker.current_load >= worker.capacity:
            return None

        job = await self.queue.claim_next(worker_id,
                                          worker.capacity - worker.current_load,
                                          now=now)
        if job is not None:
            await self.state.adjust_worker_load(worker_id, 1)
        return job

    async def mark_offline(self, worker_id: str) -> None:
        """Stop handing out work to a worker; its running jobs are left for
        the reaper once the lease lapses"""
        await self.state.set_worker_status(worker_id, WorkerStatus.OFFLINE)
        logger.info(f"Worker {worker_id} marked offline")

    async def reap_expired_leases(self,
                                  grace_seconds: Optional[int] = None,
                                  now: Optional[datetime] = None
                                  ) -> List[ExecutionJob]:
        """Fail running jobs whose worker has not heartbeated within grace.

        Each abandoned job goes through the normal completion path as a
        worker_lost failure, so it is retried or failed like any other.

        Returns:
            The jobs that were reclaimed, in their new state
        """
        grace = grace_seconds if grace_seconds is not None else self.grace_seconds
        now = now or datetime.now(UTC)
        cutoff = now - timedelta(seconds=grace)

        reclaimed = []
        expired_workers = set()
        for job in await self.state.list_running_jobs():
            worker = (await self.state.get_worker(job.lease_owner)
                      if job.lease_owner else None)
            if worker is not None and worker.last_heartbeat >= cutoff:
                continue

            logger.warning(
                f"Lease on job {job.id} expired (worker {job.lease_owner})")
            outcome = JobOutcome.failure(
                ErrorClass.WORKER_LOST,
                f"Worker {job.lease_owner} stopped heartbeating")
            updated = await self.queue.complete(job.id,
                                                outcome,
                                                worker_id=job.lease_owner,
                                                now=now)
            if updated is not None:
                reclaimed.append(updated)
            if worker is not None:
                expired_workers.add(worker.id)

        for worker in await self.state.list_workers():
            if (worker.status != WorkerStatus.OFFLINE
                    and worker.last_heartbeat < cutoff):
                expired_workers.add(worker.id)

        for worker_id in expired_workers:
            await self.mark_offline(worker_id)

        if reclaimed:
            logger.info(f"Reclaimed {len(reclaimed)} job(s) from expired leases")
        return reclaimed

    async def run_reaper(self, interval_seconds: int = 15):
        """Periodic lease sweep."""
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.reap_expired_leases()
            except Exception as e:
                logger.error(f"Lease reaper sweep failed: {e}")
