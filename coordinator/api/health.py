"""Health check and status endpoints"""
from fastapi import APIRouter, Depends
from datetime import datetime, UTC

from coordinator.core.state_manager import StateManager, state_manager
from shared.enums import WorkerStatus

router = APIRouter(tags=["health"])


@router.get("/")
async def root():
    """Health check endpoint"""
    return {
        "service": "agent-runtime-coordinator",
        "status": "running",
        "timestamp": datetime.now(UTC).isoformat()
    }


@router.get("/health")
async def health(state: StateManager = Depends(state_manager)):
    """Detailed health status"""
    workers = await state.list_workers()
    status = {
        "status":
        "healthy",
        "jobs":
        await state.count_jobs_by_status(),
        "workers":
        len(workers),
        "active_workers":
        len([w for w in workers if w.status != WorkerStatus.OFFLINE])
    }

    # Presence keys and counters only exist with Redis
    live_workers = await state.list_live_workers()
    if live_workers is not None:
        status["live_workers"] = len(live_workers)
        status["metrics"] = await state.get_metrics()
    return status
