from fastapi import APIRouter, HTTPException, Depends
from typing import List, Optional

from shared.models import ExecutionJob, ExecutionHistoryEntry
from shared.schemas import EnqueueRequest, EnqueueResponse
from coordinator.core.dependencies import get_execution_queue, get_history
from coordinator.core.errors import (AgentNotFound, AgentInactive,
                                     UserNotEntitled, RateLimitExceeded,
                                     MissingCredential, JobNotFound,
                                     InvalidJobTransition)
from coordinator.core.execution_queue import ExecutionQueue
from coordinator.core.history import ExecutionHistoryRecorder

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.post("", response_model=EnqueueResponse, status_code=201)
async def enqueue_job(request: EnqueueRequest,
                      queue: ExecutionQueue = Depends(get_execution_queue)):
    """Admit a trigger and create a queued job"""
    try:
        job_id = await queue.enqueue(request.agent_id,
                                     request.user_id,
                                     request.trigger_type,
                                     payload=request.payload,
                                     priority=request.priority,
                                     scheduled_for=request.scheduled_for,
                                     timeout_seconds=request.timeout_seconds,
                                     max_attempts=request.max_attempts)
    except AgentNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except AgentInactive as e:
        raise HTTPException(status_code=409, detail=str(e))
    except UserNotEntitled as e:
        raise HTTPException(status_code=403, detail=str(e))
    except MissingCredential as e:
        raise HTTPException(status_code=422, detail=str(e))
    except RateLimitExceeded as e:
        raise HTTPException(status_code=429, detail=str(e))
    return EnqueueResponse(job_id=job_id)


@router.get("", response_model=List[ExecutionJob])
async def list_jobs(user_id: str,
                    agent_id: Optional[str] = None,
                    limit: int = 50,
                    history: ExecutionHistoryRecorder = Depends(get_history)):
    """Execution history for a user, most recent first"""
    if limit < 1:
        raise HTTPException(status_code=400, detail="limit must be positive")
    return await history.get_execution_history(user_id, agent_id, limit)


@router.get("/{job_id}", response_model=ExecutionJob)
async def get_job(job_id: str,
                  queue: ExecutionQueue = Depends(get_execution_queue)):
    try:
        return await queue.get_job(job_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")


@router.get("/{job_id}/history", response_model=List[ExecutionHistoryEntry])
async def get_job_history(
        job_id: str,
        history: ExecutionHistoryRecorder = Depends(get_history)):
    """Phase log of a job"""
    try:
        return await history.get_job_history(job_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")


@router.post("/{job_id}/cancel", response_model=ExecutionJob)
async def cancel_job(job_id: str,
                     queue: ExecutionQueue = Depends(get_execution_queue)):
    """Cancel a job that has not been claimed yet"""
    try:
        return await queue.cancel(job_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")
    except InvalidJobTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
