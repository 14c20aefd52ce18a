from fastapi import APIRouter, HTTPException, Depends
from typing import List

from shared.models import Schedule
from shared.schemas import ScheduleCreate, ScheduleUpdate
from coordinator.core.state_manager import StateManager, state_manager
from coordinator.core.dependencies import get_scheduler
from coordinator.core.errors import InvalidSchedule, ScheduleNotFound
from coordinator.core.scheduler import Scheduler

router = APIRouter(prefix="/schedules", tags=["schedules"])


@router.post("", response_model=Schedule, status_code=201)
async def create_schedule(request: ScheduleCreate,
                          scheduler: Scheduler = Depends(get_scheduler)):
    """Create a recurring cron trigger"""
    try:
        return await scheduler.create_schedule(request)
    except InvalidSchedule as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("", response_model=List[Schedule])
async def list_schedules(state: StateManager = Depends(state_manager)):
    return await state.list_schedules()


@router.get("/{schedule_id}", response_model=Schedule)
async def get_schedule(schedule_id: str,
                       scheduler: Scheduler = Depends(get_scheduler)):
    try:
        return await scheduler.get_schedule(schedule_id)
    except ScheduleNotFound:
        raise HTTPException(status_code=404, detail="Schedule not found")


@router.patch("/{schedule_id}", response_model=Schedule)
async def update_schedule(schedule_id: str,
                          update: ScheduleUpdate,
                          scheduler: Scheduler = Depends(get_scheduler)):
    """Activate or deactivate a schedule"""
    try:
        return await scheduler.set_active(schedule_id, update.active)
    except ScheduleNotFound:
        raise HTTPException(status_code=404, detail="Schedule not found")
