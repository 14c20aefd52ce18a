"""Request and response schemas for the HTTP surface"""
from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime

from .enums import TriggerType, LimitType
from .models import DailyAgentStats, RetryPolicy


class EnqueueRequest(BaseModel):
    agent_id: str
    user_id: str
    trigger_type: TriggerType
    payload: Dict[str, Any] = {}
    priority: int = Field(default=5, ge=1, le=10)
    scheduled_for: Optional[datetime] = None
    timeout_seconds: Optional[int] = Field(default=None, gt=0)
    max_attempts: Optional[int] = Field(default=None, ge=1)


class EnqueueResponse(BaseModel):
    job_id: str


class ScheduleCreate(BaseModel):
    agent_id: str
    user_id: str
    name: str
    cron_expression: str
    timezone: str = "UTC"
    payload: Dict[str, Any] = {}
    priority: int = Field(default=5, ge=1, le=10)
    max_consecutive_failures: int = Field(default=5, ge=1)


class ScheduleUpdate(BaseModel):
    active: bool


class AnalyticsTotals(BaseModel):
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    unique_users: int = 0
    avg_duration_ms: float = 0.0


class AgentAnalytics(BaseModel):
    agent_id: str
    daily: List[DailyAgentStats]
    totals: AnalyticsTotals
    success_rate: float


class PolicyDocument(BaseModel):
    """Retry and rate-limit policy for one agent, as loaded from YAML"""
    agent_id: str
    retry_policies: List[RetryPolicy] = []
    rate_limits: Dict[LimitType, int] = {}
