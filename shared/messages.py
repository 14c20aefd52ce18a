"""WebSocket message schemas for coordinator-worker communication"""
from pydantic import BaseModel, ConfigDict
from typing import Optional, Dict
from datetime import datetime

from .enums import MessageType
from .models import ExecutionJob, JobOutcome


class WebSocketMessage(BaseModel):
    """Base schema for all WebSocket messages"""
    type: MessageType
    timestamp: Optional[datetime] = None

    model_config = ConfigDict(use_enum_values=True)


# ============================================================================
# Worker -> Coordinator Messages
# ============================================================================


class RegisterMessage(WebSocketMessage):
    """Worker registration message"""
    type: MessageType = MessageType.REGISTER
    capacity: int


class HeartbeatMessage(WebSocketMessage):
    """Worker heartbeat message"""
    type: MessageType = MessageType.HEARTBEAT
    worker_id: Optional[str] = None
    capacity: int
    current_load: int


class ReadyMessage(WebSocketMessage):
    """Worker has free capacity and asks for jobs"""
    type: MessageType = MessageType.READY
    worker_id: Optional[str] = None
    capacity_remaining: int


class JobResultMessage(WebSocketMessage):
    """Outcome of a dispatch reported by the worker"""
    type: MessageType = MessageType.JOB_RESULT
    job_id: str
    worker_id: Optional[str] = None
    outcome: JobOutcome


# ============================================================================
# Coordinator -> Worker Messages
# ============================================================================


class RegistrationAckMessage(WebSocketMessage):
    """Acknowledgment of worker registration"""
    type: MessageType = MessageType.REGISTRATION_ACK
    status: str = "registered"
    worker_id: str


class HeartbeatAckMessage(WebSocketMessage):
    """Acknowledgment of worker heartbeat"""
    type: MessageType = MessageType.HEARTBEAT_ACK


class JobAssignmentMessage(WebSocketMessage):
    """Claimed job handed to a worker.

    Credentials are resolved at claim time and only travel in this message;
    they are never written to the job record.
    """
    type: MessageType = MessageType.JOB_ASSIGNMENT
    job: ExecutionJob
    webhook_url: str
    agent_name: str
    credentials: Dict[str, str] = {}
