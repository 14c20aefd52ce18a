from fastapi import APIRouter, WebSocket, WebSocketDisconnect, Depends
from typing import List
from datetime import datetime, UTC
import logging

from shared.models import Worker, JobOutcome
from shared.enums import MessageType, ErrorClass
from shared.messages import (
    RegisterMessage,
    HeartbeatMessage,
    ReadyMessage,
    JobResultMessage,
    RegistrationAckMessage,
    HeartbeatAckMessage,
    JobAssignmentMessage,
)
from coordinator.core.state_manager import StateManager, state_manager
from coordinator.core.dependencies import (get_lease_manager,
                                           get_execution_queue,
                                           get_credential_resolver)
from coordinator.core.errors import CredentialError, JobNotFound

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/workers", tags=["workers"])


@router.get("", response_model=List[Worker])
async def list_workers(state: StateManager = Depends(state_manager)):
    """List all workers"""
    return await state.list_workers()


async def _assign_jobs(websocket: WebSocket, worker_id: str,
                       capacity_remaining: int) -> int:
    """Claim up to capacity_remaining jobs and send them to the worker.

    Credentials are resolved here, per claim, and only travel inside the
    assignment message. A job whose credentials can no longer be resolved
    is completed as a non-retryable failure instead of being sent.
    """
    state = state_manager()
    lease_manager = get_lease_manager()
    queue = get_execution_queue()
    resolver = get_credential_resolver()

    assigned = 0
    for _ in range(max(0, capacity_remaining)):
        job = await lease_manager.claim_next(worker_id)
        if job is None:
            break

        agent = await state.get_agent(job.agent_id)
        if agent is None:
            await queue.complete(job.id,
                                 JobOutcome.failure(ErrorClass.CLIENT_ERROR,
                                                    "Agent no longer exists"),
                                 worker_id=worker_id)
            continue

        try:
            credentials = await resolver.resolve_credentials(
                job.agent_id, job.user_id)
        except CredentialError as e:
            logger.error(f"Job {job.id} cannot be dispatched: {e}")
            await queue.complete(job.id,
                                 JobOutcome.failure(
                                     ErrorClass.MISSING_CREDENTIAL, str(e)),
                                 worker_id=worker_id)
            continue

        message = JobAssignmentMessage(job=job,
                                       webhook_url=agent.webhook_url,
                                       agent_name=agent.name,
                                       credentials=credentials,
                                       timestamp=datetime.now(UTC))
        await websocket.send_json(message.model_dump(mode='json'))
        assigned += 1
        logger.info(f"Job {job.id} assigned to worker {worker_id}")

    return assigned


@router.websocket("/{worker_id}")
async def websocket_endpoint(websocket: WebSocket, worker_id: str):
    """WebSocket endpoint for worker connections."""
    # Note: WebSocket endpoints can't use Depends(), so we get dependencies directly
    lease_manager = get_lease_manager()
    queue = get_execution_queue()

    await websocket.accept()
    logger.info(f"Worker {worker_id} connected via WebSocket")

    try:
        while True:
            # Receive message from worker
            data = await websocket.receive_json()
            message_type = data.get("type")

            if message_type == MessageType.REGISTER.value:
                msg = RegisterMessage(**data)
                await lease_manager.register(worker_id, msg.capacity)

                ack = RegistrationAckMessage(worker_id=worker_id,
                                             timestamp=datetime.now(UTC))
                await websocket.send_json(ack.model_dump(mode='json'))

            elif message_type == MessageType.HEARTBEAT.value:
                msg = HeartbeatMessage(**data)
                await lease_manager.heartbeat(worker_id, msg.capacity,
                                              msg.current_load)

                ack = HeartbeatAckMessage(timestamp=datetime.now(UTC))
                await websocket.send_json(ack.model_dump(mode='json'))

            elif message_type == MessageType.READY.value:
                # Worker has free slots
                msg = ReadyMessage(**data)
                await _assign_jobs(websocket, worker_id,
                                   msg.capacity_remaining)

            elif message_type == MessageType.JOB_RESULT.value:
                msg = JobResultMessage(**data)
                try:
                    await queue.complete(msg.job_id,
                                         msg.outcome,
                                         worker_id=worker_id)
                except JobNotFound:
                    logger.warning(
                        f"Worker {worker_id} reported unknown job {msg.job_id}")

            else:
                logger.warning(
                    f"Unknown message type from worker {worker_id}: {message_type}"
                )

    except WebSocketDisconnect:
        await lease_manager.mark_offline(worker_id)
        logger.info(f"Worker {worker_id} disconnected")
    except Exception as e:
        logger.error(f"Error handling worker {worker_id}: {e}")
        await lease_manager.mark_offline(worker_id)
