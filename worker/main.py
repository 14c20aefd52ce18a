"""Dispatch worker that connects to the coordinator via WebSocket."""
import asyncio
import json
import logging
import os
import signal
import uuid
from typing import Optional, Set
from datetime import datetime, UTC
import websockets
from websockets.exceptions import ConnectionClosed

from shared.enums import MessageType, ErrorClass
from shared.messages import (
    RegisterMessage,
    HeartbeatMessage,
    JobResultMessage,
    ReadyMessage,
    RegistrationAckMessage,
    JobAssignmentMessage,
)
from shared.models import JobOutcome
from worker.dispatcher import WebhookDispatcher

# Use LOG_LEVEL from environment, default to INFO
log_level = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(level=getattr(logging, log_level, logging.INFO))
logger = logging.getLogger(__name__)


class WorkerNode:
    """Worker node that claims jobs and performs their webhook calls."""

    def __init__(self,
                 worker_id: Optional[str] = None,
                 capacity: int = 5,
                 heartbeat_interval: float = 10,
                 poll_interval: float = 2,
                 dispatcher: Optional[WebhookDispatcher] = None):
        """Initialize worker node."""
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self.capacity = capacity
        self.heartbeat_interval = heartbeat_interval
        self.poll_interval = poll_interval
        self.dispatcher = dispatcher or WebhookDispatcher()
        self.coordinator_url = os.getenv("COORDINATOR_URL",
                                         "ws://coordinator:8000/workers")
        self.websocket = None
        self.running = True
        self.in_flight: Set[str] = set()

    @property
    def current_load(self) -> int:
        return len(self.in_flight)

    async def connect(self):
        """Connect to the coordinator via WebSocket."""
        url = f"{self.coordinator_url}/{self.worker_id}"
        logger.info(f"Connecting to coordinator at {url}")

        try:
            self.websocket = await websockets.connect(url)
            logger.info(f"Connected to coordinator as {self.worker_id}")

            await self.register()

            # Start heartbeat and poll tasks
            asyncio.create_task(self.send_heartbeat())
            asyncio.create_task(self.poll_for_jobs())

            return True
        except Exception as e:
            logger.error(f"Failed to connect to coordinator: {e}")
            return False

    async def register(self):
        """Announce capacity to the coordinator."""
        message = RegisterMessage(capacity=self.capacity,
                                  timestamp=datetime.now(UTC))
        await self.websocket.send(message.model_dump_json())
        logger.info(f"Registered with capacity {self.capacity}")

    async def send_heartbeat(self):
        """Send periodic heartbeat to coordinator."""
        while self.running and self.websocket:
            try:
                message = HeartbeatMessage(worker_id=self.worker_id,
                                           capacity=self.capacity,
                                           current_load=self.current_load,
                                           timestamp=datetime.now(UTC))
                await self.websocket.send(message.model_dump_json())
                await asyncio.sleep(self.heartbeat_interval)
            except Exception as e:
                logger.error(f"Error sending heartbeat: {e}")
                break

    async def poll_for_jobs(self):
        """Ask for work whenever there is free capacity."""
        while self.running and self.websocket:
            try:
                if self.current_load < self.capacity:
                    await self.send_ready_status()
                await asyncio.sleep(self.poll_interval)
            except Exception as e:
                logger.error(f"Error polling for jobs: {e}")
                break

    async def send_ready_status(self):
        """Tell the coordinator how many more jobs this worker can take."""
        message = ReadyMessage(worker_id=self.worker_id,
                               capacity_remaining=self.capacity -
                               self.current_load,
                               timestamp=datetime.now(UTC))
        await self.websocket.send(message.model_dump_json())

    async def execute_job(self, assignment: JobAssignmentMessage):
        """Dispatch one job and report its outcome."""
        job_id = assignment.job.id
        self.in_flight.add(job_id)
        try:
            outcome = await self.dispatcher.dispatch_assignment(assignment)
        except Exception as e:
            logger.error(f"Job {job_id} dispatch crashed: {e}")
            outcome = JobOutcome.failure(ErrorClass.NETWORK_ERROR, str(e))

        try:
            await self.send_job_result(job_id, outcome)
        finally:
            self.in_flight.discard(job_id)

    async def send_job_result(self, job_id: str, outcome: JobOutcome):
        """Report a dispatch outcome to the coordinator."""
        message = JobResultMessage(job_id=job_id,
                                   worker_id=self.worker_id,
                                   outcome=outcome,
                                   timestamp=datetime.now(UTC))
        await self.websocket.send(message.model_dump_json())

    async def handle_message(self, message: dict):
        """Handle messages from the coordinator."""
        message_type = message.get("type")

        if message_type == MessageType.JOB_ASSIGNMENT.value:
            msg = JobAssignmentMessage(**message)
            # Execute job in background
            asyncio.create_task(self.execute_job(msg))

        elif message_type == MessageType.HEARTBEAT_ACK.value:
            # Heartbeat acknowledged
            pass

        elif message_type == MessageType.REGISTRATION_ACK.value:
            msg = RegistrationAckMessage(**message)
            logger.info(
                f"Registration acknowledged by coordinator: {msg.status}")

        else:
            logger.warning(f"Unknown message type: {message_type}")

    async def run(self):
        """Main worker loop."""
        # Try to connect with retries
        max_retries = 5
        retry_count = 0

        while retry_count < max_retries and self.running:
            if await self.connect():
                break
            retry_count += 1
            logger.info(
                f"Retrying connection ({retry_count}/{max_retries})...")
            await asyncio.sleep(5)

        if not self.websocket:
            logger.error("Failed to connect to coordinator")
            return

        try:
            # Main message loop
            async for message in self.websocket:
                try:
                    data = json.loads(message)
                    await self.handle_message(data)
                except json.JSONDecodeError:
                    logger.error(f"Invalid JSON received: {message}")
                except Exception as e:
                    logger.error(f"Error handling message: {e}")

        except ConnectionClosed:
            logger.info("Connection to coordinator closed")
        except Exception as e:
            logger.error(f"Worker error: {e}")
        finally:
            if self.websocket:
                await self.websocket.close()

    async def shutdown(self):
        """Graceful shutdown."""
        logger.info("Shutting down worker...")
        self.running = False

        if self.websocket:
            await self.websocket.close()


def signal_handler(signum, frame):
    """Handle shutdown signals."""
    logger.info(f"Received signal {signum}")
    asyncio.create_task(worker.shutdown())


async def main():
    """Main entry point."""
    global worker

    # Get configuration from environment
    worker = WorkerNode(
        worker_id=os.getenv("WORKER_ID", None),
        capacity=int(os.getenv("WORKER_CAPACITY", "5")),
        heartbeat_interval=float(os.getenv("HEARTBEAT_INTERVAL_SECONDS", "10")),
        poll_interval=float(os.getenv("POLL_INTERVAL_SECONDS", "2")))

    # Set up signal handlers
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    await worker.run()


if __name__ == "__main__":
    asyncio.run(main())
