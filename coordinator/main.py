from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import uvicorn
from coordinator.core.dependencies import (get_lease_manager, get_scheduler,
                                           get_settings, reset_dependencies)
from coordinator.core.state_manager import init_state_manager
from coordinator.api import agents, health, jobs, schedules, workers
from contextlib import asynccontextmanager
import asyncio
import logging
import os

# Use LOG_LEVEL from environment, default to INFO
log_level = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(level=getattr(logging, log_level, logging.INFO))
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle."""
    settings = get_settings()

    if settings.database_url or settings.redis_url:
        logger.info(
            f"Initializing state manager with backends (DB: {bool(settings.database_url)}, Redis: {bool(settings.redis_url)})"
        )
        state = await init_state_manager(database_url=settings.database_url,
                                         redis_url=settings.redis_url)
        # Rebuild singletons against the new state manager
        reset_dependencies()
    else:
        state = None
        logger.info("Running with in-memory state only")

    if not settings.credential_encryption_key:
        logger.warning(
            "CREDENTIAL_ENCRYPTION_KEY not set; agents requiring credentials cannot run"
        )

    # Start background tasks
    lease_manager = get_lease_manager()
    scheduler = get_scheduler()
    reaper_task = asyncio.create_task(
        lease_manager.run_reaper(settings.reaper_interval_seconds))
    scheduler_task = asyncio.create_task(
        scheduler.run(settings.scheduler_interval_seconds))
    logger.info("Coordinator started - WebSocket server ready")

    yield

    # Cleanup
    reaper_task.cancel()
    scheduler_task.cancel()
    if state is not None:
        await state.close()
    logger.info("Coordinator shutting down")


app = FastAPI(
    title="Agent Execution Runtime - Coordinator",
    description="Queues, rate-limits, dispatches and retries agent webhook executions",
    version="0.1.0",
    lifespan=lifespan)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router)
app.include_router(jobs.router)
app.include_router(workers.router)
app.include_router(schedules.router)
app.include_router(agents.router)

if __name__ == "__main__":
    uvicorn.run("coordinator.main:app", host="0.0.0.0", port=8000, reload=True)
