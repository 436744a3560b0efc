"""Process entry point: FastAPI app hosting the sync/settlement scheduler."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from livesettle.config import get_settings
from livesettle.database import init_db
from livesettle.routes import router
from livesettle.scheduler import start_scheduler, stop_scheduler
from livesettle.services import build_services

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    settings = get_settings()

    # Startup
    logger.info("Starting livesettle...")
    services = build_services(settings)
    app.state.services = services
    await init_db(services.engine)

    if settings.SCHEDULER_ENABLED:
        start_scheduler(services)
    else:
        logger.info("Scheduler disabled (SCHEDULER_ENABLED=false)")

    yield

    # Shutdown
    logger.info("Shutting down...")
    stop_scheduler()
    await services.close()


app = FastAPI(
    title="livesettle",
    description="Live match state synchronization and prediction settlement",
    version="0.1.0",
    lifespan=lifespan,
)
app.include_router(router)
