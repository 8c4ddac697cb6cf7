"""StrategyHub FastAPI Application.

Bot control API plus the background worker that reconciles, triggers and
stops bots against their exchange accounts.
"""

import logging
import sys
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .models import init_db
from .routers import bots, health, kill_switch, metrics
from .services.config import config_service, ConfigValidationException
from .services.executor_factory import ExecutorFactory
from .services.worker import Worker

logger = logging.getLogger(__name__)

DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging() -> None:
    """Apply logging.level / logging.format from config."""
    logging.basicConfig(
        level=config_service.get("logging.level", "INFO"),
        format=config_service.get("logging.format", DEFAULT_LOG_FORMAT),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup: Validate configuration
    try:
        config_service.load_and_validate()
    except ConfigValidationException as e:
        logging.basicConfig(level=logging.ERROR, format=DEFAULT_LOG_FORMAT)
        logger.critical(f"Server cannot start with invalid configuration: {e}")
        sys.exit(1)
    configure_logging()

    # Initialize database
    await init_db()
    logger.info("Database initialized")

    factory = ExecutorFactory.from_config(config_service)
    worker = Worker(factory, config_service.worker_settings())
    app.state.executor_factory = factory
    app.state.worker = worker

    if worker.settings.enabled:
        await worker.start()
    else:
        logger.info("Worker disabled (worker.enabled is false)")

    yield

    # Shutdown: finish the current tick, then close exchange clients
    logger.info("Initiating graceful shutdown...")
    try:
        await worker.stop()
    except Exception as e:
        logger.error(f"Error during worker shutdown: {e}")
    logger.info("Graceful shutdown complete")


app = FastAPI(
    title="StrategyHub API",
    description="Crypto Trigger Bot Execution API",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, prefix="/api", tags=["Health"])
app.include_router(bots.router, prefix="/api/bots", tags=["Bots"])
app.include_router(kill_switch.router, prefix="/api/kill-switch", tags=["Kill Switch"])
app.include_router(metrics.router, prefix="/api", tags=["Metrics"])


@app.get("/")
async def root():
    """Root endpoint redirect to docs."""
    return {"message": "StrategyHub API", "docs": "/docs"}
