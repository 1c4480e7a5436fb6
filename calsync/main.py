"""
FastAPI application: webhook intake, status change actions, admin sync and
health endpoints. The lifespan opens the engine environment and runs the
notification processor.
"""

import time
from contextlib import AsyncExitStack, asynccontextmanager

from fastapi import FastAPI, Request

from calsync.config import settings
from calsync.engine.env import open_env
from calsync.engine.notification_processor import NotificationProcessor
from calsync.infrastructure.observability.logging import get_logger, log_request, setup_logging
from calsync.routes import actions, health, notifications, sync

# Setup logging before creating the app
setup_logging(log_level=settings.LOG_LEVEL)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown with proper resource management."""
    logger.info("Application starting", environment=settings.environment, debug=settings.debug)

    async with AsyncExitStack() as stack:
        try:
            env = await stack.enter_async_context(open_env(settings))
        except Exception as e:
            logger.error("Failed to initialize services", error=str(e))
            raise

        processor = NotificationProcessor(env, max_queue_size=settings.NOTIFICATION_QUEUE_SIZE)
        processor.start()
        app.state.env = env
        app.state.processor = processor
        logger.info("All services initialized successfully", provider=settings.CALENDAR_PROVIDER)

        yield

        logger.info("Application shutting down")
        await processor.quit()
        app.state.processor = None
        app.state.env = None

    logger.info("All services closed successfully")


app = FastAPI(
    title="calsync",
    description="Calendar availability to chat presence synchronization",
    version=settings.SERVICE_VERSION,
    lifespan=lifespan,
)

# Include routers
app.include_router(health.router)
app.include_router(notifications.router)
app.include_router(actions.router)
app.include_router(sync.router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log HTTP requests with timing."""
    start_time = time.time()
    response = await call_next(request)
    process_time = (time.time() - start_time) * 1000

    log_request(request.method, request.url.path, response.status_code, round(process_time, 2))
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
