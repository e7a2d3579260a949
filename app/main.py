from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI
import logging

from app.core.config import settings
from app.core.logging import setup_logging
from app.core.exceptions import register_exception_handlers
from app.api.deps import build_worker, reset_dependencies
from app.api.routes.health import router as health_router
from app.api.routes.webhook import router as webhook_router
from app.database.connection import init_db, close_db, create_tables
from app.cache.redis_client import init_redis, close_redis
from app.queue.worker import QueueWorker

setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

queue_worker: Optional[QueueWorker] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    global queue_worker

    # Startup
    logger.info("🚀 Meeting webhook pipeline starting up...")

    # Initialize database
    try:
        await init_db()
        if settings.ENV == "development":
            await create_tables()
        logger.info("✅ Database initialized")
    except Exception as e:
        logger.warning(f"⚠️ Database initialization failed: {e}")

    # Initialize Redis
    redis_ready = False
    try:
        await init_redis()
        redis_ready = True
        logger.info("✅ Redis initialized")
    except Exception as e:
        logger.warning(f"⚠️ Redis initialization failed: {e}")

    # Start the queue worker (non-blocking) - only if enabled
    if settings.QUEUE_WORKER_ENABLED and redis_ready:
        queue_worker = await build_worker()
        await queue_worker.start()
    elif not settings.QUEUE_WORKER_ENABLED:
        logger.info("⏸️ Queue worker disabled (set QUEUE_WORKER_ENABLED=true to enable)")
    else:
        logger.warning("⚠️ Queue worker not started: Redis unavailable")

    yield

    # Shutdown
    logger.info("👋 Meeting webhook pipeline shutting down...")
    if queue_worker is not None:
        await queue_worker.stop()
        queue_worker = None

    # Close database
    try:
        await close_db()
        logger.info("✅ Database closed")
    except Exception as e:
        logger.warning(f"⚠️ Database close failed: {e}")

    # Close Redis
    try:
        await close_redis()
        reset_dependencies()
        logger.info("✅ Redis closed")
    except Exception as e:
        logger.warning(f"⚠️ Redis close failed: {e}")


app = FastAPI(
    title=settings.APP_NAME,
    debug=settings.DEBUG,
    lifespan=lifespan,
    docs_url="/docs" if settings.ENV == "development" else None,
    redoc_url="/redoc" if settings.ENV == "development" else None,
    openapi_url="/openapi.json" if settings.ENV == "development" else None,
)

# Register custom exception handlers for standardized error responses
register_exception_handlers(app)

app.include_router(
    health_router,
    prefix=settings.API_V1_PREFIX,
    tags=["Health"],
)

app.include_router(
    webhook_router,
    prefix=settings.API_V1_PREFIX,
)


@app.get("/")
def root():
    return {"message": "Meeting webhook pipeline is running"}
