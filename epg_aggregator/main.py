from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request

from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from epg_aggregator.config import settings, setup_logging
from epg_aggregator.database import close_db, init_db
from epg_aggregator.services.cache_service import CacheStore
from epg_aggregator.services.fetch_coordinator import get_fetch_coordinator
from epg_aggregator.services.scheduler_service import epg_scheduler

from epg_aggregator.routers import main_router


setup_logging()
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events"""
    logger.info("=" * 60)
    logger.info("Starting EPG Aggregator...")

    coordinator = get_fetch_coordinator()

    try:
        await init_db()
        logger.info("Heuristics database ready")

        if await coordinator.load_cached(CacheStore(settings.cache_path)):
            logger.info(
                "Serving cached EPG: %d channels, %d names",
                len(coordinator.schedule), len(coordinator.channel_index)
            )
        else:
            logger.info("No usable EPG cache, starting empty")

        epg_scheduler.start(run_now=settings.epg_fetch_on_startup)

        logger.info("EPG Aggregator started")
        logger.info("=" * 60)
    except Exception as e:
        logger.error(f"Failed to start EPG Aggregator: {e}", exc_info=True)
        raise

    yield

    logger.info("Shutting down EPG Aggregator...")

    if await coordinator.cancel():
        logger.info("Running refresh cancelled")

    try:
        epg_scheduler.shutdown()
    except Exception as e:
        logger.error(f"Error during scheduler shutdown: {e}", exc_info=True)

    await close_db()
    logger.info("EPG Aggregator stopped")


app = FastAPI(
    title="EPG Aggregator",
    version="0.1.0",
    lifespan=lifespan
)

app.include_router(main_router)

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Log validation errors with details"""
    logger.error(f"Validation error for {request.method} {request.url.path}: {exc.errors()}")

    errors = [
        {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
            "input": str(error.get("input", ""))[:100]
        }
        for error in exc.errors()
    ]

    return JSONResponse(status_code=422, content={"detail": errors})
