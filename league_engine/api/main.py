"""
League Competition Engine API Server

FastAPI server exposing league scheduling, score verification, box weeks
and standings over HTTP.
"""

from contextlib import asynccontextmanager
import logging
import os

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from league_engine.api.routes import router
from league_engine.database import db
from league_engine.services import calculation_service
from league_engine.services.errors import NotFoundError, StateConflictError, ValidationError
from league_engine.services.stats_queue import get_stats_queue

# Set up logging
# Allow log level to be configured via environment variable (default: INFO)
log_level = os.getenv("LOG_LEVEL", "INFO").upper()
numeric_level = getattr(logging, log_level, logging.INFO)
logging.basicConfig(
    level=numeric_level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan handler for startup and shutdown events."""
    logger.info("Starting up League Competition Engine API...")

    try:
        await db.init_database()
        logger.info("Database initialized")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)

    # Register the recalculation callback before starting the worker
    queue = get_stats_queue()
    queue.register_recalc_callback(calculation_service.recalculate_league_standings)
    try:
        queue.start_background_worker()
        logger.info("Standings queue worker started")
    except Exception as e:
        logger.error(f"Failed to start standings queue worker: {e}", exc_info=True)

    yield

    logger.info("Shutting down League Competition Engine API...")
    try:
        queue.stop_background_worker()
        logger.info("Standings queue worker stopped")
    except Exception as e:
        logger.error(f"Error stopping standings queue worker: {e}", exc_info=True)


app = FastAPI(
    title="League Competition Engine API",
    description="Scheduling, score verification, box weeks and standings for racquet sport leagues",
    version="1.0.0",
    lifespan=lifespan,
)

# Add CORS middleware - origins configured via ALLOWED_ORIGINS env var
allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.exception_handler(StateConflictError)
async def state_conflict_handler(request: Request, exc: StateConflictError):
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})


app.include_router(router)


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
