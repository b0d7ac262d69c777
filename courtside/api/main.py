"""
Courtside Realtime API Server

FastAPI server that hosts the realtime socket endpoint plus the REST surface
for conversations, message history and notifications.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI
import logging
import os
import uvicorn
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler  # type: ignore
from slowapi.errors import RateLimitExceeded  # type: ignore

from courtside.api.routes import router, limiter as routes_limiter
from courtside.database import db
from courtside.models import events
from courtside.services.presence_service import PresenceSweeper, get_presence_registry
from courtside.services.websocket_manager import get_websocket_manager, make_event
from courtside.utils.datetime_utils import utcnow

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
    # Startup
    logger.info("Starting up Courtside Realtime API...")

    # Initialize database (create tables if they don't exist)
    try:
        await db.init_database()
        logger.info("Database initialized")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)
        # Don't raise - allow app to start even if initialization fails

    # Start presence sweep worker (stale connections and idle statuses)
    sweeper = PresenceSweeper(get_presence_registry(), get_websocket_manager())
    try:
        sweeper.start()
        logger.info("Presence sweep worker started")
    except Exception as e:
        logger.error(f"Failed to start presence sweep worker: {e}", exc_info=True)

    yield  # App is running

    # Shutdown
    logger.info("Shutting down Courtside Realtime API...")

    # Tell connected clients the server is going away
    try:
        sent = await get_websocket_manager().broadcast(
            make_event(events.SYSTEM_SHUTDOWN, {"timestamp": utcnow().isoformat()})
        )
        logger.info(f"Shutdown notice sent to {sent} connection(s)")
    except Exception as e:
        logger.error(f"Error broadcasting shutdown notice: {e}", exc_info=True)

    try:
        sweeper.stop()
    except Exception as e:
        logger.error(f"Error stopping presence sweep worker: {e}", exc_info=True)


app = FastAPI(
    title="Courtside Realtime API",
    description="Realtime conversations, presence and notifications",
    version="1.0.0",
    lifespan=lifespan,
)

# Setup rate limiter
app.state.limiter = routes_limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Add CORS middleware - origins configured via ALLOWED_ORIGINS env var
allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

# Include API routes
app.include_router(router)


@app.get("/api/health")
async def health():
    """Liveness check with the number of connected users."""
    connected = await get_websocket_manager().get_connected_user_ids()
    return {"status": "ok", "connectedUsers": len(connected)}


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
