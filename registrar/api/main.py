"""
Registrar API Server

FastAPI server for season/tournament registrations, card payments and
refund reconciliation against the payment gateway.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging
import os
import uvicorn
from slowapi import _rate_limit_exceeded_handler  # type: ignore
from slowapi.errors import RateLimitExceeded  # type: ignore

from registrar.api.routes import router, limiter as routes_limiter
from registrar.database import db
from registrar.gateway import get_gateway
from registrar.models.schemas import ErrorResponse
from registrar.services.errors import RegistrarError
from registrar.services.notification_dispatcher import get_notification_dispatcher
from registrar.services.refund_sync_service import get_refund_sync_service
from registrar.utils.env_utils import get_bool_env

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
    logger.info("Starting up Registrar API...")

    try:
        await db.init_database()
        logger.info("Database initialized")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)
        # Don't raise - allow app to start; migrations may own the schema

    # Start notification worker (emails go out after commit, off the request path)
    try:
        get_notification_dispatcher().start()
        logger.info("✓ Notification worker started")
    except Exception as e:
        logger.error(f"Failed to start notification worker: {e}", exc_info=True)

    # Start refund sync worker (orphaned charges + refund reconciliation)
    if get_bool_env("ENABLE_REFUND_SYNC", False):
        try:
            get_refund_sync_service().start()
            logger.info("✓ Refund sync worker started")
        except Exception as e:
            logger.error(f"Failed to start refund sync worker: {e}", exc_info=True)
    else:
        logger.info("Refund sync worker disabled (ENABLE_REFUND_SYNC=false)")

    yield  # App is running

    # Shutdown
    logger.info("Shutting down Registrar API...")

    try:
        get_refund_sync_service().stop()
    except Exception as e:
        logger.error(f"Error stopping refund sync worker: {e}", exc_info=True)

    try:
        dispatcher = get_notification_dispatcher()
        await dispatcher.drain()
        dispatcher.stop()
        logger.info("✓ Notification worker stopped")
    except Exception as e:
        logger.error(f"Error stopping notification worker: {e}", exc_info=True)

    try:
        await get_gateway().close()
        logger.info("✓ Gateway client closed")
    except Exception as e:
        logger.error(f"Error closing gateway client: {e}", exc_info=True)


app = FastAPI(
    title="Registrar API",
    description="Registrations, payments and refund reconciliation",
    version="1.0.0",
    lifespan=lifespan,
)

# Setup rate limiter
app.state.limiter = routes_limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(RegistrarError)
async def registrar_error_handler(request: Request, exc: RegistrarError):
    """Turn a registrar error into its HTTP status and a JSON error body."""
    body = ErrorResponse(
        error=exc.code,
        detail=exc.message,
        idempotency_key=getattr(exc, "idempotency_key", None),
        gateway_payment_id=getattr(exc, "gateway_payment_id", None),
    )
    if exc.status_code >= 500:
        logger.warning(f"{request.method} {request.url.path} -> {exc.status_code} {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=body.model_dump(exclude_none=True))


# Add CORS middleware - origins configured via ALLOWED_ORIGINS env var
allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

# Include API routes
app.include_router(router)


@app.get("/api/health")
async def health():
    """Liveness check."""
    return {"status": "ok"}


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
