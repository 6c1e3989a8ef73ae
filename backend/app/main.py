"""FastAPI application entry point."""

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from starlette.middleware.base import BaseHTTPMiddleware

from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from app.api.routes import api_router
from app.core.config import settings
from app.core.logging_config import configure_logging
from app.core.rate_limit import limiter
from app.db.base import Base
from app.db.session import SessionLocal, engine
from app.services.deduction_retry_service import DeductionRetryQueue
from app.services.movement_log_service import MovementRecorder

configure_logging()
logger = logging.getLogger(__name__)
request_logger = logging.getLogger("requests")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log every API call with its request id, store and timing.

    The ``X-Request-ID`` header is generated when the POS does not send one
    and echoed on the response.
    """

    async def dispatch(self, request: Request, call_next):
        if request.url.path in ["/health", "/health/ready"]:
            return await call_next(request)

        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:16]
        store = request.headers.get("X-Store-ID", "-")
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            request_logger.exception(
                f"[{request_id}] {request.method} {request.url.path} store={store} - "
                f"unhandled error after {time.perf_counter() - started:.3f}s"
            )
            raise

        elapsed = time.perf_counter() - started
        level = logging.WARNING if response.status_code >= 400 else logging.INFO
        request_logger.log(
            level,
            f"[{request_id}] {request.method} {request.url.path} store={store} - "
            f"{response.status_code} in {elapsed:.3f}s"
        )
        response.headers["X-Request-ID"] = request_id
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting Stock Sync Service")

    # Schema is owned by the models; create whatever is missing
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables ready")

    recorder = MovementRecorder(SessionLocal, maxsize=settings.movement_queue_size)
    recorder.start()
    app.state.movement_recorder = recorder

    retry_queue = DeductionRetryQueue(SessionLocal, recorder=recorder)
    app.state.retry_queue = retry_queue
    if settings.retry_enabled:
        await retry_queue.start()
    else:
        logger.info("Deduction retry loop disabled by configuration")

    yield

    await retry_queue.stop()
    recorder.stop()
    app.state.retry_queue = None
    app.state.movement_recorder = None

    logger.info("Shutting down Stock Sync Service")


app = FastAPI(
    title="Stock Sync Service",
    description="Ingredient resolution, atomic stock deduction and retry recovery for POS sales",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

# Rate limiting setup
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Request logging middleware
app.add_middleware(RequestLoggingMiddleware)

# CORS middleware - added last so it runs first (Starlette LIFO order)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "Accept", "Origin", "X-Request-ID"],
    max_age=600,
)

# Include API routes
app.include_router(api_router, prefix=settings.api_v1_prefix)


@app.get("/health")
def health_check():
    """Basic liveness check endpoint."""
    return {"status": "healthy", "version": "1.0.0"}


@app.get("/health/ready")
def readiness_check(request: Request):
    """Readiness check: database connectivity and background workers."""
    checks = {"database": "unknown", "movement_recorder": "stopped", "retry_queue": "stopped"}

    db = None
    try:
        db = SessionLocal()
        db.execute(text("SELECT 1"))
        checks["database"] = "healthy"
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        checks["database"] = "unhealthy"
    finally:
        if db:
            db.close()

    recorder = getattr(request.app.state, "movement_recorder", None)
    if recorder is not None and recorder.running:
        checks["movement_recorder"] = "running"
        checks["movement_write_failures"] = recorder.failed_writes
    retry_queue = getattr(request.app.state, "retry_queue", None)
    if retry_queue is not None and retry_queue.running:
        checks["retry_queue"] = "running"

    ready = checks["database"] == "healthy"
    return {"status": "ready" if ready else "not_ready", "checks": checks}
