"""FastAPI application entrypoint for the TutorSync live session service."""
import sys

# Ensure UTF-8 encoding
if sys.stdout:
    sys.stdout.reconfigure(encoding='utf-8')

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
import logging
import time
import uuid

from tutorsync.api.routes import router
from tutorsync.core.config import settings
from tutorsync.core.errors import SessionError
from tutorsync.core.logging import get_logger, setup_logging
from tutorsync.infrastructure.store import StoreError, get_document_store
from tutorsync.services.aggregator import TerminationAggregator
from tutorsync.services.coordinator import registry

# Initialize structured logging
log_format = settings.environment == "production"
setup_logging(level=settings.log_level, json_format=log_format)
logger = get_logger(__name__)

# Application metadata
APP_VERSION = "1.0.0"
APP_NAME = "TutorSync Live Session Service"

app = FastAPI(
    title=APP_NAME,
    description="Live teaching-session coordination: shared page cursor, drawings, meetings and history",
    version=APP_VERSION,
    docs_url="/docs" if settings.environment != "production" else None,  # Disable in prod
    redoc_url="/redoc" if settings.environment != "production" else None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)


@app.exception_handler(SessionError)
async def session_error_handler(request: Request, exc: SessionError):
    """Map session-core errors to JSON responses with their HTTP status."""
    request_id = getattr(request.state, "request_id", None)
    logger.warning(
        f"{type(exc).__name__}: {exc.message}",
        extra={
            "request_id": request_id,
            "path": request.url.path,
            "status_code": exc.status_code,
            "error_type": type(exc).__name__,
        }
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message, "type": type(exc).__name__, "request_id": request_id},
    )


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log each request with its id, timing and status; unexpected errors become 500s."""
    request_id = str(uuid.uuid4())
    request.state.request_id = request_id
    context = {"request_id": request_id, "method": request.method, "path": request.url.path}
    start_time = time.time()

    try:
        response = await call_next(request)
    except Exception as e:
        context["duration_ms"] = round((time.time() - start_time) * 1000, 2)
        logger.error(
            f"{request.method} {request.url.path} failed: {e}",
            extra={**context, "error_type": type(e).__name__},
            exc_info=True,
        )
        return JSONResponse(status_code=500, content={"error": "Internal server error", "request_id": request_id})

    context["duration_ms"] = round((time.time() - start_time) * 1000, 2)
    level = logging.WARNING if response.status_code >= 400 else logging.INFO
    logger.log(level, f"{request.method} {request.url.path} -> {response.status_code}",
               extra={**context, "status_code": response.status_code})
    response.headers["X-Request-ID"] = request_id
    return response


@app.on_event("startup")
async def startup_event():
    """Finish terminations interrupted by a previous crash."""
    logger.info("Application starting up", extra={"operation": "startup"})
    try:
        recovered = TerminationAggregator(get_document_store()).recover_pending()
    except SessionError as e:
        logger.error(f"Pending termination recovery failed: {e.message}")
    else:
        if recovered:
            logger.info(f"Recovered {len(recovered)} pending terminations")


@app.on_event("shutdown")
async def shutdown_event():
    """Drop client subscriptions and release the store."""
    logger.info("Application shutting down")
    registry.clear()
    get_document_store().close()


app.include_router(router)


@app.get("/")
def root():
    """Root endpoint with basic service info."""
    return {
        "service": APP_NAME,
        "version": APP_VERSION,
        "status": "running",
        "environment": settings.environment
    }


@app.get("/health")
def health_check():
    """Liveness probe. Returns 200 while the process serves requests."""
    return {
        "status": "healthy",
        "version": APP_VERSION,
        "checks": {
            "api": "ok",
            "store_backend": settings.store_backend,
        }
    }


@app.get("/ready")
async def readiness_check():
    """Readiness probe - verifies the document store answers."""
    checks = {"store_backend": settings.store_backend}

    if settings.store_backend == "redis":
        from tutorsync.infrastructure.redis import get_redis_client

        redis = get_redis_client()
        try:
            checks["redis"] = "ok" if redis is not None and redis.ping() else "fallback_memory"
        except Exception as e:
            logger.warning(f"Redis ping failed: {e}")
            checks["redis"] = "error"

    try:
        get_document_store().get("health/probe")
        checks["store"] = "ok"
    except StoreError as e:
        logger.warning(f"Store probe failed: {e}")
        checks["store"] = "error"

    all_ok = checks["store"] == "ok" and checks.get("redis", "ok") == "ok"

    return {
        "status": "ready" if all_ok else "degraded",
        "checks": checks
    }
