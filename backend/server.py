from fastapi import FastAPI, APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
import asyncio
import logging
import time
from pathlib import Path
from contextlib import asynccontextmanager
from datetime import datetime, timezone
import traceback

# Load environment variables first
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Import configuration
from config import get_settings, get_cors_config, validate_environment

# Import logging and error tracking
from logging_config import setup_logging, get_logger, set_request_context, clear_request_context
from sentry_integration import init_sentry, capture_exception

# Import database and routers
from database import init_db, AsyncSessionLocal
from routers import letters_router, email_status_router, notifications_router
from routers.deps import get_email_client
from email_integration.dispatch import DispatchJobProcessor
from email_integration.job_store import EmailHistoryLog
from email_integration.status_poller import StatusPoller
from email_integration.worker_pool import DispatchWorkerPool, get_dispatch_pool, set_dispatch_pool, submit_job
from services.notification_hub import get_notification_hub
from utils.errors import register_exception_handlers

# Get settings
settings = get_settings()

# Configure structured logging
# Use JSON format in production, plain text in development
setup_logging(
    level=settings.LOG_LEVEL,
    json_format=settings.is_production,
    service_name="letter-dispatch"
)
logger = get_logger(__name__)

# Initialize Sentry error tracking
if settings.SENTRY_DSN:
    init_sentry(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        traces_sample_rate=0.1 if settings.is_production else 0.0,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler"""
    # Startup
    logger.info("=" * 60)
    logger.info("Starting Letter Dispatch API...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Debug Mode: {settings.debug_enabled}")
    logger.info("=" * 60)

    # Validate environment
    env_status = validate_environment()
    if not env_status["valid"]:
        for error in env_status["errors"]:
            logger.error(f"Configuration Error: {error}")
        if settings.is_production:
            raise RuntimeError("Cannot start in production with invalid configuration")

    for warning in env_status.get("warnings", []):
        logger.warning(f"Configuration Warning: {warning}")

    # Initialize database
    try:
        await init_db()
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise

    for directory in (Path(settings.UPLOADS_DIR), settings.signature_dir, settings.email_history_dir):
        directory.mkdir(parents=True, exist_ok=True)

    hub = get_notification_hub()
    history = EmailHistoryLog(settings.email_history_dir)
    email_client = get_email_client()

    # Background dispatch
    processor = DispatchJobProcessor(settings, hub, email_client, history)
    pool = DispatchWorkerPool(
        AsyncSessionLocal,
        processor,
        workers=settings.DISPATCH_WORKERS,
        queue_size=settings.DISPATCH_QUEUE_SIZE,
        timeout_seconds=settings.DISPATCH_TIMEOUT_SECONDS,
    )
    pool.start()
    set_dispatch_pool(pool)

    poller = None
    poller_task = None
    if settings.POLL_INTERVAL_SECONDS > 0:
        poller = StatusPoller(
            AsyncSessionLocal,
            hub,
            history,
            email_client,
            submit=submit_job,
            batch_size=settings.POLL_BATCH_SIZE,
            poll_interval=settings.POLL_INTERVAL_SECONDS,
            queued_retry_seconds=settings.QUEUED_RETRY_SECONDS,
        )
        poller_task = asyncio.create_task(poller.run_continuous())

    logger.info("Letter Dispatch API started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Letter Dispatch API...")
    if poller is not None:
        poller.stop()
        poller_task.cancel()
        await asyncio.gather(poller_task, return_exceptions=True)
    await pool.stop()
    set_dispatch_pool(None)


# Create the main app
app = FastAPI(
    title=settings.API_TITLE,
    description="""
    Backend API for generating employee letters from DOCX templates and emailing them.

    ## Features

    ### Letters (/api/tabs/{tabId})
    - Placeholder resolution from each tab's employee table
    - Signature lookup and cleanup
    - PDF previews and bulk DOCX generation

    ### Email Delivery
    - Asynchronous dispatch with bounded concurrency
    - Provider webhooks and status polling
    - Retry of failed, bounced and dropped emails

    ### Notifications (/api/notifications/ws)
    - Live EmailStatusUpdate events per sending user
    """,
    version=settings.API_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs" if settings.debug_enabled else None,
    redoc_url="/api/redoc" if settings.debug_enabled else None,
)

# Create a router with the /api prefix
api_router = APIRouter(prefix="/api")


# ==================== HEALTH CHECK ENDPOINTS ====================

@api_router.get("/", tags=["Health"])
async def root():
    """Basic health check - returns 200 if service is running"""
    return {
        "message": "Letter Dispatch API",
        "status": "healthy",
        "version": settings.API_VERSION,
        "environment": settings.ENVIRONMENT,
    }


@api_router.get("/health", tags=["Health"])
async def health_check():
    """
    Detailed health check for load balancers and uptime monitors.

    Returns:
    - 200: All systems operational
    - 503: Database unavailable
    """
    health_status = {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": settings.API_VERSION,
        "environment": settings.ENVIRONMENT,
        "checks": {}
    }

    try:
        from database import engine
        from sqlalchemy import text

        async with engine.begin() as conn:
            result = await conn.execute(text("SELECT 1"))
            result.fetchone()

        health_status["checks"]["database"] = {
            "status": "connected",
            "type": engine.dialect.name
        }
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        health_status["status"] = "unhealthy"
        health_status["checks"]["database"] = {
            "status": "disconnected",
            "error": str(e)
        }

    pool = get_dispatch_pool()
    health_status["checks"]["dispatch"] = {
        "status": "running" if pool is not None and pool.is_running else "stopped",
        "queued": pool.queue.qsize() if pool is not None else 0,
    }
    health_status["checks"]["email"] = get_email_client().get_status()

    env_status = validate_environment()
    health_status["checks"]["configuration"] = {
        "status": "valid" if env_status["valid"] else "invalid",
        "warnings": len(env_status.get("warnings", [])),
        "errors": len(env_status.get("errors", []))
    }

    if health_status["status"] == "unhealthy":
        raise HTTPException(status_code=503, detail=health_status)

    return health_status


@api_router.get("/health/live", tags=["Health"])
async def liveness_check():
    """Liveness probe. Does not check dependencies."""
    return {"status": "alive", "timestamp": datetime.now(timezone.utc).isoformat()}


# Include routers
api_router.include_router(letters_router)
api_router.include_router(email_status_router)
api_router.include_router(notifications_router)

app.include_router(api_router)
register_exception_handlers(app)


# CORS middleware with production-safe configuration
cors_config = get_cors_config()
app.add_middleware(
    CORSMiddleware,
    **cors_config
)


# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log requests with timing and tag log lines with the request id"""
    start_time = time.time()

    request_id = request.headers.get("X-Request-ID", f"req-{int(start_time * 1000)}")
    set_request_context(request_id=request_id, user_id=request.headers.get("X-User-Id"))

    if settings.debug_enabled:
        logger.debug(f"[{request_id}] {request.method} {request.url.path}")

    try:
        response = await call_next(request)

        process_time = time.time() - start_time
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = str(round(process_time * 1000, 2))

        if settings.debug_enabled or response.status_code >= 400:
            logger.info(f"[{request_id}] {request.method} {request.url.path} -> {response.status_code} ({process_time:.3f}s)")

        return response
    except Exception as e:
        logger.error(f"[{request_id}] Request failed: {str(e)}")
        raise
    finally:
        clear_request_context()


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle uncaught exceptions"""
    logger.error(f"Unhandled exception: {exc}")
    capture_exception(exc, path=request.url.path, method=request.method)
    if settings.debug_enabled:
        logger.error(traceback.format_exc())

    # Don't expose internal errors in production
    if settings.is_production:
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"}
        )
    return JSONResponse(
        status_code=500,
        content={
            "detail": str(exc),
            "type": type(exc).__name__,
        }
    )
