import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.encoders import jsonable_encoder

from clearance.config import settings
from clearance.core.exceptions import ClearanceError, ErrorCode
from clearance.database import async_session_factory, init_db
from clearance.api.v1.router import api_router
from clearance.jobs.scheduler import start_scheduler, shutdown_scheduler


logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Startup:
    - Configure logging
    - Ensure clearance tables exist
    - Start background scheduler (stale settlement claims)
    """
    configure_logging()
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")

    await init_db()

    if settings.SCHEDULER_ENABLED:
        start_scheduler()

    yield

    shutdown_scheduler()
    logger.info("Shutting down...")


OPENAPI_TAGS = [
    {"name": "Clearance Criteria", "description": "Cutoff date / minimum threshold lifecycle (OPEN, LOCKED, COMPLETED)"},
    {"name": "Eligible Affiliates", "description": "Affiliates with unpaid earnings matching the locked criteria"},
    {"name": "Affiliate Clearance Status", "description": "Manual per-affiliate exclusion and restore"},
    {"name": "Batch Payments", "description": "Two-phase batch payment: schedule, then settle"},
    {"name": "Clearance Events", "description": "Append-only audit trail of clearance actions"},
]

API_DESCRIPTION = """
## Affiliate Earnings Clearance API

Backs the admin console's *Unpaid per affiliate* screen.

### Workflow

1. Set cutoff date and minimum amount, then **lock** the criteria
2. Review **eligible affiliates**, exclude individual rows if needed
3. **Schedule** selected affiliates ("proceed to payment")
4. **Settle** them ("pay checked"); failed ids stay scheduled for retry
5. **Complete** the period and start a new one

### Authentication

Include the console's token in the Authorization header: `Bearer <token>`

### Error Codes

| Code | HTTP | Description |
|------|------|-------------|
| INVALID_TRANSITION | 409 | Lifecycle or payment state does not allow the operation |
| INVALID_INPUT | 422 | Malformed or out-of-range date or amount |
| PRECONDITION_FAILED | 412 | Completing while affiliates are unsettled |
| NOT_FOUND | 404 | Unknown criteria or affiliate outside the eligible set |
| NOT_ELIGIBLE | 409 | Affiliate excluded or outside the eligible set |
| NOT_READY | 409 | Criteria not locked yet |
| EXTERNAL_FAILURE | 502 | Ledger, identity provider or payment interface failed |
"""

# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description=API_DESCRIPTION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=OPENAPI_TAGS,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API router
app.include_router(api_router)


def _error_response(request: Request, status_code: int, content: dict) -> JSONResponse:
    content = {**content, "path": str(request.url.path), "method": request.method}
    response = JSONResponse(status_code=status_code, content=jsonable_encoder(content))

    # Add CORS headers if origin is allowed
    origin = request.headers.get("origin", "")
    if origin in settings.cors_origins_list or "*" in settings.cors_origins_list:
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Credentials"] = "true"
        response.headers["Access-Control-Allow-Methods"] = "*"
        response.headers["Access-Control-Allow-Headers"] = "*"

    return response


@app.exception_handler(ClearanceError)
async def clearance_exception_handler(request: Request, exc: ClearanceError):
    """Render clearance error kinds with their own code and HTTP status."""
    if exc.status_code >= 500:
        logger.warning(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    return _error_response(request, exc.status_code, exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies and parameters are INVALID_INPUT too."""
    return _error_response(
        request,
        422,
        {
            "error": ErrorCode.INVALID_INPUT,
            "message": "Request validation failed",
            "details": {"errors": exc.errors()},
        },
    )


# Global exception handler for anything unexpected
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")

    error_detail = {
        "error": "INTERNAL_ERROR",
        "message": str(exc) if settings.DEBUG else "Internal server error",
        "type": type(exc).__name__,
    }
    if settings.DEBUG:
        error_detail["traceback"] = traceback.format_exc()

    return _error_response(request, 500, error_detail)


# Health check endpoint
@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint with database validation."""
    from sqlalchemy import text
    from datetime import datetime, timezone

    health_status = {
        "status": "healthy",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": {
            "database": "unknown"
        }
    }

    try:
        async with async_session_factory() as session:
            result = await session.execute(text("SELECT 1"))
            result.scalar()
            health_status["checks"]["database"] = "connected"
    except Exception as e:
        health_status["status"] = "unhealthy"
        health_status["checks"]["database"] = f"error: {str(e)}"

    # Return 503 if unhealthy
    if health_status["status"] == "unhealthy":
        return JSONResponse(status_code=503, content=health_status)

    return health_status


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint."""
    return {
        "message": f"Welcome to {settings.APP_NAME}",
        "version": settings.APP_VERSION,
        "docs": "/docs",
        "redoc": "/redoc",
    }
