"""
FastAPI application main module.
Operator surface for the pricing sync engine: middleware, error handling and health checks.
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from sqlalchemy import text
import time
import uuid
import os
from contextlib import asynccontextmanager
from pricing_sync.api.v1 import api_router
from pricing_sync.utils import setup_logging, get_logger
from pricing_sync.config import JUSTTCG_SETTINGS, RATE_LIMIT
from pricing_sync.database import engine, Base, SessionLocal
import pricing_sync.models.db  # noqa: F401  (register all tables on Base.metadata)

# Setup logging before creating the app
setup_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    log_file=os.getenv("LOG_FILE") or None,
    enable_console=True
)

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    logger.info("Application startup initiated")
    try:
        logger.info("Creating database tables")
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created successfully")
        if not JUSTTCG_SETTINGS["api_key"]:
            logger.warning("JUSTTCG_API_KEY is not set; pricing runs will fail with a credential error")
        logger.info("Application startup completed successfully")
        yield
    except Exception as e:  # pragma: no cover
        logger.error("Application startup failed", error=str(e), exc_info=True)
        raise
    finally:
        logger.info("Application shutdown completed")

app = FastAPI(
    title="TCG Pricing Sync",
    description="""
    Pricing synchronization job engine for trading-card catalog data.

    ## Features
    * **Per-game job queue** - priority ordered, one active job per game
    * **Time-guarded runs** - checkpoint after every batch, stop before the host ceiling
    * **Circuit breaker** - per-game cool-down after repeated upstream failures
    * **Retry ledger** - bounded per-variant retries with backoff
    * **Operator controls** - cancellation, force-finish, stuck-run sweep, reset
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/api/v1/openapi.json",
    lifespan=lifespan,
)

# CORS middleware - configure appropriately for production
app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(GZipMiddleware, minimum_size=1000)

# Request ID and request/response logging middleware
@app.middleware("http")
async def add_request_context_and_logging(request: Request, call_next):
    """
    Add request ID, timing, and request/response logging.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    request.state.start_time = time.time()

    logger.info(
        "Request started",
        method=request.method,
        url=str(request.url),
        user_agent=request.headers.get("User-Agent"),
        remote_addr=request.client.host if request.client else "unknown",
        request_id=request_id
    )

    response = await call_next(request)

    process_time = time.time() - request.state.start_time
    response.headers["X-Request-ID"] = request_id
    response.headers["X-Process-Time"] = str(round(process_time * 1000, 2))
    response.headers["X-Content-Type-Options"] = "nosniff"

    logger.info(
        "Request completed",
        method=request.method,
        url=str(request.url),
        status_code=response.status_code,
        process_time_ms=round(process_time * 1000, 2),
        request_id=request_id
    )

    return response

# Custom exception handlers
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle Pydantic validation errors."""
    request_id = getattr(request.state, "request_id", "unknown")

    logger.warning(
        "Request validation failed",
        errors=exc.errors(),
        request_id=request_id,
        url=str(request.url),
        method=request.method
    )

    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "message": "Request validation failed",
            "details": jsonable_errors(exc),
            "request_id": request_id
        }
    )

def jsonable_errors(exc: RequestValidationError) -> list:
    # ctx may carry the raw exception object from a field validator
    return [{k: v for k, v in err.items() if k != "ctx"} for err in exc.errors()]

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Handle HTTP exceptions."""
    request_id = getattr(request.state, "request_id", "unknown")

    logger.warning(
        "HTTP exception",
        status_code=exc.status_code,
        detail=exc.detail,
        request_id=request_id,
        url=str(request.url),
        method=request.method
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "message": exc.detail,
            "request_id": request_id
        }
    )

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions."""
    request_id = getattr(request.state, "request_id", "unknown")

    logger.error(
        "Unhandled exception",
        error=str(exc),
        error_type=type(exc).__name__,
        request_id=request_id,
        url=str(request.url),
        method=request.method,
        exc_info=True
    )

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "message": "Internal server error",
            "request_id": request_id
        }
    )

# Health check endpoints
@app.get("/health", tags=["health"], summary="Basic health check")
async def health_check():
    """Basic health check endpoint for load balancers."""
    return {
        "status": "healthy",
        "service": "tcg-pricing-sync",
        "version": "1.0.0",
        "timestamp": time.time(),
    }

@app.get("/health/detailed", tags=["health"], summary="Detailed health check")
async def detailed_health_check():
    """Detailed health check with database status and upstream configuration."""
    health_status = {
        "status": "healthy",
        "service": "tcg-pricing-sync",
        "version": "1.0.0",
        "timestamp": time.time(),
        "checks": {}
    }

    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        health_status["checks"]["database"] = "healthy"
    except Exception as e:
        logger.warning("Database health check failed", error=str(e))
        health_status["checks"]["database"] = f"unhealthy: {str(e)}"
        health_status["status"] = "degraded"
    finally:
        db.close()

    health_status["checks"]["upstream"] = {
        "base_url": JUSTTCG_SETTINGS["base_url"],
        "api_key_configured": bool(JUSTTCG_SETTINGS["api_key"]),
        "rate_limit": RATE_LIMIT,
    }
    if not JUSTTCG_SETTINGS["api_key"]:
        health_status["status"] = "degraded"

    return health_status

@app.get("/", tags=["root"])
async def root():
    """API root endpoint with basic information."""
    return {
        "message": "TCG Pricing Sync API",
        "version": "1.0.0",
        "documentation": "/docs",
        "health_check": "/health",
        "api_base": "/api/v1"
    }

app.include_router(api_router, prefix="/api/v1")

# Development server configuration
if __name__ == "__main__":
    import uvicorn

    logger.info("Starting development server")

    uvicorn.run(
        "pricing_sync.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        reload_dirs=["pricing_sync"],
        log_level="info",
        access_log=True
    )
