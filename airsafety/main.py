"""
Air Safety Report System - authentication gateway.

FastAPI application entry point.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from airsafety.config import get_settings
from airsafety.database import async_session_maker, close_db, init_db
from airsafety.api.deps import DbSession, get_audit_logger
from airsafety.api.middleware.request_id import REQUEST_ID_HEADER, RequestIdMiddleware
from airsafety.api.v1 import router as api_router
from airsafety.kernel.identity.errors import GENERIC_FAILURE_MESSAGE, LoginError
from airsafety.kernel.ratelimit.rate_limiter import RateLimiter
from airsafety.logging_config import configure_logging, get_logger
from airsafety.schemas.common import HealthResponse

settings = get_settings()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan handler.

    Runs startup and shutdown tasks.
    """
    configure_logging(
        log_level=settings.log_level,
        environment=settings.environment,
        debug=settings.debug,
    )

    logger.info("Starting %s v%s (%s)", settings.project_name, settings.version, settings.environment)
    await init_db()
    logger.info("Database initialized")

    removed = await RateLimiter(async_session_maker).cleanup()
    if removed:
        logger.info("Removed %d stale rate limit counters", removed)

    yield

    logger.info("Shutting down...")
    await get_audit_logger(settings).drain()
    await close_db()
    logger.info("Database connections closed")


app = FastAPI(
    title=settings.project_name,
    description="""
    Login gateway for the Air Safety Report System.

    - **Rate limiting**: 5 login attempts per 5 minutes per caller IP
    - **Credential migration**: legacy plaintext credentials are re-hashed on login
    - **Administrator bootstrap**: the designated admin account is created on first login
    - **Audit**: every login attempt is recorded
    """,
    version=settings.version,
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)


# add_middleware stacks innermost-first, so LAST added = OUTERMOST.
# CORS outermost so every response (including errors) carries its headers.
app.add_middleware(RequestIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error_headers(request: Request) -> dict:
    headers = {}
    req_id = getattr(request.state, "request_id", None)
    if req_id:
        headers[REQUEST_ID_HEADER] = req_id
    return headers


@app.exception_handler(LoginError)
async def login_error_handler(request: Request, exc: LoginError):
    """Render a rejected login. Only the public message (and retry data) is returned."""
    headers = {**exc.headers, **_error_headers(request)}
    return JSONResponse(status_code=exc.status_code, content=exc.to_content(), headers=headers)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    headers = {**(exc.headers or {}), **_error_headers(request)}
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return JSONResponse(status_code=exc.status_code, content={"message": message}, headers=headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle request validation errors."""
    errors = []
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error["loc"])
        errors.append({
            "field": field,
            "message": error["msg"],
            "type": error["type"],
        })
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"message": "Invalid input data", "errors": errors},
        headers=_error_headers(request),
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions. Details stay in the server log."""
    logger.exception("Unhandled exception: %s", exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"message": GENERIC_FAILURE_MESSAGE},
        headers=_error_headers(request),
    )


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check(db: DbSession):
    """Check application health."""
    try:
        await db.execute(text("SELECT 1"))
        database = "connected"
    except SQLAlchemyError:
        logger.warning("Health check could not reach the database")
        database = "unavailable"
    return HealthResponse(
        status="ok" if database == "connected" else "degraded",
        version=settings.version,
        environment=settings.environment,
        database=database,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information."""
    return {
        "name": settings.project_name,
        "version": settings.version,
        "docs": "/docs" if settings.debug else "disabled",
        "api": settings.api_prefix,
    }


app.include_router(api_router, prefix=settings.api_prefix)


# Main entry point for development
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "airsafety.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
