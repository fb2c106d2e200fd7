"""
FastAPI dependencies for authentication, database sessions and the login gateway.
"""

import uuid
from functools import lru_cache
from typing import Annotated, AsyncGenerator, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from airsafety.config import Settings, get_settings
from airsafety.database import async_session_maker
from airsafety.kernel.events.audit_logger import AuditLogger
from airsafety.kernel.events.event_types import ClientInfo
from airsafety.kernel.identity.identity_service import IdentityService
from airsafety.kernel.identity.jwt import JWTManager
from airsafety.kernel.models.user import User
from airsafety.kernel.ratelimit.rate_limiter import RateLimiter


# Security scheme
security = HTTPBearer(auto_error=False)

SettingsDep = Annotated[Settings, Depends(get_settings)]


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory for services that manage their own transactions."""
    return async_session_maker


SessionFactory = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]


async def get_db(session_factory: SessionFactory) -> AsyncGenerator[AsyncSession, None]:
    """Dependency that yields database sessions."""
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


DbSession = Annotated[AsyncSession, Depends(get_db)]


def get_rate_limiter(session_factory: SessionFactory, settings: SettingsDep) -> RateLimiter:
    return RateLimiter(
        session_factory,
        timeout_seconds=settings.rate_limit_store_timeout_seconds,
    )


@lru_cache
def _audit_logger(webhook_url: str, timeout_seconds: float) -> AuditLogger:
    # One sink per process so background deliveries outlive the request
    return AuditLogger(webhook_url=webhook_url, timeout_seconds=timeout_seconds)


def get_audit_logger(settings: SettingsDep) -> AuditLogger:
    return _audit_logger(settings.audit_webhook_url, settings.audit_webhook_timeout_seconds)


@lru_cache
def _token_manager(secret_key: str, algorithm: str, expire_days: int) -> JWTManager:
    # Cached so an undersized secret is padded (and warned about) once
    return JWTManager(secret_key=secret_key, algorithm=algorithm, expire_days=expire_days)


def get_token_manager(settings: SettingsDep) -> JWTManager:
    return _token_manager(settings.secret_key, settings.algorithm, settings.session_token_expire_days)


RateLimiterDep = Annotated[RateLimiter, Depends(get_rate_limiter)]
AuditLoggerDep = Annotated[AuditLogger, Depends(get_audit_logger)]
TokenManager = Annotated[JWTManager, Depends(get_token_manager)]


def get_request_id(request: Request) -> Optional[str]:
    """Get request correlation ID (set by RequestIdMiddleware)."""
    return getattr(request.state, "request_id", None)


def get_client_ip(request: Request) -> Optional[str]:
    """Extract client IP: CF-Connecting-IP, then X-Forwarded-For, then the peer."""
    cf_ip = request.headers.get("CF-Connecting-IP")
    if cf_ip:
        return cf_ip.strip()
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def get_user_agent(request: Request) -> Optional[str]:
    """Extract user agent from request."""
    return request.headers.get("User-Agent")


def get_client_info(request: Request) -> ClientInfo:
    return ClientInfo(
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
        request_id=get_request_id(request),
    )


async def get_current_user(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
    db: DbSession,
    tokens: TokenManager,
) -> User:
    """Get current authenticated user or raise 401."""
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Access token required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = tokens.verify_session_token(credentials.credentials)
    if not payload:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        user_id = uuid.UUID(payload.sub)
    except ValueError:
        user_id = None
    user = await IdentityService(db).get_user_by_id(user_id) if user_id else None

    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return user


CurrentUser = Annotated[User, Depends(get_current_user)]


async def require_admin(user: CurrentUser) -> User:
    """Require the current user to be an administrator."""
    if not user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return user
