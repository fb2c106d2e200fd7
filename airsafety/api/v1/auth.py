"""
Authentication endpoints.
"""

from fastapi import APIRouter, Request, status

from airsafety.api.deps import (
    AuditLoggerDep,
    CurrentUser,
    RateLimiterDep,
    SessionFactory,
    SettingsDep,
    TokenManager,
    get_client_info,
)
from airsafety.kernel.identity.login_service import LoginService
from airsafety.schemas.auth import LoginResponse, UserResponse
from airsafety.schemas.common import ErrorResponse, RateLimitedResponse

router = APIRouter()


@router.post(
    "/login",
    response_model=LoginResponse,
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        status.HTTP_401_UNAUTHORIZED: {"model": ErrorResponse},
        status.HTTP_429_TOO_MANY_REQUESTS: {"model": RateLimitedResponse},
        status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
    },
)
async def login(
    request: Request,
    session_factory: SessionFactory,
    rate_limiter: RateLimiterDep,
    audit: AuditLoggerDep,
    settings: SettingsDep,
    tokens: TokenManager,
):
    """
    Authenticate with email and password and return a session token.

    The body is read here rather than declared as a model so that rate limiting
    runs before validation and malformed bodies are audited like any attempt.
    """
    try:
        payload = await request.json()
    except ValueError:
        payload = None

    service = LoginService(
        session_factory,
        rate_limiter,
        audit,
        settings=settings,
        jwt_manager=tokens,
    )
    result = await service.login(payload, get_client_info(request))

    return LoginResponse(
        token=result.token,
        user=UserResponse.from_user(result.user),
    )


@router.get("/user", response_model=UserResponse)
async def get_current_user_profile(user: CurrentUser):
    """Get the account behind the bearer token."""
    return UserResponse.from_user(user)
