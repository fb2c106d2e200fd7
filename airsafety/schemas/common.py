"""
Common schema types used across the API.
"""

from typing import Optional

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response."""

    message: str


class RateLimitedResponse(ErrorResponse):
    """429 body for rejected login attempts."""

    retry_after: int = Field(..., serialization_alias="retryAfter")
    retry_after_formatted: str = Field(..., serialization_alias="retryAfterFormatted")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    version: str
    environment: str
    database: str = "connected"
    timestamp: Optional[str] = None
