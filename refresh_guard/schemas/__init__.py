"""Pydantic schemas for API validation"""

from refresh_guard.schemas.token import (
    BindingContextIn,
    RefreshTokenRequest,
    RefreshTokenResponse,
    RevokeTokenRequest,
    RevokeTokenResponse,
)
from refresh_guard.schemas.response import ErrorResponse, HealthResponse

__all__ = [
    "BindingContextIn", "RefreshTokenRequest", "RefreshTokenResponse",
    "RevokeTokenRequest", "RevokeTokenResponse",
    "ErrorResponse", "HealthResponse",
]
