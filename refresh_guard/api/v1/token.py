"""Refresh token routes"""

from fastapi import APIRouter, Depends, status

from refresh_guard.api.deps import get_client_address, get_rate_limiter, get_rotation_engine
from refresh_guard.config import settings
from refresh_guard.core.exceptions import (
    AuthenticationError,
    BaseAPIException,
    RateLimitExceededError,
    ValidationError,
)
from refresh_guard.schemas.response import ErrorResponse
from refresh_guard.schemas.token import (
    RefreshTokenRequest,
    RefreshTokenResponse,
    RevokeTokenRequest,
    RevokeTokenResponse,
)
from refresh_guard.services.rate_limiter import SlidingWindowRateLimiter
from refresh_guard.services.rotation_engine import BindingContext, RotationEngine, RotationErrorKind

router = APIRouter(
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        429: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    }
)


def exception_for(kind: RotationErrorKind) -> BaseAPIException:
    """Map a rotation failure onto the HTTP error it is reported as"""
    if kind is RotationErrorKind.VALIDATION:
        return ValidationError("refreshToken, networkAddress and clientSignature must not be blank")
    return AuthenticationError(kind.value)


@router.post("/refresh", response_model=RefreshTokenResponse, status_code=status.HTTP_200_OK)
def refresh_token(
    req: RefreshTokenRequest,
    client_ip: str = Depends(get_client_address),
    engine: RotationEngine = Depends(get_rotation_engine),
    limiter: SlidingWindowRateLimiter = Depends(get_rate_limiter),
):
    """
    Exchange a refresh token for its successor

    Args:
        req: Refresh token and the caller's binding context

    Returns:
        The successor refresh token
    """
    limits = [
        (settings.REFRESH_RATE_LIMIT_PER_MINUTE, 60),
        (settings.REFRESH_RATE_LIMIT_PER_HOUR, 3600),
    ]
    if not limiter.allow(f"refresh:{client_ip}", limits):
        raise RateLimitExceededError("Too many refresh attempts. Slow down.")

    context = BindingContext(
        network_address=req.context.network_address,
        client_signature=req.context.client_signature,
    )
    result = engine.rotate(req.refresh_token, context)
    if not result.ok:
        raise exception_for(result.error)

    return RefreshTokenResponse(refresh_token=result.token)


@router.post("/revoke", response_model=RevokeTokenResponse, status_code=status.HTTP_200_OK)
def revoke_token(
    req: RevokeTokenRequest,
    engine: RotationEngine = Depends(get_rotation_engine),
):
    """Logout - revoke the presented refresh token if it is still active"""
    return RevokeTokenResponse(revoked=engine.revoke(req.refresh_token))
