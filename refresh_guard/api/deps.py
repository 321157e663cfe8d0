"""API dependencies - rotation engine and rate limiter wiring"""

from datetime import timedelta
from functools import lru_cache

from fastapi import Request

from refresh_guard.config import settings
from refresh_guard.core.clock import SystemClock
from refresh_guard.core.database import get_session_factory
from refresh_guard.core.security import JwtTokenCodec
from refresh_guard.services.audit_service import AuditService
from refresh_guard.services.rate_limiter import SlidingWindowRateLimiter
from refresh_guard.services.rotation_engine import ContextPolicy, RotationEngine
from refresh_guard.services.token_store import SqlTokenStore


@lru_cache()
def get_rotation_engine() -> RotationEngine:
    """
    Build the process-wide rotation engine

    The engine is stateless; caching only avoids rebuilding the codec and
    store wrappers per request.
    """
    session_factory = get_session_factory()
    return RotationEngine(
        SqlTokenStore(session_factory),
        JwtTokenCodec.from_settings(settings),
        SystemClock(),
        ttl=timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS),
        context_policy=ContextPolicy(settings.CONTEXT_MISMATCH_POLICY),
        audit=AuditService(session_factory),
    )


@lru_cache()
def get_rate_limiter() -> SlidingWindowRateLimiter:
    return SlidingWindowRateLimiter()


def get_client_address(request: Request) -> str:
    return request.client.host if request.client else "unknown"
