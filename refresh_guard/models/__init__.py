"""Database models"""

from refresh_guard.models.security import RefreshToken, TokenStatus
from refresh_guard.models.audit import AuditEvent

__all__ = ["RefreshToken", "TokenStatus", "AuditEvent"]
