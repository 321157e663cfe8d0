"""Security-related persistence models."""

import enum

from sqlalchemy import Column, Integer, String, DateTime, Index, CheckConstraint
from sqlalchemy.sql import func

from refresh_guard.core.database import Base


class TokenStatus(str, enum.Enum):
    """Refresh token lifecycle. ACTIVE is the only non-terminal state."""

    ACTIVE = "active"
    ROTATED = "rotated"
    REVOKED = "revoked"


class RefreshToken(Base):
    """Refresh token record for rotation/revocation."""

    __tablename__ = "refresh_tokens"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False)
    family_id = Column(String(128), nullable=False, index=True)
    token_jti = Column(String(128), unique=True, nullable=False, index=True)
    bound_context = Column(String(64), nullable=False)
    status = Column(String(16), default=TokenStatus.ACTIVE.value, nullable=False)
    replaced_by_jti = Column(String(128), nullable=True)
    issued_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    status_changed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("idx_refresh_tokens_user_family", "user_id", "family_id"),
        Index("idx_refresh_tokens_user_jti", "user_id", "token_jti"),
        CheckConstraint("status IN ('active', 'rotated', 'revoked')", name="chk_refresh_token_status"),
        CheckConstraint("expires_at > issued_at", name="chk_refresh_token_lifetime"),
    )

    def __repr__(self):
        return f"<RefreshToken(user_id={self.user_id}, jti='{self.token_jti}', status='{self.status}')>"
