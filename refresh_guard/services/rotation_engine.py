"""Refresh token rotation with reuse detection and family revocation."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from prometheus_client import Counter

from refresh_guard.core.clock import Clock
from refresh_guard.core.exceptions import StoreUnavailableError, TokenDecodeError, ValidationError
from refresh_guard.core.security import (
    TokenCodec,
    fingerprint,
    fingerprints_match,
    new_token_id,
)
from refresh_guard.models.security import TokenStatus
from refresh_guard.services.audit_service import AuditSink, LoggingAuditSink
from refresh_guard.services.token_store import RefreshTokenRecord, TokenStore

logger = logging.getLogger(__name__)

ROTATION_OUTCOMES = Counter(
    "refresh_guard_rotations_total",
    "Refresh token rotation attempts by outcome",
    ["outcome"],
)

REUSE_AUDIT_ACTION = "refresh_token.reuse_detected"
CONTEXT_AUDIT_ACTION = "refresh_token.context_mismatch_revoked"


class RotationErrorKind(str, enum.Enum):
    VALIDATION = "VALIDATION_ERROR"
    INVALID_TOKEN = "REFRESH_TOKEN_INVALID"
    NOT_FOUND = "REFRESH_TOKEN_NOT_FOUND"
    EXPIRED = "REFRESH_TOKEN_EXPIRED"
    REUSE_DETECTED = "REFRESH_TOKEN_REUSE_DETECTED"
    CONTEXT_MISMATCH = "REFRESH_TOKEN_CONTEXT_MISMATCH"


class ContextPolicy(str, enum.Enum):
    """What to do when the caller's binding context differs from issuance."""

    REJECT = "reject"  # refuse, leave the token usable
    STRICT = "strict"  # refuse and revoke the family
    LENIENT = "lenient"  # log and rotate anyway


@dataclass(frozen=True)
class BindingContext:
    network_address: str
    client_signature: str

    def is_complete(self) -> bool:
        return bool(
            self.network_address and self.network_address.strip()
            and self.client_signature and self.client_signature.strip()
        )

    def fingerprint(self) -> str:
        return fingerprint(self.network_address.strip(), self.client_signature.strip())


@dataclass(frozen=True)
class RotationResult:
    """Either a successor token or the reason none was issued."""

    token: Optional[str] = None
    error: Optional[RotationErrorKind] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, token: str) -> "RotationResult":
        return cls(token=token)

    @classmethod
    def failure(cls, error: RotationErrorKind) -> "RotationResult":
        return cls(error=error)


class RotationEngine:
    """
    Validate a presented refresh token and exchange it for a successor.

    The engine holds no mutable state; every decision that races with other
    callers goes through one of the store's conditional writes. A token that is
    presented after it stopped being active, or that loses a rotation race,
    is treated as stolen and its whole family is revoked.
    """

    def __init__(
        self,
        store: TokenStore,
        codec: TokenCodec,
        clock: Clock,
        *,
        ttl: timedelta,
        context_policy: ContextPolicy = ContextPolicy.REJECT,
        audit: Optional[AuditSink] = None,
        id_factory: Callable[[], str] = new_token_id,
    ) -> None:
        if ttl <= timedelta(0):
            raise ValueError("ttl must be positive")
        self._store = store
        self._codec = codec
        self._clock = clock
        self._ttl = ttl
        self._context_policy = ContextPolicy(context_policy)
        self._audit = audit or LoggingAuditSink()
        self._new_id = id_factory

    @property
    def context_policy(self) -> ContextPolicy:
        return self._context_policy

    def issue(self, user_id: int, context: BindingContext) -> str:
        """
        Start a new token family, e.g. after a successful login.

        Raises:
            ValidationError: If the user id or binding context is unusable.
        """
        if not isinstance(user_id, int) or isinstance(user_id, bool) or user_id <= 0:
            raise ValidationError("user_id must be a positive integer")
        if context is None or not context.is_complete():
            raise ValidationError("networkAddress and clientSignature are required")

        now = self._clock.now()
        record = RefreshTokenRecord(
            user_id=user_id,
            token_id=self._new_id(),
            family_id=self._new_id(),
            issued_at=now,
            expires_at=now + self._ttl,
            bound_context=context.fingerprint(),
        )
        self._store.insert(record)
        logger.info(f"Issued refresh token family {record.family_id} for user {user_id}")
        return self._encode(record)

    def rotate(self, raw_token: str, context: BindingContext) -> RotationResult:
        """Exchange ``raw_token`` for a successor bound to ``context``."""
        if not raw_token or not raw_token.strip() or context is None or not context.is_complete():
            return self._fail(RotationErrorKind.VALIDATION)

        try:
            claims = self._codec.decode(raw_token.strip())
        except TokenDecodeError as exc:
            logger.info(f"Rejected refresh token: {exc}")
            return self._fail(RotationErrorKind.INVALID_TOKEN)

        record = self._store.find(claims.user_id, claims.token_id)
        if record is None:
            return self._fail(RotationErrorKind.NOT_FOUND)

        now = self._clock.now()

        if not record.is_active:
            self._contain_reuse(record, context, now, reason=f"{record.status.value}_token_presented")
            return self._fail(RotationErrorKind.REUSE_DETECTED)

        if record.is_expired(now):
            self._store.conditional_transition(
                record.user_id, record.token_id, TokenStatus.ACTIVE, TokenStatus.REVOKED, now
            )
            return self._fail(RotationErrorKind.EXPIRED)

        presented = context.fingerprint()
        if not fingerprints_match(record.bound_context, presented):
            if self._context_policy is ContextPolicy.REJECT:
                logger.info(f"Context mismatch for token family {record.family_id}; token left active")
                return self._fail(RotationErrorKind.CONTEXT_MISMATCH)
            if self._context_policy is ContextPolicy.STRICT:
                revoked = self._store.revoke_family(record.user_id, record.family_id, now)
                logger.warning(
                    f"Context mismatch for token family {record.family_id}; revoked {revoked} token(s)"
                )
                self._record_audit(
                    user_id=record.user_id,
                    action=CONTEXT_AUDIT_ACTION,
                    target_type="token_family",
                    target_id=record.family_id,
                    ip_address=context.network_address,
                    metadata={"token_id": record.token_id, "revoked": revoked},
                )
                return self._fail(RotationErrorKind.CONTEXT_MISMATCH)
            logger.warning(f"Context changed for token family {record.family_id}; rotating under lenient policy")

        successor = RefreshTokenRecord(
            user_id=record.user_id,
            token_id=self._new_id(),
            family_id=record.family_id,
            issued_at=now,
            expires_at=now + self._ttl,
            bound_context=presented,
        )
        if not self._store.swap_successor(record.user_id, record.token_id, successor, now):
            self._contain_reuse(record, context, now, reason="concurrent_rotation")
            return self._fail(RotationErrorKind.REUSE_DETECTED)

        ROTATION_OUTCOMES.labels("rotated").inc()
        return RotationResult.success(self._encode(successor))

    def revoke(self, raw_token: str) -> bool:
        """Logout: revoke the presented token if it is still active."""
        if not raw_token or not raw_token.strip():
            return False
        try:
            claims = self._codec.decode(raw_token.strip())
        except TokenDecodeError:
            return False
        revoked = self._store.conditional_transition(
            claims.user_id,
            claims.token_id,
            TokenStatus.ACTIVE,
            TokenStatus.REVOKED,
            self._clock.now(),
        )
        if revoked:
            logger.info(f"Revoked refresh token for user {claims.user_id}")
        return revoked

    def _contain_reuse(
        self,
        record: RefreshTokenRecord,
        context: BindingContext,
        now: datetime,
        *,
        reason: str,
    ) -> None:
        revoked = self._store.revoke_family(record.user_id, record.family_id, now)
        logger.warning(
            f"Refresh token reuse detected: user={record.user_id} family={record.family_id} "
            f"token={record.token_id} reason={reason} revoked={revoked}"
        )
        self._record_audit(
            user_id=record.user_id,
            action=REUSE_AUDIT_ACTION,
            target_type="token_family",
            target_id=record.family_id,
            ip_address=context.network_address,
            metadata={"token_id": record.token_id, "reason": reason, "revoked": revoked},
        )

    def _record_audit(self, **event) -> None:
        # The revocation is already committed; an audit outage must not change the outcome.
        try:
            self._audit.log_event(**event)
        except StoreUnavailableError:
            logger.error(f"Audit event {event['action']} for family {event['target_id']} was not persisted")

    def _encode(self, record: RefreshTokenRecord) -> str:
        return self._codec.encode(
            record.user_id,
            record.token_id,
            record.family_id,
            record.issued_at,
            record.expires_at,
        )

    @staticmethod
    def _fail(kind: RotationErrorKind) -> RotationResult:
        ROTATION_OUTCOMES.labels(kind.value.lower()).inc()
        return RotationResult.failure(kind)
