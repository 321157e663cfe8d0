"""Refresh token persistence with conditional status transitions."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Protocol, Set, Tuple

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from refresh_guard.core.clock import ensure_utc
from refresh_guard.core.exceptions import StoreUnavailableError, TokenIdConflictError
from refresh_guard.models.security import RefreshToken, TokenStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RefreshTokenRecord:
    """One issued refresh token."""

    user_id: int
    token_id: str
    family_id: str
    issued_at: datetime
    expires_at: datetime
    bound_context: str
    status: TokenStatus = TokenStatus.ACTIVE
    status_changed_at: Optional[datetime] = None
    replaced_by: Optional[str] = None

    def __post_init__(self) -> None:
        if self.expires_at <= self.issued_at:
            raise ValueError("expires_at must be after issued_at")

    @property
    def is_active(self) -> bool:
        return self.status is TokenStatus.ACTIVE

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at < now


class TokenStore(Protocol):
    def find(self, user_id: int, token_id: str) -> Optional[RefreshTokenRecord]: ...

    def conditional_transition(
        self,
        user_id: int,
        token_id: str,
        from_status: TokenStatus,
        to_status: TokenStatus,
        at: datetime,
        replaced_by: Optional[str] = None,
    ) -> bool: ...

    def swap_successor(
        self,
        user_id: int,
        token_id: str,
        successor: RefreshTokenRecord,
        at: datetime,
    ) -> bool: ...

    def revoke_family(self, user_id: int, family_id: str, at: datetime) -> int: ...

    def insert(self, record: RefreshTokenRecord) -> None: ...

    def purge_expired(self, before: datetime) -> int: ...


def _check_transition(from_status: TokenStatus, to_status: TokenStatus) -> None:
    # Only ACTIVE may be left, and nothing may re-enter it.
    if from_status is not TokenStatus.ACTIVE or to_status is TokenStatus.ACTIVE:
        raise ValueError(f"Illegal transition {from_status.value} -> {to_status.value}")


class SqlTokenStore:
    """SQLAlchemy-backed store. Opens one session per operation."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error(f"Token store operation failed: {exc}")
            raise StoreUnavailableError() from exc
        finally:
            db.close()

    @staticmethod
    def _to_record(row: RefreshToken) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            user_id=row.user_id,
            token_id=row.token_jti,
            family_id=row.family_id,
            issued_at=ensure_utc(row.issued_at),
            expires_at=ensure_utc(row.expires_at),
            bound_context=row.bound_context,
            status=TokenStatus(row.status),
            status_changed_at=ensure_utc(row.status_changed_at) if row.status_changed_at else None,
            replaced_by=row.replaced_by_jti,
        )

    @staticmethod
    def _to_row(record: RefreshTokenRecord) -> RefreshToken:
        return RefreshToken(
            user_id=record.user_id,
            family_id=record.family_id,
            token_jti=record.token_id,
            bound_context=record.bound_context,
            status=record.status.value,
            replaced_by_jti=record.replaced_by,
            issued_at=record.issued_at,
            expires_at=record.expires_at,
            status_changed_at=record.status_changed_at,
        )

    def find(self, user_id: int, token_id: str) -> Optional[RefreshTokenRecord]:
        with self._session() as db:
            row = (
                db.query(RefreshToken)
                .filter(RefreshToken.user_id == user_id, RefreshToken.token_jti == token_id)
                .first()
            )
            return self._to_record(row) if row else None

    def conditional_transition(
        self,
        user_id: int,
        token_id: str,
        from_status: TokenStatus,
        to_status: TokenStatus,
        at: datetime,
        replaced_by: Optional[str] = None,
    ) -> bool:
        _check_transition(from_status, to_status)
        values = {"status": to_status.value, "status_changed_at": at}
        if replaced_by is not None:
            values["replaced_by_jti"] = replaced_by

        with self._session() as db:
            # The status guard in WHERE makes this a single-row compare-and-swap.
            result = db.execute(
                update(RefreshToken)
                .where(
                    RefreshToken.user_id == user_id,
                    RefreshToken.token_jti == token_id,
                    RefreshToken.status == from_status.value,
                )
                .values(**values)
            )
            db.commit()
            return result.rowcount == 1

    def swap_successor(
        self,
        user_id: int,
        token_id: str,
        successor: RefreshTokenRecord,
        at: datetime,
    ) -> bool:
        """Mark the parent rotated and insert its successor in one transaction."""
        with self._session() as db:
            result = db.execute(
                update(RefreshToken)
                .where(
                    RefreshToken.user_id == user_id,
                    RefreshToken.token_jti == token_id,
                    RefreshToken.status == TokenStatus.ACTIVE.value,
                )
                .values(
                    status=TokenStatus.ROTATED.value,
                    status_changed_at=at,
                    replaced_by_jti=successor.token_id,
                )
            )
            if result.rowcount != 1:
                db.rollback()
                return False
            db.add(self._to_row(successor))
            try:
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                raise TokenIdConflictError(successor.token_id) from exc
            return True

    def revoke_family(self, user_id: int, family_id: str, at: datetime) -> int:
        revoked = 0
        with self._session() as db:
            # Each pass runs on a fresh snapshot, so a successor committed while
            # the previous pass waited on its parent row is revoked by the next.
            while True:
                result = db.execute(
                    update(RefreshToken)
                    .where(
                        RefreshToken.user_id == user_id,
                        RefreshToken.family_id == family_id,
                        RefreshToken.status == TokenStatus.ACTIVE.value,
                    )
                    .values(status=TokenStatus.REVOKED.value, status_changed_at=at)
                )
                db.commit()
                if not result.rowcount:
                    return revoked
                revoked += result.rowcount

    def insert(self, record: RefreshTokenRecord) -> None:
        with self._session() as db:
            db.add(self._to_row(record))
            try:
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                raise TokenIdConflictError(record.token_id) from exc

    def purge_expired(self, before: datetime) -> int:
        """Delete terminal records that expired before ``before``."""
        with self._session() as db:
            result = db.execute(
                delete(RefreshToken)
                .where(
                    RefreshToken.status != TokenStatus.ACTIVE.value,
                    RefreshToken.expires_at < before,
                )
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return result.rowcount


class InMemoryTokenStore:
    """Lock-guarded store for single-process deployments and tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: Dict[Tuple[int, str], RefreshTokenRecord] = {}
        self._token_ids: Set[str] = set()

    def find(self, user_id: int, token_id: str) -> Optional[RefreshTokenRecord]:
        with self._lock:
            return self._records.get((user_id, token_id))

    def conditional_transition(
        self,
        user_id: int,
        token_id: str,
        from_status: TokenStatus,
        to_status: TokenStatus,
        at: datetime,
        replaced_by: Optional[str] = None,
    ) -> bool:
        _check_transition(from_status, to_status)
        key = (user_id, token_id)
        with self._lock:
            current = self._records.get(key)
            if current is None or current.status is not from_status:
                return False
            self._records[key] = replace(
                current,
                status=to_status,
                status_changed_at=at,
                replaced_by=replaced_by if replaced_by is not None else current.replaced_by,
            )
            return True

    def swap_successor(
        self,
        user_id: int,
        token_id: str,
        successor: RefreshTokenRecord,
        at: datetime,
    ) -> bool:
        key = (user_id, token_id)
        with self._lock:
            current = self._records.get(key)
            if current is None or not current.is_active:
                return False
            if successor.token_id in self._token_ids:
                raise TokenIdConflictError(successor.token_id)
            self._records[key] = replace(
                current,
                status=TokenStatus.ROTATED,
                status_changed_at=at,
                replaced_by=successor.token_id,
            )
            self._token_ids.add(successor.token_id)
            self._records[(successor.user_id, successor.token_id)] = successor
            return True

    def revoke_family(self, user_id: int, family_id: str, at: datetime) -> int:
        revoked = 0
        with self._lock:
            for key, record in self._records.items():
                if record.user_id != user_id or record.family_id != family_id or not record.is_active:
                    continue
                self._records[key] = replace(record, status=TokenStatus.REVOKED, status_changed_at=at)
                revoked += 1
        return revoked

    def insert(self, record: RefreshTokenRecord) -> None:
        with self._lock:
            if record.token_id in self._token_ids:
                raise TokenIdConflictError(record.token_id)
            self._token_ids.add(record.token_id)
            self._records[(record.user_id, record.token_id)] = record

    def records(self) -> List[RefreshTokenRecord]:
        with self._lock:
            return list(self._records.values())

    def purge_expired(self, before: datetime) -> int:
        with self._lock:
            stale = [
                key for key, record in self._records.items()
                if not record.is_active and record.expires_at < before
            ]
            for key in stale:
                self._token_ids.discard(key[1])
                del self._records[key]
        return len(stale)
