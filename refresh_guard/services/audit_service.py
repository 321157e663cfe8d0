"""Audit trail for security events raised by token rotation."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from refresh_guard.core.exceptions import StoreUnavailableError
from refresh_guard.models.audit import AuditEvent

logger = logging.getLogger(__name__)


class AuditSink(Protocol):
    def log_event(
        self,
        *,
        user_id: Optional[int],
        action: str,
        target_type: Optional[str] = None,
        target_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None: ...


class AuditService:
    """Persist immutable audit trail entries."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def log_event(
        self,
        *,
        user_id: Optional[int],
        action: str,
        target_type: Optional[str] = None,
        target_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        event = AuditEvent(
            user_id=user_id,
            action=action,
            target_type=target_type,
            target_id=target_id,
            ip_address=ip_address,
            metadata_json=json.dumps(metadata or {}, ensure_ascii=False, default=str),
        )
        db = self._session_factory()
        try:
            db.add(event)
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error(f"Failed to write audit event {action}: {exc}")
            raise StoreUnavailableError("Audit store temporarily unavailable") from exc
        finally:
            db.close()


class LoggingAuditSink:
    """Audit sink that only writes to the application log."""

    def log_event(
        self,
        *,
        user_id: Optional[int],
        action: str,
        target_type: Optional[str] = None,
        target_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        logger.warning(
            "audit action=%s user_id=%s target=%s:%s ip=%s metadata=%s",
            action,
            user_id,
            target_type,
            target_id,
            ip_address,
            metadata or {},
        )
