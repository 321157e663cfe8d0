import json

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from refresh_guard.core.database import Base
from refresh_guard.core.exceptions import StoreUnavailableError
from refresh_guard.models.audit import AuditEvent
from refresh_guard.services.audit_service import AuditService


def _make_session_factory(create_tables=True):
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    if create_tables:
        Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def test_log_event_persists_row():
    session_factory = _make_session_factory()
    AuditService(session_factory).log_event(
        user_id=3,
        action="refresh_token.reuse_detected",
        target_type="token_family",
        target_id="fam-9",
        ip_address="203.0.113.7",
        metadata={"revoked": 1, "reason": "rotated_token_presented"},
    )

    db = session_factory()
    try:
        event = db.query(AuditEvent).one()
        assert event.user_id == 3
        assert event.action == "refresh_token.reuse_detected"
        assert event.target_id == "fam-9"
        assert json.loads(event.metadata_json) == {"revoked": 1, "reason": "rotated_token_presented"}
    finally:
        db.close()


def test_log_event_failure_is_store_unavailable():
    service = AuditService(_make_session_factory(create_tables=False))
    with pytest.raises(StoreUnavailableError):
        service.log_event(user_id=1, action="refresh_token.reuse_detected")
