from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from refresh_guard.core.database import Base
from refresh_guard.core.exceptions import StoreUnavailableError, TokenIdConflictError
from refresh_guard.models.security import TokenStatus
from refresh_guard.services.token_store import (
    InMemoryTokenStore,
    RefreshTokenRecord,
    SqlTokenStore,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
LATER = NOW + timedelta(minutes=5)


def _make_session_factory(create_tables=True):
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    if create_tables:
        Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(params=["memory", "sql"])
def store(request):
    if request.param == "memory":
        return InMemoryTokenStore()
    return SqlTokenStore(_make_session_factory())


def _record(token_id, family_id="fam-1", user_id=1, issued_at=NOW, days=7, status=TokenStatus.ACTIVE):
    return RefreshTokenRecord(
        user_id=user_id,
        token_id=token_id,
        family_id=family_id,
        issued_at=issued_at,
        expires_at=issued_at + timedelta(days=days),
        bound_context="f" * 64,
        status=status,
    )


def test_record_requires_expiry_after_issue():
    with pytest.raises(ValueError):
        RefreshTokenRecord(
            user_id=1,
            token_id="t",
            family_id="f",
            issued_at=NOW,
            expires_at=NOW,
            bound_context="x",
        )


def test_insert_then_find(store):
    record = _record("t1")
    store.insert(record)
    assert store.find(1, "t1") == record
    assert store.find(2, "t1") is None
    assert store.find(1, "missing") is None


def test_duplicate_token_id_conflicts(store):
    store.insert(_record("t1"))
    with pytest.raises(TokenIdConflictError):
        store.insert(_record("t1", family_id="fam-2", user_id=2))


def test_conditional_transition_applies_once(store):
    store.insert(_record("t1"))

    assert store.conditional_transition(1, "t1", TokenStatus.ACTIVE, TokenStatus.ROTATED, LATER, replaced_by="t2")
    assert not store.conditional_transition(1, "t1", TokenStatus.ACTIVE, TokenStatus.REVOKED, LATER)

    stored = store.find(1, "t1")
    assert stored.status is TokenStatus.ROTATED
    assert stored.replaced_by == "t2"
    assert stored.status_changed_at == LATER


def test_conditional_transition_on_unknown_key_is_noop(store):
    assert not store.conditional_transition(1, "nope", TokenStatus.ACTIVE, TokenStatus.REVOKED, LATER)


@pytest.mark.parametrize(
    "from_status,to_status",
    [
        (TokenStatus.ROTATED, TokenStatus.ACTIVE),
        (TokenStatus.REVOKED, TokenStatus.ACTIVE),
        (TokenStatus.ACTIVE, TokenStatus.ACTIVE),
        (TokenStatus.ROTATED, TokenStatus.REVOKED),
    ],
)
def test_terminal_states_cannot_be_left(store, from_status, to_status):
    store.insert(_record("t1"))
    with pytest.raises(ValueError):
        store.conditional_transition(1, "t1", from_status, to_status, LATER)


def test_revoke_family_only_touches_active_rows_of_that_family(store):
    store.insert(_record("old"))
    store.conditional_transition(1, "old", TokenStatus.ACTIVE, TokenStatus.ROTATED, LATER, replaced_by="cur")
    store.insert(_record("cur"))
    store.insert(_record("other-family", family_id="fam-2"))
    store.insert(_record("other-user", user_id=2))

    assert store.revoke_family(1, "fam-1", LATER) == 1

    assert store.find(1, "old").status is TokenStatus.ROTATED
    assert store.find(1, "cur").status is TokenStatus.REVOKED
    assert store.find(1, "cur").status_changed_at == LATER
    assert store.find(1, "other-family").status is TokenStatus.ACTIVE
    assert store.find(2, "other-user").status is TokenStatus.ACTIVE


def test_revoke_family_is_idempotent(store):
    store.insert(_record("t1"))
    store.revoke_family(1, "fam-1", LATER)
    after_first = store.find(1, "t1")

    assert store.revoke_family(1, "fam-1", LATER + timedelta(hours=1)) == 0
    assert store.find(1, "t1") == after_first


def test_purge_expired_keeps_active_and_recent_records(store):
    long_ago = NOW - timedelta(days=60)
    store.insert(_record("stale-revoked", issued_at=long_ago))
    store.conditional_transition(1, "stale-revoked", TokenStatus.ACTIVE, TokenStatus.REVOKED, long_ago)
    store.insert(_record("stale-active", family_id="fam-2", issued_at=long_ago))
    store.insert(_record("fresh-rotated", family_id="fam-3"))
    store.conditional_transition(1, "fresh-rotated", TokenStatus.ACTIVE, TokenStatus.ROTATED, NOW)

    assert store.purge_expired(NOW - timedelta(days=30)) == 1

    assert store.find(1, "stale-revoked") is None
    assert store.find(1, "stale-active") is not None
    assert store.find(1, "fresh-rotated") is not None


def test_sql_store_failures_surface_as_unavailable():
    store = SqlTokenStore(_make_session_factory(create_tables=False))
    with pytest.raises(StoreUnavailableError):
        store.find(1, "t1")
    with pytest.raises(StoreUnavailableError):
        store.revoke_family(1, "fam-1", NOW)


def test_swap_successor_rotates_parent_and_inserts_child(store):
    store.insert(_record("t1"))
    child = _record("t2", issued_at=LATER)

    assert store.swap_successor(1, "t1", child, LATER)
    assert not store.swap_successor(1, "t1", _record("t3", issued_at=LATER), LATER)

    parent = store.find(1, "t1")
    assert parent.status is TokenStatus.ROTATED
    assert parent.replaced_by == "t2"
    assert parent.status_changed_at == LATER
    assert store.find(1, "t2") == child
    assert store.find(1, "t3") is None


def test_swap_successor_after_family_revoke_inserts_nothing(store):
    store.insert(_record("t1"))
    store.revoke_family(1, "fam-1", LATER)

    assert not store.swap_successor(1, "t1", _record("t2", issued_at=LATER), LATER)
    assert store.find(1, "t2") is None
    assert store.find(1, "t1").status is TokenStatus.REVOKED


def test_swap_successor_id_conflict_leaves_parent_active(store):
    store.insert(_record("t1"))
    store.insert(_record("taken", family_id="fam-2"))

    with pytest.raises(TokenIdConflictError):
        store.swap_successor(1, "t1", _record("taken", issued_at=LATER), LATER)
    assert store.find(1, "t1").status is TokenStatus.ACTIVE


def test_revoke_family_catches_swapped_successor(store):
    store.insert(_record("t1"))
    store.swap_successor(1, "t1", _record("t2", issued_at=LATER), LATER)

    assert store.revoke_family(1, "fam-1", LATER) == 1
    assert store.find(1, "t2").status is TokenStatus.REVOKED
