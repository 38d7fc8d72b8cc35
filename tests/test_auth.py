"""
Tests for admin keys, admin sessions and member sessions.
"""

import threading
from datetime import datetime, timedelta

import pytest

from auth import (
    SessionStore, AdminAuthenticator, admin_auth, list_admin_keys, parse_bearer_token,
    create_member_session, get_session_member, delete_member_session
)
from database import get_db, reset_db
from errors import AlreadyUsed, Expired, InvalidKey, Unauthorized
from members import upsert_member


@pytest.fixture(autouse=True)
def setup_db():
    """Reset database before each test."""
    reset_db()
    yield


class TestSessionStore:
    """Test the in-memory admin session table."""

    def test_put_and_get(self):
        store = SessionStore(ttl=timedelta(hours=1))
        session = store.put("tok", 1)

        assert store.get("tok") is session
        assert len(store) == 1

    def test_expired_session_evicted(self):
        store = SessionStore(ttl=timedelta(hours=1))
        now = datetime.utcnow()
        store.put("tok", 1, now=now)

        assert store.get("tok", now=now + timedelta(minutes=59)) is not None
        assert store.get("tok", now=now + timedelta(hours=1)) is None
        assert len(store) == 0

    def test_invalidate(self):
        store = SessionStore(ttl=timedelta(hours=1))
        store.put("tok", 1)

        assert store.invalidate("tok") is True
        assert store.invalidate("tok") is False
        assert store.get("tok") is None

    def test_purge_expired(self):
        store = SessionStore(ttl=timedelta(hours=1))
        now = datetime.utcnow()
        store.put("old", 1, now=now - timedelta(hours=2))
        store.put("new", 2, now=now)

        assert store.purge_expired(now=now) == 1
        assert store.get("new", now=now) is not None


class TestAdminKeys:
    """Test admin key creation and exchange."""

    def test_create_key(self):
        created = admin_auth.create_key()

        assert created["key"]
        keys = list_admin_keys()
        assert len(keys) == 1
        assert keys[0]["used"] == 0
        assert keys[0]["key"] == created["key"]

    def test_keys_are_unique(self):
        keys = {admin_auth.create_key()["key"] for _ in range(20)}
        assert len(keys) == 20

    def test_exchange_creates_session(self):
        created = admin_auth.create_key()
        session = admin_auth.exchange(created["key"])

        assert session.key_id == created["id"]
        assert admin_auth.authorize(session.token) is session
        assert list_admin_keys()[0]["used"] == 1

    def test_exchange_twice_fails(self):
        created = admin_auth.create_key()
        admin_auth.exchange(created["key"])

        with pytest.raises(AlreadyUsed):
            admin_auth.exchange(created["key"])

    def test_unknown_key(self):
        with pytest.raises(InvalidKey):
            admin_auth.exchange("not-a-key")

    def test_empty_key(self):
        with pytest.raises(InvalidKey):
            admin_auth.exchange("")

    def test_expired_key(self):
        created = admin_auth.create_key()
        past = (datetime.utcnow() - timedelta(minutes=1)).isoformat()
        with get_db() as conn:
            conn.execute("UPDATE admin_keys SET expires_at = ? WHERE id = ?", (past, created["id"]))

        with pytest.raises(Expired) as exc_info:
            admin_auth.exchange(created["key"])
        assert exc_info.value.status_code == 401
        assert list_admin_keys()[0]["used"] == 0

    def test_concurrent_exchange_at_most_one_succeeds(self):
        """Test racing exchanges of one key yield exactly one session."""
        created = admin_auth.create_key()
        sessions = []
        failures = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            try:
                sessions.append(admin_auth.exchange(created["key"]))
            except AlreadyUsed as e:
                failures.append(e)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(sessions) == 1
        assert len(failures) == 7

    def test_session_ttl(self):
        auth = AdminAuthenticator(SessionStore(ttl=timedelta(hours=12)), key_ttl=timedelta(hours=12))
        session = auth.exchange(auth.create_key()["key"])

        assert session.expires_at - session.created_at == timedelta(hours=12)


class TestAuthorize:
    """Test admin session authorization."""

    def test_missing_token(self):
        with pytest.raises(Unauthorized):
            admin_auth.authorize(None)

    def test_unknown_token(self):
        with pytest.raises(Unauthorized):
            admin_auth.authorize("bogus")

    def test_logout_invalidates(self):
        session = admin_auth.exchange(admin_auth.create_key()["key"])
        assert admin_auth.logout(session.token) is True

        with pytest.raises(Unauthorized):
            admin_auth.authorize(session.token)


class TestParseBearerToken:

    def test_valid(self):
        assert parse_bearer_token("Bearer abc123") == "abc123"

    def test_missing_or_malformed(self):
        assert parse_bearer_token(None) is None
        assert parse_bearer_token("abc123") is None
        assert parse_bearer_token("Bearer ") is None
        assert parse_bearer_token("Basic abc") is None


class TestMemberSessions:
    """Test member sessions minted by verification."""

    def test_create_and_lookup(self):
        member = upsert_member("12345", "Pilot")
        with get_db() as conn:
            token = create_member_session(conn, member["id"])

        assert get_session_member(token)["roblox_id"] == "12345"

    def test_expired_session(self):
        member = upsert_member("12345", "Pilot")
        with get_db() as conn:
            token = create_member_session(conn, member["id"])
            conn.execute(
                "UPDATE member_sessions SET expires_at = ? WHERE id = ?",
                ((datetime.utcnow() - timedelta(seconds=1)).isoformat(), token)
            )

        assert get_session_member(token) is None

    def test_delete_session(self):
        member = upsert_member("12345", "Pilot")
        with get_db() as conn:
            token = create_member_session(conn, member["id"])
        delete_member_session(token)

        assert get_session_member(token) is None

    def test_invalid_token(self):
        assert get_session_member(None) is None
        assert get_session_member("bogus") is None
