"""
Admin key/session protocol and member sessions for the USAFFE backend.

Admin keys are single-use and time boxed. Exchanging a key mints a volatile
admin session held in a SessionStore. Member sessions are minted by a
successful Roblox verification and persisted in the database.
"""

import secrets
import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from dataclasses import dataclass

from database import get_db, get_db_exclusive, parse_timestamp
from config import config
from errors import AlreadyUsed, Expired, InvalidKey, Unauthorized

logger = logging.getLogger(__name__)


@dataclass
class AdminSession:
    """Active privileged-access grant."""
    token: str
    key_id: int
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.utcnow()) >= self.expires_at


class SessionStore:
    """In-memory admin session table. Safe for concurrent put/get/invalidate."""

    def __init__(self, ttl: timedelta):
        self.ttl = ttl
        self._sessions: Dict[str, AdminSession] = {}
        self._lock = threading.Lock()

    def put(self, token: str, key_id: int, now: Optional[datetime] = None) -> AdminSession:
        now = now or datetime.utcnow()
        session = AdminSession(token=token, key_id=key_id, created_at=now, expires_at=now + self.ttl)
        with self._lock:
            self._sessions[token] = session
        return session

    def get(self, token: str, now: Optional[datetime] = None) -> Optional[AdminSession]:
        """Return the live session for a token, evicting it if expired."""
        with self._lock:
            session = self._sessions.get(token)
            if session is None:
                return None
            if session.is_expired(now):
                del self._sessions[token]
                return None
            return session

    def invalidate(self, token: str) -> bool:
        with self._lock:
            return self._sessions.pop(token, None) is not None

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.utcnow()
        with self._lock:
            expired = [token for token, session in self._sessions.items() if session.is_expired(now)]
            for token in expired:
                del self._sessions[token]
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._sessions.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


class AdminAuthenticator:
    """Issues admin keys and exchanges them for sessions."""

    def __init__(self, sessions: SessionStore, key_ttl: timedelta):
        self.sessions = sessions
        self.key_ttl = key_ttl

    def create_key(self) -> Dict[str, Any]:
        """Create a new unused admin key."""
        key = secrets.token_urlsafe(24)
        now = datetime.utcnow()
        expires = now + self.key_ttl

        with get_db() as conn:
            cursor = conn.execute("""
                INSERT INTO admin_keys (key, created_at, expires_at, used)
                VALUES (?, ?, ?, 0)
            """, (key, now.isoformat(), expires.isoformat()))
            key_id = cursor.lastrowid

        logger.info(f"Created admin key {key_id}, expires {expires.isoformat()}")
        return {"id": key_id, "key": key, "expires_at": expires.isoformat()}

    def exchange(self, key: str) -> AdminSession:
        """
        Exchange an admin key for a session.

        Raises:
            InvalidKey: no such key
            Expired: key past its expiry
            AlreadyUsed: key was exchanged before
        """
        if not key:
            raise InvalidKey()

        now = datetime.utcnow()
        with get_db_exclusive() as conn:
            row = conn.execute(
                "SELECT id, expires_at, used FROM admin_keys WHERE key = ?", (key,)
            ).fetchone()

            if not row:
                raise InvalidKey()

            if now > parse_timestamp(row["expires_at"]):
                raise Expired("Key expired", status_code=401)

            if row["used"]:
                raise AlreadyUsed()

            # The used flag is the single point of mutual exclusion
            cursor = conn.execute(
                "UPDATE admin_keys SET used = 1 WHERE id = ? AND used = 0", (row["id"],)
            )
            if cursor.rowcount != 1:
                raise AlreadyUsed()
            key_id = row["id"]

        session = self.sessions.put(secrets.token_urlsafe(32), key_id, now=now)
        logger.info(f"Admin key {key_id} exchanged for a session")
        return session

    def authorize(self, token: Optional[str]) -> AdminSession:
        """
        Look up a live admin session.

        Raises:
            Unauthorized: token missing, unknown or expired
        """
        if not token:
            raise Unauthorized("Admin token required")
        session = self.sessions.get(token)
        if session is None:
            raise Unauthorized("Invalid or expired admin session")
        return session

    def logout(self, token: str) -> bool:
        return self.sessions.invalidate(token)


def list_admin_keys() -> List[Dict[str, Any]]:
    """All admin keys, newest first."""
    with get_db() as conn:
        cursor = conn.execute(
            "SELECT id, key, created_at, expires_at, used FROM admin_keys ORDER BY created_at DESC, id DESC"
        )
        return [dict(row) for row in cursor.fetchall()]


admin_sessions = SessionStore(ttl=timedelta(hours=config.ADMIN_SESSION_TTL_HOURS))
admin_auth = AdminAuthenticator(admin_sessions, key_ttl=timedelta(hours=config.ADMIN_KEY_TTL_HOURS))


def parse_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from an 'Authorization: Bearer <token>' header value."""
    if not authorization or not authorization.startswith("Bearer "):
        return None
    token = authorization[len("Bearer "):].strip()
    return token or None


def create_member_session(conn, member_id: str) -> str:
    """Create a member session on an open connection. Returns the token."""
    session_id = secrets.token_urlsafe(32)
    now = datetime.utcnow()
    expires = now + timedelta(days=config.MEMBER_SESSION_DURATION_DAYS)

    # Clean up expired sessions
    conn.execute("DELETE FROM member_sessions WHERE expires_at < ?", (now.isoformat(),))
    conn.execute(
        "INSERT INTO member_sessions (id, member_id, created_at, expires_at) VALUES (?, ?, ?, ?)",
        (session_id, member_id, now.isoformat(), expires.isoformat())
    )
    return session_id


def get_session_member(session_id: Optional[str]) -> Optional[Dict[str, Any]]:
    """Get the member for a session token, or None if invalid/expired."""
    if not session_id:
        return None

    with get_db() as conn:
        now = datetime.utcnow().isoformat()
        row = conn.execute("""
            SELECT m.*
            FROM member_sessions s
            JOIN members m ON s.member_id = m.id
            WHERE s.id = ? AND s.expires_at > ?
        """, (session_id, now)).fetchone()

    return dict(row) if row else None


def delete_member_session(session_id: str) -> None:
    with get_db() as conn:
        conn.execute("DELETE FROM member_sessions WHERE id = ?", (session_id,))
