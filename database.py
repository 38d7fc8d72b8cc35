"""
Database setup and schema for the USAFFE backend.
"""

import sqlite3
import os
from contextlib import contextmanager
from datetime import datetime, timezone

from config import config


# We use a function to get the path so tests can override it before imports
def _get_database_path():
    return os.getenv("DATABASE_PATH", "usafe.db")


def get_connection() -> sqlite3.Connection:
    """Get a database connection with row factory."""
    conn = sqlite3.connect(_get_database_path())
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def get_db():
    """Context manager for database connections."""
    conn = get_connection()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


@contextmanager
def get_db_exclusive():
    """Context manager with IMMEDIATE transaction for exclusive write access.

    Use this for operations that read-then-write where concurrent modifications
    could cause race conditions (e.g., admin key exchange).
    """
    conn = get_connection()
    try:
        conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def _table_columns(conn: sqlite3.Connection, table: str) -> list:
    return [row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()]


def parse_timestamp(value: str) -> datetime:
    """
    Parse a stored timestamp as a naive UTC datetime.

    Rows written by the previous server use JavaScript ISO strings with a
    trailing 'Z' (2026-01-01T12:00:00.000Z); offset-aware values are converted
    to UTC.
    """
    value = value.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _legacy_score_counter() -> str:
    """Counter that receives the previous server's combat_points."""
    if config.LEGACY_SCORE_COUNTER in config.MEMBER_COUNTERS:
        return config.LEGACY_SCORE_COUNTER
    if "combat_points" in config.MEMBER_COUNTERS:
        return "combat_points"
    return config.MEMBER_COUNTERS[0]


def _normalize_timestamps(conn: sqlite3.Connection, table: str, key: str, columns: list) -> None:
    """Rewrite offset-suffixed timestamps as naive UTC ISO strings."""
    for column in columns:
        rows = conn.execute(
            f"SELECT {key}, {column} FROM {table} WHERE {column} LIKE '%Z' OR {column} LIKE '%+%'"
        ).fetchall()
        for row in rows:
            conn.execute(
                f"UPDATE {table} SET {column} = ? WHERE {key} = ?",
                (parse_timestamp(row[1]).isoformat(), row[0])
            )


def _migrate_legacy_tables(conn: sqlite3.Connection, tables: set) -> None:
    """Bring tables written by the previous server up to the current schema."""
    # trainings had no created_at
    if 'created_at' not in _table_columns(conn, 'trainings'):
        conn.execute("ALTER TABLE trainings ADD COLUMN created_at TEXT NOT NULL DEFAULT ''")

    # training_attendees had no uniqueness; keep the first record of each pair
    conn.execute("""
        DELETE FROM training_attendees
        WHERE id NOT IN (
            SELECT MIN(id) FROM training_attendees GROUP BY training_id, attendee_roblox_id
        )
    """)
    conn.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS idx_attendees_unique
        ON training_attendees(training_id, attendee_roblox_id)
    """)

    # users becomes members; the old integer id stays resolvable as the internal id
    if 'users' in tables:
        counter = _legacy_score_counter()
        conn.execute(f"""
            INSERT OR IGNORE INTO members (id, roblox_id, username, display_name, rank, created_at, {counter})
            SELECT
                CAST(u.id AS TEXT),
                CAST(u.roblox_id AS TEXT),
                COALESCE(u.username, ''),
                COALESCE(u.display_name, ''),
                COALESCE(NULLIF(u.rank, ''), ?),
                COALESCE(u.created_at, ?),
                COALESCE(u.combat_points, 0)
            FROM users u
            WHERE u.roblox_id IS NOT NULL AND u.roblox_id != ''
        """, (config.DEFAULT_RANK, datetime.utcnow().isoformat()))
        conn.execute("ALTER TABLE users RENAME TO legacy_users")

    _normalize_timestamps(conn, 'admin_keys', 'id', ['created_at', 'expires_at'])
    _normalize_timestamps(conn, 'verification_codes', 'roblox_id', ['created_at'])


def init_db():
    """Initialize the database schema."""
    with get_db() as conn:
        tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()}

        # Migration: verification_codes used to be an append-only log keyed by an
        # autoincrement id. Collapse it to one row per roblox_id, keeping the latest.
        if 'verification_codes' in tables and 'id' in _table_columns(conn, 'verification_codes'):
            conn.execute("ALTER TABLE verification_codes RENAME TO verification_codes_old")
            conn.execute("""
                CREATE TABLE verification_codes (
                    roblox_id TEXT PRIMARY KEY,
                    code TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                INSERT INTO verification_codes (roblox_id, code, created_at)
                SELECT CAST(v.roblox_id AS TEXT), v.code, v.created_at
                FROM verification_codes_old v
                WHERE v.id = (
                    SELECT MAX(id) FROM verification_codes_old
                    WHERE roblox_id = v.roblox_id
                )
            """)
            conn.execute("DROP TABLE verification_codes_old")
            conn.commit()

        conn.executescript("""
            -- Members (roster entries)
            CREATE TABLE IF NOT EXISTS members (
                id TEXT PRIMARY KEY,
                roblox_id TEXT NOT NULL UNIQUE,
                username TEXT NOT NULL DEFAULT '',
                display_name TEXT NOT NULL DEFAULT '',
                rank TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            -- Medal awards
            CREATE TABLE IF NOT EXISTS medals (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_roblox_id TEXT NOT NULL,
                medal_id INTEGER NOT NULL,
                medal_name TEXT NOT NULL,
                reason TEXT NOT NULL,
                date TEXT NOT NULL,
                awarded_by_roblox_id TEXT NOT NULL,
                FOREIGN KEY (user_roblox_id) REFERENCES members(roblox_id),
                FOREIGN KEY (awarded_by_roblox_id) REFERENCES members(roblox_id)
            );

            -- Trainings
            CREATE TABLE IF NOT EXISTS trainings (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                type TEXT NOT NULL,
                date TEXT NOT NULL,
                host_id TEXT NOT NULL,
                created_at TEXT NOT NULL,
                FOREIGN KEY (host_id) REFERENCES members(roblox_id)
            );

            -- Training attendance
            CREATE TABLE IF NOT EXISTS training_attendees (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                training_id INTEGER NOT NULL,
                attendee_roblox_id TEXT NOT NULL,
                FOREIGN KEY (training_id) REFERENCES trainings(id) ON DELETE CASCADE,
                FOREIGN KEY (attendee_roblox_id) REFERENCES members(roblox_id),
                UNIQUE (training_id, attendee_roblox_id)
            );

            -- Admin keys (single use, time boxed)
            CREATE TABLE IF NOT EXISTS admin_keys (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                key TEXT NOT NULL UNIQUE,
                created_at TEXT NOT NULL,
                expires_at TEXT NOT NULL,
                used INTEGER NOT NULL DEFAULT 0
            );

            -- Verification challenges, one active code per roblox_id
            CREATE TABLE IF NOT EXISTS verification_codes (
                roblox_id TEXT PRIMARY KEY,
                code TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            -- Member sessions minted by a successful verification
            CREATE TABLE IF NOT EXISTS member_sessions (
                id TEXT PRIMARY KEY,
                member_id TEXT NOT NULL,
                created_at TEXT NOT NULL,
                expires_at TEXT NOT NULL,
                FOREIGN KEY (member_id) REFERENCES members(id) ON DELETE CASCADE
            );

            -- Audit log
            CREATE TABLE IF NOT EXISTS audit_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                actor TEXT NOT NULL,
                action TEXT NOT NULL,
                target_type TEXT,
                target_id TEXT,
                details TEXT,
                ip_address TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_medals_user ON medals(user_roblox_id);
            CREATE INDEX IF NOT EXISTS idx_attendees_roblox ON training_attendees(attendee_roblox_id);
            CREATE INDEX IF NOT EXISTS idx_member_sessions_member ON member_sessions(member_id);
            CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_log(timestamp);
            CREATE INDEX IF NOT EXISTS idx_audit_action ON audit_log(action);
        """)

        # Migration: add a column for every configured counter that is missing.
        # Counters are never dropped, so switching MEMBER_COUNTERS keeps old data.
        columns = _table_columns(conn, 'members')
        for counter in config.MEMBER_COUNTERS:
            if counter not in columns:
                conn.execute(f"ALTER TABLE members ADD COLUMN {counter} INTEGER NOT NULL DEFAULT 0")

        _migrate_legacy_tables(conn, tables)
        conn.commit()


def reset_db():
    """Reset the database (for testing)."""
    db_path = _get_database_path()
    if os.path.exists(db_path):
        os.remove(db_path)
    init_db()
