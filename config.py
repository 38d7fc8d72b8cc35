"""
Centralized configuration for the USAFFE backend.

All configurable values are loaded from environment variables with sensible defaults.
"""

import os
import re
from typing import List


def _require_env(name: str, test_default: str) -> str:
    """
    Get a required environment variable.

    In testing mode, returns a test default. In production, raises an error if not set.
    """
    value = os.getenv(name)
    if value:
        return value

    # Allow test defaults only in testing mode
    if os.getenv("TESTING"):
        return test_default

    raise ValueError(
        f"Required environment variable {name} is not set. "
        f"Set {name} in your environment or deployment secrets."
    )


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


_RESERVED_MEMBER_COLUMNS = {"id", "roblox_id", "username", "display_name", "rank", "created_at"}


def _parse_counters(raw: str) -> List[str]:
    """Parse MEMBER_COUNTERS into a list of column names."""
    counters = []
    for name in raw.split(","):
        name = name.strip().lower()
        if not name:
            continue
        if not re.match(r"^[a-z][a-z0-9_]*$", name) or name in _RESERVED_MEMBER_COLUMNS:
            raise ValueError(f"Invalid counter name in MEMBER_COUNTERS: {name!r}")
        if name not in counters:
            counters.append(name)
    if not counters:
        raise ValueError("MEMBER_COUNTERS must name at least one counter")
    return counters


class Config:
    """Application configuration loaded from environment variables."""

    # Database
    DATABASE_PATH: str = os.getenv("DATABASE_PATH", "usafe.db")

    # Admin keys and sessions
    # Bootstrap key accepted in the X-Admin-Key header for key issuance
    ADMIN_KEY: str = _require_env("ADMIN_KEY", "test-admin-key")
    # Reproduces the legacy unauthenticated key issuance endpoint. Known weakness.
    ALLOW_OPEN_ADMIN_KEY_CREATION: bool = _env_flag("ALLOW_OPEN_ADMIN_KEY_CREATION")
    ADMIN_KEY_TTL_HOURS: int = int(os.getenv("ADMIN_KEY_TTL_HOURS", "12"))
    ADMIN_SESSION_TTL_HOURS: int = int(os.getenv("ADMIN_SESSION_TTL_HOURS", "12"))

    # Roblox profile verification
    VERIFICATION_CODE_TTL_MINUTES: int = int(os.getenv("VERIFICATION_CODE_TTL_MINUTES", "10"))
    VERIFICATION_CODE_PREFIX: str = os.getenv("VERIFICATION_CODE_PREFIX", "USAFE-")
    VERIFICATION_CODE_LENGTH: int = int(os.getenv("VERIFICATION_CODE_LENGTH", "6"))
    MEMBER_SESSION_DURATION_DAYS: int = int(os.getenv("MEMBER_SESSION_DURATION_DAYS", "30"))

    # Roster
    DEFAULT_RANK: str = os.getenv("DEFAULT_RANK", "Unassigned")
    MEMBER_COUNTERS: List[str] = _parse_counters(os.getenv("MEMBER_COUNTERS", "points,valor"))
    # Counter that receives combat_points when importing the previous server's users table
    LEGACY_SCORE_COUNTER: str = os.getenv("LEGACY_SCORE_COUNTER", "points").strip().lower()

    # External profile service
    ROBLOX_USERS_URL: str = os.getenv("ROBLOX_USERS_URL", "https://users.roblox.com/v1")
    ROBLOX_THUMBNAILS_URL: str = os.getenv("ROBLOX_THUMBNAILS_URL", "https://thumbnails.roblox.com/v1")
    PROFILE_LOOKUP_TIMEOUT: float = float(os.getenv("PROFILE_LOOKUP_TIMEOUT", "5.0"))

    # CORS
    CORS_ORIGINS: List[str] = [
        origin.strip()
        for origin in os.getenv(
            "CORS_ORIGINS",
            "https://usaffe-frontend.pages.dev,"
            "https://2904a8a8.usaffe-frontend.pages.dev,"
            "http://localhost:3000"
        ).split(",")
        if origin.strip()
    ]

    # Rate limiting
    RATE_LIMIT_LOOKUP: str = os.getenv("RATE_LIMIT_LOOKUP", "30/minute")
    RATE_LIMIT_VERIFICATION: str = os.getenv("RATE_LIMIT_VERIFICATION", "10/minute")
    RATE_LIMIT_ADMIN_LOGIN: str = os.getenv("RATE_LIMIT_ADMIN_LOGIN", "10/minute")

    # Testing mode
    TESTING: bool = bool(os.getenv("TESTING", ""))


# Global config instance
config = Config()
