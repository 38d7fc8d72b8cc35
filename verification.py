"""
Roblox account verification.

A caller proves control of a Roblox account by putting a one-time code in the
account's profile description. Each roblox_id has at most one active code;
issuing again replaces it. A code is consumed only after the profile check
succeeds, so a failed check can be retried until the code expires.
"""

import logging
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from auth import create_member_session
from config import config
from database import get_db, parse_timestamp
from errors import CodeMismatch, Expired, InvalidInput, NoChallenge, UpstreamUnavailable
from members import upsert_member_on
from roblox_client import RobloxAPIError, fetch_profile

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits


@dataclass
class VerificationResult:
    """Successful verification: the member and a fresh member session token."""
    token: str
    member: Dict[str, Any]


def generate_verification_code() -> str:
    """Prefix plus a random uppercase alphanumeric suffix, e.g. USAFE-7K2Q9X."""
    suffix = "".join(secrets.choice(CODE_ALPHABET) for _ in range(config.VERIFICATION_CODE_LENGTH))
    return f"{config.VERIFICATION_CODE_PREFIX}{suffix}"


def _normalize_roblox_id(roblox_id: Any) -> str:
    roblox_id = str(roblox_id).strip() if roblox_id is not None else ""
    if not roblox_id:
        raise InvalidInput("roblox_id is required")
    return roblox_id


def _code_ttl() -> timedelta:
    return timedelta(minutes=config.VERIFICATION_CODE_TTL_MINUTES)


def is_code_expired(created_at: str, now: Optional[datetime] = None) -> bool:
    """True once more than the code TTL has passed since issuance."""
    now = now or datetime.utcnow()
    return now - parse_timestamp(created_at) > _code_ttl()


def start_verification(roblox_id: Any) -> Dict[str, str]:
    """
    Issue a verification code for a Roblox account, replacing any earlier one.

    Returns:
        {"code": ..., "expires_at": ...}
    """
    roblox_id = _normalize_roblox_id(roblox_id)
    code = generate_verification_code()
    now = datetime.utcnow()

    with get_db() as conn:
        conn.execute("""
            INSERT INTO verification_codes (roblox_id, code, created_at)
            VALUES (?, ?, ?)
            ON CONFLICT(roblox_id) DO UPDATE SET
                code = excluded.code,
                created_at = excluded.created_at
        """, (roblox_id, code, now.isoformat()))

    logger.info(f"Issued verification code for roblox_id {roblox_id}")
    return {"code": code, "expires_at": (now + _code_ttl()).isoformat()}


def get_challenge(roblox_id: Any) -> Optional[Dict[str, Any]]:
    """The current challenge row for a Roblox account, if any."""
    roblox_id = _normalize_roblox_id(roblox_id)
    with get_db() as conn:
        row = conn.execute(
            "SELECT roblox_id, code, created_at FROM verification_codes WHERE roblox_id = ?",
            (roblox_id,)
        ).fetchone()
    return dict(row) if row else None


async def check_verification(roblox_id: Any) -> VerificationResult:
    """
    Check that the issued code appears in the account's profile description.

    On success the member is created or refreshed from the profile, the code is
    consumed and a member session is minted.

    Raises:
        NoChallenge: no code issued (or it was already consumed)
        Expired: code older than the TTL
        UpstreamUnavailable: the profile could not be fetched
        CodeMismatch: the code is not in the profile description
    """
    roblox_id = _normalize_roblox_id(roblox_id)

    challenge = get_challenge(roblox_id)
    if not challenge:
        raise NoChallenge()

    if is_code_expired(challenge["created_at"]):
        raise Expired("Verification code expired")

    try:
        profile = await fetch_profile(roblox_id)
    except RobloxAPIError as e:
        logger.error(f"Verification check failed for {roblox_id}: {e}")
        raise UpstreamUnavailable("Verification check failed")

    if challenge["code"] not in profile.description:
        raise CodeMismatch("Verification code not found in bio")

    with get_db() as conn:
        # Consume only the exact code we checked. A concurrent check or a
        # re-issue during the network call leaves nothing to delete here.
        cursor = conn.execute(
            "DELETE FROM verification_codes WHERE roblox_id = ? AND code = ?",
            (roblox_id, challenge["code"])
        )
        if cursor.rowcount != 1:
            raise NoChallenge("Verification code already used or replaced")

        member = upsert_member_on(conn, roblox_id, profile.name, profile.display_name)

        token = create_member_session(conn, member["id"])

    logger.info(f"Verified roblox_id {roblox_id} as member {member['id']}")
    return VerificationResult(token=token, member=member)
