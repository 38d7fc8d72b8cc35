"""
Identity store for USAFFE roster members.

A member is keyed internally by an opaque generated id and externally by the
Roblox account id. Both resolve to the same row.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from config import config
from database import get_db
from errors import InvalidInput, NotFound

logger = logging.getLogger(__name__)


def _generate_member_id() -> str:
    return uuid.uuid4().hex


def delta_key(counter: str) -> str:
    """
    Request body key used to adjust a counter.

    points -> pointsDelta, valor -> valorDelta, combat_points -> combatDelta
    """
    name = counter
    if name.endswith("_points") and len(name) > len("_points"):
        name = name[:-len("_points")]
    parts = name.split("_")
    return parts[0] + "".join(part.capitalize() for part in parts[1:]) + "Delta"


def parse_counter_deltas(body: Dict[str, Any]) -> Dict[str, int]:
    """
    Extract counter deltas from an adjust request body.

    Raises:
        InvalidInput: on unknown delta keys, non-integer values, or no deltas at all
    """
    known = {delta_key(counter): counter for counter in config.MEMBER_COUNTERS}
    deltas = {}

    for key, value in body.items():
        if not key.endswith("Delta"):
            continue
        if key not in known:
            raise InvalidInput(f"Unknown counter delta: {key}")
        # bool is an int subclass, reject it explicitly
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidInput(f"{key} must be an integer")
        deltas[known[key]] = value

    if not deltas:
        expected = ", ".join(sorted(known))
        raise InvalidInput(f"At least one of {expected} is required")
    return deltas


def resolve_member(identifier: Any) -> Dict[str, Any]:
    """
    Resolve a member by internal id or Roblox id. Read-only.

    Raises:
        NotFound: if neither id matches
    """
    identifier = str(identifier).strip() if identifier is not None else ""
    if not identifier:
        raise NotFound("User not found")

    with get_db() as conn:
        row = conn.execute("""
            SELECT * FROM members
            WHERE id = ? OR roblox_id = ?
            ORDER BY CASE WHEN id = ? THEN 0 ELSE 1 END
            LIMIT 1
        """, (identifier, identifier, identifier)).fetchone()

    if not row:
        raise NotFound("User not found")
    return dict(row)


def find_member(identifier: Any) -> Optional[Dict[str, Any]]:
    """Like resolve_member, but returns None instead of raising."""
    try:
        return resolve_member(identifier)
    except NotFound:
        return None


def upsert_member(
    roblox_id: Any,
    username: Optional[str] = None,
    display_name: Optional[str] = None
) -> Dict[str, Any]:
    """
    Create the member for a Roblox id, or refresh its profile fields.

    Rank and counters of an existing member are left untouched. The insert and
    the update are a single statement, so concurrent upserts for the same
    roblox_id cannot create two rows.
    """
    roblox_id = str(roblox_id).strip() if roblox_id is not None else ""
    if not roblox_id:
        raise InvalidInput("roblox_id is required")

    with get_db() as conn:
        return upsert_member_on(conn, roblox_id, username, display_name)


def upsert_member_on(conn, roblox_id: str, username: Optional[str], display_name: Optional[str]) -> Dict[str, Any]:
    """Upsert a member on an open connection, inside the caller's transaction."""
    now = datetime.utcnow().isoformat()
    conn.execute("""
        INSERT INTO members (id, roblox_id, username, display_name, rank, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(roblox_id) DO UPDATE SET
            username = CASE WHEN excluded.username != '' THEN excluded.username ELSE members.username END,
            display_name = CASE WHEN excluded.display_name != '' THEN excluded.display_name ELSE members.display_name END
    """, (_generate_member_id(), roblox_id, username or "", display_name or "",
          config.DEFAULT_RANK, now))
    row = conn.execute("SELECT * FROM members WHERE roblox_id = ?", (roblox_id,)).fetchone()
    return dict(row)


def adjust_counters(member_id: str, deltas: Dict[str, int]) -> Dict[str, Any]:
    """
    Apply signed deltas to one or more counters in a single UPDATE.

    Raises:
        InvalidInput: if a counter is not configured or no deltas are given
        NotFound: if the member id does not exist
    """
    if not deltas:
        raise InvalidInput("No counter deltas given")
    for counter in deltas:
        if counter not in config.MEMBER_COUNTERS:
            raise InvalidInput(f"Unknown counter: {counter}")

    # Column names come from the validated MEMBER_COUNTERS whitelist
    assignments = ", ".join(f"{counter} = {counter} + ?" for counter in deltas)
    params = list(deltas.values()) + [member_id]

    with get_db() as conn:
        cursor = conn.execute(f"UPDATE members SET {assignments} WHERE id = ?", params)
        if cursor.rowcount == 0:
            raise NotFound("User not found")
        row = conn.execute("SELECT * FROM members WHERE id = ?", (member_id,)).fetchone()

    logger.info(f"Adjusted counters for member {member_id}: {deltas}")
    return dict(row)


def set_rank(member_id: str, new_rank: Optional[str]) -> Dict[str, Any]:
    """
    Overwrite a member's rank.

    Raises:
        InvalidInput: if new_rank is empty
        NotFound: if the member id does not exist
    """
    new_rank = (new_rank or "").strip()
    if not new_rank:
        raise InvalidInput("newRank is required")

    with get_db() as conn:
        cursor = conn.execute("UPDATE members SET rank = ? WHERE id = ?", (new_rank, member_id))
        if cursor.rowcount == 0:
            raise NotFound("User not found")
        row = conn.execute("SELECT * FROM members WHERE id = ?", (member_id,)).fetchone()

    logger.info(f"Set rank for member {member_id} to {new_rank}")
    return dict(row)


def list_members() -> List[Dict[str, Any]]:
    """All members, oldest first."""
    with get_db() as conn:
        cursor = conn.execute("SELECT * FROM members ORDER BY created_at, roblox_id")
        return [dict(row) for row in cursor.fetchall()]


def counters_of(member: Dict[str, Any]) -> Dict[str, int]:
    """The configured counter values of a member row."""
    return {counter: member.get(counter, 0) for counter in config.MEMBER_COUNTERS}
