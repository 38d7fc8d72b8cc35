"""
Roster operations: trainings, attendance, medal awards and command stats.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List

from database import get_db
from errors import InvalidInput, NotFound
from members import find_member, resolve_member

logger = logging.getLogger(__name__)


def _require(fields: Dict[str, Any]) -> None:
    """Raise InvalidInput naming every missing field."""
    missing = [name for name, value in fields.items() if value is None or str(value).strip() == ""]
    if missing:
        raise InvalidInput(f"{', '.join(missing)} {'is' if len(missing) == 1 else 'are'} required")


# ============================================================
# TRAININGS
# ============================================================

def create_training(training_type: str, date: str, host_id: Any) -> Dict[str, Any]:
    """
    Record a training hosted by a member.

    The host is resolved by internal or Roblox id and stored by Roblox id.
    """
    _require({"type": training_type, "date": date, "host_id": host_id})
    host = resolve_member(host_id)
    now = datetime.utcnow().isoformat()

    with get_db() as conn:
        cursor = conn.execute("""
            INSERT INTO trainings (type, date, host_id, created_at)
            VALUES (?, ?, ?, ?)
        """, (training_type.strip(), date.strip(), host["roblox_id"], now))
        training_id = cursor.lastrowid

    logger.info(f"Created training {training_id} ({training_type}) hosted by {host['roblox_id']}")
    return {
        "training_id": training_id,
        "type": training_type.strip(),
        "date": date.strip(),
        "host_id": host["roblox_id"],
    }


def get_training(training_id: int) -> Dict[str, Any]:
    with get_db() as conn:
        row = conn.execute("SELECT * FROM trainings WHERE id = ?", (training_id,)).fetchone()
    if not row:
        raise NotFound("Training not found")
    return dict(row)


def add_attendees(training_id: int, attendees: List[Any]) -> Dict[str, Any]:
    """
    Record attendance for a list of member identifiers.

    Identifiers that do not resolve are reported in "failed" and do not stop
    the others from being recorded. Repeat attendance is recorded once.

    Returns:
        {"added": [roblox ids], "failed": [identifiers]}
    """
    if not isinstance(attendees, list) or not attendees:
        raise InvalidInput("attendees must be a non-empty array")

    get_training(training_id)

    added = []
    failed = []
    for identifier in attendees:
        member = find_member(identifier)
        if member is None:
            failed.append(identifier)
            continue
        if member["roblox_id"] not in added:
            added.append(member["roblox_id"])

    if added:
        with get_db() as conn:
            conn.executemany("""
                INSERT OR IGNORE INTO training_attendees (training_id, attendee_roblox_id)
                VALUES (?, ?)
            """, [(training_id, roblox_id) for roblox_id in added])

    if failed:
        logger.warning(f"Training {training_id}: {len(failed)} attendee(s) did not resolve: {failed}")
    return {"added": added, "failed": failed}


def get_training_attendees(training_id: int) -> List[str]:
    with get_db() as conn:
        cursor = conn.execute(
            "SELECT attendee_roblox_id FROM training_attendees WHERE training_id = ? ORDER BY id",
            (training_id,)
        )
        return [row["attendee_roblox_id"] for row in cursor.fetchall()]


# ============================================================
# MEDALS
# ============================================================

def award_medal(medal_id: Any, user_id: Any, awarded_by: Any, reason: str) -> int:
    """
    Record a medal award. Awardee and awarder are resolved by internal or
    Roblox id. Returns the medal record id.
    """
    _require({"medal_id": medal_id, "user_id": user_id, "awarded_by": awarded_by, "reason": reason})
    try:
        medal_id = int(medal_id)
    except (TypeError, ValueError):
        raise InvalidInput("medal_id must be an integer")

    awardee = resolve_member(user_id)
    awarder = resolve_member(awarded_by)
    now = datetime.utcnow().isoformat()

    with get_db() as conn:
        cursor = conn.execute("""
            INSERT INTO medals (user_roblox_id, medal_id, medal_name, reason, date, awarded_by_roblox_id)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (awardee["roblox_id"], medal_id, f"Medal #{medal_id}", reason.strip(), now,
              awarder["roblox_id"]))
        record_id = cursor.lastrowid

    logger.info(f"Medal #{medal_id} awarded to {awardee['roblox_id']} by {awarder['roblox_id']}")
    return record_id


# ============================================================
# PROFILE AND STATS
# ============================================================

def _fetch_all(query: str, params: tuple = ()) -> List[Dict[str, Any]]:
    with get_db() as conn:
        return [dict(row) for row in conn.execute(query, params).fetchall()]


def _count(query: str) -> int:
    with get_db() as conn:
        row = conn.execute(query).fetchone()
        return row[0] or 0


async def get_member_profile(identifier: Any) -> Dict[str, Any]:
    """Member record with medal and training history, newest first."""
    member = resolve_member(identifier)
    roblox_id = member["roblox_id"]

    medals, trainings = await asyncio.gather(
        asyncio.to_thread(
            _fetch_all,
            "SELECT * FROM medals WHERE user_roblox_id = ? ORDER BY date DESC, id DESC",
            (roblox_id,)
        ),
        asyncio.to_thread(
            _fetch_all,
            """
            SELECT t.*
            FROM trainings t
            JOIN training_attendees a ON a.training_id = t.id
            WHERE a.attendee_roblox_id = ?
            ORDER BY t.date DESC, t.id DESC
            """,
            (roblox_id,)
        ),
    )
    return {**member, "medals": medals, "trainings": trainings}


async def get_command_stats() -> Dict[str, int]:
    """Roster-wide counters. The queries are independent and run concurrently."""
    active_personnel, trainings_today, medals_awarded = await asyncio.gather(
        asyncio.to_thread(_count, "SELECT COUNT(*) FROM members"),
        asyncio.to_thread(_count, "SELECT COUNT(*) FROM trainings WHERE DATE(date) = DATE('now')"),
        asyncio.to_thread(_count, "SELECT COUNT(*) FROM medals"),
    )
    return {
        "active_personnel": active_personnel,
        "trainings_today": trainings_today,
        "medals_awarded": medals_awarded,
    }
