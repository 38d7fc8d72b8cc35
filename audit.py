"""
Audit logging for the USAFFE backend.

Records admin and identity events so privileged actions can be reviewed.
"""

from datetime import datetime
from typing import Optional, List, Dict, Any

from database import get_db


def log_action(
    actor: str,
    action: str,
    target_type: Optional[str] = None,
    target_id: Optional[str] = None,
    details: Optional[str] = None,
    ip_address: Optional[str] = None
) -> None:
    """
    Log an audit action.

    Args:
        actor: Who performed the action ('admin:<key id>', a roblox id, or 'anonymous')
        action: The type of action (e.g., 'admin_login', 'member_promoted')
        target_type: The type of target (e.g., 'member', 'admin_key')
        target_id: The ID of the target
        details: Additional details about the action
        ip_address: The IP address of the actor
    """
    timestamp = datetime.utcnow().isoformat()

    with get_db() as conn:
        conn.execute("""
            INSERT INTO audit_log (timestamp, actor, action, target_type, target_id, details, ip_address)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (timestamp, actor, action, target_type, target_id, details, ip_address))


def _filters(action: Optional[str], actor: Optional[str], target_type: Optional[str]):
    clauses = []
    params = []
    if action:
        clauses.append("action = ?")
        params.append(action)
    if actor:
        clauses.append("actor = ?")
        params.append(actor)
    if target_type:
        clauses.append("target_type = ?")
        params.append(target_type)
    where = " WHERE " + " AND ".join(clauses) if clauses else ""
    return where, params


def get_audit_logs(
    limit: int = 100,
    offset: int = 0,
    action: Optional[str] = None,
    actor: Optional[str] = None,
    target_type: Optional[str] = None
) -> List[Dict[str, Any]]:
    """Audit log entries matching the filters, newest first."""
    where, params = _filters(action, actor, target_type)
    query = f"SELECT * FROM audit_log{where} ORDER BY timestamp DESC, id DESC LIMIT ? OFFSET ?"

    with get_db() as conn:
        cursor = conn.execute(query, params + [limit, offset])
        return [dict(row) for row in cursor.fetchall()]


def get_audit_log_count(
    action: Optional[str] = None,
    actor: Optional[str] = None,
    target_type: Optional[str] = None
) -> int:
    """Total count of audit log entries matching the filters."""
    where, params = _filters(action, actor, target_type)

    with get_db() as conn:
        cursor = conn.execute(f"SELECT COUNT(*) as count FROM audit_log{where}", params)
        return cursor.fetchone()["count"]
