"""
Audit logging for team verification and lock operations.

Team codes are never stored; only the short hash from hash_team_code.
"""

import json
import logging
from typing import Optional, List, Dict, Any

from database import get_db, utc_now_iso
from team_lock import hash_team_code

logger = logging.getLogger(__name__)


def log_action(
    action: str,
    outcome: str,
    team_id: Optional[str] = None,
    code_hash: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    ip_address: Optional[str] = None
) -> None:
    """
    Log an audit action.

    Args:
        action: The type of action (e.g., 'team_verify', 'lock_issued', 'write_rejected')
        outcome: Result of the action (e.g., 'success', 'invalid_code', 'conflict')
        team_id: The team involved, when known
        code_hash: Hashed team code prefix
        details: Additional structured details
        ip_address: The IP address of the caller
    """
    with get_db() as conn:
        conn.execute("""
            INSERT INTO audit_log (timestamp, team_id, action, outcome, code_hash, details, ip_address)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (utc_now_iso(), team_id, action, outcome, code_hash,
              json.dumps(details) if details else None, ip_address))


def log_verification_attempt(
    team_code: str,
    outcome: str,
    team_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    ip_address: Optional[str] = None
) -> None:
    """Record a team code verification attempt with the code hashed."""
    code_hash = hash_team_code(team_code)
    logger.info(f"[TeamVerify] {outcome} code={code_hash} team={team_id or 'unknown'}")
    log_action("team_verify", outcome, team_id=team_id, code_hash=code_hash,
               details=details, ip_address=ip_address)


def log_lock_operation(
    operation: str,
    team_id: Optional[str],
    details: Optional[Dict[str, Any]] = None
) -> None:
    """Record a lock token operation (issued, conflict, rejected)."""
    logger.info(f"[TeamLock] {operation} team={team_id or 'unknown'}")
    log_action("team_lock", operation, team_id=team_id, details=details)


def log_write_rejection(endpoint: str, reason: str, team_id: Optional[str] = None) -> None:
    """Record a write refused because of the caller's lock token."""
    logger.warning(f"[TeamWrite] rejected endpoint={endpoint} reason={reason} team={team_id or 'unknown'}")
    log_action("write_rejected", reason, team_id=team_id, details={"endpoint": endpoint})


def get_audit_logs(
    limit: int = 100,
    offset: int = 0,
    action: Optional[str] = None,
    team_id: Optional[str] = None,
    outcome: Optional[str] = None
) -> List[Dict[str, Any]]:
    """
    Retrieve audit log entries, newest first.

    Args:
        limit: Maximum number of entries to return
        offset: Number of entries to skip
        action: Filter by action type
        team_id: Filter by team
        outcome: Filter by outcome

    Returns:
        List of audit log entries as dictionaries
    """
    query = "SELECT * FROM audit_log WHERE 1=1"
    params = []

    if action:
        query += " AND action = ?"
        params.append(action)

    if team_id:
        query += " AND team_id = ?"
        params.append(team_id)

    if outcome:
        query += " AND outcome = ?"
        params.append(outcome)

    query += " ORDER BY timestamp DESC, id DESC LIMIT ? OFFSET ?"
    params.extend([limit, offset])

    with get_db() as conn:
        cursor = conn.execute(query, params)
        entries = []
        for row in cursor.fetchall():
            entry = dict(row)
            if entry["details"]:
                entry["details"] = json.loads(entry["details"])
            entries.append(entry)
        return entries


def get_audit_log_count(
    action: Optional[str] = None,
    team_id: Optional[str] = None,
    outcome: Optional[str] = None
) -> int:
    """Get the total count of audit log entries matching filters."""
    query = "SELECT COUNT(*) as count FROM audit_log WHERE 1=1"
    params = []

    if action:
        query += " AND action = ?"
        params.append(action)

    if team_id:
        query += " AND team_id = ?"
        params.append(team_id)

    if outcome:
        query += " AND outcome = ?"
        params.append(outcome)

    with get_db() as conn:
        cursor = conn.execute(query, params)
        return cursor.fetchone()["count"]
