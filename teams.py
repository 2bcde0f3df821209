"""
Team lookup, team code verification and device locks.
"""

import hashlib
import logging
import sqlite3
import time
from dataclasses import dataclass
from typing import Optional

from database import get_db, utc_now_iso

logger = logging.getLogger(__name__)


@dataclass
class Team:
    """A team registered for a hunt."""
    id: int
    team_id: str
    organization_id: str
    hunt_id: str
    display_name: str
    score: int = 0

    def to_dict(self) -> dict:
        return {
            "teamId": self.team_id,
            "teamName": self.display_name,
            "organizationId": self.organization_id,
            "huntId": self.hunt_id,
        }


@dataclass
class LockConflict:
    """A device already locked to another team."""
    team_id: str
    remaining_ttl_seconds: int


def normalize_team_code(code: str) -> str:
    return code.strip().upper()


def _legacy_code_hash(code: str) -> str:
    return hashlib.sha256(code.strip().lower().encode()).hexdigest()


def _row_to_team(row) -> Team:
    return Team(
        id=row["id"],
        team_id=row["team_id"],
        organization_id=row["organization_id"],
        hunt_id=row["hunt_id"],
        display_name=row["display_name"],
        score=row["score"],
    )


def verify_team_code(
    code: str,
    organization_id: Optional[str] = None,
    hunt_id: Optional[str] = None
) -> Optional[Team]:
    """
    Find the active team a join code belongs to.

    Codes in team_codes are matched after normalization. Teams that only
    carry a legacy hashed code are matched on code_hash.

    Args:
        code: Code as typed by the player
        organization_id: Restrict to an organization
        hunt_id: Restrict to a hunt

    Returns:
        The matching Team, or None
    """
    normalized = normalize_team_code(code)
    if not normalized:
        return None

    scope = ""
    scope_params = []
    if organization_id:
        scope += " AND t.organization_id = ?"
        scope_params.append(organization_id)
    if hunt_id:
        scope += " AND t.hunt_id = ?"
        scope_params.append(hunt_id)

    with get_db() as conn:
        row = conn.execute(f"""
            SELECT t.* FROM team_codes c
            JOIN teams t ON t.id = c.team_id
            WHERE c.code = ? AND c.is_active = 1 AND t.is_active = 1{scope}
        """, [normalized] + scope_params).fetchone()

        if not row:
            row = conn.execute(f"""
                SELECT t.* FROM teams t
                WHERE t.code_hash = ? AND t.is_active = 1{scope}
            """, [_legacy_code_hash(code)] + scope_params).fetchone()

    return _row_to_team(row) if row else None


def get_team_by_team_id(
    team_id: str,
    organization_id: Optional[str] = None,
    hunt_id: Optional[str] = None
) -> Optional[Team]:
    """Look up an active team by its public identifier (case-insensitive)."""
    query = "SELECT * FROM teams WHERE team_id = ? COLLATE NOCASE AND is_active = 1"
    params = [team_id]
    if organization_id:
        query += " AND organization_id = ?"
        params.append(organization_id)
    if hunt_id:
        query += " AND hunt_id = ?"
        params.append(hunt_id)
    query += " ORDER BY id LIMIT 1"

    with get_db() as conn:
        row = conn.execute(query, params).fetchone()
    return _row_to_team(row) if row else None


def resolve_team_pk(organization_id: str, team_id: str, hunt_id: Optional[str] = None) -> Optional[int]:
    """Internal primary key for a team, or None if it doesn't exist."""
    team = get_team_by_team_id(team_id, organization_id, hunt_id)
    return team.id if team else None


def get_hunt_teams(organization_id: str, hunt_id: str) -> list:
    """All active teams of a hunt."""
    with get_db() as conn:
        cursor = conn.execute("""
            SELECT * FROM teams
            WHERE organization_id = ? AND hunt_id = ? AND is_active = 1
            ORDER BY id
        """, (organization_id, hunt_id))
        return [_row_to_team(row) for row in cursor.fetchall()]


def create_team(
    organization_id: str,
    hunt_id: str,
    team_id: str,
    display_name: Optional[str] = None,
    code: Optional[str] = None
) -> Team:
    """
    Create a team, optionally with a join code.

    Raises:
        sqlite3.IntegrityError: if the team or code already exists
    """
    now = utc_now_iso()
    name = display_name or team_id
    with get_db() as conn:
        cursor = conn.execute("""
            INSERT INTO teams
                (team_id, organization_id, hunt_id, name, display_name, is_active, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, 1, ?, ?)
        """, (team_id, organization_id, hunt_id, name, name, now, now))
        pk = cursor.lastrowid
        if code:
            conn.execute(
                "INSERT INTO team_codes (code, team_id, is_active, created_at) VALUES (?, ?, 1, ?)",
                (normalize_team_code(code), pk, now)
            )

    logger.info(f"Created team {team_id} for {organization_id}/{hunt_id}")
    return Team(id=pk, team_id=team_id, organization_id=organization_id,
                hunt_id=hunt_id, display_name=name)


# ============================================================
# DEVICE LOCKS
# ============================================================

def check_device_lock_conflict(
    device_fingerprint: str,
    team_id: str,
    now: Optional[float] = None
) -> Optional[LockConflict]:
    """
    Check whether a device is already checked in with a different team.

    Expired locks are deleted and never reported as conflicts. A storage
    failure is logged and treated as no conflict so check-in still works.
    """
    current = int(now if now is not None else time.time())
    try:
        with get_db() as conn:
            row = conn.execute(
                "SELECT team_id, expires_at FROM device_locks WHERE device_fingerprint = ?",
                (device_fingerprint,)
            ).fetchone()
            if row and row["expires_at"] <= current:
                conn.execute("DELETE FROM device_locks WHERE device_fingerprint = ?", (device_fingerprint,))
                return None
    except sqlite3.Error as e:
        logger.error(f"Device lock check failed for team {team_id}: {e}")
        return None

    if not row or row["team_id"].lower() == team_id.lower():
        return None

    return LockConflict(team_id=row["team_id"], remaining_ttl_seconds=row["expires_at"] - current)


def store_device_lock(device_fingerprint: str, team_id: str, expires_at: int) -> None:
    """Record (or replace) the team a device is checked in with."""
    now = utc_now_iso()
    with get_db() as conn:
        conn.execute("""
            INSERT INTO device_locks (device_fingerprint, team_id, expires_at, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(device_fingerprint) DO UPDATE SET
                team_id = excluded.team_id,
                expires_at = excluded.expires_at,
                updated_at = excluded.updated_at
        """, (device_fingerprint, team_id, expires_at, now, now))


def delete_device_lock(device_fingerprint: str) -> bool:
    with get_db() as conn:
        cursor = conn.execute("DELETE FROM device_locks WHERE device_fingerprint = ?", (device_fingerprint,))
        return cursor.rowcount > 0


def cleanup_expired_locks(now: Optional[float] = None) -> int:
    """Delete expired device locks. Returns the number removed."""
    current = int(now if now is not None else time.time())
    with get_db() as conn:
        cursor = conn.execute("DELETE FROM device_locks WHERE expires_at <= ?", (current,))
        removed = cursor.rowcount
    if removed:
        logger.info(f"Removed {removed} expired device locks")
    return removed
