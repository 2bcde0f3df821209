"""
Per-team hunt settings shared between the devices of a team.

Each save records which session made it and keeps a list of contributing
sessions in the row's metadata.
"""

import json
import logging
from typing import Optional

from cache import CacheKeys, cache, with_cache
from config import config
from database import get_db, get_db_exclusive, utc_now_iso

logger = logging.getLogger(__name__)

SYSTEM_SESSION = "system"


def _update_contributors(contributors: list, session_id: str, timestamp: str) -> list:
    updated = [dict(c) for c in contributors]
    for contributor in updated:
        if contributor.get("sessionId") == session_id:
            contributor["lastActive"] = timestamp
            return updated
    updated.append({"sessionId": session_id, "firstActive": timestamp, "lastActive": timestamp})
    return updated


def save_settings(
    organization_id: str,
    team_id: str,
    hunt_id: str,
    settings: dict,
    session_id: str,
    timestamp: Optional[str] = None
) -> dict:
    """
    Store the settings of a team for a hunt.

    Args:
        organization_id: Organization identifier
        team_id: Team identifier
        hunt_id: Hunt identifier
        settings: Arbitrary settings object from the client
        session_id: Browser session making the change
        timestamp: Client timestamp of the change (defaults to now)

    Returns:
        The settings as stored, including lastModifiedBy and lastModifiedAt
    """
    modified_at = timestamp or utc_now_iso()
    stored = {**settings, "lastModifiedBy": session_id, "lastModifiedAt": modified_at}

    with get_db_exclusive() as conn:
        row = conn.execute("""
            SELECT metadata, total_updates FROM hunt_settings
            WHERE organization_id = ? AND team_id = ? AND hunt_id = ?
        """, (organization_id, team_id, hunt_id)).fetchone()

        metadata = json.loads(row["metadata"]) if row else {}
        total_updates = (row["total_updates"] if row else 0) + 1
        metadata["contributors"] = _update_contributors(
            metadata.get("contributors", []), session_id, modified_at
        )
        metadata["lastModifiedBy"] = session_id
        metadata["lastModifiedAt"] = modified_at

        conn.execute("""
            INSERT INTO hunt_settings
                (organization_id, team_id, hunt_id, settings, metadata, last_modified_by,
                 total_updates, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(organization_id, team_id, hunt_id) DO UPDATE SET
                settings = excluded.settings,
                metadata = excluded.metadata,
                last_modified_by = excluded.last_modified_by,
                total_updates = excluded.total_updates,
                updated_at = excluded.updated_at
        """, (organization_id, team_id, hunt_id, json.dumps(stored), json.dumps(metadata),
              session_id, total_updates, utc_now_iso()))

    cache.delete(CacheKeys.settings(organization_id, team_id, hunt_id))
    logger.info(f"Saved settings for {organization_id}/{team_id}/{hunt_id} (update #{total_updates})")
    return stored


def _load_settings(organization_id: str, team_id: str, hunt_id: str) -> Optional[dict]:
    with get_db() as conn:
        row = conn.execute("""
            SELECT settings FROM hunt_settings
            WHERE organization_id = ? AND team_id = ? AND hunt_id = ?
        """, (organization_id, team_id, hunt_id)).fetchone()
    return json.loads(row["settings"]) if row else None


def get_settings(organization_id: str, team_id: str, hunt_id: str) -> Optional[dict]:
    """Stored settings for a team, or None if the team never saved any."""
    return with_cache(
        CacheKeys.settings(organization_id, team_id, hunt_id),
        config.SETTINGS_CACHE_TTL,
        lambda: _load_settings(organization_id, team_id, hunt_id),
    )


def get_settings_metadata(organization_id: str, team_id: str, hunt_id: str) -> Optional[dict]:
    """Contributor metadata and update count, or None."""
    with get_db() as conn:
        row = conn.execute("""
            SELECT metadata, total_updates, updated_at FROM hunt_settings
            WHERE organization_id = ? AND team_id = ? AND hunt_id = ?
        """, (organization_id, team_id, hunt_id)).fetchone()
    if not row:
        return None
    return {**json.loads(row["metadata"]), "totalUpdates": row["total_updates"], "updatedAt": row["updated_at"]}


def initialize_settings(organization_id: str, team_id: str, hunt_id: str, defaults: dict) -> dict:
    """Create the first settings record for a team."""
    return save_settings(
        organization_id, team_id, hunt_id,
        {**defaults, "createdAt": utc_now_iso()},
        SYSTEM_SESSION,
    )
