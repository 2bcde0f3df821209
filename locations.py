"""
Hunt locations, organizations and hunts.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Dict, Optional

from cache import CacheKeys, with_cache
from config import config
from database import get_db

logger = logging.getLogger(__name__)

DEFAULT_LOCATION_TITLE = "Untitled Location"


def _location_to_dict(row) -> dict:
    location = {
        "id": row["location_id"],
        "title": row["title"] or DEFAULT_LOCATION_TITLE,
        "clue": row["clue"] or "",
        "hints": json.loads(row["hints"]) if row["hints"] else [],
        "description": row["description"] or "",
        "address": row["address"] or "",
    }
    # Only include position if both coordinates are set
    if row["latitude"] is not None and row["longitude"] is not None:
        location["position"] = {"lat": row["latitude"], "lng": row["longitude"]}
    return location


def _load_hunt_locations(organization_id: str, hunt_id: str) -> dict:
    with get_db() as conn:
        cursor = conn.execute("""
            SELECT * FROM hunt_locations
            WHERE organization_id = ? AND hunt_id = ?
            ORDER BY sort_order, id
        """, (organization_id, hunt_id))
        rows = cursor.fetchall()

    logger.debug(f"Loaded {len(rows)} locations for {organization_id}/{hunt_id}")
    return {
        "name": f"{organization_id} - {hunt_id}",
        "locations": [_location_to_dict(row) for row in rows],
    }


def get_hunt_locations(organization_id: str, hunt_id: str) -> dict:
    """
    Get the stops of a hunt in display order.

    Returns:
        {"name": "<org> - <hunt>", "locations": [...]}; cached for LOCATIONS_CACHE_TTL
    """
    return with_cache(
        CacheKeys.locations(organization_id, hunt_id),
        config.LOCATIONS_CACHE_TTL,
        lambda: _load_hunt_locations(organization_id, hunt_id),
    )


def get_location_lookup(organization_id: str, hunt_id: str) -> Dict[str, dict]:
    """Locations of a hunt keyed by location id."""
    return {loc["id"]: loc for loc in get_hunt_locations(organization_id, hunt_id)["locations"]}


def count_hunt_locations(organization_id: str, hunt_id: str) -> int:
    with get_db() as conn:
        return conn.execute(
            "SELECT COUNT(*) FROM hunt_locations WHERE organization_id = ? AND hunt_id = ?",
            (organization_id, hunt_id)
        ).fetchone()[0]


def _humanize(identifier: str) -> str:
    return " ".join(word.capitalize() for word in identifier.replace("-", " ").split())


def get_organization_info(organization_id: str) -> dict:
    """Organization name and logo, defaulting to the upper-cased id."""
    with get_db() as conn:
        row = conn.execute(
            "SELECT id, name, logo_url FROM organizations WHERE id = ?", (organization_id,)
        ).fetchone()

    if not row:
        return {"id": organization_id, "name": organization_id.upper(), "logoUrl": None}
    return {"id": row["id"], "name": row["name"], "logoUrl": row["logo_url"]}


def _parse_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def get_hunt_info(organization_id: str, hunt_id: str, now: Optional[datetime] = None) -> dict:
    """
    Hunt details with an isActive flag derived from its start and end dates.

    Unknown hunts get a humanized name and are treated as active.
    """
    with get_db() as conn:
        row = conn.execute(
            "SELECT * FROM hunts WHERE organization_id = ? AND id = ?", (organization_id, hunt_id)
        ).fetchone()

    if not row:
        return {
            "id": hunt_id,
            "name": _humanize(hunt_id),
            "description": None,
            "startDate": None,
            "endDate": None,
            "isActive": True,
        }

    current = now or datetime.now(timezone.utc)
    start = _parse_date(row["start_date"])
    end = _parse_date(row["end_date"])
    return {
        "id": row["id"],
        "name": row["name"],
        "description": row["description"],
        "startDate": row["start_date"],
        "endDate": row["end_date"],
        "isActive": (start is None or current >= start) and (end is None or current <= end),
    }
