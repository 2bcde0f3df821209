"""
Per-team hunt progress.

One hunt_progress row exists per (team, location); every write is an upsert
on that pair.
"""

import logging
import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, StrictBool, ValidationError, field_validator

from database import get_db, get_db_exclusive, utc_now_iso
from errors import InvalidRequestError, NotFoundError
from locations import get_location_lookup
from teams import resolve_team_pk

logger = logging.getLogger(__name__)

ISO_TIMESTAMP_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d{3})?Z?$")
UPDATES_FEED_LIMIT = 100


class StopProgressUpdate(BaseModel):
    """Partial update for a single stop; only fields sent are applied."""
    done: Optional[StrictBool] = None
    notes: Optional[str] = None
    photo: Optional[str] = None
    revealedHints: Optional[int] = None
    completedAt: Optional[str] = None
    lastModifiedBy: Optional[str] = None

    @field_validator("photo")
    @classmethod
    def validate_photo(cls, v):
        if v is not None and not re.match(r"^https?://\S+$", v):
            raise ValueError("photo must be an http(s) URL")
        return v

    @field_validator("revealedHints")
    @classmethod
    def validate_revealed_hints(cls, v):
        if v is not None and v < 0:
            raise ValueError("revealedHints must be zero or greater")
        return v

    @field_validator("completedAt")
    @classmethod
    def validate_completed_at(cls, v):
        if v is not None and not ISO_TIMESTAMP_RE.match(v):
            raise ValueError("completedAt must be an ISO-8601 UTC timestamp")
        return v


class StopProgress(StopProgressUpdate):
    """Full state of a single stop."""
    done: StrictBool


def parse_progress_payload(payload: Any) -> Dict[str, StopProgress]:
    """
    Validate a {stop_id: stop} progress mapping.

    Raises:
        InvalidRequestError: with per-field details if any stop is invalid
    """
    if not isinstance(payload, dict):
        raise InvalidRequestError("Invalid progress payload", details="progress must be an object")

    parsed = {}
    problems = []
    for stop_id, data in payload.items():
        try:
            parsed[stop_id] = StopProgress.model_validate(data)
        except ValidationError as e:
            for err in e.errors(include_url=False):
                problems.append({
                    "path": [stop_id] + [str(part) for part in err["loc"]],
                    "message": err["msg"],
                })

    if problems:
        raise InvalidRequestError("Invalid progress payload", details=problems)
    return parsed


def _row_to_stop(row, location: Optional[dict] = None) -> dict:
    location = location or {}
    return {
        "title": location.get("title"),
        "description": location.get("description"),
        "done": bool(row["done"]),
        "completedAt": row["completed_at"],
        "photo": row["photo_url"],
        "revealedHints": row["revealed_hints"],
        "notes": row["notes"],
    }


def _upsert_stop(conn, team_pk: int, location_id: str, done: bool, revealed_hints: int,
                 completed_at: Optional[str], photo_url: Optional[str], notes: Optional[str]) -> None:
    now = utc_now_iso()
    conn.execute("""
        INSERT INTO hunt_progress
            (team_id, location_id, done, revealed_hints, completed_at, photo_url, notes, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(team_id, location_id) DO UPDATE SET
            done = excluded.done,
            revealed_hints = excluded.revealed_hints,
            completed_at = excluded.completed_at,
            photo_url = excluded.photo_url,
            notes = excluded.notes,
            updated_at = excluded.updated_at
    """, (team_pk, location_id, 1 if done else 0, revealed_hints, completed_at,
          photo_url, notes, now, now))


def _require_team_pk(organization_id: str, team_id: str, hunt_id: str) -> int:
    team_pk = resolve_team_pk(organization_id, team_id, hunt_id)
    if team_pk is None:
        raise NotFoundError("Team not found", details=f"{organization_id}/{team_id}/{hunt_id}")
    return team_pk


def get_all_progress(team_pk: int) -> List[dict]:
    """Every progress row of a team, done or not."""
    with get_db() as conn:
        cursor = conn.execute(
            "SELECT * FROM hunt_progress WHERE team_id = ? ORDER BY id", (team_pk,)
        )
        return [dict(row) for row in cursor.fetchall()]


def get_progress_counts(team_pk: int) -> dict:
    with get_db() as conn:
        row = conn.execute("""
            SELECT COUNT(*) AS total,
                   COALESCE(SUM(done), 0) AS completed,
                   COALESCE(SUM(CASE WHEN photo_url IS NOT NULL THEN 1 ELSE 0 END), 0) AS with_photos
            FROM hunt_progress WHERE team_id = ?
        """, (team_pk,)).fetchone()
    return {"total": row["total"], "completed": row["completed"], "withPhotos": row["with_photos"]}


def get_team_progress(organization_id: str, team_id: str, hunt_id: str) -> Dict[str, dict]:
    """
    Completed stops of a team keyed by location id.

    Titles and descriptions come from the hunt's locations. Unknown teams
    have no progress.
    """
    team_pk = resolve_team_pk(organization_id, team_id, hunt_id)
    if team_pk is None:
        logger.debug(f"No team {organization_id}/{team_id}/{hunt_id}, returning empty progress")
        return {}

    locations = get_location_lookup(organization_id, hunt_id)
    with get_db() as conn:
        cursor = conn.execute(
            "SELECT * FROM hunt_progress WHERE team_id = ? AND done = 1 ORDER BY id", (team_pk,)
        )
        return {
            row["location_id"]: _row_to_stop(row, locations.get(row["location_id"]))
            for row in cursor.fetchall()
        }


def _newest_first(entries: List[dict]) -> List[dict]:
    # Entries without a completion time sort last
    return sorted(entries, key=lambda entry: entry["completedAt"] or "", reverse=True)


def get_progress_history(organization_id: str, team_id: str, hunt_id: str) -> List[dict]:
    """Stops a team has completed or timestamped, newest first."""
    team_pk = resolve_team_pk(organization_id, team_id, hunt_id)
    if team_pk is None:
        return []

    history = [
        {
            "locationId": row["location_id"],
            "completedAt": row["completed_at"],
            "done": bool(row["done"]),
            "photo": row["photo_url"],
            "notes": row["notes"],
            "revealedHints": row["revealed_hints"] or 0,
        }
        for row in get_all_progress(team_pk)
        if row["completed_at"] or row["done"]
    ]
    return _newest_first(history)


def get_progress_updates(organization_id: str, team_id: str, hunt_id: str,
                         limit: int = UPDATES_FEED_LIMIT) -> List[dict]:
    """Recent activity feed: completions and photos, newest first."""
    team_pk = resolve_team_pk(organization_id, team_id, hunt_id)
    if team_pk is None:
        return []

    updates = [
        {
            "type": "progress",
            "locationId": row["location_id"],
            "completedAt": row["completed_at"],
            "done": bool(row["done"]),
            "photo": row["photo_url"],
            "notes": row["notes"],
        }
        for row in get_all_progress(team_pk)
        if row["completed_at"] or row["done"] or row["photo_url"]
    ]
    return _newest_first(updates)[:limit]


def set_team_progress(
    organization_id: str,
    team_id: str,
    hunt_id: str,
    progress: Dict[str, StopProgress]
) -> int:
    """
    Upsert every stop in a progress mapping.

    completed_at defaults to now for stops marked done without one.

    Returns:
        Number of stops written

    Raises:
        NotFoundError: if the team doesn't exist
    """
    team_pk = _require_team_pk(organization_id, team_id, hunt_id)
    now = utc_now_iso()

    with get_db() as conn:
        for location_id, stop in progress.items():
            completed_at = stop.completedAt or (now if stop.done else None)
            _upsert_stop(conn, team_pk, location_id, stop.done, stop.revealedHints or 0,
                         completed_at, stop.photo, stop.notes)

    logger.info(f"Saved {len(progress)} stops for team {team_id} ({organization_id}/{hunt_id})")
    return len(progress)


def patch_stop(
    organization_id: str,
    team_id: str,
    hunt_id: str,
    stop_id: str,
    update: StopProgressUpdate
) -> dict:
    """
    Merge a partial update into one stop.

    Fields not present in the update keep their stored values. Marking a stop
    done without a completedAt stamps it with the current time.

    Returns:
        The stop as stored

    Raises:
        NotFoundError: if the team doesn't exist
    """
    team_pk = _require_team_pk(organization_id, team_id, hunt_id)
    sent = update.model_fields_set

    with get_db_exclusive() as conn:
        existing = conn.execute(
            "SELECT * FROM hunt_progress WHERE team_id = ? AND location_id = ?", (team_pk, stop_id)
        ).fetchone()

        done = bool(existing["done"]) if existing else False
        revealed_hints = existing["revealed_hints"] if existing else 0
        completed_at = existing["completed_at"] if existing else None
        photo_url = existing["photo_url"] if existing else None
        notes = existing["notes"] if existing else None

        if "done" in sent and update.done is not None:
            done = update.done
            if not done:
                completed_at = None
        if "revealedHints" in sent:
            revealed_hints = update.revealedHints or 0
        if "completedAt" in sent:
            completed_at = update.completedAt
        if "photo" in sent:
            photo_url = update.photo
        if "notes" in sent:
            notes = update.notes

        if done and not completed_at:
            completed_at = utc_now_iso()

        _upsert_stop(conn, team_pk, stop_id, done, revealed_hints, completed_at, photo_url, notes)
        row = conn.execute(
            "SELECT * FROM hunt_progress WHERE team_id = ? AND location_id = ?", (team_pk, stop_id)
        ).fetchone()

    return _row_to_stop(row)


def update_progress_with_photo(
    team_pk: int,
    location_id: str,
    photo_url: str,
    completed_at: Optional[str] = None
) -> None:
    """Mark a stop done with a photo, keeping revealed hints and notes."""
    stamp = completed_at or utc_now_iso()
    now = utc_now_iso()
    with get_db() as conn:
        conn.execute("""
            INSERT INTO hunt_progress
                (team_id, location_id, done, revealed_hints, completed_at, photo_url, created_at, updated_at)
            VALUES (?, ?, 1, 0, ?, ?, ?, ?)
            ON CONFLICT(team_id, location_id) DO UPDATE SET
                done = 1,
                completed_at = excluded.completed_at,
                photo_url = excluded.photo_url,
                updated_at = excluded.updated_at
        """, (team_pk, location_id, stamp, photo_url, now, now))
