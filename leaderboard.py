"""
Hunt leaderboard.
"""

import logging

from database import get_db, utc_now_iso
from locations import count_hunt_locations
from ranking import enrich_team_with_time_data, rank_teams
from teams import get_hunt_teams

logger = logging.getLogger(__name__)


def _progress_by_team(team_pks: list) -> dict:
    if not team_pks:
        return {}
    placeholders = ",".join("?" * len(team_pks))
    with get_db() as conn:
        cursor = conn.execute(
            f"SELECT team_id, location_id, done, completed_at FROM hunt_progress WHERE team_id IN ({placeholders})",
            team_pks
        )
        grouped = {pk: [] for pk in team_pks}
        for row in cursor.fetchall():
            grouped[row["team_id"]].append(dict(row))
    return grouped


def build_leaderboard(organization_id: str, hunt_id: str) -> dict:
    """
    Rank every active team of a hunt.

    Returns:
        {"orgId", "huntId", "teams": [...], "totalStops", "lastUpdated"}
    """
    teams = get_hunt_teams(organization_id, hunt_id)
    total_stops = count_hunt_locations(organization_id, hunt_id)
    progress = _progress_by_team([team.id for team in teams])

    entries = []
    for team in teams:
        rows = progress.get(team.id, [])
        completed = sum(1 for row in rows if row["done"])
        entry = {
            "teamId": team.team_id,
            "teamName": team.display_name,
            "score": team.score,
            "completedStops": completed,
            "totalStops": total_stops,
            "percentComplete": round(completed / total_stops * 100) if total_stops else 0,
        }
        entries.append(enrich_team_with_time_data(entry, rows))

    ranked = rank_teams(entries)
    logger.debug(f"Leaderboard for {organization_id}/{hunt_id}: {len(ranked)} teams, {total_stops} stops")
    return {
        "orgId": organization_id,
        "huntId": hunt_id,
        "teams": ranked,
        "totalStops": total_stops,
        "lastUpdated": utc_now_iso(),
    }


def build_rankings(organization_id: str, hunt_id: str) -> dict:
    """
    Compact standings for the rankings view, in leaderboard order.

    latestActivity is the team's most recent completion time.
    """
    board = build_leaderboard(organization_id, hunt_id)
    teams = [
        {
            "teamId": entry["teamId"],
            "name": entry["teamName"],
            "score": entry["score"],
            "completedStops": entry["completedStops"],
            "totalStops": entry["totalStops"],
            "percentComplete": entry["percentComplete"],
            "latestActivity": entry["lastCompletedAt"],
            "rank": entry["rank"],
        }
        for entry in board["teams"]
    ]
    return {"orgId": organization_id, "huntId": hunt_id, "teams": teams}
