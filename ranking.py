"""
Team ranking for the leaderboard.

Teams are ordered by completed stops, then by elapsed time between their
first and last completion, then by when they finished their last stop.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from functools import cmp_to_key
from typing import Iterable, List, Optional


@dataclass
class TimeSummary:
    """Elapsed time across a team's completed stops."""
    total_time_ms: Optional[int] = None
    first_completed_at: Optional[str] = None
    last_completed_at: Optional[str] = None


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def calculate_total_time(progress_rows: Iterable[dict]) -> TimeSummary:
    """
    Compute elapsed time from the first to the last completion.

    Rows without a completed_at are ignored. A single completed stop yields 0.
    """
    timestamps = sorted(
        (_parse_timestamp(row["completed_at"]), row["completed_at"])
        for row in progress_rows
        if row.get("completed_at")
    )
    if not timestamps:
        return TimeSummary()

    first, first_raw = timestamps[0]
    last, last_raw = timestamps[-1]
    total_ms = int(round((last - first).total_seconds() * 1000))
    return TimeSummary(total_time_ms=total_ms, first_completed_at=first_raw, last_completed_at=last_raw)


def calculate_average_time(total_time_ms: Optional[int], completed_count: int) -> Optional[int]:
    """Average time per completed stop in milliseconds."""
    if not total_time_ms or not completed_count:
        return None
    return round(total_time_ms / completed_count)


def format_duration(ms: Optional[int]) -> Optional[str]:
    """
    Format milliseconds as e.g. '1h 5m', '12m 30s' or '45s'.

    Zero, negative and missing durations have no display value. Anything under
    a second reads '0s'.
    """
    if not ms or ms < 0:
        return None

    total_seconds = ms // 1000
    hours = total_seconds // 3600
    minutes = (total_seconds % 3600) // 60
    seconds = total_seconds % 60

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if seconds > 0 and hours == 0:
        parts.append(f"{seconds}s")

    return " ".join(parts) if parts else "0s"


def enrich_team_with_time_data(team: dict, progress_rows: Iterable[dict]) -> dict:
    """
    Return a copy of a leaderboard team dict with timing fields added.

    Only stops that are done and carry a completion time are counted.
    """
    completed = [row for row in progress_rows if row.get("done") and row.get("completed_at")]
    summary = calculate_total_time(completed)
    average_ms = calculate_average_time(summary.total_time_ms, len(completed))

    completed_stops = team.get("completedStops", 0)
    total_stops = team.get("totalStops", 0)

    enriched = dict(team)
    enriched.update({
        "totalTimeMs": summary.total_time_ms,
        "totalTimeFormatted": format_duration(summary.total_time_ms),
        "averageTimeMs": average_ms,
        "averageTimeFormatted": format_duration(average_ms),
        "firstCompletedAt": summary.first_completed_at,
        "lastCompletedAt": summary.last_completed_at,
        "isComplete": total_stops > 0 and completed_stops == total_stops,
    })
    return enriched


def compare_teams(a: dict, b: dict) -> int:
    """Comparator implementing leaderboard order (negative means a ranks first)."""
    a_completed = a.get("completedStops", 0)
    b_completed = b.get("completedStops", 0)
    if a_completed != b_completed:
        return b_completed - a_completed

    if a_completed > 0:
        a_time = a.get("totalTimeMs")
        b_time = b.get("totalTimeMs")
        if a_time is not None and b_time is not None and a_time != b_time:
            return a_time - b_time
        # A recorded time beats no time
        if a_time is not None and b_time is None:
            return -1
        if a_time is None and b_time is not None:
            return 1

    a_last = a.get("lastCompletedAt")
    b_last = b.get("lastCompletedAt")
    if a_last and b_last and a_last != b_last:
        return -1 if a_last < b_last else 1

    return 0


def rank_teams(teams: List[dict]) -> List[dict]:
    """Sort teams into leaderboard order and assign 1-based ranks.

    The input list is not modified. Ties keep their input order.
    """
    ordered = sorted(teams, key=cmp_to_key(compare_teams))
    return [{**team, "rank": index + 1} for index, team in enumerate(ordered)]
