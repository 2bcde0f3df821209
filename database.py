"""
Database setup and models for the Scavenger Hunt API.
"""

import hashlib
import json
import sqlite3
import os
from datetime import datetime, timezone
from typing import Optional
from contextlib import contextmanager


# Config must not import database to avoid circular imports.
# We use a function to get the path so tests can override it before imports
def _get_database_path():
    return os.getenv("DATABASE_PATH", "scavenger_hunt.db")


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string with millisecond precision and a Z suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def get_connection() -> sqlite3.Connection:
    """Get a database connection with row factory."""
    conn = sqlite3.connect(_get_database_path())
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def get_db():
    """Context manager for database connections."""
    conn = get_connection()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


@contextmanager
def get_db_exclusive():
    """Context manager with IMMEDIATE transaction for exclusive write access.

    Use this for operations that read-then-write where concurrent modifications
    could cause lost updates (e.g., settings contributor bookkeeping).
    """
    conn = get_connection()
    try:
        conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db():
    """Initialize the database schema."""
    with get_db() as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS organizations (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                logo_url TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS hunts (
                id TEXT NOT NULL,
                organization_id TEXT NOT NULL,
                name TEXT NOT NULL,
                description TEXT,
                start_date TEXT,
                end_date TEXT,
                created_at TEXT NOT NULL,
                PRIMARY KEY (organization_id, id)
            );

            -- Teams table (team_id is the human-facing identifier, id is internal)
            CREATE TABLE IF NOT EXISTS teams (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                team_id TEXT NOT NULL,
                organization_id TEXT NOT NULL,
                hunt_id TEXT NOT NULL,
                name TEXT NOT NULL,
                display_name TEXT NOT NULL,
                score INTEGER NOT NULL DEFAULT 0,
                code_hash TEXT,
                is_active INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE (organization_id, hunt_id, team_id)
            );

            -- Team join codes (stored upper-case)
            CREATE TABLE IF NOT EXISTS team_codes (
                code TEXT PRIMARY KEY,
                team_id INTEGER NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                FOREIGN KEY (team_id) REFERENCES teams(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS hunt_locations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                organization_id TEXT NOT NULL,
                hunt_id TEXT NOT NULL,
                location_id TEXT NOT NULL,
                title TEXT,
                clue TEXT,
                description TEXT,
                address TEXT,
                hints TEXT,
                latitude REAL,
                longitude REAL,
                sort_order INTEGER NOT NULL DEFAULT 0,
                UNIQUE (organization_id, hunt_id, location_id)
            );

            -- One row per (team, location)
            CREATE TABLE IF NOT EXISTS hunt_progress (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                team_id INTEGER NOT NULL,
                location_id TEXT NOT NULL,
                done INTEGER NOT NULL DEFAULT 0,
                revealed_hints INTEGER NOT NULL DEFAULT 0,
                completed_at TEXT,
                photo_url TEXT,
                notes TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE (team_id, location_id),
                FOREIGN KEY (team_id) REFERENCES teams(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS hunt_settings (
                organization_id TEXT NOT NULL,
                team_id TEXT NOT NULL,
                hunt_id TEXT NOT NULL,
                settings TEXT NOT NULL,
                metadata TEXT NOT NULL,
                last_modified_by TEXT,
                total_updates INTEGER NOT NULL DEFAULT 0,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (organization_id, team_id, hunt_id)
            );

            CREATE TABLE IF NOT EXISTS sponsor_assets (
                id TEXT PRIMARY KEY,
                organization_id TEXT NOT NULL,
                hunt_id TEXT NOT NULL,
                company_id TEXT NOT NULL,
                company_name TEXT NOT NULL,
                image_type TEXT NOT NULL,
                image_alt TEXT,
                svg_text TEXT,
                storage_path TEXT,
                order_index INTEGER NOT NULL DEFAULT 0,
                is_active INTEGER NOT NULL DEFAULT 1
            );

            -- Per-hunt key-value settings (sponsor layout, feature flags)
            CREATE TABLE IF NOT EXISTS settings (
                organization_id TEXT NOT NULL,
                hunt_id TEXT NOT NULL,
                key TEXT NOT NULL,
                value TEXT,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (organization_id, hunt_id, key)
            );

            CREATE TABLE IF NOT EXISTS device_locks (
                device_fingerprint TEXT PRIMARY KEY,
                team_id TEXT NOT NULL,
                expires_at INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            -- Receipts for orchestrated uploads, keyed by team and idempotency key
            CREATE TABLE IF NOT EXISTS photo_uploads (
                idempotency_key TEXT NOT NULL,
                team_id INTEGER NOT NULL,
                location_id TEXT NOT NULL,
                public_id TEXT NOT NULL,
                photo_url TEXT NOT NULL,
                response TEXT NOT NULL,
                created_at TEXT NOT NULL,
                PRIMARY KEY (team_id, idempotency_key),
                FOREIGN KEY (team_id) REFERENCES teams(id) ON DELETE CASCADE
            );

            -- Audit log table
            CREATE TABLE IF NOT EXISTS audit_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                team_id TEXT,
                action TEXT NOT NULL,
                outcome TEXT NOT NULL,
                code_hash TEXT,
                details TEXT,
                ip_address TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_teams_hunt ON teams(organization_id, hunt_id);
            CREATE INDEX IF NOT EXISTS idx_locations_hunt ON hunt_locations(organization_id, hunt_id);
            CREATE INDEX IF NOT EXISTS idx_progress_team ON hunt_progress(team_id);
            CREATE INDEX IF NOT EXISTS idx_sponsors_hunt ON sponsor_assets(organization_id, hunt_id);
            CREATE INDEX IF NOT EXISTS idx_device_locks_expires ON device_locks(expires_at);
            CREATE INDEX IF NOT EXISTS idx_audit_log_timestamp ON audit_log(timestamp);
        """)


def reset_db():
    """Reset the database (for testing)."""
    db_path = _get_database_path()
    if os.path.exists(db_path):
        os.remove(db_path)
    init_db()


def seed_example_hunt():
    """
    Seed the database with an example hunt.

    Creates one organization, one hunt with five stops, three teams with join
    codes and a pair of sponsors. Only runs if no organization exists yet.
    """
    now = utc_now_iso()
    with get_db() as conn:
        existing = conn.execute("SELECT COUNT(*) FROM organizations").fetchone()[0]
        if existing > 0:
            return  # Don't seed if data exists

        conn.execute(
            "INSERT INTO organizations (id, name, logo_url, created_at) VALUES (?, ?, ?, ?)",
            ("bhhs", "Berkshire Hathaway HomeServices", None, now)
        )
        conn.execute("""
            INSERT INTO hunts (id, organization_id, name, description, start_date, end_date, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, ("fall-2025", "bhhs", "Fall 2025 Hunt", "Explore the village and find every stop.",
              None, None, now))

        locations = [
            ("covered-bridge", "Covered Bridge", "Where the creek meets the old timber crossing",
             ["Look for the red roof", "It spans Gore Creek"], 39.6403, -106.3742),
            ("clock-tower", "Clock Tower", "Time keeps ticking above the village square",
             ["Listen for the chimes"], 39.6410, -106.3736),
            ("gondola-one", "Gondola One", "The first lift up the mountain",
             ["Follow the skiers"], 39.6395, -106.3750),
            ("memorial-park", "Memorial Park", "A quiet green space honoring the past",
             [], None, None),
            ("library", "Public Library", "Stacks of stories by the river",
             ["Quiet please"], 39.6421, -106.3780),
        ]
        for order, (location_id, title, clue, hints, lat, lng) in enumerate(locations):
            conn.execute("""
                INSERT INTO hunt_locations
                    (organization_id, hunt_id, location_id, title, clue, description, address,
                     hints, latitude, longitude, sort_order)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, ("bhhs", "fall-2025", location_id, title, clue, None, None,
                  json.dumps(hints), lat, lng, order))

        teams = [
            ("berrypicker", "Berry Pickers", "BERRY2025"),
            ("okkim", "OK Kim", "OKKIM2025"),
            ("teamalpha", "Team Alpha", "ALPHA2025"),
        ]
        for team_id, display_name, code in teams:
            cursor = conn.execute("""
                INSERT INTO teams
                    (team_id, organization_id, hunt_id, name, display_name, code_hash,
                     is_active, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?)
            """, (team_id, "bhhs", "fall-2025", display_name, display_name,
                  hashlib.sha256(code.lower().encode()).hexdigest(), now, now))
            conn.execute(
                "INSERT INTO team_codes (code, team_id, is_active, created_at) VALUES (?, ?, 1, ?)",
                (code, cursor.lastrowid, now)
            )

        sponsors = [
            ("sponsor-1", "acme", "Acme Outfitters", "png", "Acme Outfitters logo", None,
             "sponsors/acme.png", 0),
            ("sponsor-2", "summit", "Summit Coffee", "svg", "Summit Coffee logo",
             '<svg xmlns="http://www.w3.org/2000/svg"><text>Summit</text></svg>', None, 1),
        ]
        for row in sponsors:
            conn.execute("""
                INSERT INTO sponsor_assets
                    (id, organization_id, hunt_id, company_id, company_name, image_type,
                     image_alt, svg_text, storage_path, order_index, is_active)
                VALUES (?, 'bhhs', 'fall-2025', ?, ?, ?, ?, ?, ?, ?, 1)
            """, row)


def get_setting(organization_id: str, hunt_id: str, key: str,
                default: Optional[str] = None) -> Optional[str]:
    """
    Get a per-hunt setting value from the database.

    Args:
        organization_id: Organization the hunt belongs to
        hunt_id: Hunt identifier
        key: Setting key
        default: Default value if not found

    Returns:
        Setting value or default
    """
    with get_db() as conn:
        cursor = conn.execute(
            "SELECT value FROM settings WHERE organization_id = ? AND hunt_id = ? AND key = ?",
            (organization_id, hunt_id, key)
        )
        row = cursor.fetchone()

        if not row or row["value"] is None:
            return default

        return row["value"]


def set_setting(organization_id: str, hunt_id: str, key: str, value: Optional[str]) -> None:
    """
    Set a per-hunt setting value in the database.

    Args:
        organization_id: Organization the hunt belongs to
        hunt_id: Hunt identifier
        key: Setting key
        value: Setting value (None to delete)
    """
    with get_db() as conn:
        if value is None:
            conn.execute(
                "DELETE FROM settings WHERE organization_id = ? AND hunt_id = ? AND key = ?",
                (organization_id, hunt_id, key)
            )
            return

        conn.execute("""
            INSERT INTO settings (organization_id, hunt_id, key, value, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(organization_id, hunt_id, key) DO UPDATE SET
                value = excluded.value,
                updated_at = excluded.updated_at
        """, (organization_id, hunt_id, key, value, utc_now_iso()))
