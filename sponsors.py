"""
Sponsor cards shown on the hunt page.
"""

import logging

from cache import CacheKeys, with_cache
from config import config
from database import get_db, get_setting

logger = logging.getLogger(__name__)

DEFAULT_LAYOUT = "1x2"
VALID_LAYOUTS = ("1x1", "1x2", "1x3")


def empty_sponsors() -> dict:
    return {"layout": DEFAULT_LAYOUT, "items": []}


def recommended_layout(sponsor_count: int) -> str:
    """Suggest a layout for a number of sponsors."""
    if sponsor_count == 1:
        return "1x1"
    if sponsor_count <= 4:
        return "1x2"
    return "1x3"


def is_enabled_for_hunt(organization_id: str, hunt_id: str) -> bool:
    """Hunts can opt out with sponsor_card_enabled = 'false'."""
    return get_setting(organization_id, hunt_id, "sponsor_card_enabled") != "false"


def get_layout(organization_id: str, hunt_id: str) -> str:
    layout = get_setting(organization_id, hunt_id, "sponsor_layout")
    if layout in VALID_LAYOUTS:
        return layout
    if layout:
        logger.warning(f"Invalid sponsor layout {layout!r} for {organization_id}/{hunt_id}, using {DEFAULT_LAYOUT}")
    return DEFAULT_LAYOUT


def _asset_src(storage_path: str) -> str:
    if storage_path.startswith(("http://", "https://")) or not config.SPONSOR_ASSET_BASE_URL:
        return storage_path
    return f"{config.SPONSOR_ASSET_BASE_URL.rstrip('/')}/{storage_path.lstrip('/')}"


def _row_to_item(row) -> dict:
    item = {
        "id": row["id"],
        "companyId": row["company_id"],
        "companyName": row["company_name"],
        "alt": row["image_alt"] or f"{row['company_name']} logo",
        "type": row["image_type"],
        "src": None,
        "svg": None,
    }
    if row["image_type"] == "svg" and row["svg_text"]:
        item["svg"] = row["svg_text"]
    elif row["storage_path"]:
        item["src"] = _asset_src(row["storage_path"])
    return item


def _load_sponsors(organization_id: str, hunt_id: str) -> dict:
    with get_db() as conn:
        cursor = conn.execute("""
            SELECT * FROM sponsor_assets
            WHERE organization_id = ? AND hunt_id = ? AND is_active = 1
            ORDER BY order_index, id
        """, (organization_id, hunt_id))
        rows = cursor.fetchall()

    return {
        "layout": get_layout(organization_id, hunt_id),
        "items": [_row_to_item(row) for row in rows],
    }


def get_sponsors(organization_id: str, hunt_id: str) -> dict:
    """
    Sponsor cards for a hunt.

    Returns an empty 1x2 layout when the sponsor card feature is switched off
    globally or for the hunt. Cached for SPONSOR_CACHE_TTL.
    """
    if not config.ENABLE_SPONSOR_CARD:
        return empty_sponsors()
    if not is_enabled_for_hunt(organization_id, hunt_id):
        return empty_sponsors()

    return with_cache(
        CacheKeys.sponsors(organization_id, hunt_id),
        config.SPONSOR_CACHE_TTL,
        lambda: _load_sponsors(organization_id, hunt_id),
    )
