"""
Team lock tokens and device fingerprints.

A lock token is a short-lived HS256 JWT asserting that a browser session is
checked in as a given team. Validity is recomputed from the token alone;
nothing is stored server-side.
"""

import hashlib
import logging
import time
from dataclasses import dataclass
from typing import Optional, Tuple

import jwt

from config import config

logger = logging.getLogger(__name__)

LOCK_TOKEN_SUBJECT = "team-lock"
LOCK_TOKEN_ALGORITHM = "HS256"
LOCK_TOKEN_HEADER = "X-Team-Lock"


@dataclass
class LockClaims:
    """Verified contents of a lock token."""
    team_id: str
    exp: int


def generate_lock_token(team_id: str, now: Optional[float] = None) -> Tuple[str, int]:
    """
    Sign a lock token for a team.

    Args:
        team_id: Team identifier to embed in the token
        now: Issue time as a unix timestamp (defaults to the current time)

    Returns:
        Tuple of (token, expires_at unix timestamp)
    """
    issued_at = int(now if now is not None else time.time())
    expires_at = issued_at + config.TEAM_LOCK_TTL_SECONDS
    payload = {
        "teamId": team_id,
        "iat": issued_at,
        "exp": expires_at,
        "sub": LOCK_TOKEN_SUBJECT,
    }
    token = jwt.encode(payload, config.TEAM_LOCK_JWT_SECRET, algorithm=LOCK_TOKEN_ALGORITHM)
    return token, expires_at


def _decode(token: str, verify_exp: bool) -> Optional[dict]:
    try:
        return jwt.decode(
            token,
            config.TEAM_LOCK_JWT_SECRET,
            algorithms=[LOCK_TOKEN_ALGORITHM],
            options={"verify_exp": verify_exp, "require": ["exp"]},
        )
    except jwt.InvalidTokenError as e:
        logger.debug(f"Lock token rejected: {e}")
        return None


def verify_lock_token(token: Optional[str]) -> Optional[LockClaims]:
    """
    Verify a lock token.

    Returns the claims, or None when the token is missing, malformed, signed
    with another key, expired, or not a team lock.
    """
    if not token:
        return None

    payload = _decode(token, verify_exp=True)
    if not payload:
        return None

    if payload.get("sub") != LOCK_TOKEN_SUBJECT or not payload.get("teamId"):
        return None

    return LockClaims(team_id=payload["teamId"], exp=int(payload["exp"]))


def is_lock_token_expired(token: Optional[str]) -> bool:
    """True when the token is a correctly signed team lock whose exp has passed."""
    if not token:
        return False
    payload = _decode(token, verify_exp=False)
    if not payload or payload.get("sub") != LOCK_TOKEN_SUBJECT:
        return False
    return is_token_expired(int(payload["exp"]))


def is_token_expired(exp: int, now: Optional[float] = None) -> bool:
    """Check whether an exp claim has passed."""
    current = now if now is not None else time.time()
    return exp <= current


def generate_device_hint(user_agent: str, ip: str) -> str:
    """Opaque 16-hex-char fingerprint of a device, used only for conflict detection."""
    raw = f"{user_agent}:{ip}:{config.DEVICE_HINT_SEED}"
    return hashlib.sha256(raw.encode()).hexdigest()[:16]


def hash_team_code(code: str) -> str:
    """Short hash of a team code, safe to write to logs."""
    return hashlib.sha256(code.encode()).hexdigest()[:12]
