"""
Photo uploads, orchestrated upload + progress writes, and collages.

The orchestrated flow is:

1. Return the stored result if the team already used the idempotency key.
2. Upload to Cloudinary (with retries, behind a circuit breaker).
3. Verify the asset exists.
4. Mark the stop done with the photo URL.
5. If step 4 fails, delete the uploaded asset again.
6. Store a receipt under the idempotency key.
"""

import asyncio
import hashlib
import json
import logging
import math
import sqlite3
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

import cloudinary_client
from cloudinary_client import (
    CloudinaryError, CloudinaryTimeoutError, build_collage_url, build_transformation, generate_slug,
)
from config import config
from database import get_db, utc_now_iso
from errors import (
    NotFoundError, ServiceUnavailableError, StorageError, UpstreamError, UpstreamTimeoutError,
)
from progress import update_progress_with_photo
from retry import execute_with_retry, is_retryable_error
from teams import get_team_by_team_id

logger = logging.getLogger(__name__)

UPLOAD_RETRY_DELAYS = (0.5, 1.0, 2.0)
SIMPLE_UPLOAD_MAX_WIDTH = 1200
COLLAGE_TAG = "vail-scavenger"
HUNT_TAG = "scavenger-hunt"


class CircuitBreaker:
    """
    Stop calling a failing service for a while.

    CLOSED: calls go through; failures inside `window` seconds are counted.
    OPEN: calls are refused until `reset_timeout` has passed.
    HALF_OPEN: one trial call; success closes the circuit, failure reopens it.
    """

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        window: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.window = window
        self._clock = clock
        self._failures: List[float] = []
        self._state = self.CLOSED
        self._opened_at = 0.0

    @property
    def state(self) -> str:
        if self._state == self.OPEN and self._clock() - self._opened_at >= self.reset_timeout:
            self._state = self.HALF_OPEN
        return self._state

    def before_call(self) -> None:
        """Raise ServiceUnavailableError while the circuit is open."""
        if self.state == self.OPEN:
            remaining = self.reset_timeout - (self._clock() - self._opened_at)
            raise ServiceUnavailableError(
                f"{self.name} temporarily unavailable",
                retry_after=max(1, math.ceil(remaining)),
            )

    def record_success(self) -> None:
        if self._state != self.CLOSED:
            logger.info(f"Circuit {self.name} closed")
        self._failures.clear()
        self._state = self.CLOSED

    def record_failure(self) -> None:
        now = self._clock()
        if self.state == self.HALF_OPEN:
            self._open(now)
            return

        self._failures = [t for t in self._failures if now - t < self.window]
        self._failures.append(now)
        if len(self._failures) >= self.failure_threshold:
            self._open(now)

    def _open(self, now: float) -> None:
        self._state = self.OPEN
        self._opened_at = now
        self._failures.clear()
        logger.warning(f"Circuit {self.name} opened for {self.reset_timeout}s")

    def reset(self) -> None:
        self._failures.clear()
        self._state = self.CLOSED
        self._opened_at = 0.0

    async def call(self, operation: Callable):
        self.before_call()
        try:
            result = await operation()
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result


image_service_breaker = CircuitBreaker(
    "Image service",
    failure_threshold=5,
    reset_timeout=30.0,
    window=60.0,
)


def generate_idempotency_key(data: bytes, session_id: str, location_title: str) -> str:
    """Stable 16-hex-char key for a (file, session, location) triple."""
    digest = hashlib.sha256()
    digest.update(data)
    digest.update(session_id.encode())
    digest.update(location_title.encode())
    return digest.hexdigest()[:16]


def _translate_upstream_error(error: Exception) -> Exception:
    if isinstance(error, CloudinaryTimeoutError):
        return UpstreamTimeoutError("Image service", details=str(error))
    if isinstance(error, CloudinaryError):
        return UpstreamError("Image service", details=str(error))
    return error


async def _upload_with_retry(operation_name: str, **upload_kwargs) -> dict:
    async def attempt():
        return await cloudinary_client.upload_image(**upload_kwargs)

    try:
        return await image_service_breaker.call(
            lambda: execute_with_retry(
                attempt,
                operation_name=operation_name,
                max_attempts=config.RETRY_MAX_ATTEMPTS,
                delays=UPLOAD_RETRY_DELAYS,
            )
        )
    except CloudinaryError as e:
        raise _translate_upstream_error(e) from e


async def upload_photo(
    data: bytes,
    location_title: str,
    session_id: str,
    filename: str = "photo.jpg",
    team_name: Optional[str] = None,
    location_name: Optional[str] = None,
    event_name: Optional[str] = None,
) -> dict:
    """
    Upload a single photo without touching progress.

    Returns:
        {"photoUrl", "publicId", "locationSlug", "title", "uploadedAt"}
    """
    slug = generate_slug(location_title)
    public_id = f"{slug}_{session_id}_{int(time.time() * 1000)}"

    result = await _upload_with_retry(
        "Photo upload",
        data=data,
        public_id=public_id,
        filename=filename,
        folder=config.CLOUDINARY_UPLOAD_FOLDER,
        tags=[HUNT_TAG, slug],
        context={
            "location_title": location_title,
            "session_id": session_id,
            "team_name": team_name,
            "location_name": location_name,
            "event_name": event_name,
        },
        transformation=build_transformation(SIMPLE_UPLOAD_MAX_WIDTH, SIMPLE_UPLOAD_MAX_WIDTH),
    )

    return {
        "photoUrl": result["secure_url"],
        "publicId": result["public_id"],
        "locationSlug": slug,
        "title": location_title,
        "uploadedAt": utc_now_iso(),
    }


@dataclass
class OrchestratedUpload:
    """Inputs of an upload that also marks a stop done."""
    data: bytes
    location_title: str
    session_id: str
    team_id: str
    filename: str = "photo.jpg"
    organization_id: Optional[str] = None
    hunt_id: Optional[str] = None
    location_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    team_name: Optional[str] = None
    location_name: Optional[str] = None
    event_name: Optional[str] = None


def get_upload_receipt(team_pk: int, idempotency_key: str) -> Optional[dict]:
    """Stored result of an earlier upload by the same team with the same key."""
    with get_db() as conn:
        row = conn.execute(
            "SELECT response FROM photo_uploads WHERE team_id = ? AND idempotency_key = ?",
            (team_pk, idempotency_key)
        ).fetchone()
    return json.loads(row["response"]) if row else None


def store_upload_receipt(idempotency_key: str, team_pk: int, location_id: str, response: dict) -> None:
    with get_db() as conn:
        conn.execute("""
            INSERT OR IGNORE INTO photo_uploads
                (idempotency_key, team_id, location_id, public_id, photo_url, response, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (idempotency_key, team_pk, location_id, response["publicId"], response["photoUrl"],
              json.dumps(response), utc_now_iso()))


def build_upload_tags(slug: str, upload: OrchestratedUpload, idempotency_key: str) -> List[str]:
    tags = [HUNT_TAG, slug, f"session:{upload.session_id}", f"key:{idempotency_key}"]
    if upload.organization_id:
        tags.append(f"org:{upload.organization_id}")
    if upload.hunt_id:
        tags.append(f"hunt:{upload.hunt_id}")
    tags.append(f"team:{upload.team_id}")
    if upload.location_id:
        tags.append(f"loc:{upload.location_id}")
    return tags[:cloudinary_client.MAX_TAGS]


async def _compensate(public_id: str) -> None:
    try:
        deleted = await cloudinary_client.destroy(public_id)
        logger.info(f"Compensation: deleted {public_id} (result={deleted})")
    except CloudinaryError as e:
        logger.error(f"Compensation failed, orphaned asset {public_id}: {e}")


async def orchestrate_photo_upload(upload: OrchestratedUpload) -> dict:
    """
    Upload a photo and mark its stop done, exactly once per team and idempotency key.

    Returns:
        {"photoUrl", "publicId", "locationSlug", "title", "uploadedAt",
         "idempotencyKey"}, plus "deduplicated": True for repeats

    Raises:
        NotFoundError: the team doesn't exist
        ServiceUnavailableError: the image service circuit is open
        UpstreamTimeoutError / UpstreamError: the upload failed
        StorageError: the progress write failed (the upload is rolled back)
    """
    slug = generate_slug(upload.location_title)
    location_id = upload.location_id or slug
    idempotency_key = upload.idempotency_key or generate_idempotency_key(
        upload.data, upload.session_id, upload.location_title
    )

    team = get_team_by_team_id(upload.team_id, upload.organization_id, upload.hunt_id)
    if not team:
        raise NotFoundError("Team not found", details=upload.team_id)

    receipt = get_upload_receipt(team.id, idempotency_key)
    if receipt:
        logger.info(f"Duplicate upload {idempotency_key} for {team.team_id}, returning stored result")
        return {**receipt, "deduplicated": True}

    completed_at = utc_now_iso()
    result = await _upload_with_retry(
        "Orchestrated upload",
        data=upload.data,
        public_id=f"{slug}_{team.team_id}_{upload.session_id}_{idempotency_key}",
        filename=upload.filename,
        folder=config.CLOUDINARY_UPLOAD_FOLDER,
        tags=build_upload_tags(slug, upload, idempotency_key),
        context={
            "idempotency_key": idempotency_key,
            "session_id": upload.session_id,
            "location_id": location_id,
            "location_title": upload.location_title,
            "team_name": upload.team_name or team.display_name,
            "hunt_name": upload.event_name,
            "organization_name": upload.organization_id,
            "completed_at": completed_at,
        },
        transformation=build_transformation(),
        overwrite=True,
    )
    public_id = result["public_id"]
    photo_url = result["secure_url"]

    try:
        asset = await cloudinary_client.get_resource(public_id)
    except CloudinaryError as e:
        raise _translate_upstream_error(e) from e
    if asset is None:
        raise UpstreamError("Image service", details=f"Uploaded asset {public_id} not found")

    try:
        await execute_with_retry(
            lambda: update_progress_with_photo(team.id, location_id, photo_url, completed_at),
            operation_name="Progress update",
            max_attempts=config.RETRY_MAX_ATTEMPTS,
            delays=UPLOAD_RETRY_DELAYS,
            should_retry=is_retryable_error,
        )
    except sqlite3.Error as e:
        logger.error(f"Progress update failed for {team.team_id}/{location_id}, rolling back upload: {e}")
        await _compensate(public_id)
        raise StorageError("Photo uploaded but progress could not be saved", details=str(e)) from e

    response = {
        "photoUrl": photo_url,
        "publicId": public_id,
        "locationSlug": slug,
        "title": upload.location_title,
        "uploadedAt": completed_at,
        "idempotencyKey": idempotency_key,
    }
    store_upload_receipt(idempotency_key, team.id, location_id, response)
    logger.info(f"Orchestrated upload complete for {team.team_id}/{location_id} ({public_id})")
    return response


async def create_collage(photos: List[Tuple[bytes, str, str]]) -> dict:
    """
    Upload photos and build a collage URL from them.

    Args:
        photos: (data, filename, title) per photo, in display order

    Returns:
        {"collageUrl", "uploaded": [{"publicId", "secureUrl", "title"}, ...]}
    """
    timestamp = int(time.time() * 1000)

    async def upload_one(index: int, data: bytes, filename: str, title: str) -> dict:
        result = await _upload_with_retry(
            "Collage upload",
            data=data,
            public_id=f"scavenger_{timestamp}_{index}",
            filename=filename,
            folder=config.CLOUDINARY_UPLOAD_FOLDER,
            tags=[COLLAGE_TAG],
            context={"caption": title},
        )
        return {"publicId": result["public_id"], "secureUrl": result["secure_url"], "title": title}

    uploaded = await asyncio.gather(*[
        upload_one(index, data, filename, title)
        for index, (data, filename, title) in enumerate(photos)
    ])

    return {
        "collageUrl": build_collage_url([item["publicId"] for item in uploaded]),
        "uploaded": list(uploaded),
    }
