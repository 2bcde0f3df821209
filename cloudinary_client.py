"""
Cloudinary SDK wrapper for photo uploads and collage URLs.

The SDK is synchronous, so calls run in a worker thread. SDK errors are
re-raised as CloudinaryError with an HTTP-ish status code where one is known,
which is what the retry and circuit breaker code inspect.
"""

import asyncio
import logging
import re
from typing import Dict, List, Optional

import cloudinary
import cloudinary.api
import cloudinary.exceptions
import cloudinary.uploader

from config import config

logger = logging.getLogger(__name__)

MAX_TAGS = 20
# Extra time allowed past the SDK's own request timeout before giving up on the thread
DEADLINE_GRACE_SECONDS = 5.0

# Ordered most specific first; every SDK error subclasses cloudinary.exceptions.Error
SDK_ERROR_STATUS = (
    (cloudinary.exceptions.BadRequest, 400),
    (cloudinary.exceptions.AuthorizationRequired, 401),
    (cloudinary.exceptions.NotAllowed, 403),
    (cloudinary.exceptions.NotFound, 404),
    (cloudinary.exceptions.AlreadyExists, 409),
    (cloudinary.exceptions.RateLimited, 429),
    (cloudinary.exceptions.GeneralError, 502),
)


class CloudinaryError(Exception):
    """Exception for Cloudinary API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class CloudinaryTimeoutError(CloudinaryError):
    """Cloudinary did not answer in time."""

    def __init__(self, message: str):
        super().__init__(message, status_code=504)


def is_configured() -> bool:
    return config.cloudinary_configured()


def _configure() -> None:
    cloudinary.config(
        cloud_name=config.CLOUDINARY_CLOUD_NAME,
        api_key=config.CLOUDINARY_API_KEY,
        api_secret=config.CLOUDINARY_API_SECRET,
        secure=True,
    )


def generate_slug(title: str) -> str:
    """
    Turn a location title into a URL-safe slug.

    "Clock Tower (North)!" -> "clock-tower-north"
    """
    slug = title.lower()
    slug = re.sub(r"[^a-z0-9\s-]", "", slug)
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")


def build_transformation(width: Optional[int] = None, height: Optional[int] = None) -> Dict[str, object]:
    """Incoming transformation from the configured image settings."""
    transform = config.IMAGE_TRANSFORM
    return {
        "quality": transform["quality"],
        "fetch_format": transform["fetch_format"],
        "width": width or transform["width"],
        "height": height or transform["height"],
        "crop": transform["crop"],
    }


def clean_context(context: Dict[str, object]) -> Dict[str, str]:
    """Drop empty context values; the SDK escapes the rest."""
    return {
        key: str(value)
        for key, value in context.items()
        if value is not None and value != ""
    }


def _wrap_sdk_error(action: str, error: Exception) -> CloudinaryError:
    message = str(error)
    lowered = message.lower()
    if "timed out" in lowered or "timeout" in lowered:
        return CloudinaryTimeoutError(f"{action} timed out: {message}")

    status = None
    for error_type, error_status in SDK_ERROR_STATUS:
        if isinstance(error, error_type):
            status = error_status
            break
    return CloudinaryError(f"{action} failed: {message}", status_code=status)


async def _call_sdk(action: str, func, *args, **options):
    """Run a blocking SDK call in a thread with a hard deadline."""
    _configure()
    timeout = config.CLOUDINARY_TIMEOUT_SECONDS
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(func, *args, timeout=timeout, **options),
            timeout=timeout + DEADLINE_GRACE_SECONDS,
        )
    except asyncio.TimeoutError as e:
        raise CloudinaryTimeoutError(f"{action} timed out after {timeout}s") from e
    except cloudinary.exceptions.Error as e:
        raise _wrap_sdk_error(action, e) from e


async def upload_image(
    data: bytes,
    public_id: str,
    filename: str = "upload.jpg",
    folder: Optional[str] = None,
    tags: Optional[List[str]] = None,
    context: Optional[Dict[str, object]] = None,
    transformation: Optional[Dict[str, object]] = None,
    overwrite: bool = False,
) -> dict:
    """
    Upload an image.

    Args:
        data: Raw image bytes
        public_id: Public id to store the asset under
        filename: Original file name sent with the upload
        folder: Folder to upload into
        tags: Tags to attach (at most MAX_TAGS are sent)
        context: Contextual metadata key/value pairs
        transformation: Incoming transformation applied before storage
        overwrite: Replace an existing asset with the same public id

    Returns:
        Cloudinary's upload response (public_id, secure_url, ...)

    Raises:
        CloudinaryError: If Cloudinary rejects the upload or can't be reached
        CloudinaryTimeoutError: If the upload doesn't finish in time
    """
    if not is_configured():
        raise CloudinaryError("Cloudinary is not configured")

    options = {
        "public_id": public_id,
        "filename": filename,
        "resource_type": "image",
        "overwrite": overwrite,
    }
    if folder:
        options["folder"] = folder
    if tags:
        options["tags"] = tags[:MAX_TAGS]
    if context:
        options["context"] = clean_context(context)
    if transformation:
        options["transformation"] = [transformation]

    result = await _call_sdk("Upload", cloudinary.uploader.upload, data, **options)
    logger.info(f"Uploaded {result.get('public_id')} ({result.get('bytes', len(data))} bytes)")
    return result


async def get_resource(public_id: str) -> Optional[dict]:
    """Fetch an uploaded asset's details, or None if it doesn't exist."""
    try:
        return await _call_sdk("Resource lookup", cloudinary.api.resource, public_id)
    except CloudinaryError as e:
        if e.status_code == 404:
            return None
        raise


async def destroy(public_id: str) -> bool:
    """Delete an uploaded asset. Returns True if Cloudinary reports it deleted."""
    result = await _call_sdk("Destroy", cloudinary.uploader.destroy, public_id, invalidate=True)
    return result.get("result") == "ok"


def delivery_url(public_id: str, transformation: Optional[List[dict]] = None) -> str:
    _configure()
    options = {"secure": True}
    if transformation:
        options["transformation"] = transformation
    return cloudinary.CloudinaryImage(public_id).build_url(**options)


def _layer_id(public_id: str) -> str:
    # Overlay ids use ':' instead of '/' for folders
    return public_id.replace("/", ":")


def build_collage_url(public_ids: List[str]) -> str:
    """
    Build a delivery URL that lays the images out side by side.

    One image is cropped to 800x600, two become 400x600 halves, three or more
    become 267x400 thirds (only the first three are used).
    """
    if not public_ids:
        raise ValueError("At least one image is required for a collage")

    if len(public_ids) == 1:
        return delivery_url(public_ids[0], [{"width": 800, "height": 600, "crop": "fill"}])

    width, height = (400, 600) if len(public_ids) == 2 else (267, 400)
    base, *others = public_ids[:3]
    layers = [
        {
            "overlay": _layer_id(public_id),
            "width": width,
            "height": height,
            "crop": "fill",
            "x": (index + 1) * width,
            "flags": "layer_apply",
        }
        for index, public_id in enumerate(others)
    ]
    return delivery_url(base, [{"width": width, "height": height, "crop": "fill"}] + layers)
