"""
Centralized configuration for the Scavenger Hunt API.

All configurable values are loaded from environment variables with sensible defaults.
"""

import os


def _require_env(name: str, test_default: str) -> str:
    """
    Get a required environment variable.

    In testing mode, returns a test default. In production, raises an error if not set.
    """
    value = os.getenv(name)
    if value:
        return value

    # Allow test defaults only in testing mode
    if os.getenv("TESTING"):
        return test_default

    raise ValueError(
        f"Required environment variable {name} is not set. "
        f"Set {name} in your environment or deployment secrets."
    )


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


def _env_list(name: str, default: str = "") -> list:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


class Config:
    """Application configuration loaded from environment variables."""

    APP_NAME: str = os.getenv("APP_NAME", "Scavenger Hunt API")
    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")  # development, staging, production
    API_URL: str = os.getenv("API_URL", "")

    # Hunt shown when a rankings request names none
    DEFAULT_ORG_ID: str = os.getenv("DEFAULT_ORG_ID", "bhhs")
    DEFAULT_HUNT_ID: str = os.getenv("DEFAULT_HUNT_ID", "fall-2025")

    # Database
    DATABASE_PATH: str = os.getenv("DATABASE_PATH", "scavenger_hunt.db")

    # Security - these are required in production
    ADMIN_KEY: str = _require_env("ADMIN_KEY", "test-admin-key")
    TEAM_LOCK_JWT_SECRET: str = _require_env("TEAM_LOCK_JWT_SECRET", "test-team-lock-secret")
    TEAM_LOCK_TTL_SECONDS: int = int(os.getenv("TEAM_LOCK_TTL_SECONDS", "86400"))  # 24 hours
    DEVICE_HINT_SEED: str = os.getenv("DEVICE_HINT_SEED", "default-seed")
    # When true, write endpoints reject requests without an X-Team-Lock header
    REQUIRE_TEAM_LOCK: bool = _env_flag("REQUIRE_TEAM_LOCK")

    # CORS
    ALLOWED_ORIGINS: list = _env_list("ALLOWED_ORIGINS", "*")

    # Rate limiting
    RATE_LIMIT_TEAM_VERIFY: str = os.getenv("RATE_LIMIT_TEAM_VERIFY", "10/minute")
    RATE_LIMIT_UPLOAD: str = os.getenv("RATE_LIMIT_UPLOAD", "30/minute")
    RATE_LIMIT_RETRY_AFTER: int = int(os.getenv("RATE_LIMIT_RETRY_AFTER", "60"))

    # Cache TTLs (seconds)
    CACHE_CLEANUP_INTERVAL: int = int(os.getenv("CACHE_CLEANUP_INTERVAL", "60"))
    LOCATIONS_CACHE_TTL: int = int(os.getenv("LOCATIONS_CACHE_TTL", "300"))
    SETTINGS_CACHE_TTL: int = int(os.getenv("SETTINGS_CACHE_TTL", "60"))
    SPONSOR_CACHE_TTL: int = int(os.getenv("SPONSOR_CACHE_TTL", "300"))
    PUBLIC_CONFIG_CACHE_TTL: int = int(os.getenv("PUBLIC_CONFIG_CACHE_TTL", "300"))

    # Retry settings for outbound calls
    RETRY_MAX_ATTEMPTS: int = int(os.getenv("RETRY_MAX_ATTEMPTS", "3"))
    RETRY_DELAY_SECONDS: float = float(os.getenv("RETRY_DELAY_SECONDS", "1.0"))

    # Sponsors
    ENABLE_SPONSOR_CARD: bool = _env_flag("ENABLE_SPONSOR_CARD")
    SPONSOR_ASSET_BASE_URL: str = os.getenv("SPONSOR_ASSET_BASE_URL", "")

    # Cloudinary image service
    CLOUDINARY_CLOUD_NAME: str = os.getenv("CLOUDINARY_CLOUD_NAME", "")
    CLOUDINARY_API_KEY: str = os.getenv("CLOUDINARY_API_KEY", "")
    CLOUDINARY_API_SECRET: str = os.getenv("CLOUDINARY_API_SECRET", "")
    CLOUDINARY_UNSIGNED_PRESET: str = os.getenv("CLOUDINARY_UNSIGNED_PRESET", "")
    CLOUDINARY_UPLOAD_FOLDER: str = os.getenv("CLOUDINARY_UPLOAD_FOLDER", "scavenger/entries")
    CLOUDINARY_TIMEOUT_SECONDS: float = float(os.getenv("CLOUDINARY_TIMEOUT_SECONDS", "30"))
    IMAGE_TRANSFORM: dict = {
        "quality": os.getenv("IMAGE_QUALITY", "auto:good"),
        "fetch_format": os.getenv("IMAGE_FORMAT", "auto"),
        "width": int(os.getenv("IMAGE_MAX_WIDTH", "1600")),
        "height": int(os.getenv("IMAGE_MAX_HEIGHT", "1600")),
        "crop": "limit",
    }

    # Uploads
    MAX_UPLOAD_BYTES: int = int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))  # 10 MB
    MAX_ORCHESTRATED_UPLOAD_BYTES: int = int(
        os.getenv("MAX_ORCHESTRATED_UPLOAD_BYTES", str(15 * 1024 * 1024))
    )  # 15 MB
    ALLOW_LARGE_UPLOADS: bool = _env_flag("ALLOW_LARGE_UPLOADS")
    ENABLE_UNSIGNED_UPLOADS: bool = _env_flag("ENABLE_UNSIGNED_UPLOADS")
    DISABLE_CLIENT_RESIZE: bool = _env_flag("DISABLE_CLIENT_RESIZE")

    # Error reporting (server SDK, and passed through to the browser)
    SENTRY_DSN: str = os.getenv("SENTRY_DSN", "")
    SENTRY_ENVIRONMENT: str = os.getenv("SENTRY_ENVIRONMENT", "")
    SENTRY_RELEASE: str = os.getenv("SENTRY_RELEASE", "")
    SENTRY_TRACES_SAMPLE_RATE: str = os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.1")
    SENTRY_SEND_DEFAULT_PII: bool = _env_flag("SENTRY_SEND_DEFAULT_PII")

    # Testing mode
    TESTING: bool = bool(os.getenv("TESTING", ""))

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    def cloudinary_configured(self) -> bool:
        return bool(self.CLOUDINARY_CLOUD_NAME and self.CLOUDINARY_API_KEY and self.CLOUDINARY_API_SECRET)

    def get_public_config(self) -> dict:
        """Client-safe configuration values. Never includes secrets."""
        return {
            "API_URL": self.API_URL,
            "SENTRY_DSN": self.SENTRY_DSN,
            "SENTRY_ENVIRONMENT": self.SENTRY_ENVIRONMENT,
            "SENTRY_RELEASE": self.SENTRY_RELEASE,
            "SENTRY_TRACES_SAMPLE_RATE": self.SENTRY_TRACES_SAMPLE_RATE,
            "SPONSOR_CARD_ENABLED": self.ENABLE_SPONSOR_CARD,
            "MAX_UPLOAD_BYTES": self.MAX_UPLOAD_BYTES,
            "ALLOW_LARGE_UPLOADS": self.ALLOW_LARGE_UPLOADS,
            "ENABLE_UNSIGNED_UPLOADS": self.ENABLE_UNSIGNED_UPLOADS,
            "DISABLE_CLIENT_RESIZE": self.DISABLE_CLIENT_RESIZE,
            "CLOUDINARY_CLOUD_NAME": self.CLOUDINARY_CLOUD_NAME,
            "CLOUDINARY_UNSIGNED_PRESET": self.CLOUDINARY_UNSIGNED_PRESET,
            "CLOUDINARY_UPLOAD_FOLDER": self.CLOUDINARY_UPLOAD_FOLDER,
        }


# Global config instance
config = Config()
