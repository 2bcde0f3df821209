"""
Pytest configuration and fixtures.
"""

import os
import sys
import tempfile

# Add app directory to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

# Create temp file for the default test database
_test_db_fd, _test_db_path = tempfile.mkstemp(suffix=".db")
os.close(_test_db_fd)

# Set test environment BEFORE importing app modules
os.environ["TESTING"] = "1"
os.environ["DATABASE_PATH"] = _test_db_path
os.environ["ADMIN_KEY"] = "test-admin-key"
os.environ["TEAM_LOCK_JWT_SECRET"] = "test-team-lock-secret"
os.environ["DEVICE_HINT_SEED"] = "test-seed"
os.environ.pop("CLOUDINARY_CLOUD_NAME", None)
os.environ.pop("ENABLE_SPONSOR_CARD", None)

import pytest


@pytest.fixture(scope="session", autouse=True)
def cleanup_test_db():
    """Remove the default test database after the session."""
    yield
    if os.path.exists(_test_db_path):
        os.remove(_test_db_path)


@pytest.fixture(autouse=True)
def fresh_state():
    """Reset the database, cache and image service circuit before each test."""
    from database import reset_db
    from cache import clear_cache
    from photos import image_service_breaker

    reset_db()
    clear_cache()
    image_service_breaker.reset()
    yield


@pytest.fixture
def cloudinary_settings():
    """Configure fake Cloudinary credentials for a test."""
    from unittest.mock import patch
    from config import config

    with patch.object(config, "CLOUDINARY_CLOUD_NAME", "demo-cloud"), \
         patch.object(config, "CLOUDINARY_API_KEY", "123456"), \
         patch.object(config, "CLOUDINARY_API_SECRET", "shh-secret"):
        yield config
