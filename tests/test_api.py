"""
Tests for API endpoints.
"""

import json
import sqlite3
import time
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient
from starlette.requests import Request

import photos
from config import config
from database import seed_example_hunt
import main
from main import app, get_forwarded_ip, init_sentry, limiter
from team_lock import generate_lock_token

ORG, HUNT = "bhhs", "fall-2025"


@pytest.fixture
def client():
    """Create test client."""
    return TestClient(app)


@pytest.fixture
def seeded():
    """Seed the example hunt."""
    seed_example_hunt()


@pytest.fixture
def admin_headers():
    """Admin authentication headers."""
    return {"X-Admin-Key": "test-admin-key"}


def lock_headers(team_id):
    token, _ = generate_lock_token(team_id)
    return {"X-Team-Lock": token}


def cloudinary_upload(public_id="scavenger/entries/clock-tower_s1_key"):
    return AsyncMock(return_value={
        "public_id": public_id,
        "secure_url": f"https://res.cloudinary.com/demo-cloud/image/upload/v1/{public_id}.jpg",
    })


class TestHealthEndpoint:
    """Test health check endpoint."""

    def test_health_degraded_without_cloudinary(self, client):
        """Test health reports missing image service credentials."""
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "degraded"
        assert response.json()["warnings"]

    def test_health_ok(self, client, cloudinary_settings):
        """Test health is ok when everything is configured."""
        assert client.get("/health").json()["status"] == "ok"


class TestCommonBehaviour:
    """Test headers and the error envelope."""

    def test_request_id_generated(self, client):
        """Test a request id is generated and echoed."""
        response = client.get("/health")
        assert response.headers["X-Request-ID"]

    def test_request_id_propagated(self, client):
        """Test a client request id is echoed back."""
        response = client.get("/health", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"

    def test_api_responses_not_cached(self, client, seeded):
        """Test API responses carry no-store."""
        response = client.get(f"/api/locations/{ORG}/{HUNT}")
        assert response.headers["Cache-Control"] == "no-store"
        assert response.headers["X-Content-Type-Options"] == "nosniff"

    def test_unknown_route_envelope(self, client):
        """Test unknown routes use the error envelope."""
        response = client.get("/api/nope", headers={"X-Request-ID": "req-1"})
        body = response.json()
        assert response.status_code == 404
        assert body["statusCode"] == 404
        assert body["requestId"] == "req-1"
        assert "timestamp" in body

    def test_request_validation_envelope(self, client):
        """Test body validation errors become 422 envelopes."""
        response = client.post("/api/team/verify", json={"code": ["not", "a", "string"]})
        assert response.status_code == 422
        assert response.json()["code"] == "VALIDATION_ERROR"


class TestPublicEndpoints:
    """Test config, locations, leaderboard and sponsors."""

    def test_public_config(self, client):
        """Test public config omits secrets."""
        body = client.get("/api/config").json()
        assert body["CLOUDINARY_UPLOAD_FOLDER"] == "scavenger/entries"
        assert "CLOUDINARY_API_SECRET" not in body
        assert config.TEAM_LOCK_JWT_SECRET not in json.dumps(body)

    def test_locations(self, client, seeded):
        """Test hunt stops."""
        body = client.get(f"/api/locations/{ORG}/{HUNT}").json()
        assert body["name"] == "bhhs - fall-2025"
        assert len(body["locations"]) == 5

    def test_leaderboard(self, client, seeded):
        """Test leaderboard listing."""
        body = client.get("/api/leaderboard", params={"orgId": ORG, "huntId": HUNT}).json()
        assert len(body["teams"]) == 3
        assert body["totalStops"] == 5

    def test_leaderboard_requires_params(self, client):
        """Test missing leaderboard params are rejected."""
        response = client.get("/api/leaderboard", params={"orgId": ORG})
        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_REQUEST"

    def test_sponsors_disabled(self, client, seeded):
        """Test sponsors are empty when the feature is off."""
        response = client.get("/api/sponsors", params={"organizationId": ORG, "huntId": HUNT})
        assert response.json() == {"layout": "1x2", "items": []}

    def test_sponsors_post(self, client, seeded):
        """Test the JSON body variant."""
        with patch.object(config, "ENABLE_SPONSOR_CARD", True):
            response = client.post("/api/sponsors", json={"organizationId": ORG, "huntId": HUNT})
        assert len(response.json()["items"]) == 2

    def test_sponsors_requires_params(self, client):
        """Test missing sponsor params are rejected."""
        assert client.post("/api/sponsors", json={"organizationId": ORG}).status_code == 400


class TestTeamVerify:
    """Test team code verification."""

    def test_verify_success(self, client, seeded):
        """Test a valid code returns the team and a lock token."""
        response = client.post("/api/team/verify", json={"code": "berry2025"})
        assert response.status_code == 200
        body = response.json()
        assert body["teamId"] == "berrypicker"
        assert body["teamName"] == "Berry Pickers"
        assert body["ttlSeconds"] == config.TEAM_LOCK_TTL_SECONDS
        assert body["lockToken"]

    def test_verify_invalid_code(self, client, seeded):
        """Test an unknown code is rejected and audited."""
        response = client.post("/api/team/verify", json={"code": "WRONG"})
        assert response.status_code == 401
        assert response.json()["code"] == "TEAM_CODE_INVALID"
        assert response.headers["Cache-Control"] == "no-store, no-cache, must-revalidate"

    def test_verify_missing_code(self, client, seeded):
        """Test a blank code is rejected."""
        assert client.post("/api/team/verify", json={"code": "  "}).status_code == 400
        assert client.post("/api/team/verify", json={}).status_code == 400

    def test_same_device_other_team_conflicts(self, client, seeded):
        """Test a device locked to one team can't join another."""
        assert client.post("/api/team/verify", json={"code": "BERRY2025"}).status_code == 200

        response = client.post("/api/team/verify", json={"code": "OKKIM2025"})
        assert response.status_code == 409
        body = response.json()
        assert body["code"] == "TEAM_LOCK_CONFLICT"
        assert 0 < body["remainingTtlSeconds"] <= config.TEAM_LOCK_TTL_SECONDS
        assert "24h" in body["error"]

    def test_same_team_reverify(self, client, seeded):
        """Test re-entering the same team's code issues a new token."""
        client.post("/api/team/verify", json={"code": "BERRY2025"})
        assert client.post("/api/team/verify", json={"code": "BERRY2025"}).status_code == 200

    def test_other_device_not_conflicting(self, client, seeded):
        """Test a different device can join another team."""
        client.post("/api/team/verify", json={"code": "BERRY2025"})
        response = client.post("/api/team/verify", json={"code": "OKKIM2025"},
                               headers={"User-Agent": "another-phone"})
        assert response.status_code == 200

    def test_other_forwarded_address_not_conflicting(self, client, seeded):
        """Test the first X-Forwarded-For address is part of the device fingerprint."""
        client.post("/api/team/verify", json={"code": "BERRY2025"},
                    headers={"X-Forwarded-For": "203.0.113.5, 10.0.0.1"})
        response = client.post("/api/team/verify", json={"code": "OKKIM2025"},
                               headers={"X-Forwarded-For": "198.51.100.7, 10.0.0.1"})
        assert response.status_code == 200

    def test_same_forwarded_address_conflicts(self, client, seeded):
        """Test proxies after the first forwarded address don't change the fingerprint."""
        client.post("/api/team/verify", json={"code": "BERRY2025"},
                    headers={"X-Forwarded-For": "203.0.113.5, 10.0.0.1"})
        response = client.post("/api/team/verify", json={"code": "OKKIM2025"},
                               headers={"X-Forwarded-For": "203.0.113.5, 10.0.0.2"})
        assert response.status_code == 409

    def test_verification_audited(self, client, seeded, admin_headers):
        """Test attempts show up in the audit log without the code."""
        client.post("/api/team/verify", json={"code": "WRONG"})
        client.post("/api/team/verify", json={"code": "BERRY2025"})
        body = client.get("/admin/audit-log", params={"action": "team_verify"}, headers=admin_headers).json()
        assert body["total"] == 2
        assert "WRONG" not in json.dumps(body)


class TestTeamCurrent:
    """Test resolving the team of a lock token."""

    def test_current_team(self, client, seeded):
        """Test a valid token resolves its team."""
        response = client.get("/api/team/current", headers=lock_headers("okkim"))
        assert response.status_code == 200
        assert response.json()["teamName"] == "OK Kim"

    def test_missing_token(self, client, seeded):
        """Test a missing token is rejected."""
        response = client.get("/api/team/current")
        assert response.status_code == 401
        assert response.json()["code"] == "INVALID_TOKEN"

    def test_expired_token(self, client, seeded):
        """Test an expired token gets 419."""
        token, _ = generate_lock_token("okkim", now=time.time() - config.TEAM_LOCK_TTL_SECONDS - 60)
        response = client.get("/api/team/current", headers={"X-Team-Lock": token})
        assert response.status_code == 419
        assert response.json()["code"] == "TEAM_LOCK_EXPIRED"

    def test_garbage_token(self, client, seeded):
        """Test a malformed token is rejected."""
        response = client.get("/api/team/current", headers={"X-Team-Lock": "garbage"})
        assert response.status_code == 401


class TestProgressEndpoints:
    """Test progress reads and writes."""

    def test_save_and_get(self, client, seeded):
        """Test saved progress is returned with titles."""
        response = client.post(f"/api/progress/{ORG}/okkim/{HUNT}", json={
            "progress": {"clock-tower": {"done": True, "completedAt": "2025-10-01T10:00:00.000Z"}},
            "sessionId": "s1",
        }, headers=lock_headers("okkim"))
        assert response.status_code == 200
        assert response.json()["success"] is True
        assert response.json()["updatedStops"] == 1

        body = client.get(f"/api/progress/{ORG}/okkim/{HUNT}").json()
        assert body["clock-tower"]["title"] == "Clock Tower"
        assert body["clock-tower"]["done"] is True

    def test_save_without_lock_allowed(self, client, seeded):
        """Test writes without a lock header are allowed by default."""
        response = client.post(f"/api/progress/{ORG}/okkim/{HUNT}",
                               json={"progress": {"library": {"done": True}}})
        assert response.status_code == 200

    def test_save_without_lock_when_required(self, client, seeded):
        """Test writes need a lock header when REQUIRE_TEAM_LOCK is on."""
        with patch.object(config, "REQUIRE_TEAM_LOCK", True):
            response = client.post(f"/api/progress/{ORG}/okkim/{HUNT}",
                                   json={"progress": {"library": {"done": True}}})
        assert response.status_code == 401

    def test_team_mismatch(self, client, seeded, admin_headers):
        """Test a lock for another team is rejected and audited."""
        response = client.post(f"/api/progress/{ORG}/okkim/{HUNT}",
                               json={"progress": {"library": {"done": True}}},
                               headers=lock_headers("berrypicker"))
        assert response.status_code == 403
        assert response.json()["code"] == "TEAM_MISMATCH"

        audit = client.get("/admin/audit-log", params={"action": "write_rejected"}, headers=admin_headers).json()
        assert audit["entries"][0]["outcome"] == "team_mismatch"

    def test_lock_team_case_insensitive(self, client, seeded):
        """Test the lock team is compared case-insensitively."""
        response = client.post(f"/api/progress/{ORG}/okkim/{HUNT}",
                               json={"progress": {"library": {"done": True}}},
                               headers=lock_headers("OKKIM"))
        assert response.status_code == 200

    def test_invalid_payload(self, client, seeded):
        """Test invalid stops are rejected with details."""
        response = client.post(f"/api/progress/{ORG}/okkim/{HUNT}",
                               json={"progress": {"library": {"done": "yes"}}})
        assert response.status_code == 400
        assert "library" in response.json()["details"]

    def test_missing_progress(self, client, seeded):
        """Test a body without progress is rejected."""
        assert client.post(f"/api/progress/{ORG}/okkim/{HUNT}", json={}).status_code == 400

    def test_unknown_team(self, client, seeded):
        """Test writes for unknown teams are 404."""
        response = client.post(f"/api/progress/{ORG}/ghosts/{HUNT}",
                               json={"progress": {"library": {"done": True}}})
        assert response.status_code == 404

    def test_unknown_team_read(self, client, seeded):
        """Test reads for unknown teams are empty."""
        assert client.get(f"/api/progress/{ORG}/ghosts/{HUNT}").json() == {}

    def test_patch_stop(self, client, seeded):
        """Test patching one stop."""
        response = client.patch(f"/api/progress/{ORG}/okkim/{HUNT}/stop/library",
                                json={"update": {"done": True, "notes": "found it"}, "sessionId": "s1"},
                                headers=lock_headers("okkim"))
        assert response.status_code == 200
        body = response.json()
        assert body["stopId"] == "library"
        assert body["stop"]["done"] is True
        assert body["stop"]["notes"] == "found it"
        assert body["stop"]["completedAt"]

    def test_patch_requires_update(self, client, seeded):
        """Test an empty patch is rejected."""
        response = client.patch(f"/api/progress/{ORG}/okkim/{HUNT}/stop/library", json={})
        assert response.status_code == 400

    def test_patch_invalid_update(self, client, seeded):
        """Test invalid patch fields are rejected."""
        response = client.patch(f"/api/progress/{ORG}/okkim/{HUNT}/stop/library",
                                json={"update": {"revealedHints": -2}})
        assert response.status_code == 400


class TestSettingsEndpoints:
    """Test team settings."""

    def test_missing_settings_are_null(self, client, seeded):
        """Test unknown settings come back as null."""
        response = client.get(f"/api/settings/{ORG}/okkim/{HUNT}")
        assert response.status_code == 200
        assert response.json() is None

    def test_save_and_get(self, client, seeded):
        """Test saving settings."""
        response = client.post(f"/api/settings/{ORG}/okkim/{HUNT}", json={
            "settings": {"theme": "dark"},
            "sessionId": "s1",
            "timestamp": "2025-10-01T10:00:00.000Z",
        }, headers=lock_headers("okkim"))
        assert response.status_code == 200
        assert response.json()["settings"]["lastModifiedBy"] == "s1"

        body = client.get(f"/api/settings/{ORG}/okkim/{HUNT}").json()
        assert body["theme"] == "dark"
        assert body["lastModifiedAt"] == "2025-10-01T10:00:00.000Z"

    def test_save_requires_settings(self, client, seeded):
        """Test a body without settings is rejected."""
        assert client.post(f"/api/settings/{ORG}/okkim/{HUNT}", json={"sessionId": "s1"}).status_code == 400

    def test_save_team_mismatch(self, client, seeded):
        """Test settings writes check the lock team."""
        response = client.post(f"/api/settings/{ORG}/okkim/{HUNT}",
                               json={"settings": {}}, headers=lock_headers("teamalpha"))
        assert response.status_code == 403


class TestConsolidatedActive:
    """Test the consolidated endpoint."""

    def test_consolidated(self, client, seeded):
        """Test every section is present."""
        client.post(f"/api/progress/{ORG}/okkim/{HUNT}", json={"progress": {"library": {"done": True}}})
        body = client.get(f"/api/consolidated/active/{ORG}/okkim/{HUNT}").json()

        assert body["orgId"] == ORG
        assert body["teamId"] == "okkim"
        assert body["settings"] is None
        assert list(body["progress"]) == ["library"]
        assert body["sponsors"] == {"layout": "1x2", "items": []}
        assert "MAX_UPLOAD_BYTES" in body["config"]
        assert len(body["locations"]["locations"]) == 5
        assert body["lastUpdated"]


class TestConsolidatedHistory:
    """Test the consolidated history endpoint."""

    def test_history(self, client, seeded):
        """Test completed stops come back newest first with settings and config."""
        client.post(f"/api/progress/{ORG}/okkim/{HUNT}", json={"progress": {
            "clock-tower": {"done": True, "completedAt": "2025-10-01T10:00:00.000Z"},
            "library": {"done": True, "completedAt": "2025-10-01T11:00:00.000Z", "revealedHints": 1},
            "gondola-one": {"done": False},
        }})
        body = client.get(f"/api/consolidated/history/{ORG}/okkim/{HUNT}").json()

        assert body["orgId"] == ORG
        assert body["teamId"] == "okkim"
        assert body["huntId"] == HUNT
        assert body["settings"] is None
        assert [entry["locationId"] for entry in body["history"]] == ["library", "clock-tower"]
        assert body["history"][0]["revealedHints"] == 1
        assert "MAX_UPLOAD_BYTES" in body["config"]
        assert body["lastUpdated"]

    def test_unknown_team(self, client, seeded):
        """Test an unknown team has an empty history."""
        body = client.get(f"/api/consolidated/history/{ORG}/nobody/{HUNT}").json()
        assert body["history"] == []


class TestConsolidatedUpdates:
    """Test the consolidated updates feed."""

    def test_updates(self, client, seeded):
        """Test completions and photos appear in the feed."""
        client.post(f"/api/progress/{ORG}/okkim/{HUNT}", json={"progress": {
            "clock-tower": {"done": True, "completedAt": "2025-10-01T10:00:00.000Z"},
            "gondola-one": {"done": False, "photo": "https://example.com/gondola.jpg"},
            "library": {"done": False},
        }})
        body = client.get(f"/api/consolidated/updates/{ORG}/okkim/{HUNT}").json()

        assert body["teamId"] == "okkim"
        assert [entry["locationId"] for entry in body["updates"]] == ["clock-tower", "gondola-one"]
        assert body["updates"][0]["type"] == "progress"
        assert body["updates"][1]["photo"] == "https://example.com/gondola.jpg"
        assert "config" in body
        assert body["lastUpdated"]


class TestConsolidatedRankings:
    """Test the consolidated rankings endpoint."""

    def test_rankings(self, client, seeded):
        """Test ranked teams for the requested hunt."""
        client.post(f"/api/progress/{ORG}/teamalpha/{HUNT}", json={"progress": {
            "clock-tower": {"done": True, "completedAt": "2025-10-01T10:00:00.000Z"},
        }})
        body = client.get("/api/consolidated/rankings", params={"orgId": ORG, "huntId": HUNT}).json()

        assert body["orgId"] == ORG
        assert body["huntId"] == HUNT
        assert len(body["teams"]) == 3
        leader = body["teams"][0]
        assert leader["teamId"] == "teamalpha"
        assert leader["name"] == "Team Alpha"
        assert leader["rank"] == 1
        assert leader["percentComplete"] == 20
        assert leader["latestActivity"] == "2025-10-01T10:00:00.000Z"
        assert "MAX_UPLOAD_BYTES" in body["config"]
        assert body["lastUpdated"]

    def test_default_hunt(self, client, seeded):
        """Test the configured hunt is used when none is named."""
        body = client.get("/api/consolidated/rankings").json()
        assert body["orgId"] == config.DEFAULT_ORG_ID
        assert body["huntId"] == config.DEFAULT_HUNT_ID
        assert len(body["teams"]) == 3

    def test_unknown_hunt(self, client, seeded):
        """Test a hunt without teams has no rankings."""
        body = client.get("/api/consolidated/rankings", params={"orgId": ORG, "huntId": "winter"}).json()
        assert body["teams"] == []


class TestLoginInitialize:
    """Test the first-load endpoint."""

    def test_with_team_code(self, client, seeded):
        """Test a team code verifies and initializes settings."""
        response = client.post("/api/login/initialize", json={
            "orgId": ORG, "huntId": HUNT, "teamCode": "okkim2025", "sessionId": "s1",
        })
        assert response.status_code == 200
        body = response.json()
        assert body["organization"]["name"] == "Berkshire Hathaway HomeServices"
        assert body["hunt"]["name"] == "Fall 2025 Hunt"
        assert body["teamVerification"]["success"] is True
        assert body["teamVerification"]["lockToken"]
        assert body["activeData"]["settings"]["teamName"] == "OK Kim"
        assert body["activeData"]["settings"]["lastModifiedBy"] == "system"
        assert body["activeData"]["progress"] == {}

    def test_with_bad_code(self, client, seeded):
        """Test a wrong code reports failure without active data."""
        body = client.post("/api/login/initialize", json={
            "orgId": ORG, "huntId": HUNT, "teamCode": "WRONG",
        }).json()
        assert body["teamVerification"]["success"] is False
        assert "activeData" not in body

    def test_with_lock_token(self, client, seeded):
        """Test a valid lock token restores the current team."""
        token, _ = generate_lock_token("teamalpha")
        body = client.post("/api/login/initialize", json={
            "orgId": ORG, "huntId": HUNT, "lockToken": token,
        }).json()
        assert body["currentTeam"] == {"teamId": "teamalpha", "teamName": "Team Alpha", "lockValid": True}
        assert "activeData" in body

    def test_without_team(self, client, seeded):
        """Test org and hunt info is returned without a team."""
        body = client.post("/api/login/initialize", json={"orgId": "acme", "huntId": "spring-fling"}).json()
        assert body["organization"]["name"] == "ACME"
        assert body["hunt"]["name"] == "Spring Fling"
        assert "currentTeam" not in body
        assert body["features"]["leaderboard"] is True

    def test_requires_org_and_hunt(self, client):
        """Test orgId and huntId are required."""
        assert client.post("/api/login/initialize", json={"orgId": ORG}).status_code == 400


class TestPhotoEndpoints:
    """Test photo uploads."""

    @pytest.fixture(autouse=True)
    def no_retry_delay(self):
        with patch.object(photos, "UPLOAD_RETRY_DELAYS", (0, 0, 0)):
            yield

    def test_upload(self, client, seeded, cloudinary_settings):
        """Test a simple upload."""
        with patch("cloudinary_client.upload_image", cloudinary_upload("scavenger/entries/clock-tower_s1_1")):
            response = client.post("/api/photo-upload",
                                   files={"photo": ("a.jpg", b"jpeg", "image/jpeg")},
                                   data={"locationTitle": "Clock Tower", "sessionId": "s1"})
        assert response.status_code == 200
        assert response.json()["publicId"] == "scavenger/entries/clock-tower_s1_1"
        assert response.json()["locationSlug"] == "clock-tower"

    def test_upload_requires_photo(self, client):
        """Test uploads without a file are rejected."""
        response = client.post("/api/photo-upload", data={"locationTitle": "Clock Tower", "sessionId": "s1"})
        assert response.status_code == 400

    def test_upload_requires_fields(self, client):
        """Test uploads without a title are rejected."""
        response = client.post("/api/photo-upload",
                               files={"photo": ("a.jpg", b"jpeg", "image/jpeg")},
                               data={"sessionId": "s1"})
        assert response.status_code == 400

    def test_upload_too_large(self, client):
        """Test oversized uploads are rejected with 413."""
        with patch.object(config, "MAX_UPLOAD_BYTES", 4):
            response = client.post("/api/photo-upload",
                                   files={"photo": ("a.jpg", b"too-large", "image/jpeg")},
                                   data={"locationTitle": "Clock Tower", "sessionId": "s1"})
        assert response.status_code == 413
        assert response.json()["code"] == "PAYLOAD_TOO_LARGE"

    def test_upload_not_configured(self, client):
        """Test uploads fail with 502 when Cloudinary isn't configured."""
        response = client.post("/api/photo-upload",
                               files={"photo": ("a.jpg", b"jpeg", "image/jpeg")},
                               data={"locationTitle": "Clock Tower", "sessionId": "s1"})
        assert response.status_code == 502
        assert response.json()["code"] == "UPSTREAM_ERROR"

    def test_circuit_open(self, client, cloudinary_settings):
        """Test an open circuit returns 503 with Retry-After."""
        for _ in range(photos.image_service_breaker.failure_threshold):
            photos.image_service_breaker.record_failure()
        response = client.post("/api/photo-upload",
                               files={"photo": ("a.jpg", b"jpeg", "image/jpeg")},
                               data={"locationTitle": "Clock Tower", "sessionId": "s1"})
        assert response.status_code == 503
        assert int(response.headers["Retry-After"]) > 0

    def test_orchestrated(self, client, seeded, cloudinary_settings):
        """Test an orchestrated upload marks the stop done."""
        with patch("cloudinary_client.upload_image", cloudinary_upload()), \
             patch("cloudinary_client.get_resource", AsyncMock(return_value={"bytes": 4})):
            response = client.post(
                "/api/photo-upload-orchestrated",
                files={"photo": ("a.jpg", b"jpeg", "image/jpeg")},
                data={"locationTitle": "Clock Tower", "sessionId": "s1", "idempotencyKey": "key-1",
                      "orgId": ORG, "huntId": HUNT, "teamId": "okkim", "locationId": "clock-tower"},
                headers=lock_headers("okkim"),
            )
            assert response.status_code == 200
            assert response.json()["idempotencyKey"] == "key-1"

            repeat = client.post(
                "/api/photo-upload-orchestrated",
                files={"photo": ("a.jpg", b"jpeg", "image/jpeg")},
                data={"locationTitle": "Clock Tower", "sessionId": "s1", "idempotencyKey": "key-1",
                      "orgId": ORG, "huntId": HUNT, "teamId": "okkim", "locationId": "clock-tower"},
            )
            assert repeat.json()["deduplicated"] is True

        progress = client.get(f"/api/progress/{ORG}/okkim/{HUNT}").json()
        assert progress["clock-tower"]["photo"] == response.json()["photoUrl"]

    def test_orchestrated_team_from_lock(self, client, seeded, cloudinary_settings):
        """Test the team comes from the lock token when not given."""
        with patch("cloudinary_client.upload_image", cloudinary_upload()), \
             patch("cloudinary_client.get_resource", AsyncMock(return_value={})):
            response = client.post(
                "/api/photo-upload-orchestrated",
                files={"photo": ("a.jpg", b"jpeg", "image/jpeg")},
                data={"locationTitle": "Clock Tower", "sessionId": "s1", "orgId": ORG, "huntId": HUNT},
                headers=lock_headers("teamalpha"),
            )
        assert response.status_code == 200
        assert "clock-tower" in client.get(f"/api/progress/{ORG}/teamalpha/{HUNT}").json()

    def test_orchestrated_team_mismatch(self, client, seeded):
        """Test a lock for another team is rejected."""
        response = client.post(
            "/api/photo-upload-orchestrated",
            files={"photo": ("a.jpg", b"jpeg", "image/jpeg")},
            data={"locationTitle": "Clock Tower", "sessionId": "s1", "teamId": "okkim"},
            headers=lock_headers("teamalpha"),
        )
        assert response.status_code == 403

    def test_orchestrated_requires_team(self, client, seeded):
        """Test an upload without team context is rejected."""
        response = client.post(
            "/api/photo-upload-orchestrated",
            files={"photo": ("a.jpg", b"jpeg", "image/jpeg")},
            data={"locationTitle": "Clock Tower", "sessionId": "s1"},
        )
        assert response.status_code == 400

    def test_collage(self, client, cloudinary_settings):
        """Test a collage of two photos."""
        upload = AsyncMock(side_effect=[
            {"public_id": "scavenger/entries/p0", "secure_url": "https://example.com/p0.jpg"},
            {"public_id": "scavenger/entries/p1", "secure_url": "https://example.com/p1.jpg"},
        ])
        with patch("cloudinary_client.upload_image", upload):
            response = client.post(
                "/api/collage",
                files=[("photos", ("a.jpg", b"one", "image/jpeg")), ("photos", ("b.jpg", b"two", "image/jpeg"))],
                data={"titles": json.dumps(["First", "Second"])},
            )
        assert response.status_code == 200
        body = response.json()
        assert len(body["uploaded"]) == 2
        assert body["collageUrl"].startswith("https://res.cloudinary.com/demo-cloud/image/upload/")

    def test_collage_title_mismatch(self, client):
        """Test the title count must match the photo count."""
        response = client.post(
            "/api/collage",
            files=[("photos", ("a.jpg", b"one", "image/jpeg"))],
            data={"titles": json.dumps(["First", "Second"])},
        )
        assert response.status_code == 400

    def test_collage_bad_titles(self, client):
        """Test titles must be a JSON array."""
        response = client.post(
            "/api/collage",
            files=[("photos", ("a.jpg", b"one", "image/jpeg"))],
            data={"titles": "First"},
        )
        assert response.status_code == 400


class TestAdminEndpoints:
    """Test admin endpoints."""

    def test_requires_admin_key(self, client):
        """Test admin endpoints reject missing keys."""
        response = client.get("/admin/cache/stats")
        assert response.status_code == 403
        assert response.json()["statusCode"] == 403

    def test_wrong_admin_key(self, client):
        """Test admin endpoints reject wrong keys."""
        assert client.get("/admin/cache/stats", headers={"X-Admin-Key": "nope"}).status_code == 403

    def test_cache_stats_and_clear(self, client, seeded, admin_headers):
        """Test cache statistics and clearing."""
        client.get(f"/api/locations/{ORG}/{HUNT}")
        client.get(f"/api/locations/{ORG}/{HUNT}")
        stats = client.get("/admin/cache/stats", headers=admin_headers).json()
        assert stats["hits"] >= 1
        assert stats["size"] >= 1

        assert client.post("/admin/cache/clear", headers=admin_headers).json() == {"success": True}
        assert client.get("/admin/cache/stats", headers=admin_headers).json()["size"] == 0

    def test_cleanup_locks(self, client, seeded, admin_headers):
        """Test expired lock cleanup."""
        from teams import store_device_lock
        store_device_lock("old-device", "okkim", expires_at=int(time.time()) - 10)
        assert client.post("/admin/locks/cleanup", headers=admin_headers).json() == {"removed": 1}


def make_request(headers=None, client_host="10.1.1.1"):
    return Request({
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": [(name.lower().encode(), value.encode()) for name, value in (headers or {}).items()],
        "client": (client_host, 1234),
    })


class TestForwardedAddress:
    """Test the address used for device fingerprints."""

    def test_first_forwarded_address(self):
        """Test the first address of the chain is used."""
        request = make_request({"X-Forwarded-For": " 203.0.113.5 , 10.0.0.1"})
        assert get_forwarded_ip(request) == "203.0.113.5"

    def test_missing_header_is_unknown(self):
        """Test the socket address is not used when the header is missing."""
        assert get_forwarded_ip(make_request()) == "unknown"

    def test_empty_header_is_unknown(self):
        """Test a blank header is unknown."""
        assert get_forwarded_ip(make_request({"X-Forwarded-For": " "})) == "unknown"


class TestErrorReporting:
    """Test server errors are reported to Sentry."""

    @pytest.fixture
    def lenient_client(self):
        """Client that returns 500 responses instead of raising."""
        return TestClient(app, raise_server_exceptions=False)

    def test_unexpected_error_captured(self, lenient_client):
        """Test an unhandled exception is captured and rendered as a 500 envelope."""
        error = RuntimeError("boom")
        with patch("main.get_hunt_locations", side_effect=error), \
             patch("sentry_sdk.capture_exception") as capture:
            response = lenient_client.get(f"/api/locations/{ORG}/{HUNT}")
        assert response.status_code == 500
        assert response.json()["code"] == "INTERNAL_ERROR"
        capture.assert_called_once_with(error)

    def test_storage_error_captured(self, client):
        """Test classified 5xx errors are captured."""
        error = sqlite3.OperationalError("disk I/O error")
        with patch("main.get_hunt_locations", side_effect=error), \
             patch("sentry_sdk.capture_exception") as capture:
            response = client.get(f"/api/locations/{ORG}/{HUNT}")
        assert response.status_code == 500
        assert response.json()["code"] == "STORAGE_ERROR"
        capture.assert_called_once_with(error)

    def test_client_errors_not_captured(self, client, seeded):
        """Test 4xx responses are not reported."""
        with patch("sentry_sdk.capture_exception") as capture:
            assert client.post("/api/team/verify", json={"code": "WRONG"}).status_code == 401
            assert client.get("/api/leaderboard").status_code == 400
        capture.assert_not_called()

    def test_init_from_config(self):
        """Test the SDK is initialised from configuration."""
        with patch.object(config, "SENTRY_DSN", "https://key@sentry.example.com/1"), \
             patch.object(config, "SENTRY_ENVIRONMENT", "staging"), \
             patch.object(config, "SENTRY_RELEASE", "1.2.3"), \
             patch.object(config, "SENTRY_TRACES_SAMPLE_RATE", "0.25"), \
             patch("sentry_sdk.init") as sentry_init:
            init_sentry()
        sentry_init.assert_called_once_with(
            dsn="https://key@sentry.example.com/1",
            environment="staging",
            release="1.2.3",
            traces_sample_rate=0.25,
            send_default_pii=False,
        )

    def test_init_without_dsn(self):
        """Test an empty DSN leaves the SDK inert and a bad sample rate disables tracing."""
        with patch.object(config, "SENTRY_DSN", ""), \
             patch.object(config, "SENTRY_TRACES_SAMPLE_RATE", "lots"), \
             patch("sentry_sdk.init") as sentry_init:
            init_sentry()
        assert sentry_init.call_args.kwargs["dsn"] is None
        assert sentry_init.call_args.kwargs["traces_sample_rate"] == 0.0


class TestLifespan:
    """Test startup and shutdown."""

    def test_cache_cleanup_task_lifecycle(self, seeded):
        """Test the cache cleanup task runs while the app is up and stops on shutdown."""
        with TestClient(app) as client:
            task = main._cache_cleanup_task
            assert task is not None
            assert not task.done()
            assert client.get("/health").status_code == 200
        assert task.done()


class TestRateLimiting:
    """Test the team verify rate limit."""

    @pytest.fixture
    def enabled_limiter(self):
        limiter.reset()
        with patch.object(limiter, "enabled", True):
            yield limiter
        limiter.reset()

    def test_verify_rate_limited(self, client, seeded, enabled_limiter):
        """Test the eleventh attempt in a minute is rejected with Retry-After."""
        for _ in range(10):
            assert client.post("/api/team/verify", json={"code": "WRONG"}).status_code == 401

        response = client.post("/api/team/verify", json={"code": "WRONG"})
        assert response.status_code == 429
        body = response.json()
        assert body["code"] == "RATE_LIMITED"
        assert body["statusCode"] == 429
        assert response.headers["Retry-After"] == str(config.RATE_LIMIT_RETRY_AFTER)
