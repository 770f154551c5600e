"""
End-to-end tests for the HTTP surface with a fake ceremony engine.
"""

import json
import re
from unittest.mock import AsyncMock, Mock, patch

import pytest
from fastapi.testclient import TestClient

from passkey_gate.clients.object_store import MemoryObjectStore, StorageUnavailableError
from passkey_gate.clients.webauthn_client import (
    AuthenticationVerification,
    RegistrationVerification,
)
from passkey_gate.config import Settings
from passkey_gate.main import build_services, create_app

CREDENTIAL_ID = "Y3JlZA"


@pytest.fixture
def fake_ceremony():
    """Ceremony engine that accepts every response."""
    ceremony = Mock()
    ceremony.generate_registration_options.return_value = ({"challenge": "cmVn"}, "cmVn")
    ceremony.generate_authentication_options.return_value = ({"challenge": "YXV0aA"}, "YXV0aA")
    ceremony.verify_registration_response.return_value = RegistrationVerification(
        verified=True,
        credential_id=CREDENTIAL_ID,
        public_key=b"pk",
        counter=5,
        device_type="singleDevice",
        backed_up=False,
    )
    ceremony.verify_authentication_response.return_value = AuthenticationVerification(
        verified=True, new_counter=6
    )
    return ceremony


@pytest.fixture
def object_store():
    return MemoryObjectStore()


@pytest.fixture
def interactive_client(tmp_path, fake_ceremony, object_store):
    """Client for an interactive-mode app backed by SQLite and in-memory storage."""
    settings = Settings(interactive_mode=True, database_path=str(tmp_path / "app.db"))
    services = build_services(settings, object_store=object_store, ceremony=fake_ceremony)
    with TestClient(create_app(settings, services)) as client:
        yield client


def restricted_settings(tmp_path, **overrides):
    """Production-mode settings serving a one-user enrolled set."""
    dataset = tmp_path / "enrolled-v1.json"
    dataset.write_text(json.dumps({
        "version": 1,
        "users": [{"id": "u1", "username": "alice"}],
        "credentials": [{
            "id": CREDENTIAL_ID,
            "userId": "u1",
            "webAuthnUserId": "u1",
            "publicKey": "cGs",
            "counter": 5,
            "transports": ["internal"],
            "createdAt": 1700000000,
        }],
    }))
    return Settings(
        interactive_mode=False,
        session_secret="production-secret",
        enrolled_dataset_path=str(dataset),
        log_api_key="ingest-key",
        **overrides,
    )


@pytest.fixture
def restricted_client(tmp_path, fake_ceremony, object_store):
    """Client for a production-mode app that rejects writes."""
    settings = restricted_settings(tmp_path)
    services = build_services(settings, object_store=object_store, ceremony=fake_ceremony)
    with TestClient(create_app(settings, services), base_url="https://testserver") as client:
        yield client


@pytest.fixture
def ignore_policy_client(tmp_path, fake_ceremony, object_store):
    """Client for a production-mode app that drops writes."""
    settings = restricted_settings(tmp_path, restricted_write_policy="ignore")
    services = build_services(settings, object_store=object_store, ceremony=fake_ceremony)
    with TestClient(create_app(settings, services), base_url="https://testserver") as client:
        yield client


def register(client, username="Alice"):
    options = client.post("/api/auth/register", json={"username": username})
    assert options.status_code == 200
    return client.post(
        "/api/auth/register/verify",
        json={"id": CREDENTIAL_ID, "response": {"transports": ["internal", "hybrid"]}},
    )


class TestHealthAndMiddleware:
    """Tests for /healthz and response headers."""

    def test_healthz(self, interactive_client):
        response = interactive_client.get("/healthz")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["backend"] == "mutable"

    def test_security_and_correlation_headers(self, interactive_client):
        response = interactive_client.get("/api/auth/session", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"


class TestRegistrationFlow:
    """Registration, session and credential management in interactive mode."""

    def test_register_issues_session(self, interactive_client):
        response = register(interactive_client)

        assert response.status_code == 200
        assert response.json()["verified"] is True

        session = interactive_client.get("/api/auth/session").json()
        assert session["user"]["username"] == "alice"
        assert session["interactive"] is True

    def test_register_sets_ceremony_cookies(self, interactive_client):
        response = interactive_client.post("/api/auth/register", json={"username": "bob"})

        assert response.json() == {"challenge": "cmVn"}
        assert interactive_client.cookies.get("webauthn_challenge") == "cmVn"
        assert interactive_client.cookies.get("webauthn_user_id")

    def test_register_rejects_blank_username(self, interactive_client):
        response = interactive_client.post("/api/auth/register", json={"username": "   "})

        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "ValidationError"

    def test_verify_without_challenge(self, interactive_client):
        response = interactive_client.post("/api/auth/register/verify", json={"id": CREDENTIAL_ID})

        assert response.status_code == 400

    def test_list_and_delete_credentials(self, interactive_client):
        register(interactive_client)

        credentials = interactive_client.get("/api/credentials").json()
        assert [c["id"] for c in credentials] == [CREDENTIAL_ID]
        assert credentials[0]["transports"] == ["internal", "hybrid"]

        deleted = interactive_client.request("DELETE", "/api/credentials", json={"id": CREDENTIAL_ID})
        assert deleted.status_code == 200
        assert interactive_client.get("/api/credentials").json() == []

        missing = interactive_client.request("DELETE", "/api/credentials", json={"id": CREDENTIAL_ID})
        assert missing.status_code == 404

    def test_register_existing_passkey_conflicts(self, interactive_client):
        register(interactive_client, "alice")
        interactive_client.post("/api/auth/logout")

        response = register(interactive_client, "bob")

        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "CredentialExists"
        assert interactive_client.get("/api/auth/session").json()["user"] is None

    def test_storage_outage_is_503(self, interactive_client):
        register(interactive_client)
        repository = interactive_client.app.state.services.repository

        with patch.object(repository, "get_credentials_by_user",
                          AsyncMock(side_effect=StorageUnavailableError("disk gone"))):
            response = interactive_client.get("/api/credentials")

        assert response.status_code == 503
        assert response.json()["error"] == "StorageUnavailable"

    def test_credentials_require_session(self, interactive_client):
        response = interactive_client.get("/api/credentials")

        assert response.status_code == 401

    def test_logout_clears_session(self, interactive_client):
        register(interactive_client)

        assert interactive_client.post("/api/auth/logout").json() == {"ok": True}
        assert interactive_client.get("/api/auth/session").json()["user"] is None

    def test_forged_session_ignored(self, interactive_client):
        interactive_client.cookies.set("session", "u1.9999999999.forged")

        assert interactive_client.get("/api/auth/session").json()["user"] is None


class TestLoginFlow:
    """Authentication ceremonies and counter enforcement."""

    def test_login_without_credentials(self, interactive_client):
        response = interactive_client.post("/api/auth/login")

        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "NoCredentials"

    def test_login_advances_counter(self, interactive_client):
        register(interactive_client)
        interactive_client.post("/api/auth/logout")

        assert interactive_client.post("/api/auth/login").status_code == 200
        response = interactive_client.post("/api/auth/login/verify", json={"id": CREDENTIAL_ID})

        assert response.json()["verified"] is True
        assert interactive_client.get("/api/credentials").json()[0]["id"] == CREDENTIAL_ID

    def test_counter_regression_rejected(self, interactive_client, fake_ceremony):
        register(interactive_client)
        interactive_client.post("/api/auth/logout")
        fake_ceremony.verify_authentication_response.return_value = AuthenticationVerification(
            verified=True, new_counter=4
        )

        interactive_client.post("/api/auth/login")
        response = interactive_client.post("/api/auth/login/verify", json={"id": CREDENTIAL_ID})

        assert response.status_code == 401
        assert response.json()["detail"]["error"] == "CloneDetected"
        assert interactive_client.get("/api/auth/session").json()["user"] is None

    def test_unknown_credential(self, interactive_client):
        register(interactive_client)
        interactive_client.post("/api/auth/login")

        response = interactive_client.post("/api/auth/login/verify", json={"id": "bm9wZQ"})

        assert response.status_code == 400


class TestRestrictedBackend:
    """Production-mode behaviour over the enrolled set."""

    def test_healthz_reports_restricted(self, restricted_client):
        assert restricted_client.get("/healthz").json()["backend"] == "restricted"

    def test_registration_denied(self, restricted_client):
        response = restricted_client.post("/api/auth/register", json={"username": "mallory"})

        assert response.status_code == 403
        assert response.json()["error"] == "PolicyDenied"

    def test_login_and_audit_trail(self, restricted_client, object_store):
        restricted_client.post("/api/auth/login")
        response = restricted_client.post("/api/auth/login/verify", json={"id": CREDENTIAL_ID})

        assert response.json() == {"verified": True, "userId": "u1"}
        assert "Secure" in response.headers["set-cookie"]

        logs = restricted_client.get("/api/logs", params={"site": "testserver"}).json()
        assert [e["message"] for e in logs["entries"]] == ["Login succeeded"]
        assert logs["sites"] == ["testserver"]

    def test_ignored_delete_is_reported(self, ignore_policy_client):
        ignore_policy_client.post("/api/auth/login")
        ignore_policy_client.post("/api/auth/login/verify", json={"id": CREDENTIAL_ID})

        response = ignore_policy_client.request(
            "DELETE", "/api/credentials", json={"id": CREDENTIAL_ID}
        )

        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "WriteIgnored"
        assert [c["id"] for c in ignore_policy_client.get("/api/credentials").json()] == [CREDENTIAL_ID]

        logs = ignore_policy_client.get("/api/logs", params={"site": "testserver"}).json()
        messages = {e["message"] for e in logs["entries"]}
        assert "Passkey deletion ignored by policy" in messages
        assert "Passkey deleted" not in messages

    def test_ingest_requires_api_key(self, restricted_client):
        entry = {"site": "other.example", "message": "deployed"}

        denied = restricted_client.post("/api/logs/ingest", json=entry)
        accepted = restricted_client.post(
            "/api/logs/ingest", json=[entry, entry],
            headers={"Authorization": "Bearer ingest-key"},
        )

        assert denied.status_code == 401
        assert accepted.status_code == 200
        assert accepted.json() == {"ok": True, "count": 2, "failed": 0}

    def test_ingest_validates_entries(self, restricted_client):
        response = restricted_client.post(
            "/api/logs/ingest",
            json={"site": "a/b", "message": "x"},
            headers={"Authorization": "Bearer ingest-key"},
        )

        assert response.status_code == 422


class TestLogEndpoints:
    """Client events and log browsing."""

    def test_logs_require_session(self, interactive_client):
        assert interactive_client.get("/api/logs").status_code == 401

    def test_events_are_stored_under_request_host(self, interactive_client):
        register(interactive_client)
        events = [
            {"event": "page_view", "sessionId": "s1", "url": "/", "timestamp": "2024-05-01T10:00:00Z",
             "device": {"browser": "Firefox"}},
            {"event": "click", "sessionId": "s1", "timestamp": "2024-05-01T10:00:05Z",
             "data": {"target": "login"}},
        ]

        response = interactive_client.post("/api/events", json=events)
        logs = interactive_client.get("/api/logs", params={"site": "testserver"}).json()

        assert response.json() == {"ok": True, "count": 2, "failed": 0}
        assert [e["message"] for e in logs["entries"]] == ["click", "page_view"]
        assert logs["entries"][0]["metadata"]["target"] == "login"
        assert logs["entries"][1]["metadata"]["device"] == {"browser": "Firefox"}
        assert logs["hasMore"] is False

    def test_single_event_accepted(self, interactive_client):
        response = interactive_client.post("/api/events", json={"event": "page_view"})

        assert response.json()["count"] == 1

    @pytest.mark.parametrize("timestamp", ["../../x/yz/q", "now", "2024-13-45T00:00:00Z"])
    def test_event_timestamp_must_be_iso(self, interactive_client, object_store, timestamp):
        response = interactive_client.post(
            "/api/events", json={"event": "e1", "timestamp": timestamp}
        )

        assert response.status_code == 422
        assert object_store._objects == {}

    def test_event_without_timestamp_uses_server_time(self, interactive_client, object_store):
        interactive_client.post("/api/events", json={"event": "e1"})

        [path] = object_store._objects
        assert re.match(r"^logs/testserver/\d{4}-\d{2}-\d{2}/[^/]+\.json$", path)

    def test_pagination(self, interactive_client):
        register(interactive_client)
        for second in range(5):
            interactive_client.post("/api/logs/ingest", json={
                "site": "a.example", "message": f"m{second}",
                "timestamp": f"2024-05-01T10:00:0{second}Z",
            })

        first = interactive_client.get("/api/logs", params={"site": "a.example", "limit": 3}).json()
        second = interactive_client.get(
            "/api/logs", params={"site": "a.example", "limit": 3, "cursor": first["cursor"]}
        ).json()

        assert first["hasMore"] is True
        assert second["hasMore"] is False
        ids = [e["id"] for e in first["entries"] + second["entries"]]
        assert len(ids) == len(set(ids)) == 5

    def test_invalid_query(self, interactive_client):
        register(interactive_client)

        assert interactive_client.get("/api/logs", params={"date": "yesterday"}).status_code == 422
        assert interactive_client.get("/api/logs", params={"cursor": "%%%"}).status_code == 400
