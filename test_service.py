"""
Tests for the operational HTTP endpoints and startup configuration.

Tests cover:
- Liveness and readiness probes (gate closed, store unreachable)
- GET /stats on empty and populated stores
- GET /metrics exposition
- X-Request-ID header on every response
- Startup configuration checks
"""

import pytest
from fastapi.testclient import TestClient

from conftest import make_record, make_settings, utc
from linkwatch.exceptions import ConfigurationError
from linkwatch.main import create_app
from linkwatch.storage import MemoryLinkStore


class UnreachableStore(MemoryLinkStore):
    def ping(self):
        return False


@pytest.fixture(scope="function")
def client():
    """Test client with a fresh in-memory store and no Discord connection."""
    app = create_app(make_settings(), start_bot=False)
    with TestClient(app) as test_client:
        yield test_client


class TestHealth:
    """Test liveness and readiness probes."""

    def test_live(self, client):
        response = client.get("/health/live")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_not_ready_during_backfill(self, client):
        response = client.get("/health/ready")
        assert response.status_code == 503
        data = response.json()
        assert data["status"] == "not_ready"
        assert data["reason"] == "Historical scrape in progress"

    def test_ready_after_gate_opens(self, client):
        client.app.state.monitor.open_gate()
        response = client.get("/health/ready")
        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_not_ready_when_store_unreachable(self, client):
        client.app.state.monitor.open_gate()
        client.app.state.store = UnreachableStore()
        response = client.get("/health/ready")
        assert response.status_code == 503
        assert response.json()["reason"] == "Link store not reachable"


class TestStats:
    """Test GET /stats."""

    def test_empty(self, client):
        response = client.get("/stats")
        assert response.status_code == 200
        data = response.json()
        assert data["total_links"] == 0
        assert data["authors_count"] == 0
        assert data["channels_count"] == 0
        assert data["top_posters"] == []
        assert data["oldest_message_ts"] is None
        assert data["newest_message_ts"] is None

    def test_populated(self, client):
        store = client.app.state.store
        store.upsert(make_record(url="https://x.com/a/status/1", message_id="m1", message_timestamp=utc(2024, 1, 1)))
        store.upsert(make_record(url="https://x.com/a/status/2", message_id="m2", message_timestamp=utc(2024, 1, 3)))
        store.upsert(make_record(
            url="https://x.com/b/status/3",
            message_id="m3",
            author_id="u2",
            username="bob",
            channel_id="c2",
            message_timestamp=utc(2024, 1, 2),
        ))

        data = client.get("/stats").json()

        assert data["total_links"] == 3
        assert data["authors_count"] == 2
        assert data["channels_count"] == 2
        assert data["top_posters"][0] == {"author_id": "u1", "username": "alice", "count": 2}
        assert data["oldest_message_ts"].startswith("2024-01-01T00:00:00")
        assert data["newest_message_ts"].startswith("2024-01-03T00:00:00")


class TestMetrics:

    def test_exposition(self, client):
        client.get("/health/live")
        response = client.get("/metrics")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        body = response.text
        assert "http_requests_total" in body
        assert "linkwatch_link_upserts_total" in body
        assert "linkwatch_history_pages_total" in body


class TestRequestId:

    def test_header_present(self, client):
        response = client.get("/health/live")
        assert response.headers.get("X-Request-ID")

    def test_header_unique_per_request(self, client):
        first = client.get("/health/live").headers["X-Request-ID"]
        second = client.get("/health/live").headers["X-Request-ID"]
        assert first != second


class TestStartupConfiguration:
    """Test Settings.check_startup and derived settings."""

    def test_token_required(self):
        with pytest.raises(ConfigurationError, match="DISCORD_TOKEN"):
            make_settings(DISCORD_TOKEN="").check_startup()

    def test_database_url_required_outside_test_mode(self):
        settings = make_settings(DISCORD_TOKEN="token", TEST_MODE=False, DATABASE_URL="")
        with pytest.raises(ConfigurationError, match="DATABASE_URL"):
            settings.check_startup()

    def test_service_without_bot_still_needs_database_url(self):
        app = create_app(make_settings(TEST_MODE=False, DATABASE_URL=""), start_bot=False)
        with pytest.raises(ConfigurationError, match="DATABASE_URL"):
            with TestClient(app):
                pass

    def test_test_mode_needs_only_token(self):
        make_settings(DISCORD_TOKEN="token", TEST_MODE=True).check_startup()

    def test_channel_ids_skip_blanks(self):
        assert make_settings(CHANNEL_ID_1="", CHANNEL_ID_2="c2").channel_ids == ["c2"]
        assert make_settings().channel_ids == []

    def test_guild_id_optional(self):
        assert make_settings().guild_id is None
        assert make_settings(GUILD_ID="g1").guild_id == "g1"

    def test_batch_size_capped(self):
        with pytest.raises(ValueError):
            make_settings(BATCH_SIZE=500)
