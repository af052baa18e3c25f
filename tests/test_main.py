"""
Tests for the application shell: root, metrics and request middleware.
"""

from fastapi.testclient import TestClient

from creditgate.config import settings
from creditgate.main import app


class TestRootEndpoint:
    """GET /."""

    def test_root(self):
        """Root reports service name and version."""
        response = TestClient(app).get("/")

        assert response.status_code == 200
        assert response.json() == {
            "service": settings.api_title,
            "version": settings.api_version,
            "status": "running",
        }


class TestMetricsEndpoint:
    """GET /metrics."""

    def test_prometheus_text(self):
        """Metrics are exposed in Prometheus text format."""
        response = TestClient(app).get("/metrics")

        assert response.status_code == 200
        assert "creditgate_reservations_total" in response.text
        assert "creditgate_credential_refreshes_total" in response.text


class TestSettings:
    """Fail-fast configuration."""

    def test_pending_ttl_defaults_to_cache_ttl(self):
        """Pending reservation TTL falls back to the cache TTL."""
        assert settings.balance_pending_ttl_seconds is None
        assert settings.pending_ttl_seconds == settings.balance_cache_ttl_seconds

    def test_missing_database_url_fails(self, monkeypatch):
        """An empty DATABASE_URL stops startup."""
        import pytest

        from creditgate.config import ConfigurationError, Settings

        monkeypatch.setenv("DATABASE_URL", "")
        with pytest.raises(ConfigurationError):
            Settings(_env_file=None)

    def test_cancel_rate_must_exceed_one(self, monkeypatch):
        """A cancel rate of 1 or less stops startup."""
        import pytest

        from creditgate.config import ConfigurationError, Settings

        monkeypatch.setenv("CANCEL_RATE", "1.0")
        with pytest.raises(ConfigurationError):
            Settings(_env_file=None)
