"""
Integration tests for health endpoints.
"""

import pytest
from fastapi.testclient import TestClient


class TestHealth:
    """Tests for /health and /health/ready."""

    @pytest.mark.integration
    def test_health(self, client: TestClient):
        """Liveness should always answer healthy."""
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    @pytest.mark.integration
    def test_ready(self, client: TestClient):
        """Readiness should report the database as connected."""
        response = client.get("/health/ready")
        assert response.status_code == 200
        assert response.json() == {"status": "ready", "database": "connected"}

    @pytest.mark.integration
    def test_security_headers(self, client: TestClient):
        """Every response should carry the security headers."""
        response = client.get("/health")
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
