"""
Tests for the /health/ endpoint.
"""

from __future__ import annotations

from unittest.mock import patch

import pytest
from django.db import OperationalError


@pytest.mark.django_db
class TestHealthCheck:
    url = "/health/"

    def test_healthy(self, client):
        response = client.get(self.url)

        assert response.status_code == 200
        assert response.json() == {
            "status": "healthy",
            "database": "connected",
            "cache": "connected",
        }

    def test_database_down_is_503(self, client):
        with patch("core.views.connection.cursor", side_effect=OperationalError("no db")):
            response = client.get(self.url)

        assert response.status_code == 503
        assert response.json()["status"] == "unhealthy"
        assert response.json()["database"] == "disconnected"

    def test_cache_down_is_degraded(self, client):
        with patch("core.views.cache.set", side_effect=ConnectionError("redis down")):
            response = client.get(self.url)

        assert response.status_code == 200
        assert response.json()["status"] == "degraded"
        assert response.json()["cache"] == "disconnected"
