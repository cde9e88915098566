"""
Tests for the /health/ endpoint.
"""

from unittest.mock import MagicMock

import pytest
from django.db import DatabaseError
from django.urls import reverse
from redis.exceptions import ConnectionError as RedisConnectionError


@pytest.fixture
def redis_client(mocker):
    client = MagicMock()
    mocker.patch("core.views.get_redis_connection", return_value=client)
    return client


@pytest.mark.django_db
class TestHealthCheck:
    def test_healthy(self, client, redis_client):
        response = client.get(reverse("health_check"))

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "database": "connected", "redis": "connected"}
        redis_client.ping.assert_called_once()

    def test_redis_down_is_degraded(self, client, redis_client):
        redis_client.ping.side_effect = RedisConnectionError("Connection refused")

        response = client.get(reverse("health_check"))

        assert response.status_code == 200
        assert response.json()["status"] == "degraded"
        assert response.json()["redis"] == "disconnected"

    def test_database_down_is_unhealthy(self, client, redis_client, mocker):
        connection = mocker.patch("core.views.connection")
        connection.cursor.side_effect = DatabaseError("could not connect")

        response = client.get(reverse("health_check"))

        assert response.status_code == 503
        assert response.json()["status"] == "unhealthy"
        assert response.json()["database"] == "disconnected"
