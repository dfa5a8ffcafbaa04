"""GET /health."""

from unittest.mock import patch

from fastapi.testclient import TestClient

from resort_api import __version__
from resort_api.main import app


def test_health_reports_database_up():
    response = TestClient(app).get("/health")

    assert response.status_code == 200
    assert response.json() == {
        "status": "healthy",
        "version": __version__,
        "services": {"database": "up"},
    }


def test_health_is_503_when_database_down():
    with patch("resort_api.routers.health.check_database", return_value="down: OperationalError"):
        response = TestClient(app).get("/health")

    assert response.status_code == 503
    assert response.json()["status"] == "degraded"
