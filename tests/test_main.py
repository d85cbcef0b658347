from fastapi.testclient import TestClient

from iqac import database
from iqac.main import app


def test_root(client):
    assert client.get("/").json() == {"message": "IQAC Document Workflow API"}


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["database"] == "connected"


def test_database_diagnostics(client, assignment):
    body = client.get("/test").json()
    assert body["connection_status"] == "Connected"
    assert "task" in body["collections"]


def test_request_id_header(client):
    response = client.get("/health", headers={"X-Request-ID": "abc123"})
    assert response.headers["X-Request-ID"] == "abc123"


def test_database_unavailable():
    database.db = None
    response = TestClient(app).post("/api/auth/login", json={"email": "a@example.com", "password": "x"})
    assert response.status_code == 503
    assert response.json()["code"] == "DATABASE_UNAVAILABLE"
