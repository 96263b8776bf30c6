import pytest
from fastapi.testclient import TestClient

from flock.api.v1 import admin
from flock.database.session import get_db
from flock.main import app


ADMIN = {"X-Admin-Token": "test-admin-secret"}
PREFIX = "/api/v1/admin"


@pytest.fixture
def client(db, service, monkeypatch):
    monkeypatch.setattr(admin, "deployment_service", service)

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def declaration_body(declare):
    def build(**kwargs):
        return declare(**kwargs).model_dump(mode="json")
    return build


def test_admin_token_required(client):
    response = client.get(f"{PREFIX}/resources", headers={"X-Admin-Token": "wrong"})

    assert response.status_code == 401
    assert response.json()["detail"]["error_code"] == "UNAUTHORIZED"


def test_apply_and_inspect(client, declaration_body):
    response = client.post(f"{PREFIX}/apply", json=declaration_body(), headers=ADMIN)

    assert response.status_code == 200
    body = response.json()
    assert "mesh-backend" in body["created"]
    assert body["failed"] == []

    response = client.get(f"{PREFIX}/resources", headers=ADMIN)
    assert response.json()["total"] == 13

    backend = client.get(f"{PREFIX}/resources/mesh-backend", headers=ADMIN).json()
    assert backend["kind"] == "endpoint"
    assert backend["outputs"]["private_key"] == "***"
    assert "private_key" not in backend["outputs"]["ca"]
    assert backend["outputs"]["certificate"].startswith("cert:")

    attachment = client.get(f"{PREFIX}/resources/mesh-backend-attachment", headers=ADMIN).json()
    uploads = [a for a in attachment["outputs"]["actions"] if a["type"] == "upload"]
    assert uploads and all(a["content"] == "***" for a in uploads)


def test_missing_resource_is_404(client):
    response = client.get(f"{PREFIX}/resources/nope", headers=ADMIN)

    assert response.status_code == 404
    assert response.json()["detail"]["error_code"] == "RESOURCE_NOT_FOUND"


def test_reapply_reports_unchanged(client, declaration_body):
    client.post(f"{PREFIX}/apply", json=declaration_body(), headers=ADMIN)
    body = client.post(f"{PREFIX}/apply", json=declaration_body(), headers=ADMIN).json()

    assert body["created"] == []
    assert len(body["unchanged"]) == 13


def test_failed_apply_is_502_with_failures(client, certs, declaration_body):
    certs.fail = True

    response = client.post(f"{PREFIX}/apply", json=declaration_body(), headers=ADMIN)

    assert response.status_code == 502
    body = response.json()
    assert body["error_code"] == "DEPLOYMENT_FAILED"
    failed = {f["resource"]: f for f in body["details"]["failures"]}
    assert failed["mesh-backend"]["stderr"] == "invalid CA key"
    assert "mesh-backend-attachment" in body["details"]["report"]["skipped"]


def test_invalid_declaration_is_422(client, declaration_body):
    body = declaration_body()
    body["networks"][0]["lighthouses"] = ["host9"]

    response = client.post(f"{PREFIX}/apply", json=body, headers=ADMIN)

    assert response.status_code == 422
    assert response.json()["error_code"] == "VALIDATION_ERROR"


def test_ipam_stats(client, declaration_body):
    client.post(f"{PREFIX}/apply", json=declaration_body(), headers=ADMIN)
    network_id = client.get(f"{PREFIX}/resources/mesh-ipam", headers=ADMIN).json()["outputs"]["network_id"]

    stats = client.get(f"{PREFIX}/ipam/{network_id}", headers=ADMIN).json()

    assert stats["kind"] == "network"
    assert stats["total"] == 254
    assert stats["used"] == 2
    assert len(stats["allocations"]) == 2


def test_unknown_ipam_scope_is_422(client):
    response = client.get(f"{PREFIX}/ipam/missing", headers=ADMIN)

    assert response.status_code == 422
    assert response.json()["error_code"] == "VALIDATION_ERROR"


def test_destroy(client, declaration_body):
    client.post(f"{PREFIX}/apply", json=declaration_body(), headers=ADMIN)

    response = client.post(f"{PREFIX}/destroy", headers=ADMIN)

    assert response.status_code == 200
    assert len(response.json()["deleted"]) == 13
    assert client.get(f"{PREFIX}/resources", headers=ADMIN).json()["total"] == 0


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["database"] == "connected"
