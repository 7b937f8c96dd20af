import json

import pytest
from fastapi.testclient import TestClient

from schema_sync.application.dtos.evolution_dto import SyncRequest
from schema_sync.domain.entities.rules import SyncConfig
from schema_sync.infrastructure.di_container import DIContainer
from schema_sync.presentation.api.app import create_app
from tests.fixtures.test_data import TestDataFactory


@pytest.fixture
def container(tmp_path):
    models = tmp_path / "models.json"
    models.write_text(json.dumps(TestDataFactory.create_models_document(with_bio=True)))
    container = DIContainer()
    container.configure(
        SyncConfig(dialect="sqlite", database_url=f"sqlite:///{tmp_path / 'app.db'}"),
        models_path=str(models),
    )
    yield container
    container.close()


@pytest.fixture
def synced(container):
    """Container whose database already holds the users table."""
    desired = container.get_provider().get_desired_schema()
    container.get_orchestrator().sync(SyncRequest(desired=desired, description="users"))
    return container


def test_health_and_root(container):
    client = TestClient(create_app(container))

    assert client.get("/health").json() == {"status": "healthy"}
    root = client.get("/").json()
    assert root["dialect"] == "sqlite"
    assert root["endpoints"]["plan"] == "/api/v1/plan"


def test_list_and_get_migrations(synced):
    client = TestClient(create_app(synced))

    response = client.get("/api/v1/migrations")
    assert response.status_code == 200
    records = response.json()
    assert len(records) == 1
    assert records[0]["status"] == "applied"
    assert records[0]["description"] == "users"
    assert records[0]["statements"][0].startswith('CREATE TABLE "users"')

    single = client.get(f"/api/v1/migrations/{records[0]['id']}")
    assert single.status_code == 200
    assert single.json()["checksum"] == records[0]["checksum"]

    assert client.get("/api/v1/migrations", params={"status": "failed"}).json() == []
    assert client.get("/api/v1/migrations/19990101000000_0001").status_code == 404


def test_verify_and_drift(synced):
    client = TestClient(create_app(synced))
    assert client.get("/api/v1/verify").json() == {"verified": 1}

    synced.get_driver().execute(
        "UPDATE schema_sync_history SET statements = ?", (json.dumps(['DROP TABLE "users"']),)
    )

    response = client.get("/api/v1/verify")
    assert response.status_code == 409
    assert response.json()["detail"]["record_id"] == synced.get_ledger().list_records()[0].id


def test_current_schema(synced):
    client = TestClient(create_app(synced))

    schema = client.get("/api/v1/schema").json()

    assert [t["name"] for t in schema["tables"]] == ["users"]
    columns = [c["name"] for c in schema["tables"][0]["columns"]]
    assert columns == ["id", "email", "name", "bio"]


def test_plan_preview(container):
    client = TestClient(create_app(container))

    response = client.post("/api/v1/plan", json={})

    assert response.status_code == 200
    plan = response.json()
    assert plan["dialect"] == "sqlite"
    assert plan["changes"] == ["add_table users"]
    assert plan["validation"]["sql_valid"] is True
    assert plan["statements"][0]["sql"].startswith('CREATE TABLE "users"')
    # previews never touch the ledger
    assert container.get_ledger().list_records() == []


def test_plan_preview_rejects_destructive_change(synced):
    client = TestClient(create_app(synced))
    models = TestDataFactory.create_models_document()

    rejected = client.post("/api/v1/plan", json={"models": models})
    assert rejected.status_code == 422
    assert rejected.json()["detail"]["rejected"] == ["column 'users.bio'"]

    allowed = client.post("/api/v1/plan", json={"models": models, "allow_column_removal": True})
    assert allowed.status_code == 200
    assert allowed.json()["changes"] == ["drop_column users.bio"]
    assert allowed.json()["irreversible"] is True


def test_plan_preview_reports_model_errors(container):
    client = TestClient(create_app(container))

    response = client.post("/api/v1/plan", json={"models": {"tables": []}})

    assert response.status_code == 400
    assert "message" in response.json()["detail"]
