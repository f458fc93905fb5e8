"""API tests for the FastAPI surface, run through the real lifespan."""

import pytest
from fastapi.testclient import TestClient

from agentic_sql.config import get_settings
from agentic_sql.main import app
from agentic_sql.services.fallback_content import API_KEY_SETTING


@pytest.fixture
def client(tmp_path, monkeypatch):
    """Test client with local snapshots under tmp_path and no LLM credentials."""
    monkeypatch.setenv("STORAGE__BACKEND", "local")
    monkeypatch.setenv("STORAGE__SNAPSHOT_DIR", str(tmp_path / "snapshots"))
    monkeypatch.setenv("LLM__OPENROUTER_API_KEY", "")
    get_settings.cache_clear()

    with TestClient(app) as test_client:
        yield test_client

    get_settings.cache_clear()


@pytest.fixture
def shop(client):
    """A 'shop' database with a users table."""
    assert client.post("/databases", json={"database_id": "shop", "name": "Shop"}).status_code == 201
    response = client.post(
        "/databases/shop/execute",
        json={"sql": "CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT); INSERT INTO users (name) VALUES ('Ada');"},
    )
    assert response.status_code == 200
    return client


class TestRootAndHealth:

    def test_root_echoes_trace_id(self, client):
        response = client.get("/", headers={"X-Trace-ID": "trace-123"})

        assert response.status_code == 200
        assert response.json()["trace_id"] == "trace-123"
        assert response.headers["X-Trace-ID"] == "trace-123"

    def test_health_degraded_without_llm(self, client):
        body = client.get("/health").json()

        assert body["status"] == "degraded"
        assert body["engine_status"] == "healthy"
        assert body["llm_service_status"] == "not_configured"
        assert body["snapshot_store_status"] == "healthy"


class TestDatabases:

    def test_create_list_delete(self, client):
        created = client.post("/databases", json={"database_id": "sales"})
        assert created.status_code == 201
        assert created.json()["restored"] is False

        listing = client.get("/databases").json()
        assert listing["open_databases"] == ["sales"]
        assert [s["database_id"] for s in listing["snapshots"]] == ["sales"]

        assert client.delete("/databases/sales").status_code == 204
        missing = client.delete("/databases/sales")
        assert missing.status_code == 404
        assert missing.json()["error"] == "not_found"

    def test_create_twice_conflicts(self, shop):
        response = shop.post("/databases", json={"database_id": "shop"})

        assert response.status_code == 409
        assert response.json()["error"] == "conflict"

    def test_invalid_id_rejected(self, client):
        response = client.post("/databases", json={"database_id": "../etc"})

        assert response.status_code == 422
        assert response.json()["error"] == "validation_error"

    def test_tables_and_schema(self, shop):
        assert shop.get("/databases/shop/tables").json()["tables"] == ["users"]

        columns = shop.get("/databases/shop/tables/users/schema").json()["columns"]
        assert [c["name"] for c in columns] == ["id", "name"]
        assert columns[0]["primary_key"] is True

    def test_export(self, shop):
        response = shop.get("/databases/shop/export")

        assert response.status_code == 200
        assert response.content.startswith(b"SQLite format 3\x00")
        assert 'filename="shop.sqlite"' in response.headers["content-disposition"]


class TestExecute:

    def test_select(self, shop):
        body = shop.post("/databases/shop/execute", json={"sql": "SELECT name FROM users"}).json()

        assert body["statement_count"] == 1
        assert body["modifying"] is False
        assert body["persisted"] is None
        assert body["results"][0]["rows"] == [["Ada"]]

    def test_engine_error_verbatim(self, shop):
        response = shop.post("/databases/shop/execute", json={"sql": "SELECT * FROM invoices"})

        assert response.status_code == 400
        assert response.json()["error"] == "database_query_error"
        assert response.json()["message"] == "no such table: invoices"

    def test_empty_script(self, shop):
        response = shop.post("/databases/shop/execute", json={"sql": ";"})

        assert response.status_code == 400
        assert response.json()["error"] == "bad_request"


class TestChat:

    def test_missing_credentials_reported_in_result(self, shop):
        """Without an API key the turn completes with guidance instead of an HTTP error."""
        response = shop.post("/databases/shop/chat", json={"question": "How many users?", "selected_table": "users"})

        assert response.status_code == 200
        result = response.json()["result"]
        assert result["status"] == "generation_failed"
        assert result["failure_classification"] == "unauthorized"
        assert API_KEY_SETTING in result["content"]
        assert result["suggested_query"] == 'SELECT id, name FROM "users" LIMIT 10;'
        assert response.json()["invalidated_tables"] == []

    def test_question_required(self, shop):
        response = shop.post("/databases/shop/chat", json={"mode": "ask"})

        assert response.status_code == 422


def test_unknown_route(client):
    response = client.get("/nope")

    assert response.status_code == 404
    assert response.json()["error"] == "not_found"
