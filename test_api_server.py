"""Tests for the REST API using FastAPI's TestClient with overridden dependencies."""

import pytest
from fastapi.testclient import TestClient

import crud
import database
import services
from agent import ConversationDriver
from api_server import app
from conftest import ScriptedProvider, text_response, tool_response
from errors import ProviderError, ProviderTimeoutError


@pytest.fixture
def client(session_factory, retrieval, embedding_store):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[database.get_db] = override_get_db
    app.dependency_overrides[services.get_retrieval_engine] = lambda: retrieval
    app.dependency_overrides[services.get_embedding_store] = lambda: embedding_store
    yield TestClient(app)
    app.dependency_overrides.clear()


def _use_driver(driver):
    app.dependency_overrides[services.get_conversation_driver] = lambda: driver


class TestReminderEndpoints:

    def test_root_and_health(self, client):
        assert client.get("/").json()["status"] == "healthy"
        health = client.get("/health").json()
        assert health["database"] == "sqlite"
        assert health["embedding_outbox"] == {"pending": 0, "failed": 0}

    def test_create_get_update_delete(self, client):
        created = client.post("/reminders", json={
            "owner_id": "user-1", "title": "Dentist", "date": "2025-06-13", "time": "9:30",
            "repeat": "none", "repeat_until": "2025-12-31", "tag_name": "Health",
        })
        assert created.status_code == 201
        body = created.json()
        assert body["time"] == "09:30"
        assert body["repeat_until"] is None
        assert body["tag_id"] is None
        assert len(body["warnings"]) == 1
        reminder_id = body["id"]

        assert client.get(f"/reminders/{reminder_id}", params={"owner_id": "user-1"}).json()["title"] == "Dentist"
        assert client.get(f"/reminders/{reminder_id}", params={"owner_id": "user-2"}).status_code == 404

        patched = client.patch(f"/reminders/{reminder_id}", params={"owner_id": "user-1"},
                               json={"completed": True, "time": "10:00"})
        assert patched.status_code == 200
        assert patched.json()["completed"] is True
        assert patched.json()["time"] == "10:00"

        listed = client.get("/reminders", params={"owner_id": "user-1", "start_date": "2025-06-13"})
        assert [r["id"] for r in listed.json()] == [reminder_id]

        assert client.delete(f"/reminders/{reminder_id}", params={"owner_id": "user-2"}).status_code == 404
        assert client.delete(f"/reminders/{reminder_id}", params={"owner_id": "user-1"}).status_code == 200
        assert client.get(f"/reminders/{reminder_id}", params={"owner_id": "user-1"}).status_code == 404

        assert client.get("/health").json()["embedding_outbox"]["pending"] == 3

    @pytest.mark.parametrize("payload", [
        {"owner_id": "user-1", "title": "Bad time", "date": "2025-06-13", "time": "7pm"},
        {"owner_id": "user-1", "title": "Bad date", "date": "13/06/2025"},
        {"owner_id": "user-1", "title": "Bad repeat", "repeat": "sometimes"},
        {"title": "No owner"},
    ])
    def test_validation_errors(self, client, payload):
        assert client.post("/reminders", json=payload).status_code == 422

    def test_repeat_until_before_date_is_rejected(self, client):
        response = client.post("/reminders", json={
            "owner_id": "user-1", "title": "Standup", "date": "2025-06-13",
            "repeat": "daily", "repeat_until": "2025-06-01",
        })
        assert response.status_code == 422

    def test_foreign_taxonomy_ids_are_dropped(self, client, db):
        theirs = crud.create_tag(db, 'user-2', 'Private')
        mine = crud.create_priority(db, 'user-1', 'High', rank=1)

        created = client.post("/reminders", json={
            "owner_id": "user-1", "title": "Dentist", "date": "2025-06-13",
            "tag_id": theirs.id, "priority_id": mine.id,
        })

        body = created.json()
        assert created.status_code == 201
        assert body["tag_id"] is None
        assert body["priority_id"] == mine.id
        assert len(body["warnings"]) == 1

        patched = client.patch(f"/reminders/{body['id']}", params={"owner_id": "user-1"},
                               json={"tag_id": theirs.id})
        assert patched.json()["tag_id"] is None
        assert patched.json()["warnings"]

    def test_backfill(self, client):
        client.post("/reminders", json={"owner_id": "user-1", "title": "One", "date": "2025-06-13"})
        response = client.post("/admin/embeddings/backfill/user-1")
        assert response.json() == {"owner_id": "user-1", "queued": 1}


class TestSearchEndpoint:

    def test_target_date(self, client):
        client.post("/reminders", json={"owner_id": "user-1", "title": "Standup", "date": "2025-06-12",
                                        "time": "09:00"})

        response = client.post("/search", json={
            "query": "anything?", "owner_id": "user-1", "target_date": "2025-06-12", "client_date": "2025-06-11",
        })

        assert response.status_code == 200
        body = response.json()
        assert body["answer"] == "2025-06-12: Standup (09:00)."
        assert body["evidence"][0]["score"] == 1.0
        assert body["start_date"] == "2025-06-12"

    def test_range_validation(self, client):
        response = client.post("/search", json={
            "query": "x", "owner_id": "user-1", "start_date": "2025-06-12", "end_date": "2025-06-10",
        })
        assert response.status_code == 422


class TestConverseEndpoint:

    def test_converse(self, client, reminder_store, retrieval):
        _use_driver(ConversationDriver(ScriptedProvider([text_response("Hello!")]), reminder_store, retrieval))

        response = client.post("/converse", json={"query": "hi", "owner_id": "user-1", "client_date": "2025-06-11"})

        assert response.status_code == 200
        assert response.json()["message"] == "Hello!"
        assert response.json()["iterations"] == 1

    def test_exhaustion_returns_log(self, client, reminder_store, retrieval):
        provider = ScriptedProvider([tool_response(("t1", "search_reminders", {"query": "today"}))])
        _use_driver(ConversationDriver(provider, reminder_store, retrieval, max_iterations=1))

        response = client.post("/converse", json={"query": "loop", "owner_id": "user-1"})

        assert response.status_code == 500
        body = response.json()
        assert body["error"] == "iteration_exhausted"
        assert body["tool_calls"][0]["tool_name"] == "search_reminders"

    @pytest.mark.parametrize("error,status,code", [
        (ProviderTimeoutError("slow"), 504, "provider_timeout"),
        (ProviderError("denied", code="provider_auth_rejected"), 503, "provider_auth_rejected"),
    ])
    def test_provider_failures(self, client, reminder_store, retrieval, error, status, code):
        class FailingProvider:
            async def converse(self, system_prompt, messages, tools):
                raise error

        _use_driver(ConversationDriver(FailingProvider(), reminder_store, retrieval))

        response = client.post("/converse", json={"query": "hi", "owner_id": "user-1"})

        assert response.status_code == status
        assert response.json()["error"] == code

    def test_bad_history_is_422(self, client, reminder_store, retrieval):
        _use_driver(ConversationDriver(ScriptedProvider([]), reminder_store, retrieval))

        response = client.post("/converse", json={
            "query": "and?", "owner_id": "user-1",
            "conversation_history": [
                {"role": "user", "content": "hi"},
                {"role": "assistant", "content": [{"toolUse": {"toolUseId": "a", "name": "x", "input": {}}}]},
            ],
        })

        assert response.status_code == 422
        assert response.json()["error"] == "invalid_conversation_history"
