"""API tests for the FastAPI application."""

import asyncio

import pytest
from fastapi.testclient import TestClient

from helpdesk_ai.engine import get_engine
from helpdesk_ai.main import app
from helpdesk_ai.models.schemas import Draft
from tests.conftest import ACCOUNT_ID


@pytest.fixture
def client(engine):
    # No context manager: the lifespan would build the real engine
    app.dependency_overrides[get_engine] = lambda: engine
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def pending_draft(datastore) -> Draft:
    draft = Draft(
        id="draft-1", conversation_id="conv-1", message_id="msg-1",
        account_id=ACCOUNT_ID, content="Your refund is on its way.",
        confidence=0.8
    )
    datastore.drafts[draft.id] = draft
    return draft


class TestHealthEndpoints:

    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["success"] is True

    def test_health(self, client):
        response = client.get("/health")
        data = response.json()["data"]
        assert data["llm_model"] == "fake-model"
        assert data["queue"] == "InMemoryJobQueue"


class TestTriggerEndpoints:

    def test_process_queues_both_jobs(self, client):
        response = client.post("/messages/msg-1/process")

        assert response.status_code == 202
        job_ids = [job["id"] for job in response.json()["data"]]
        assert job_ids == ["classify-msg-1", "draft-msg-1"]

        job = client.get("/jobs/classify-msg-1").json()["data"]
        assert job["status"] == "queued"
        assert job["kind"] == "classification"

    def test_classify_unknown_message(self, client):
        response = client.post("/messages/msg-missing/classify")

        assert response.status_code == 404
        assert response.json()["success"] is False

    def test_unknown_job(self, client):
        assert client.get("/jobs/classify-nothing").status_code == 404


class TestDraftEndpoints:

    def test_get_draft(self, client, pending_draft):
        response = client.get(f"/drafts/{pending_draft.id}")
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "pending"

    def test_get_unknown_draft(self, client):
        assert client.get("/drafts/draft-missing").status_code == 404

    def test_accept_then_conflict(self, client, pending_draft):
        first = client.post(f"/drafts/{pending_draft.id}/accept",
                            json={"agent_id": "agent-bob"})
        second = client.post(f"/drafts/{pending_draft.id}/accept",
                             json={"agent_id": "agent-carol"})

        assert first.status_code == 200
        assert first.json()["data"]["status"] == "accepted"
        assert second.status_code == 409
        assert second.json()["error"] == "draft no longer pending"
        assert second.json()["data"] == {"draft_id": "draft-1",
                                         "status": "accepted"}

    def test_accept_with_edits(self, client, pending_draft):
        response = client.post(
            f"/drafts/{pending_draft.id}/accept",
            json={"agent_id": "agent-bob",
                  "edited_content": "Your refund arrives within 3 days."}
        )

        data = response.json()["data"]
        assert data["status"] == "edited"
        assert data["original_content"] == "Your refund is on its way."

    def test_blank_edit_is_unprocessable(self, client, pending_draft):
        response = client.post(f"/drafts/{pending_draft.id}/accept",
                               json={"agent_id": "agent-bob",
                                     "edited_content": "   "})
        assert response.status_code == 422

    def test_reject(self, client, pending_draft):
        response = client.post(f"/drafts/{pending_draft.id}/reject",
                               json={"agent_id": "agent-bob",
                                     "reason": "off topic"})

        assert response.status_code == 200
        assert response.json()["data"]["rejection_reason"] == "off topic"

    def test_expire_sweep(self, client, pending_draft):
        response = client.post("/drafts/expire")
        assert response.status_code == 200
        # No expiry set on this draft
        assert response.json()["data"] == []


class TestReadEndpoints:

    def test_knowledge_search(self, client, engine, billing_article):
        asyncio.run(engine.knowledge_agent.add_article(billing_article))

        response = client.post("/knowledge/search",
                               json={"account_id": ACCOUNT_ID,
                                     "query": "charged twice"})

        body = response.json()
        assert response.status_code == 200
        assert body["meta"]["total"] == 1
        assert body["data"][0]["article"]["id"] == "kb-duplicate-charge"

    def test_performance(self, client, pending_draft):
        client.post(f"/drafts/{pending_draft.id}/accept",
                    json={"agent_id": "agent-bob"})

        response = client.get(f"/accounts/{ACCOUNT_ID}/performance")

        data = response.json()["data"]
        assert data["total_drafts"] == 1
        assert data["acceptance_rate"] == 100.0
        assert data["time_saved_minutes"] == 2


class TestConversationEndpoints:

    def test_resolve_releases_agent(self, client, engine, datastore):
        asyncio.run(engine.routing_agent.route_conversation(
            "conv-1", team_id="team-billing"
        ))
        load_before = datastore.agents["agent-bob"].current_load

        response = client.post("/conversations/conv-1/status",
                               json={"status": "resolved"})

        assert response.status_code == 200
        assert response.json()["data"]["assignee_id"] is None
        assert datastore.agents["agent-bob"].current_load == load_before - 1

    def test_unknown_status_is_unprocessable(self, client):
        response = client.post("/conversations/conv-1/status",
                               json={"status": "archived"})
        assert response.status_code == 422

    def test_unknown_conversation(self, client):
        response = client.post("/conversations/conv-missing/status",
                               json={"status": "closed"})
        assert response.status_code == 404
