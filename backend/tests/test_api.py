"""
HTTP layer tests using FastAPI's TestClient.
"""

import pytest
from fastapi.testclient import TestClient

from assistant_orchestrator.main import create_app


@pytest.fixture
def client(orchestrator):
    with TestClient(create_app(orchestrator)) as c:
        yield c


def test_root_lists_domains(client):
    body = client.get("/").json()
    assert body["service"] == "Assistant Orchestrator"
    assert "tech_advice" in body["domains"]


def test_health(client):
    body = client.get("/health").json()
    assert body["status"] == "healthy"
    assert body["store"] == "memory"
    assert body["providers"]["code"]["registered"] is True


def test_process_turn(client):
    resp = client.post("/process", json={
        "session_id": "s1", "user_id": "u1", "message": "explain recursion",
    })
    assert resp.status_code == 200
    body = resp.json()
    assert body["content"] == "concept answer"
    assert body["domains"] == ["concept"]
    assert body["context_saved"] is True


def test_empty_message_is_400(client):
    resp = client.post("/process", json={"session_id": "s1", "user_id": "u1", "message": " "})
    assert resp.status_code == 400
    assert resp.json()["detail"]["retry_hint"]


def test_clarification_is_200(client):
    resp = client.post("/process", json={"session_id": "s1", "user_id": "u1", "message": "hmm"})
    assert resp.status_code == 200
    assert resp.json()["needs_clarification"] is True


def test_session_summary(client):
    assert client.get("/sessions/s1").status_code == 404
    client.post("/process", json={"session_id": "s1", "user_id": "u1", "message": "explain recursion"})
    body = client.get("/sessions/s1").json()
    assert body["turn_count"] == 1
    assert body["active_topic"] == "recursion"


def test_learning_mode(client):
    resp = client.post("/sessions/s1/learning-mode", json={
        "enabled": True, "user_id": "u1", "skill_level": "advanced",
    })
    assert resp.status_code == 200
    body = resp.json()
    assert body["learning_mode_active"] is True
    assert body["skill"]["overall"] == "advanced"


def test_learning_mode_unknown_session_needs_user(client):
    resp = client.post("/sessions/new/learning-mode", json={"enabled": True})
    assert resp.status_code == 400


def test_circuit_breaker_reset(client):
    client.post("/process", json={"session_id": "s1", "user_id": "u1", "message": "debug this"})
    assert "debug" in client.get("/circuit-breakers").json()
    resp = client.post("/circuit-breakers/debug/reset")
    assert resp.json() == {"status": "ok", "domain": "debug", "new_state": "closed"}
    assert client.post("/circuit-breakers/unknown/reset").status_code == 422


def test_providers_and_metrics(client):
    client.post("/process", json={"session_id": "s1", "user_id": "u1", "message": "explain recursion"})
    assert client.get("/providers").json()["concept"]["circuit_breaker"] == "closed"
    metrics = client.get("/metrics").json()
    assert metrics["turns"]["total"] == 1
