from fastapi import FastAPI
from fastapi.testclient import TestClient

from garson.ai.rules_provider import RuleBasedExtractionBackend
from garson.ai.service import BackendRegistry
from garson.core.database import get_db
from garson.fsm.engine import ConversationEngine
from garson.models.order import ORDER_CANCELLED, Order
from garson.routers.admin import router as admin_router
from garson.routers.simulator import router as simulator_router
from garson.services.session_store import SessionStore
from tests.fixtures_data import CUSTOMER, SCENARIO_A_TEXT, TENANT_ID, make_session_factory, seed_menu

ADMIN_HEADERS = {"X-Admin-Token": "s3cret"}


def _build_client():
    TestingSessionLocal = make_session_factory()
    db = TestingSessionLocal()
    seed_menu(db)
    db.close()

    app = FastAPI()
    app.include_router(admin_router)
    app.include_router(simulator_router)

    def _override_get_db():
        session = TestingSessionLocal()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _override_get_db
    app.state.admin_token = "s3cret"
    app.state.engine = ConversationEngine(
        session_store=SessionStore(),
        registry=BackendRegistry(rules_backend=RuleBasedExtractionBackend()),
    )
    return TestClient(app), TestingSessionLocal


def _place_order(client):
    response = client.post(
        f"/simulator/{TENANT_ID}/message",
        json={"phone": CUSTOMER["phone"], "name": CUSTOMER["name"], "event": {"kind": "text", "text": SCENARIO_A_TEXT}},
    )
    return response.json()


def test_admin_routes_require_token():
    client, _ = _build_client()

    missing = client.get(f"/api/admin/{TENANT_ID}/intents")
    wrong = client.get(f"/api/admin/{TENANT_ID}/intents", headers={"X-Admin-Token": "nope"})
    ok = client.get(f"/api/admin/{TENANT_ID}/intents", headers=ADMIN_HEADERS)

    assert missing.status_code == 403
    assert wrong.status_code == 403
    assert ok.status_code == 200
    assert ok.json() == []


def test_intent_feedback_first_value_wins():
    client, _ = _build_client()
    turn = _place_order(client)
    intent_id = turn["intent_id"]

    intents = client.get(f"/api/admin/{TENANT_ID}/intents", headers=ADMIN_HEADERS).json()
    assert [intent["id"] for intent in intents] == [intent_id]
    assert intents[0]["raw_text"] == SCENARIO_A_TEXT

    first = client.post(f"/api/admin/{TENANT_ID}/intents/{intent_id}/feedback", json={"value": "correct"}, headers=ADMIN_HEADERS)
    second = client.post(f"/api/admin/{TENANT_ID}/intents/{intent_id}/feedback", json={"value": "incorrect"}, headers=ADMIN_HEADERS)

    assert first.json() == {"intent_id": intent_id, "feedback": "correct"}
    assert second.json() == {"intent_id": intent_id, "feedback": "correct"}

    accuracy = client.get(f"/api/admin/{TENANT_ID}/intents/accuracy", headers=ADMIN_HEADERS).json()
    assert accuracy["correct"] == 1
    assert accuracy["accuracy"] == 1.0


def test_feedback_errors_map_to_http_status():
    client, _ = _build_client()
    intent_id = _place_order(client)["intent_id"]

    invalid = client.post(f"/api/admin/{TENANT_ID}/intents/{intent_id}/feedback", json={"value": "belki"}, headers=ADMIN_HEADERS)
    missing = client.post(f"/api/admin/{TENANT_ID}/intents/9999/feedback", json={"value": "correct"}, headers=ADMIN_HEADERS)

    assert invalid.status_code == 400
    assert invalid.json()["detail"]["code"] == "VALIDATION_ERROR"
    assert missing.status_code == 404
    assert missing.json()["detail"]["code"] == "NOT_FOUND"


def test_reset_conversation_cancels_draft():
    client, Session = _build_client()
    turn = _place_order(client)

    response = client.post(f"/api/admin/{TENANT_ID}/conversations/{turn['conversation_id']}/reset", headers=ADMIN_HEADERS)

    assert response.status_code == 200
    assert response.json() == {"conversation_id": turn["conversation_id"], "state": "IDLE"}
    db = Session()
    assert db.query(Order).one().status == ORDER_CANCELLED


def test_reset_unknown_conversation_is_404():
    client, _ = _build_client()

    response = client.post(f"/api/admin/{TENANT_ID}/conversations/404/reset", headers=ADMIN_HEADERS)

    assert response.status_code == 404


def test_ai_config_defaults_to_rules_and_can_be_updated():
    client, _ = _build_client()

    default = client.get(f"/api/admin/{TENANT_ID}/ai/config", headers=ADMIN_HEADERS)
    assert default.status_code == 200
    assert default.json()["provider"] == "rules"

    updated = client.put(
        f"/api/admin/{TENANT_ID}/ai/config",
        json={"provider": "OpenAI", "model": "gpt-4o-mini", "temperature": 0.2},
        headers=ADMIN_HEADERS,
    )
    assert updated.status_code == 200
    assert updated.json()["provider"] == "openai"
    assert updated.json()["model"] == "gpt-4o-mini"

    invalid = client.put(f"/api/admin/{TENANT_ID}/ai/config", json={"provider": "gemini"}, headers=ADMIN_HEADERS)
    assert invalid.status_code == 400
