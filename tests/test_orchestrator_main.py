import pytest
from fastapi.testclient import TestClient

from app.db.store import ResourceNotProvisionedError, SqlAlchemyStore
from services.orchestrator import main
from services.orchestrator.ai_client import AIServiceError
from shared.contracts.models import InteractionResult


class FakeAssistant:
    def __init__(self) -> None:
        self.checks = 0
        self.reply = "Take it with food. Would you like more detailed information about this?"
        self.chat_error = None

    async def check_interactions(self, medications, patient):
        self.checks += 1
        return InteractionResult(safe=False, warnings=["Avoid alcohol"])

    async def chat(self, turns, medications, patient, history=None):
        if self.chat_error is not None:
            raise self.chat_error
        return self.reply

    async def get_medication_info(self, name):
        return {}


@pytest.fixture
def assistant(monkeypatch):
    fake = FakeAssistant()
    monkeypatch.setattr(main.tracker, "ai", fake)
    monkeypatch.setattr(main.tracker, "ai_enabled", True)
    main.monitors.clear()
    return fake


@pytest.fixture
def client(assistant):
    with TestClient(main.app) as test_client:
        yield test_client


def _create(client, med_id: str, user_id: str, name: str = "Metformin", times=("08:00",)):
    response = client.post(
        "/medications",
        json={"id": med_id, "user_id": user_id, "name": name, "reminder_times": list(times)},
    )
    assert response.status_code == 200
    return response.json()


def test_health(client):
    body = client.get("/health").json()
    assert body == {"status": "ok", "service": "orchestrator", "ai_configured": True}


def test_create_medication_schedules_reminders(client):
    body = _create(client, "med_o1", "user_o1", times=("08:00", "20:00"))
    assert len(body["trigger_ids"]) == 2
    assert body["warnings"] == []


def test_confirm_then_skip_then_today(client):
    _create(client, "med_o2", "user_o2")

    confirmed = client.post("/medications/med_o2/confirm").json()
    skipped = client.post("/medications/med_o2/skip").json()
    today = client.get("/medications/med_o2/today").json()

    assert confirmed["id"] == skipped["id"]
    assert skipped["status"] == "skipped"
    assert skipped["taken_at"] is None
    assert today["entry"]["id"] == skipped["id"]


def test_taken_today_summary(client):
    _create(client, "med_o3a", "user_o3")
    _create(client, "med_o3b", "user_o3", name="Aspirin")
    client.post("/medications/med_o3a/confirm")

    body = client.get("/users/user_o3/taken-today").json()
    assert (body["taken"], body["total"]) == (1, 2)


def test_unknown_medication_is_404(client):
    assert client.post("/medications/nope/confirm").status_code == 404
    assert client.get("/medications/nope/today").status_code == 404
    assert client.delete("/medications/nope").status_code == 404


def test_interaction_refresh_checks_once_per_set(client, assistant):
    _create(client, "med_o4a", "user_o4")
    first = client.post("/interactions/refresh", json={"user_id": "user_o4"}).json()
    assert first["result"]["safe"] is True
    assert assistant.checks == 0

    _create(client, "med_o4b", "user_o4", name="Aspirin")
    second = client.post("/interactions/refresh", json={"user_id": "user_o4"}).json()
    third = client.post("/interactions/refresh", json={"user_id": "user_o4"}).json()

    assert assistant.checks == 1
    assert second["result"]["warnings"] == ["Avoid alcohol"]
    assert third["medication_ids"] == ["med_o4a", "med_o4b"]


def test_chat_returns_assistant_turn(client):
    body = client.post("/chat", json={"user_id": "user_o5", "text": "can I take this at night?"}).json()
    assert body["role"] == "assistant"
    assert body["content"].startswith("Take it with food.")


def test_chat_failure_returns_user_text(client, assistant):
    assistant.chat_error = AIServiceError("overloaded", 503)

    response = client.post("/chat", json={"user_id": "user_o6", "text": "hello?"})

    assert response.status_code == 502
    assert response.json()["detail"]["user_text"] == "hello?"


def test_store_errors_map_to_guidance(client, monkeypatch):
    async def not_provisioned(medication):
        raise ResourceNotProvisionedError(code="42P01")

    monkeypatch.setattr(main.tracker.store, "save_medication", not_provisioned)

    response = client.post("/medications", json={"user_id": "user_o7", "name": "Aspirin"})

    assert response.status_code == 503
    assert response.json()["title"] == "Database Setup Required"


def test_tracker_uses_configured_database():
    assert isinstance(main.tracker.store, SqlAlchemyStore)
