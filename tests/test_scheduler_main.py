import asyncio

import pytest
from fastapi.testclient import TestClient

from services.orchestrator import main as orchestrator
from services.scheduler import main


@pytest.fixture
def client():
    with TestClient(main.app) as test_client:
        yield test_client


def test_health_reports_started_notifications(client):
    body = client.get("/health").json()
    assert body["status"] == "ok"
    assert body["notifications_started"] is True


def test_put_reminders_schedules_weekly_triggers(client):
    response = client.put(
        "/medications/med_api_1/reminders",
        json={
            "medication_name": "Lisinopril",
            "reminder_times": ["08:00", "20:00"],
            "frequency": "weekly",
            "days": [1, 3, 5],
        },
    )
    assert response.status_code == 200
    assert len(response.json()["trigger_ids"]) == 6

    triggers = client.get("/medications/med_api_1/triggers").json()
    assert len(triggers) == 6
    assert {t["weekday"] for t in triggers} == {1, 3, 5}
    fires = [t["next_fire_at"] for t in triggers]
    assert fires == sorted(fires)


def test_put_reminders_is_idempotent(client):
    payload = {"medication_name": "Metformin", "reminder_times": ["09:00"]}
    client.put("/medications/med_api_2/reminders", json=payload)
    client.put("/medications/med_api_2/reminders", json=payload)

    assert len(client.get("/medications/med_api_2/triggers").json()) == 1


def test_invalid_reminder_config_is_rejected(client):
    response = client.put(
        "/medications/med_api_3/reminders",
        json={"medication_name": "Metformin", "reminder_times": ["09:00"], "frequency": "monthly", "days": []},
    )
    assert response.status_code == 422


def test_delete_reminders_cancels_everything_for_medication(client):
    client.put("/medications/med_api_4/reminders", json={"medication_name": "Aspirin", "reminder_times": ["07:00", "19:00"]})

    response = client.delete("/medications/med_api_4/reminders")

    assert response.json() == {"medication_id": "med_api_4", "cancelled": 2}
    assert client.get("/medications/med_api_4/triggers").json() == []


def test_notification_response_for_unknown_trigger_is_404(client):
    response = client.post("/notifications/response", json={"trigger_id": "ntf_missing", "action_id": "skip"})
    assert response.status_code == 404


def test_notification_response_records_dose_for_medication_saved_by_orchestrator():
    with TestClient(orchestrator.app) as orchestrator_client, TestClient(main.app) as scheduler_client:
        created = orchestrator_client.post(
            "/medications",
            json={"id": "med_api_5", "user_id": "user_api_5", "name": "Aspirin", "reminder_times": ["07:00", "21:00"]},
        ).json()

        triggers = scheduler_client.get("/medications/med_api_5/triggers").json()
        assert sorted(t["trigger_id"] for t in triggers) == sorted(created["trigger_ids"])

        response = scheduler_client.post(
            "/notifications/response",
            json={"trigger_id": created["trigger_ids"][0], "action_id": "confirm_taken"},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["recorded"] is True
        assert body["entry"]["status"] == "taken"
        assert body["entry"]["confirmed_via"] == "notification"

        today = orchestrator_client.get("/medications/med_api_5/today").json()
        assert today["entry"]["id"] == body["entry"]["id"]

    # both apps released the shared tracker
    assert main.tracker.notifications.started is False


def test_put_reminders_updates_saved_medication(client):
    with TestClient(orchestrator.app) as orchestrator_client:
        orchestrator_client.post(
            "/medications",
            json={"id": "med_api_6", "user_id": "user_api_6", "name": "Metformin", "reminder_times": ["08:00"]},
        )

    response = client.put(
        "/medications/med_api_6/reminders",
        json={"medication_name": "Metformin", "reminder_times": ["08:00", "20:00"]},
    )

    assert len(response.json()["trigger_ids"]) == 2
    assert len(client.get("/medications/med_api_6/triggers").json()) == 2
    saved = asyncio.run(main.tracker.store.get_medication("med_api_6"))
    assert saved.reminder_times == ["08:00", "20:00"]
