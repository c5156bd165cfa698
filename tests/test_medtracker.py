import asyncio
from datetime import datetime
from zoneinfo import ZoneInfo

import pytest

from app.db.store import InMemoryStore, ResourceNotProvisionedError
from medtracker import MedTracker, build_tracker
from services.orchestrator.agent_workflow import ChatTurnFailed
from services.orchestrator.ai_client import AIServiceError
from services.scheduler.notifications import InMemoryNotificationService
from shared.config import Settings
from shared.contracts.enums import AdherenceStatus, ConfirmedVia, MedicationCategory, ReminderFrequency
from shared.contracts.models import InteractionResult, Medication, MedicationDraft


class FakeAssistant:
    def __init__(self) -> None:
        self.checks = 0
        self.info = {"generic_name": "acetylsalicylic acid", "dosage": "81mg", "category": "otc"}
        self.reply = "Take it with water."
        self.chat_error: Exception | None = None

    async def check_interactions(self, medications, patient):
        self.checks += 1
        return InteractionResult(safe=False, warnings=["check with your doctor"])

    async def chat(self, turns, medications, patient, history=None):
        if self.chat_error is not None:
            raise self.chat_error
        return self.reply

    async def get_medication_info(self, name):
        return dict(self.info)


def _tracker(**service_kwargs) -> MedTracker:
    settings = Settings(app_timezone="America/New_York")
    clock = lambda: datetime(2026, 10, 17, 9, 30, tzinfo=ZoneInfo("America/New_York"))
    tracker = MedTracker(
        InMemoryStore(),
        InMemoryNotificationService(**service_kwargs),
        FakeAssistant(),
        settings,
        ai_enabled=True,
        clock=clock,
    )
    asyncio.run(tracker.start())
    return tracker


def _med(**kwargs) -> Medication:
    data = {"id": "med_1", "user_id": "u1", "name": "Metformin", "reminder_times": ["08:00", "20:00"]}
    data.update(kwargs)
    return Medication(**data)


def test_save_medication_persists_and_schedules():
    tracker = _tracker()
    outcome = asyncio.run(tracker.save_medication(_med()))

    assert len(outcome.trigger_ids) == 2
    assert outcome.warnings == []
    assert asyncio.run(tracker.store.get_medication("med_1")) is not None


def test_save_with_denied_permission_still_persists():
    tracker = _tracker(permission_granted=False)
    outcome = asyncio.run(tracker.save_medication(_med()))

    assert outcome.trigger_ids == []
    assert outcome.warnings
    assert asyncio.run(tracker.store.get_medication("med_1")) is not None


def test_store_failure_is_fatal_and_schedules_nothing():
    tracker = _tracker()
    tracker.store.missing_tables.add("medications")

    with pytest.raises(ResourceNotProvisionedError):
        asyncio.run(tracker.save_medication(_med()))
    assert asyncio.run(tracker.notifications.list_all()) == []


def test_update_reminders_replaces_triggers():
    tracker = _tracker()
    asyncio.run(tracker.save_medication(_med()))

    outcome = asyncio.run(tracker.update_reminders("med_1", ["07:00"], ReminderFrequency.WEEKLY, [0, 6]))

    assert outcome.medication.reminder_days == [0, 6]
    triggers = asyncio.run(tracker.scheduler.triggers_for("med_1"))
    assert sorted(t.weekday for t in triggers) == [0, 6]


def test_update_reminders_rejects_invalid_config():
    tracker = _tracker()
    asyncio.run(tracker.save_medication(_med()))

    with pytest.raises(ValueError):
        asyncio.run(tracker.update_reminders("med_1", ["07:00"], ReminderFrequency.MONTHLY, []))
    assert len(asyncio.run(tracker.scheduler.triggers_for("med_1"))) == 2


def test_delete_medication_deactivates_and_cancels():
    tracker = _tracker()
    asyncio.run(tracker.save_medication(_med()))

    assert asyncio.run(tracker.delete_medication("med_1")) == 2
    assert asyncio.run(tracker.store.list_medications("u1")) == []
    assert asyncio.run(tracker.notifications.list_all()) == []


def test_listeners_hear_about_set_changes_until_unsubscribed():
    tracker = _tracker()
    seen = []
    unsubscribe = tracker.on_medication_set_changed(seen.append)

    asyncio.run(tracker.save_medication(_med()))
    unsubscribe()
    asyncio.run(tracker.delete_medication("med_1"))

    assert seen == ["u1"]


def test_notification_button_confirms_dose():
    tracker = _tracker()
    outcome = asyncio.run(tracker.save_medication(_med()))

    entry = asyncio.run(tracker.notifications.deliver_response(outcome.trigger_ids[0], "confirm_taken"))

    assert entry.status == AdherenceStatus.TAKEN
    assert entry.confirmed_via == ConfirmedVia.NOTIFICATION


def test_confirm_then_skip_same_day():
    tracker = _tracker()
    asyncio.run(tracker.save_medication(_med()))

    asyncio.run(tracker.confirm_dose("med_1"))
    skipped = asyncio.run(tracker.skip_dose("med_1"))

    assert skipped.status == AdherenceStatus.SKIPPED
    assert len(tracker.store.logs) == 1
    assert asyncio.run(tracker.today_entry("med_1")).id == skipped.id


def test_confirm_unknown_medication_raises_key_error():
    tracker = _tracker()
    with pytest.raises(KeyError):
        asyncio.run(tracker.confirm_dose("missing"))


def test_monitors_share_the_coordinator_and_cache():
    tracker = _tracker()
    meds = [_med(), _med(id="med_2", name="Aspirin")]

    first = tracker.new_interaction_monitor()
    asyncio.run(first.refresh("u1", meds))
    second = tracker.new_interaction_monitor()
    result = asyncio.run(second.refresh("u1", meds))

    assert tracker.ai.checks == 1
    assert result.warnings == ["check with your doctor"]
    assert first.coordinator is second.coordinator


def test_enrich_draft_fills_only_missing_fields():
    tracker = _tracker()
    draft = MedicationDraft(name="Aspirin", dosage="100mg")

    enriched = asyncio.run(tracker.enrich_draft(draft))

    assert enriched.dosage == "100mg"
    assert enriched.generic_name == "acetylsalicylic acid"
    assert enriched.category == MedicationCategory.OTC


def test_enrich_draft_is_a_no_op_without_ai():
    tracker = _tracker()
    tracker.ai_enabled = False
    draft = MedicationDraft(name="Aspirin")
    assert asyncio.run(tracker.enrich_draft(draft)) == draft


def test_chat_failure_carries_user_text():
    tracker = _tracker()
    tracker.ai.chat_error = AIServiceError("down", 503)

    with pytest.raises(ChatTurnFailed) as exc_info:
        asyncio.run(tracker.chat("u1", "is this safe?"))
    assert exc_info.value.user_text == "is this safe?"


def test_sign_out_cancels_every_trigger():
    tracker = _tracker()
    asyncio.run(tracker.save_medication(_med()))
    asyncio.run(tracker.sign_out())
    assert asyncio.run(tracker.notifications.list_all()) == []


def test_build_tracker_uses_sql_store_for_database_url():
    tracker = build_tracker(Settings(database_url="sqlite://"), ai=FakeAssistant())
    asyncio.run(tracker.start())

    outcome = asyncio.run(tracker.save_medication(_med()))

    assert outcome.trigger_ids
    assert asyncio.run(tracker.store.get_medication("med_1")).name == "Metformin"


def test_notifications_stay_up_until_every_app_stops():
    tracker = _tracker()
    asyncio.run(tracker.start())

    asyncio.run(tracker.stop())
    assert tracker.notifications.started is True

    asyncio.run(tracker.stop())
    assert tracker.notifications.started is False

    asyncio.run(tracker.stop())
    assert tracker.notifications.started is False
