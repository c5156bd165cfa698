from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Sequence

from app.db.store import InMemoryStore, MedicationStore, SqlAlchemyStore
from services.adherence.ledger import AdherenceLedger
from services.orchestrator.agent_workflow import ChatModel, run_chat_turn
from services.orchestrator.ai_client import GeminiClient
from services.orchestrator.interaction_cache import (
    CheckCoordinator,
    InteractionCache,
    InteractionChecker,
    InteractionMonitor,
)
from services.scheduler.notifications import InMemoryNotificationService, NotificationService
from services.scheduler.reminders import ReminderScheduler
from shared.config import Settings, get_settings
from shared.contracts.enums import ConfirmedVia, MedicationCategory, ReminderFrequency
from shared.contracts.models import (
    AdherenceLogEntry,
    ChatTurn,
    Medication,
    MedicationDraft,
    PatientContext,
)

logger = logging.getLogger(__name__)

MedicationSetListener = Callable[[str], Any]

DRAFT_FIELDS = ("generic_name", "dosage", "frequency", "description")


class AIAssistant(InteractionChecker, ChatModel, Protocol):
    async def get_medication_info(self, name: str) -> Dict[str, Any]: ...


@dataclass
class SaveOutcome:
    medication: Medication
    trigger_ids: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


class MedTracker:
    """Wires storage, reminders, adherence and the AI assistant together."""

    def __init__(
        self,
        store: MedicationStore,
        notifications: NotificationService,
        ai: AIAssistant,
        settings: Optional[Settings] = None,
        *,
        ai_enabled: Optional[bool] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings or Settings()
        self.store = store
        self.notifications = notifications
        self.ai = ai
        self.ai_enabled = self.settings.ai_configured if ai_enabled is None else ai_enabled
        self.scheduler = ReminderScheduler(notifications)
        self.ledger = AdherenceLedger(store, tz=self.settings.tz, clock=clock)
        self.cache = InteractionCache(store)
        self.coordinator = CheckCoordinator()
        self._listeners: List[MedicationSetListener] = []
        self._users = 0

    async def start(self) -> None:
        """Start notifications; apps sharing this tracker may each call it."""
        self._users += 1
        if self._users > 1:
            return
        await self.notifications.init()
        self.notifications.set_response_handler(self.handle_notification_response)

    async def stop(self) -> None:
        if self._users == 0:
            return
        self._users -= 1
        if self._users == 0:
            await self.notifications.shutdown()

    async def sign_out(self) -> None:
        await self.scheduler.cancel_all()

    def on_medication_set_changed(self, callback: MedicationSetListener) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    async def _medication_set_changed(self, user_id: str) -> None:
        for listener in list(self._listeners):
            result = listener(user_id)
            if inspect.isawaitable(result):
                await result

    async def _require_medication(self, medication_id: str) -> Medication:
        medication = await self.store.get_medication(medication_id)
        if medication is None:
            raise KeyError(medication_id)
        return medication

    async def save_medication(self, medication: Medication) -> SaveOutcome:
        """Persist first; a store failure is fatal and nothing gets scheduled."""
        saved = await self.store.save_medication(medication)
        scheduled = await self.scheduler.apply_medication(saved)
        for warning in scheduled.warnings:
            logger.warning("%s: %s", saved.id, warning)
        await self._medication_set_changed(saved.user_id)
        return SaveOutcome(medication=saved, trigger_ids=scheduled.trigger_ids, warnings=scheduled.warnings)

    async def update_reminders(
        self,
        medication_id: str,
        reminder_times: Iterable[str],
        frequency: ReminderFrequency = ReminderFrequency.DAILY,
        days: Iterable[int] = (),
    ) -> SaveOutcome:
        current = await self._require_medication(medication_id)
        updated = Medication.model_validate(
            {
                **current.model_dump(),
                "reminder_times": list(reminder_times),
                "reminder_frequency": frequency,
                "reminder_days": list(days),
            }
        )
        return await self.save_medication(updated)

    async def delete_medication(self, medication_id: str) -> int:
        medication = await self._require_medication(medication_id)
        await self.store.deactivate_medication(medication_id)
        cancelled = await self.scheduler.cancel(medication_id)
        logger.info("deactivated %s and cancelled %d trigger(s)", medication_id, cancelled)
        await self._medication_set_changed(medication.user_id)
        return cancelled

    async def confirm_dose(
        self,
        medication_id: str,
        via: ConfirmedVia = ConfirmedVia.MANUAL,
    ) -> AdherenceLogEntry:
        return await self.ledger.confirm(await self._require_medication(medication_id), via)

    async def skip_dose(
        self,
        medication_id: str,
        via: ConfirmedVia = ConfirmedVia.MANUAL,
    ) -> AdherenceLogEntry:
        return await self.ledger.skip(await self._require_medication(medication_id), via)

    async def today_entry(self, medication_id: str) -> Optional[AdherenceLogEntry]:
        await self._require_medication(medication_id)
        return await self.ledger.today_entry(medication_id)

    async def handle_notification_response(
        self,
        action_id: str,
        payload: Dict[str, Any],
    ) -> Optional[AdherenceLogEntry]:
        return await self.ledger.record_notification_action(action_id, payload)

    def new_interaction_monitor(self) -> InteractionMonitor:
        return InteractionMonitor(
            self.cache,
            self.ai,
            coordinator=self.coordinator,
            ai_enabled=self.ai_enabled,
        )

    async def enrich_draft(self, draft: MedicationDraft) -> MedicationDraft:
        """Fill the draft's empty fields from the AI medication lookup."""
        if not self.ai_enabled:
            return draft
        info = await self.ai.get_medication_info(draft.name)
        if not info:
            return draft

        updates: Dict[str, Any] = {}
        for name in DRAFT_FIELDS:
            value = info.get(name)
            if getattr(draft, name) is None and isinstance(value, str) and value.strip() and value != "null":
                updates[name] = value.strip()
        if draft.category is None:
            category = str(info.get("category") or "").lower()
            if category in {c.value for c in MedicationCategory}:
                updates["category"] = MedicationCategory(category)
            elif info.get("is_prescription") is True:
                updates["category"] = MedicationCategory.PRESCRIPTION
        return draft.model_copy(update=updates)

    async def chat(
        self,
        user_id: str,
        text: str,
        *,
        conversation: Sequence[ChatTurn] = (),
        patient: Optional[PatientContext] = None,
    ) -> ChatTurn:
        medications = await self.store.list_medications(user_id)
        return await run_chat_turn(
            self.ai,
            text,
            conversation=conversation,
            medications=medications,
            patient=patient,
        )


def build_tracker(
    settings: Optional[Settings] = None,
    *,
    store: Optional[MedicationStore] = None,
    notifications: Optional[NotificationService] = None,
    ai: Optional[AIAssistant] = None,
) -> MedTracker:
    settings = settings or get_settings()
    if store is None:
        if settings.database_url:
            sql_store = SqlAlchemyStore.from_url(settings.database_url)
            sql_store.create_all()
            store = sql_store
        else:
            store = InMemoryStore()
    return MedTracker(
        store,
        notifications or InMemoryNotificationService(),
        ai or GeminiClient(settings),
        settings,
    )
