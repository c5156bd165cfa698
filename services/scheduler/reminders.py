from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List

from shared.contracts.enums import RecurrenceUnit, ReminderFrequency
from shared.contracts.models import Medication, ReminderConfig, ReminderTrigger, TriggerRequest

from .notifications import NotificationError, NotificationPermissionError, NotificationService

logger = logging.getLogger(__name__)

REMINDER_TYPE = "medication_reminder"


@dataclass
class ScheduleResult:
    medication_id: str
    trigger_ids: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.warnings


def build_trigger_requests(
    medication_id: str,
    medication_name: str,
    config: ReminderConfig,
) -> List[TriggerRequest]:
    """Expand reminder times x recurrence days into one request per trigger."""
    payload = {
        "medication_id": medication_id,
        "medication_name": medication_name,
        "type": REMINDER_TYPE,
    }
    body = f"Time to take {medication_name}"

    requests: List[TriggerRequest] = []
    for time in config.times:
        if config.frequency == ReminderFrequency.DAILY:
            requests.append(
                TriggerRequest(time=time, recurrence=RecurrenceUnit.DAILY, body=body, payload=dict(payload))
            )
        elif config.frequency == ReminderFrequency.WEEKLY:
            for weekday in config.days:
                requests.append(
                    TriggerRequest(
                        time=time,
                        recurrence=RecurrenceUnit.WEEKLY,
                        weekday=weekday,
                        body=body,
                        payload=dict(payload),
                    )
                )
        else:
            for day in config.days:
                requests.append(
                    TriggerRequest(
                        time=time,
                        recurrence=RecurrenceUnit.MONTHLY,
                        day_of_month=day,
                        body=body,
                        payload=dict(payload),
                    )
                )
    return requests


class ReminderScheduler:
    """Keeps a medication's notification triggers in line with its reminder fields."""

    def __init__(self, notifications: NotificationService) -> None:
        self.notifications = notifications
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, medication_id: str) -> asyncio.Lock:
        return self._locks.setdefault(medication_id, asyncio.Lock())

    async def apply(
        self,
        medication_id: str,
        medication_name: str,
        reminder_times: Iterable[str],
        frequency: ReminderFrequency = ReminderFrequency.DAILY,
        days: Iterable[int] = (),
    ) -> ScheduleResult:
        """Replace every trigger of ``medication_id`` with the ones the config calls for.

        Invalid configurations raise ``ValueError`` before anything is touched.
        Notification failures never raise: they come back as warnings and the
        triggers created before the failure are reported.
        """
        config = ReminderConfig(times=list(reminder_times), frequency=frequency, days=list(days))
        result = ScheduleResult(medication_id=medication_id)

        async with self._lock_for(medication_id):
            await self.cancel(medication_id)
            if not config.times:
                return result

            for request in build_trigger_requests(medication_id, medication_name, config):
                try:
                    trigger_id = await self.notifications.schedule(request)
                except NotificationPermissionError as exc:
                    logger.warning("reminders for %s not scheduled: %s", medication_id, exc)
                    result.warnings.append(
                        f"Notifications are disabled, so reminders for {medication_name} were not scheduled."
                    )
                    break
                except NotificationError as exc:
                    logger.error("failed to schedule reminder for %s: %s", medication_id, exc)
                    result.warnings.append(
                        f"Some reminders for {medication_name} could not be scheduled: {exc}"
                    )
                    break
                result.trigger_ids.append(trigger_id)

        logger.info(
            "scheduled %d trigger(s) for %s (%s)",
            len(result.trigger_ids),
            medication_id,
            config.frequency.value,
        )
        return result

    async def apply_medication(self, medication: Medication) -> ScheduleResult:
        if not medication.active:
            return await self.apply(medication.id, medication.name, [])
        return await self.apply(
            medication.id,
            medication.name,
            medication.reminder_times,
            medication.reminder_frequency,
            medication.reminder_days,
        )

    async def triggers_for(self, medication_id: str) -> List[ReminderTrigger]:
        triggers = await self.notifications.list_all()
        return [t for t in triggers if t.medication_id == medication_id]

    async def cancel(self, medication_id: str) -> int:
        """Cancel every trigger tagged with ``medication_id``; failures are only logged."""
        try:
            tagged = await self.triggers_for(medication_id)
        except NotificationError as exc:
            logger.error("could not list triggers for %s: %s", medication_id, exc)
            return 0

        cancelled = 0
        for trigger in tagged:
            try:
                await self.notifications.cancel(trigger.trigger_id)
                cancelled += 1
            except NotificationError as exc:
                logger.error("failed to cancel trigger %s: %s", trigger.trigger_id, exc)
        return cancelled

    async def cancel_all(self) -> None:
        try:
            await self.notifications.cancel_all()
        except NotificationError as exc:
            logger.error("failed to cancel all reminders: %s", exc)
