from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any, Callable, Dict, Iterable, List, Optional

from app.db.store import MedicationStore
from shared.contracts.enums import AdherenceStatus, ConfirmedVia, NotificationAction
from shared.contracts.models import AdherenceLogEntry, Medication, split_time

logger = logging.getLogger(__name__)

NOTIFICATION_ACTION_STATUS = {
    NotificationAction.CONFIRM_TAKEN.value: AdherenceStatus.TAKEN,
    NotificationAction.SKIP.value: AdherenceStatus.SKIPPED,
}


def day_bucket(value: datetime, tz: tzinfo) -> date:
    """Calendar day of ``value`` in ``tz``; naive values are read as ``tz`` local time."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=tz)
    return value.astimezone(tz).date()


def resolve_today_entry(
    medication_id: str,
    entries: Iterable[AdherenceLogEntry],
    *,
    today: date,
    tz: tzinfo,
) -> Optional[AdherenceLogEntry]:
    """Return the entry whose scheduled day is ``today``, ignoring time of day."""
    for entry in entries:
        if entry.medication_id == medication_id and day_bucket(entry.scheduled_time, tz) == today:
            return entry
    return None


def month_statuses(
    entries: Iterable[AdherenceLogEntry],
    year: int,
    month: int,
    tz: tzinfo,
) -> Dict[date, str]:
    """Per-day calendar status: ``taken``, ``missed`` or ``partial`` when both occur."""
    by_day: Dict[date, set] = {}
    for entry in entries:
        day = day_bucket(entry.scheduled_time, tz)
        if day.year == year and day.month == month:
            by_day.setdefault(day, set()).add(entry.status)

    statuses: Dict[date, str] = {}
    for day, seen in by_day.items():
        has_taken = AdherenceStatus.TAKEN in seen
        has_missed = bool(seen & {AdherenceStatus.SKIPPED, AdherenceStatus.MISSED})
        if has_taken and has_missed:
            statuses[day] = "partial"
        elif has_taken:
            statuses[day] = "taken"
        elif has_missed:
            statuses[day] = "missed"
    return statuses


def adherence_rate(entries: Iterable[AdherenceLogEntry]) -> float:
    logged = list(entries)
    if not logged:
        return 0.0
    taken = sum(1 for e in logged if e.status == AdherenceStatus.TAKEN)
    return round(taken / len(logged), 3)


class AdherenceLedger:
    """Records taken/skipped doses, one log row per medication per calendar day.

    An unlogged day stays unlogged; nothing here turns it into ``missed``.
    """

    def __init__(
        self,
        store: MedicationStore,
        tz: tzinfo = timezone.utc,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.tz = tz
        self._clock = clock
        self._locks: Dict[str, asyncio.Lock] = {}

    def now(self) -> datetime:
        current = self._clock() if self._clock else datetime.now(self.tz)
        if current.tzinfo is None:
            current = current.replace(tzinfo=self.tz)
        return current.astimezone(self.tz)

    def today(self) -> date:
        return self.now().date()

    def scheduled_time_for(self, medication: Medication, day: date) -> datetime:
        """Day bucket timestamp: the primary reminder time that day, else day start."""
        at = time.min
        if medication.primary_reminder_time:
            hour, minute = split_time(medication.primary_reminder_time)
            at = time(hour, minute)
        return datetime.combine(day, at, tzinfo=self.tz).astimezone(timezone.utc)

    async def history(self, medication_id: str) -> List[AdherenceLogEntry]:
        return await self.store.list_logs(medication_id)

    async def today_entry(self, medication_id: str) -> Optional[AdherenceLogEntry]:
        entries = await self.store.list_logs(medication_id)
        return resolve_today_entry(medication_id, entries, today=self.today(), tz=self.tz)

    async def confirm(
        self,
        medication: Medication,
        via: ConfirmedVia = ConfirmedVia.MANUAL,
    ) -> AdherenceLogEntry:
        return await self._record(medication, AdherenceStatus.TAKEN, via)

    async def skip(
        self,
        medication: Medication,
        via: ConfirmedVia = ConfirmedVia.MANUAL,
    ) -> AdherenceLogEntry:
        return await self._record(medication, AdherenceStatus.SKIPPED, via)

    async def _record(
        self,
        medication: Medication,
        status: AdherenceStatus,
        via: ConfirmedVia,
    ) -> AdherenceLogEntry:
        lock = self._locks.setdefault(medication.id, asyncio.Lock())
        async with lock:
            now = self.now()
            taken_at = now.astimezone(timezone.utc) if status == AdherenceStatus.TAKEN else None
            existing = await self.today_entry(medication.id)

            if existing is not None:
                entry = await self.store.update_log(
                    existing.id,
                    status=status,
                    taken_at=taken_at,
                    confirmed_via=via,
                )
            else:
                entry = await self.store.insert_log(
                    AdherenceLogEntry(
                        user_id=medication.user_id,
                        medication_id=medication.id,
                        scheduled_time=self.scheduled_time_for(medication, now.date()),
                        taken_at=taken_at,
                        status=status,
                        confirmed_via=via,
                    )
                )

        logger.info("%s marked %s via %s", medication.id, status.value, via.value)
        return entry

    async def record_notification_action(
        self,
        action_id: str,
        payload: Dict[str, Any],
    ) -> Optional[AdherenceLogEntry]:
        """Handle a notification action button; unknown actions and payloads are ignored."""
        status = NOTIFICATION_ACTION_STATUS.get(action_id)
        medication_id = payload.get("medication_id")
        if status is None or not medication_id:
            return None

        medication = await self.store.get_medication(medication_id)
        if medication is None:
            logger.warning("notification action %s for unknown medication %s", action_id, medication_id)
            return None
        return await self._record(medication, status, ConfirmedVia.NOTIFICATION)

    async def taken_today(self, user_id: str, medications: Iterable[Medication]) -> tuple[int, int]:
        """(distinct medications taken today, medications listed)."""
        meds = list(medications)
        if not meds:
            return 0, 0

        today = self.today()
        start = datetime.combine(today, time.min, tzinfo=self.tz).astimezone(timezone.utc)
        end = datetime.combine(today + timedelta(days=1), time.min, tzinfo=self.tz).astimezone(timezone.utc)
        logs = await self.store.logs_between(user_id, start, end, status=AdherenceStatus.TAKEN)
        listed = {m.id for m in meds}
        taken = {log.medication_id for log in logs} & listed
        return len(taken), len(meds)

    async def calendar(self, medication_id: str, year: int, month: int) -> Dict[date, str]:
        return month_statuses(await self.history(medication_id), year, month, self.tz)
