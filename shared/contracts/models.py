from __future__ import annotations

import calendar
import re
import uuid
from datetime import datetime, timedelta, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .enums import (
    AdherenceStatus,
    ChatRole,
    CheckSeverity,
    ConfirmedVia,
    InteractionSeverity,
    MedicationCategory,
    RecurrenceUnit,
    ReminderFrequency,
)


REMINDER_CATEGORY = "medication_reminder"
_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})$")


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def normalize_time(value: str) -> str:
    """Return ``value`` as zero-padded ``HH:MM`` or raise ValueError."""
    match = _TIME_RE.match((value or "").strip())
    if not match:
        raise ValueError(f"invalid reminder time {value!r}, expected HH:MM")
    hour, minute = int(match.group(1)), int(match.group(2))
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"invalid reminder time {value!r}, out of range")
    return f"{hour:02d}:{minute:02d}"


def split_time(value: str) -> tuple[int, int]:
    hour, minute = normalize_time(value).split(":")
    return int(hour), int(minute)


class ReminderConfig(BaseModel):
    """Reminder fields of a medication, normalized.

    Times are deduplicated and sorted. ``days`` holds weekday indices (0 = Sunday)
    for weekly reminders and days of the month for monthly ones; it is always
    empty for daily reminders.
    """

    times: list[str] = Field(default_factory=list)
    frequency: ReminderFrequency = ReminderFrequency.DAILY
    days: list[int] = Field(default_factory=list)

    @field_validator("times")
    @classmethod
    def normalize_times(cls, value: list[str]) -> list[str]:
        return sorted({normalize_time(t) for t in value})

    @model_validator(mode="after")
    def validate_days(self) -> "ReminderConfig":
        if self.frequency == ReminderFrequency.DAILY:
            self.days = []
            return self

        low, high = (0, 6) if self.frequency == ReminderFrequency.WEEKLY else (1, 31)
        for day in self.days:
            if not low <= day <= high:
                raise ValueError(f"{self.frequency.value} reminder day {day} outside {low}-{high}")
        self.days = sorted(set(self.days))

        if self.times and not self.days:
            raise ValueError(f"at least one day is required for {self.frequency.value} reminders")
        return self


class Medication(BaseModel):
    id: str = Field(default_factory=lambda: _new_id("med"))
    user_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    generic_name: str | None = None
    dosage: str | None = None
    frequency: str | None = None
    description: str | None = None
    category: MedicationCategory | None = None

    reminder_times: list[str] = Field(default_factory=list)
    reminder_frequency: ReminderFrequency = ReminderFrequency.DAILY
    reminder_days: list[int] = Field(default_factory=list)

    active: bool = True
    created_at: datetime = Field(default_factory=_utcnow)

    @model_validator(mode="after")
    def normalize_reminders(self) -> "Medication":
        config = ReminderConfig(
            times=self.reminder_times,
            frequency=self.reminder_frequency,
            days=self.reminder_days,
        )
        self.reminder_times = config.times
        self.reminder_days = config.days
        return self

    @property
    def reminder_config(self) -> ReminderConfig:
        return ReminderConfig(
            times=self.reminder_times,
            frequency=self.reminder_frequency,
            days=self.reminder_days,
        )

    @property
    def primary_reminder_time(self) -> str | None:
        return self.reminder_times[0] if self.reminder_times else None


class TriggerRequest(BaseModel):
    """What the notification subsystem is asked to schedule."""

    time: str
    recurrence: RecurrenceUnit
    weekday: int | None = Field(default=None, ge=0, le=6)
    day_of_month: int | None = Field(default=None, ge=1, le=31)
    title: str = "Medication Reminder"
    body: str = ""
    category_identifier: str = REMINDER_CATEGORY
    payload: dict[str, Any] = Field(default_factory=dict)

    @field_validator("time")
    @classmethod
    def validate_time(cls, value: str) -> str:
        return normalize_time(value)

    @model_validator(mode="after")
    def validate_recurrence(self) -> "TriggerRequest":
        if self.recurrence == RecurrenceUnit.WEEKLY and self.weekday is None:
            raise ValueError("weekday is required for weekly triggers")
        if self.recurrence == RecurrenceUnit.MONTHLY and self.day_of_month is None:
            raise ValueError("day_of_month is required for monthly triggers")
        return self


class ReminderTrigger(TriggerRequest):
    trigger_id: str

    @property
    def medication_id(self) -> str | None:
        return self.payload.get("medication_id")

    def next_fire_at(self, after: datetime) -> datetime:
        """First firing strictly after ``after``, in ``after``'s timezone."""
        hour, minute = split_time(self.time)

        if self.recurrence == RecurrenceUnit.DAILY:
            candidate = after.replace(hour=hour, minute=minute, second=0, microsecond=0)
            return candidate if candidate > after else candidate + timedelta(days=1)

        if self.recurrence == RecurrenceUnit.WEEKLY:
            today = (after.weekday() + 1) % 7  # Sunday-based, like reminder days
            ahead = (self.weekday - today) % 7
            candidate = (after + timedelta(days=ahead)).replace(
                hour=hour, minute=minute, second=0, microsecond=0
            )
            return candidate if candidate > after else candidate + timedelta(days=7)

        # Monthly triggers on day 29-31 skip months that do not have that day.
        year, month = after.year, after.month
        for _ in range(14):
            if self.day_of_month <= calendar.monthrange(year, month)[1]:
                candidate = after.replace(
                    year=year,
                    month=month,
                    day=self.day_of_month,
                    hour=hour,
                    minute=minute,
                    second=0,
                    microsecond=0,
                )
                if candidate > after:
                    return candidate
            month += 1
            if month > 12:
                year, month = year + 1, 1
        raise ValueError(f"no firing found for day {self.day_of_month}")


class AdherenceLogEntry(BaseModel):
    id: str = Field(default_factory=lambda: _new_id("log"))
    user_id: str
    medication_id: str
    scheduled_time: datetime
    taken_at: datetime | None = None
    status: AdherenceStatus = AdherenceStatus.MISSED
    confirmed_via: ConfirmedVia | None = None
    notes: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)


class Interaction(BaseModel):
    model_config = ConfigDict(extra="ignore")

    drug1: str
    drug2: str
    severity: InteractionSeverity
    description: str = ""

    @field_validator("severity", mode="before")
    @classmethod
    def normalize_severity(cls, value: Any) -> Any:
        if isinstance(value, str):
            lowered = value.strip().lower()
            return "moderate" if lowered == "medium" else lowered
        return value


class InteractionResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    safe: bool = True
    interactions: list[Interaction] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    @classmethod
    def safe_default(cls) -> "InteractionResult":
        return cls(safe=True, interactions=[], warnings=[])


class InteractionCheckRecord(BaseModel):
    id: str = Field(default_factory=lambda: _new_id("chk"))
    user_id: str
    medication_ids: list[str]
    analysis: InteractionResult
    severity: CheckSeverity
    has_warnings: bool = False
    checked_at: datetime = Field(default_factory=_utcnow)

    @field_validator("medication_ids")
    @classmethod
    def sort_ids(cls, value: list[str]) -> list[str]:
        return sorted(value)


class PatientContext(BaseModel):
    full_name: str | None = None
    age: int | None = Field(default=None, ge=0)
    weight: float | None = Field(default=None, gt=0)
    height: float | None = Field(default=None, gt=0)
    gender: str | None = None
    allergies: list[str] = Field(default_factory=list)
    conditions: list[str] = Field(default_factory=list)
    smoking: bool | None = None
    alcohol_use: Literal["none", "occasional", "regular"] | None = None
    blood_type: str | None = None
    rh_factor: str | None = None
    medication_history: list[str] = Field(default_factory=list)
    family_medical_history: list[str] = Field(default_factory=list)

    @property
    def bmi(self) -> float | None:
        if not self.weight or not self.height:
            return None
        return round(self.weight / (self.height / 100) ** 2, 1)


class NoAction(BaseModel):
    kind: Literal["no_action"] = "no_action"


class MedicationDraft(BaseModel):
    kind: Literal["medication_draft"] = "medication_draft"

    name: str = Field(min_length=1)
    generic_name: str | None = None
    dosage: str | None = None
    frequency: str | None = None
    description: str | None = None
    category: MedicationCategory | None = None


ExtractionResult = Annotated[Union[NoAction, MedicationDraft], Field(discriminator="kind")]


class ExtractedReply(BaseModel):
    display_text: str
    action: ExtractionResult = Field(default_factory=NoAction)

    @property
    def draft(self) -> MedicationDraft | None:
        return self.action if isinstance(self.action, MedicationDraft) else None


class ChatTurn(BaseModel):
    role: ChatRole
    content: str
    draft: MedicationDraft | None = None
    created_at: datetime = Field(default_factory=_utcnow)
