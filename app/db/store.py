"""Backend data store used by the reminder, adherence and interaction services.

All reads and writes are scoped to one user and are asynchronous. Driver errors
are translated into :class:`StoreError` subclasses so callers can tell a
deployment problem (missing table, permission) from a plain failure.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Protocol, TypeVar

from sqlalchemy import create_engine, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from shared.contracts.enums import AdherenceStatus
from shared.contracts.models import (
    AdherenceLogEntry,
    InteractionCheckRecord,
    InteractionResult,
    Medication,
)

from .models import Base, InteractionCheckRow, MedicationLogRow, MedicationRow

logger = logging.getLogger(__name__)

T = TypeVar("T")

NOT_PROVISIONED_CODES = {"PGRST205", "42P01"}
PERMISSION_DENIED_CODES = {"42501"}
DUPLICATE_CODES = {"23505"}


class StoreError(RuntimeError):
    title = "Error"
    status_code = 500
    guidance = "Something went wrong while saving your data. Please try again."

    def __init__(self, message: str | None = None, *, code: str | None = None) -> None:
        super().__init__(message or self.guidance)
        self.code = code


class ResourceNotProvisionedError(StoreError):
    title = "Database Setup Required"
    status_code = 503
    guidance = "Database tables are not available. Please run the migrations (alembic upgrade head)."


class StorePermissionError(StoreError):
    title = "Permission Denied"
    status_code = 403
    guidance = "Permission denied. Please check your account permissions."


class DuplicateRecordError(StoreError):
    title = "Already Exists"
    status_code = 409
    guidance = "This medication already exists in your list."


def _error_code(exc: BaseException) -> str | None:
    orig = getattr(exc, "orig", None)
    for source in (orig, exc):
        if source is None:
            continue
        for attr in ("pgcode", "sqlstate"):
            value = getattr(source, attr, None)
            if value:
                return str(value)
    code = getattr(exc, "code", None)
    # SQLAlchemy's own error codes are short hashes such as "e3q8"; only keep
    # codes that look like PostgREST or SQLSTATE values.
    if isinstance(code, str) and (code.startswith("PGRST") or len(code) == 5):
        return code
    return None


def classify_store_error(exc: BaseException) -> StoreError:
    """Map a driver or SQLAlchemy exception onto a StoreError subclass."""
    if isinstance(exc, StoreError):
        return exc

    code = _error_code(exc)
    message = str(exc)
    lowered = message.lower()

    if code in NOT_PROVISIONED_CODES or "no such table" in lowered or "undefinedtable" in lowered:
        return ResourceNotProvisionedError(code=code)
    if code in PERMISSION_DENIED_CODES or "permission denied" in lowered:
        return StorePermissionError(code=code)
    if code in DUPLICATE_CODES or "unique constraint" in lowered:
        return DuplicateRecordError(code=code)
    return StoreError(message or None, code=code)


class MedicationStore(Protocol):
    async def get_medication(self, medication_id: str) -> Medication | None: ...

    async def list_medications(self, user_id: str, *, active_only: bool = True) -> list[Medication]: ...

    async def save_medication(self, medication: Medication) -> Medication: ...

    async def deactivate_medication(self, medication_id: str) -> None: ...

    async def list_logs(self, medication_id: str) -> list[AdherenceLogEntry]: ...

    async def logs_between(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
        status: AdherenceStatus | None = None,
    ) -> list[AdherenceLogEntry]: ...

    async def insert_log(self, entry: AdherenceLogEntry) -> AdherenceLogEntry: ...

    async def update_log(self, entry_id: str, **changes: Any) -> AdherenceLogEntry: ...

    async def latest_interaction_check(self, user_id: str) -> InteractionCheckRecord | None: ...

    async def insert_interaction_check(self, record: InteractionCheckRecord) -> InteractionCheckRecord: ...


def _aware(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value.astimezone(timezone.utc)


@dataclass
class InMemoryStore:
    """Process-local store. ``missing_tables`` simulates an unprovisioned backend."""

    medications: dict[str, Medication] = field(default_factory=dict)
    logs: dict[str, AdherenceLogEntry] = field(default_factory=dict)
    interaction_checks: list[InteractionCheckRecord] = field(default_factory=list)
    missing_tables: set[str] = field(default_factory=set)

    def _require(self, table: str) -> None:
        if table in self.missing_tables:
            raise ResourceNotProvisionedError(code="PGRST205")

    async def get_medication(self, medication_id: str) -> Medication | None:
        self._require("medications")
        return self.medications.get(medication_id)

    async def list_medications(self, user_id: str, *, active_only: bool = True) -> list[Medication]:
        self._require("medications")
        meds = [
            m
            for m in self.medications.values()
            if m.user_id == user_id and (m.active or not active_only)
        ]
        meds.sort(key=lambda m: m.created_at, reverse=True)
        return meds

    async def save_medication(self, medication: Medication) -> Medication:
        self._require("medications")
        self.medications[medication.id] = medication
        return medication

    async def deactivate_medication(self, medication_id: str) -> None:
        self._require("medications")
        medication = self.medications.get(medication_id)
        if medication is None:
            raise KeyError(medication_id)
        self.medications[medication_id] = medication.model_copy(update={"active": False})

    async def list_logs(self, medication_id: str) -> list[AdherenceLogEntry]:
        self._require("medication_logs")
        entries = [e for e in self.logs.values() if e.medication_id == medication_id]
        entries.sort(key=lambda e: e.scheduled_time, reverse=True)
        return entries

    async def logs_between(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
        status: AdherenceStatus | None = None,
    ) -> list[AdherenceLogEntry]:
        self._require("medication_logs")
        return [
            e
            for e in self.logs.values()
            if e.user_id == user_id
            and start <= e.scheduled_time < end
            and (status is None or e.status == status)
        ]

    async def insert_log(self, entry: AdherenceLogEntry) -> AdherenceLogEntry:
        self._require("medication_logs")
        self.logs[entry.id] = entry
        return entry

    async def update_log(self, entry_id: str, **changes: Any) -> AdherenceLogEntry:
        self._require("medication_logs")
        if entry_id not in self.logs:
            raise KeyError(entry_id)
        updated = self.logs[entry_id].model_copy(update=changes)
        self.logs[entry_id] = updated
        return updated

    async def latest_interaction_check(self, user_id: str) -> InteractionCheckRecord | None:
        self._require("interactions")
        records = [r for r in self.interaction_checks if r.user_id == user_id]
        if not records:
            return None
        return max(records, key=lambda r: r.checked_at)

    async def insert_interaction_check(self, record: InteractionCheckRecord) -> InteractionCheckRecord:
        self._require("interactions")
        self.interaction_checks.append(record)
        return record


def _medication_from_row(row: MedicationRow) -> Medication:
    return Medication(
        id=row.id,
        user_id=row.user_id,
        name=row.name,
        generic_name=row.generic_name,
        dosage=row.dosage,
        frequency=row.frequency,
        description=row.description,
        category=row.category,
        reminder_times=list(row.reminder_times or []),
        reminder_frequency=row.reminder_frequency,
        reminder_days=list(row.reminder_days or []),
        active=row.active,
        created_at=_aware(row.created_at),
    )


def _log_from_row(row: MedicationLogRow) -> AdherenceLogEntry:
    return AdherenceLogEntry(
        id=row.id,
        user_id=row.user_id,
        medication_id=row.medication_id,
        scheduled_time=_aware(row.scheduled_time),
        taken_at=_aware(row.taken_at),
        status=row.status,
        confirmed_via=row.confirmed_via,
        notes=row.notes,
        created_at=_aware(row.created_at),
    )


def _check_from_row(row: InteractionCheckRow) -> InteractionCheckRecord:
    return InteractionCheckRecord(
        id=row.id,
        user_id=row.user_id,
        medication_ids=list(row.medication_ids or []),
        analysis=InteractionResult.model_validate(row.analysis or {}),
        severity=row.severity,
        has_warnings=row.has_warnings,
        checked_at=_aware(row.checked_at),
    )


class SqlAlchemyStore:
    """SQLAlchemy-backed store; blocking session work runs in a worker thread."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._sessions = sessionmaker(engine, expire_on_commit=False)

    @classmethod
    def from_url(cls, url: str) -> "SqlAlchemyStore":
        if url == "sqlite://" or (url.startswith("sqlite") and ":memory:" in url):
            engine = create_engine(
                url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            engine = create_engine(url, pool_pre_ping=True)
        return cls(engine)

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)

    def _in_session(self, work: Callable[[Session], T]) -> T:
        with self._sessions.begin() as session:
            return work(session)

    async def _run(self, work: Callable[[Session], T]) -> T:
        try:
            return await asyncio.to_thread(self._in_session, work)
        except SQLAlchemyError as exc:
            error = classify_store_error(exc)
            logger.error("store operation failed (%s): %s", type(error).__name__, exc)
            raise error from exc

    async def get_medication(self, medication_id: str) -> Medication | None:
        def work(session: Session) -> Medication | None:
            row = session.get(MedicationRow, medication_id)
            return _medication_from_row(row) if row is not None else None

        return await self._run(work)

    async def list_medications(self, user_id: str, *, active_only: bool = True) -> list[Medication]:
        def work(session: Session) -> list[Medication]:
            stmt = select(MedicationRow).where(MedicationRow.user_id == user_id)
            if active_only:
                stmt = stmt.where(MedicationRow.active.is_(True))
            stmt = stmt.order_by(MedicationRow.created_at.desc())
            return [_medication_from_row(row) for row in session.scalars(stmt)]

        return await self._run(work)

    async def save_medication(self, medication: Medication) -> Medication:
        def work(session: Session) -> Medication:
            row = session.get(MedicationRow, medication.id)
            if row is None:
                row = MedicationRow(id=medication.id, created_at=medication.created_at)
                session.add(row)
            row.user_id = medication.user_id
            row.name = medication.name
            row.generic_name = medication.generic_name
            row.dosage = medication.dosage
            row.frequency = medication.frequency
            row.description = medication.description
            row.category = medication.category
            row.reminder_time = medication.primary_reminder_time
            row.reminder_times = list(medication.reminder_times)
            row.reminder_frequency = medication.reminder_frequency
            row.reminder_days = list(medication.reminder_days)
            row.active = medication.active
            return medication

        return await self._run(work)

    async def deactivate_medication(self, medication_id: str) -> None:
        def work(session: Session) -> None:
            row = session.get(MedicationRow, medication_id)
            if row is None:
                raise KeyError(medication_id)
            row.active = False

        await self._run(work)

    async def list_logs(self, medication_id: str) -> list[AdherenceLogEntry]:
        def work(session: Session) -> list[AdherenceLogEntry]:
            stmt = (
                select(MedicationLogRow)
                .where(MedicationLogRow.medication_id == medication_id)
                .order_by(MedicationLogRow.scheduled_time.desc())
            )
            return [_log_from_row(row) for row in session.scalars(stmt)]

        return await self._run(work)

    async def logs_between(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
        status: AdherenceStatus | None = None,
    ) -> list[AdherenceLogEntry]:
        def work(session: Session) -> list[AdherenceLogEntry]:
            stmt = select(MedicationLogRow).where(
                MedicationLogRow.user_id == user_id,
                MedicationLogRow.scheduled_time >= _aware(start),
                MedicationLogRow.scheduled_time < _aware(end),
            )
            if status is not None:
                stmt = stmt.where(MedicationLogRow.status == status)
            return [_log_from_row(row) for row in session.scalars(stmt)]

        return await self._run(work)

    async def insert_log(self, entry: AdherenceLogEntry) -> AdherenceLogEntry:
        def work(session: Session) -> AdherenceLogEntry:
            session.add(
                MedicationLogRow(
                    id=entry.id,
                    user_id=entry.user_id,
                    medication_id=entry.medication_id,
                    scheduled_time=_aware(entry.scheduled_time),
                    taken_at=_aware(entry.taken_at),
                    status=entry.status,
                    confirmed_via=entry.confirmed_via,
                    notes=entry.notes,
                    created_at=entry.created_at,
                )
            )
            return entry

        return await self._run(work)

    async def update_log(self, entry_id: str, **changes: Any) -> AdherenceLogEntry:
        def work(session: Session) -> AdherenceLogEntry:
            row = session.get(MedicationLogRow, entry_id)
            if row is None:
                raise KeyError(entry_id)
            for key, value in changes.items():
                setattr(row, key, _aware(value) if isinstance(value, datetime) else value)
            session.flush()
            return _log_from_row(row)

        return await self._run(work)

    async def latest_interaction_check(self, user_id: str) -> InteractionCheckRecord | None:
        def work(session: Session) -> InteractionCheckRecord | None:
            stmt = (
                select(InteractionCheckRow)
                .where(InteractionCheckRow.user_id == user_id)
                .order_by(InteractionCheckRow.checked_at.desc())
                .limit(1)
            )
            row = session.scalars(stmt).first()
            return _check_from_row(row) if row is not None else None

        return await self._run(work)

    async def insert_interaction_check(self, record: InteractionCheckRecord) -> InteractionCheckRecord:
        def work(session: Session) -> InteractionCheckRecord:
            session.add(
                InteractionCheckRow(
                    id=record.id,
                    user_id=record.user_id,
                    medication_ids=list(record.medication_ids),
                    analysis=record.analysis.model_dump(mode="json"),
                    severity=record.severity,
                    has_warnings=record.has_warnings,
                    checked_at=record.checked_at,
                )
            )
            return record

        return await self._run(work)
