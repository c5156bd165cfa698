from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from shared.contracts.enums import (
    AdherenceStatus,
    CheckSeverity,
    ConfirmedVia,
    MedicationCategory,
    ReminderFrequency,
)


class Base(DeclarativeBase):
    """Declarative base for application models."""


def _enum(enum_cls, name: str) -> Enum:
    return Enum(enum_cls, name=name, values_callable=lambda members: [m.value for m in members])


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class MedicationRow(TimestampMixin, Base):
    __tablename__ = "medications"
    __table_args__ = (Index("ix_medications_user_id_active", "user_id", "active"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    generic_name: Mapped[str | None] = mapped_column(String(255))
    dosage: Mapped[str | None] = mapped_column(String(128))
    frequency: Mapped[str | None] = mapped_column(String(128))
    description: Mapped[str | None] = mapped_column(Text)
    category: Mapped[MedicationCategory | None] = mapped_column(_enum(MedicationCategory, "medication_category"))

    # reminder_time mirrors reminder_times[0] for older clients.
    reminder_time: Mapped[str | None] = mapped_column(String(5))
    reminder_times: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    reminder_frequency: Mapped[ReminderFrequency] = mapped_column(
        _enum(ReminderFrequency, "reminder_frequency"),
        nullable=False,
        default=ReminderFrequency.DAILY,
    )
    reminder_days: Mapped[list[int]] = mapped_column(JSON, nullable=False, default=list)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    logs: Mapped[list[MedicationLogRow]] = relationship(
        back_populates="medication", cascade="all, delete-orphan"
    )


class MedicationLogRow(Base):
    __tablename__ = "medication_logs"
    __table_args__ = (
        Index(
            "ix_medication_logs_user_medication_scheduled",
            "user_id",
            "medication_id",
            "scheduled_time",
        ),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    medication_id: Mapped[str] = mapped_column(
        ForeignKey("medications.id", ondelete="CASCADE"), nullable=False, index=True
    )
    scheduled_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    taken_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    status: Mapped[AdherenceStatus] = mapped_column(
        _enum(AdherenceStatus, "adherence_status"), nullable=False, default=AdherenceStatus.MISSED
    )
    confirmed_via: Mapped[ConfirmedVia | None] = mapped_column(_enum(ConfirmedVia, "confirmed_via"))
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    medication: Mapped[MedicationRow] = relationship(back_populates="logs")


class InteractionCheckRow(Base):
    __tablename__ = "interactions"
    __table_args__ = (Index("ix_interactions_user_id_checked_at", "user_id", "checked_at"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    medication_ids: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    analysis: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    severity: Mapped[CheckSeverity] = mapped_column(_enum(CheckSeverity, "check_severity"), nullable=False)
    has_warnings: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    checked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
