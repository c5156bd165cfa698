from enum import Enum


class ReminderFrequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class RecurrenceUnit(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class AdherenceStatus(str, Enum):
    TAKEN = "taken"
    SKIPPED = "skipped"
    # Schema default only; nothing transitions an unlogged day into it yet.
    MISSED = "missed"


class ConfirmedVia(str, Enum):
    NOTIFICATION = "notification"
    MANUAL = "manual"
    AUTO = "auto"


class MedicationCategory(str, Enum):
    OTC = "otc"
    PRESCRIPTION = "prescription"
    SUPPLEMENT = "supplement"


class InteractionSeverity(str, Enum):
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"
    CRITICAL = "critical"


class CheckSeverity(str, Enum):
    SAFE = "safe"
    WARNING = "warning"
    CRITICAL = "critical"


class ChatRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class NotificationAction(str, Enum):
    CONFIRM_TAKEN = "confirm_taken"
    SKIP = "skip"
