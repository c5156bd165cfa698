from .models import (
    Base,
    InteractionCheckRow,
    MedicationLogRow,
    MedicationRow,
)

__all__ = [
    "Base",
    "InteractionCheckRow",
    "MedicationLogRow",
    "MedicationRow",
]
