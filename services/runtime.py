"""Tracker shared by every service app running in this process.

Built from ``DATABASE_URL`` so the orchestrator and the scheduler see the same
medications, logs and notification triggers.
"""

from medtracker import build_tracker
from shared.config import get_settings

settings = get_settings()
tracker = build_tracker(settings)
