from __future__ import annotations

import inspect
import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol

from shared.contracts.enums import NotificationAction
from shared.contracts.models import REMINDER_CATEGORY, ReminderTrigger, TriggerRequest

logger = logging.getLogger(__name__)

ResponseHandler = Callable[[str, Dict[str, Any]], Any]

REMINDER_ACTIONS = [
    {"identifier": NotificationAction.CONFIRM_TAKEN.value, "button_title": "I Took It"},
    {"identifier": NotificationAction.SKIP.value, "button_title": "Skip"},
]


class NotificationError(RuntimeError):
    pass


class NotificationPermissionError(NotificationError):
    pass


class NotificationService(Protocol):
    async def init(self) -> None: ...

    async def shutdown(self) -> None: ...

    async def schedule(self, request: TriggerRequest) -> str: ...

    async def cancel(self, trigger_id: str) -> None: ...

    async def list_all(self) -> List[ReminderTrigger]: ...

    async def cancel_all(self) -> None: ...

    def set_response_handler(self, handler: ResponseHandler) -> None: ...


class InMemoryNotificationService:
    """Notification subsystem kept in process memory.

    ``permission_granted`` and ``fail_schedule_after`` let callers reproduce a
    denied permission prompt or a platform error part way through scheduling.
    """

    def __init__(
        self,
        *,
        permission_granted: bool = True,
        fail_schedule_after: Optional[int] = None,
        fail_cancel: bool = False,
    ) -> None:
        self.permission_granted = permission_granted
        self.fail_schedule_after = fail_schedule_after
        self.fail_cancel = fail_cancel
        self.categories: Dict[str, List[Dict[str, str]]] = {}
        self._triggers: Dict[str, ReminderTrigger] = {}
        self._handler: Optional[ResponseHandler] = None
        self._started = False
        self._scheduled_count = 0

    @property
    def started(self) -> bool:
        return self._started

    async def init(self) -> None:
        self.categories[REMINDER_CATEGORY] = list(REMINDER_ACTIONS)
        self._started = True
        logger.info("notification service started (permission_granted=%s)", self.permission_granted)

    async def shutdown(self) -> None:
        self._started = False
        self._handler = None
        logger.info("notification service stopped")

    def _require_started(self) -> None:
        if not self._started:
            raise NotificationError("notification service used before init()")

    async def schedule(self, request: TriggerRequest) -> str:
        self._require_started()
        if not self.permission_granted:
            raise NotificationPermissionError("notification permission not granted")
        if self.fail_schedule_after is not None and self._scheduled_count >= self.fail_schedule_after:
            raise NotificationError("platform rejected the notification request")

        trigger_id = f"ntf_{uuid.uuid4().hex[:12]}"
        self._triggers[trigger_id] = ReminderTrigger(trigger_id=trigger_id, **request.model_dump())
        self._scheduled_count += 1
        return trigger_id

    async def cancel(self, trigger_id: str) -> None:
        self._require_started()
        if self.fail_cancel:
            raise NotificationError(f"platform failed to cancel {trigger_id}")
        self._triggers.pop(trigger_id, None)

    async def list_all(self) -> List[ReminderTrigger]:
        self._require_started()
        return list(self._triggers.values())

    async def cancel_all(self) -> None:
        self._require_started()
        self._triggers.clear()

    def upcoming(self, after: datetime, limit: int = 10) -> List[tuple[datetime, ReminderTrigger]]:
        fires = sorted(
            ((trigger.next_fire_at(after), trigger) for trigger in self._triggers.values()),
            key=lambda item: item[0],
        )
        return fires[:limit]

    def set_response_handler(self, handler: ResponseHandler) -> None:
        self._handler = handler

    async def deliver_response(self, trigger_id: str, action_id: str) -> Any:
        """Simulate the user pressing a notification action button."""
        self._require_started()
        trigger = self._triggers.get(trigger_id)
        if trigger is None:
            raise KeyError(trigger_id)
        if self._handler is None:
            logger.warning("notification response %s dropped: no handler registered", action_id)
            return None
        result = self._handler(action_id, dict(trigger.payload))
        if inspect.isawaitable(result):
            result = await result
        return result
