from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from app.db.store import StoreError
from services.runtime import settings, tracker
from shared.config import configure_logging
from shared.contracts.enums import NotificationAction, RecurrenceUnit, ReminderFrequency
from shared.contracts.models import AdherenceLogEntry


@asynccontextmanager
async def lifespan(_: FastAPI):
    configure_logging(settings)
    await tracker.start()
    yield
    await tracker.stop()


app = FastAPI(title="scheduler", lifespan=lifespan)


class ReminderUpdateRequest(BaseModel):
    medication_name: str = Field(min_length=1)
    reminder_times: list[str] = Field(default_factory=list)
    frequency: ReminderFrequency = ReminderFrequency.DAILY
    days: list[int] = Field(default_factory=list)


class ScheduleResponse(BaseModel):
    medication_id: str
    trigger_ids: list[str]
    warnings: list[str]


class TriggerDTO(BaseModel):
    trigger_id: str
    time: str
    recurrence: RecurrenceUnit
    weekday: int | None = None
    day_of_month: int | None = None
    next_fire_at: datetime


class NotificationResponseRequest(BaseModel):
    trigger_id: str = Field(min_length=1)
    action_id: NotificationAction


class NotificationResponseResult(BaseModel):
    recorded: bool
    entry: AdherenceLogEntry | None = None


@app.exception_handler(StoreError)
async def store_error_handler(_: Request, exc: StoreError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"title": exc.title, "detail": exc.guidance})


@app.get("/health")
def health() -> dict[str, str | bool]:
    return {
        "status": "ok",
        "service": "scheduler",
        "notifications_started": bool(getattr(tracker.notifications, "started", False)),
    }


@app.put("/medications/{medication_id}/reminders", response_model=ScheduleResponse)
async def put_reminders(medication_id: str, payload: ReminderUpdateRequest) -> ScheduleResponse:
    try:
        if await tracker.store.get_medication(medication_id) is not None:
            result = await tracker.update_reminders(
                medication_id,
                payload.reminder_times,
                payload.frequency,
                payload.days,
            )
        else:
            result = await tracker.scheduler.apply(
                medication_id,
                payload.medication_name,
                payload.reminder_times,
                payload.frequency,
                payload.days,
            )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return ScheduleResponse(
        medication_id=medication_id,
        trigger_ids=result.trigger_ids,
        warnings=result.warnings,
    )


@app.delete("/medications/{medication_id}/reminders")
async def delete_reminders(medication_id: str) -> dict[str, str | int]:
    cancelled = await tracker.scheduler.cancel(medication_id)
    return {"medication_id": medication_id, "cancelled": cancelled}


@app.get("/medications/{medication_id}/triggers", response_model=list[TriggerDTO])
async def list_triggers(medication_id: str) -> list[TriggerDTO]:
    now = datetime.now(timezone.utc)
    triggers = await tracker.scheduler.triggers_for(medication_id)
    return [
        TriggerDTO(
            trigger_id=trigger.trigger_id,
            time=trigger.time,
            recurrence=trigger.recurrence,
            weekday=trigger.weekday,
            day_of_month=trigger.day_of_month,
            next_fire_at=trigger.next_fire_at(now),
        )
        for trigger in sorted(triggers, key=lambda t: t.next_fire_at(now))
    ]


@app.post("/notifications/response", response_model=NotificationResponseResult)
async def notification_response(payload: NotificationResponseRequest) -> NotificationResponseResult:
    try:
        entry = await tracker.notifications.deliver_response(payload.trigger_id, payload.action_id.value)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="trigger not found") from exc
    return NotificationResponseResult(recorded=entry is not None, entry=entry)
