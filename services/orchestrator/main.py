from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from app.db.store import StoreError
from services.orchestrator.agent_workflow import ChatTurnFailed
from services.orchestrator.interaction_cache import InteractionMonitor
from services.runtime import settings, tracker
from shared.config import configure_logging
from shared.contracts.models import (
    AdherenceLogEntry,
    ChatTurn,
    InteractionResult,
    Medication,
    PatientContext,
)

monitors: dict[str, InteractionMonitor] = {}


@asynccontextmanager
async def lifespan(_: FastAPI):
    configure_logging(settings)
    await tracker.start()
    yield
    await tracker.stop()


app = FastAPI(title="orchestrator", lifespan=lifespan)


class SaveMedicationResponse(BaseModel):
    medication: Medication
    trigger_ids: list[str]
    warnings: list[str]


class TodayStatus(BaseModel):
    medication_id: str
    entry: AdherenceLogEntry | None = None


class TakenSummary(BaseModel):
    user_id: str
    taken: int
    total: int


class InteractionRefreshRequest(BaseModel):
    user_id: str = Field(min_length=1)
    patient: PatientContext = Field(default_factory=PatientContext)


class InteractionRefreshResponse(BaseModel):
    user_id: str
    medication_ids: list[str]
    result: InteractionResult | None = None
    in_progress: bool = False


class ChatRequest(BaseModel):
    user_id: str = Field(min_length=1)
    text: str = Field(min_length=1)
    conversation: list[ChatTurn] = Field(default_factory=list)
    patient: PatientContext = Field(default_factory=PatientContext)


@app.exception_handler(StoreError)
async def store_error_handler(_: Request, exc: StoreError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"title": exc.title, "detail": exc.guidance})


@app.get("/health")
def health() -> dict[str, str | bool]:
    return {"status": "ok", "service": "orchestrator", "ai_configured": tracker.ai_enabled}


@app.post("/medications", response_model=SaveMedicationResponse)
async def save_medication(medication: Medication) -> SaveMedicationResponse:
    outcome = await tracker.save_medication(medication)
    return SaveMedicationResponse(
        medication=outcome.medication,
        trigger_ids=outcome.trigger_ids,
        warnings=outcome.warnings,
    )


@app.delete("/medications/{medication_id}")
async def delete_medication(medication_id: str) -> dict[str, str | int]:
    try:
        cancelled = await tracker.delete_medication(medication_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="medication not found") from exc
    return {"medication_id": medication_id, "cancelled_triggers": cancelled}


@app.post("/medications/{medication_id}/confirm", response_model=AdherenceLogEntry)
async def confirm_dose(medication_id: str) -> AdherenceLogEntry:
    try:
        return await tracker.confirm_dose(medication_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="medication not found") from exc


@app.post("/medications/{medication_id}/skip", response_model=AdherenceLogEntry)
async def skip_dose(medication_id: str) -> AdherenceLogEntry:
    try:
        return await tracker.skip_dose(medication_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="medication not found") from exc


@app.get("/medications/{medication_id}/today", response_model=TodayStatus)
async def today_status(medication_id: str) -> TodayStatus:
    try:
        entry = await tracker.today_entry(medication_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="medication not found") from exc
    return TodayStatus(medication_id=medication_id, entry=entry)


@app.get("/medications/{medication_id}/calendar")
async def calendar(medication_id: str, year: int, month: int) -> dict[str, str]:
    if not 1 <= month <= 12:
        raise HTTPException(status_code=400, detail="invalid month")
    statuses = await tracker.ledger.calendar(medication_id, year, month)
    return {day.isoformat(): status for day, status in sorted(statuses.items())}


@app.get("/users/{user_id}/taken-today", response_model=TakenSummary)
async def taken_today(user_id: str) -> TakenSummary:
    medications = await tracker.store.list_medications(user_id)
    taken, total = await tracker.ledger.taken_today(user_id, medications)
    return TakenSummary(user_id=user_id, taken=taken, total=total)


@app.post("/interactions/refresh", response_model=InteractionRefreshResponse)
async def refresh_interactions(payload: InteractionRefreshRequest) -> InteractionRefreshResponse:
    monitor = monitors.get(payload.user_id)
    if monitor is None:
        monitor = monitors[payload.user_id] = tracker.new_interaction_monitor()

    medications = await tracker.store.list_medications(payload.user_id)
    result = await monitor.refresh(payload.user_id, medications, payload.patient)
    return InteractionRefreshResponse(
        user_id=payload.user_id,
        medication_ids=sorted(m.id for m in medications),
        result=result,
        in_progress=monitor.in_progress,
    )


@app.post("/chat", response_model=ChatTurn)
async def chat(payload: ChatRequest) -> ChatTurn:
    try:
        return await tracker.chat(
            payload.user_id,
            payload.text,
            conversation=payload.conversation,
            patient=payload.patient,
        )
    except ChatTurnFailed as exc:
        raise HTTPException(
            status_code=502,
            detail={"message": exc.reason, "user_text": exc.user_text},
        ) from exc
