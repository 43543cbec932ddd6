"""FastAPI application for the clinic appointment queue.

The app exposes the queue engine over HTTP: clinic settings, booking,
check-in, calling patients, absence handling, reordering, schedules with
wait estimates, free slots, recent disruptions and a server-sent events
stream of queue changes.  Configuration comes from environment variables
(see :mod:`config`).  Redis is optional and used for the shared estimate
cache and event publishing.
"""

from __future__ import annotations

import asyncio
import json
import logging
import queue
import sys
from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from config import PORT, get_redis
from errors import QueueError
from events import channel_for, CHANNEL_PATTERN
from queue_engine import QueueEngine, build_engine
from schemas import (
    CallNextPatientDTO,
    ClinicQueueConfig,
    CreateQueueEntryDTO,
    DayClosurePreview,
    DayClosureSummary,
    Disruption,
    EndDayDTO,
    MarkAbsentDTO,
    PerformedByDTO,
    QueueEntry,
    QueuePositionInfo,
    QueueSummary,
    ReorderQueueDTO,
    ResolutionRequest,
    ScheduleSnapshot,
    TimeSlot,
)

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Clinic Appointment Queue")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def on_startup() -> None:
    engine = build_engine()
    engine.start_background()
    app.state.engine = engine
    logger.info("Clinic queue engine started")


@app.on_event("shutdown")
def on_shutdown() -> None:
    engine = getattr(app.state, "engine", None)
    if engine is not None:
        engine.stop_background()


def get_engine() -> QueueEngine:
    engine = getattr(app.state, "engine", None)
    if engine is None:
        engine = build_engine()
        app.state.engine = engine
    return engine


@app.exception_handler(QueueError)
async def queue_error_handler(request: Request, exc: QueueError):
    if exc.is_operational:
        logger.info(f"{request.method} {request.url.path} -> {exc.status_code} {exc.code}: {exc.message}")
    else:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ===== CLINIC SETTINGS =====


@app.post("/clinics/{clinic_id}/config", response_model=ClinicQueueConfig)
def configure_clinic(clinic_id: str, clinic_config: ClinicQueueConfig, engine: QueueEngine = Depends(get_engine)):
    clinic_config = clinic_config.model_copy(update={"clinic_id": clinic_id})
    return engine.configure_clinic(clinic_config)


@app.get("/clinics/{clinic_id}/config", response_model=ClinicQueueConfig)
def get_clinic_config(clinic_id: str, engine: QueueEngine = Depends(get_engine)):
    return engine.get_clinic_config(clinic_id)


@app.get("/clinics/{clinic_id}/disruptions", response_model=List[Disruption])
def recent_disruptions(clinic_id: str, engine: QueueEngine = Depends(get_engine)):
    return engine.recent_disruptions(clinic_id)


@app.get("/clinics/{clinic_id}/events")
def clinic_events(clinic_id: str, day: date = Query(..., alias="date"), engine: QueueEngine = Depends(get_engine)) -> List[Dict[str, Any]]:
    """Audit trail of queue events for one day."""
    return engine.list_events(clinic_id, day)


# ===== APPOINTMENTS =====


@app.post("/appointments", response_model=QueueEntry, status_code=201)
def create_appointment(dto: CreateQueueEntryDTO, engine: QueueEngine = Depends(get_engine)):
    return engine.create_appointment(dto)


@app.get("/appointments/{appointment_id}", response_model=QueueEntry)
def get_appointment(appointment_id: str, engine: QueueEngine = Depends(get_engine)):
    return engine.get_entry(appointment_id)


@app.get("/appointments/{appointment_id}/overrides")
def appointment_overrides(appointment_id: str, engine: QueueEngine = Depends(get_engine)) -> List[Dict[str, Any]]:
    return engine.get_overrides(appointment_id)


@app.post("/appointments/{appointment_id}/check-in", response_model=QueueEntry)
def check_in(appointment_id: str, body: Optional[PerformedByDTO] = None, engine: QueueEngine = Depends(get_engine)):
    return engine.check_in_patient(appointment_id, body.performed_by if body else None)


@app.post("/appointments/{appointment_id}/absent", response_model=QueueEntry)
def mark_absent(appointment_id: str, body: PerformedByDTO, engine: QueueEngine = Depends(get_engine)):
    dto = MarkAbsentDTO(appointment_id=appointment_id, performed_by=body.performed_by, reason=body.reason)
    return engine.mark_patient_absent(dto)


@app.post("/appointments/{appointment_id}/return", response_model=QueueEntry)
def mark_returned(appointment_id: str, body: PerformedByDTO, engine: QueueEngine = Depends(get_engine)):
    return engine.mark_patient_returned(appointment_id, body.performed_by)


@app.post("/appointments/{appointment_id}/resolve", response_model=QueueEntry)
def resolve_absent(appointment_id: str, body: ResolutionRequest, engine: QueueEngine = Depends(get_engine)):
    return engine.resolve_absent_appointment(appointment_id, body.performed_by, body.resolution)


@app.post("/appointments/{appointment_id}/complete", response_model=QueueEntry)
def complete(appointment_id: str, body: Optional[PerformedByDTO] = None, engine: QueueEngine = Depends(get_engine)):
    return engine.complete_appointment(appointment_id, body.performed_by if body else None)


@app.post("/appointments/{appointment_id}/cancel", response_model=QueueEntry)
def cancel(appointment_id: str, body: Optional[PerformedByDTO] = None, engine: QueueEngine = Depends(get_engine)):
    if body is None:
        return engine.cancel_appointment(appointment_id)
    return engine.cancel_appointment(appointment_id, body.performed_by, body.reason)


@app.post("/appointments/{appointment_id}/no-show", response_model=QueueEntry)
def no_show(appointment_id: str, body: Optional[PerformedByDTO] = None, engine: QueueEngine = Depends(get_engine)):
    if body is None:
        return engine.mark_no_show(appointment_id)
    return engine.mark_no_show(appointment_id, body.performed_by, body.reason)


# ===== QUEUE =====


@app.post("/queue/call-next", response_model=QueueEntry)
def call_next(dto: CallNextPatientDTO, engine: QueueEngine = Depends(get_engine)):
    return engine.call_next_patient(dto)


@app.post("/queue/reorder", response_model=List[QueueEntry])
def reorder(dto: ReorderQueueDTO, engine: QueueEngine = Depends(get_engine)):
    return engine.reorder_queue(dto)


@app.post("/queue/end-day", response_model=DayClosureSummary)
def end_day(dto: EndDayDTO, engine: QueueEngine = Depends(get_engine)):
    return engine.end_day(dto)


@app.get("/queue/{clinic_id}/{staff_id}/{day}/closure-preview", response_model=DayClosurePreview)
def closure_preview(clinic_id: str, staff_id: str, day: date, engine: QueueEngine = Depends(get_engine)):
    """What ending the day would change."""
    return engine.preview_end_day(clinic_id, staff_id, day)


@app.get("/queue/{clinic_id}/position", response_model=QueuePositionInfo)
def queue_position(
    clinic_id: str,
    patient_id: str,
    day: Optional[date] = Query(None, alias="date"),
    engine: QueueEngine = Depends(get_engine)
):
    return engine.get_queue_position(clinic_id, patient_id, day)


@app.get("/queue/{clinic_id}/summary", response_model=QueueSummary)
def queue_summary(clinic_id: str, day: Optional[date] = Query(None, alias="date"), engine: QueueEngine = Depends(get_engine)):
    return engine.get_queue_summary(clinic_id, day)


@app.get("/queue/{clinic_id}/{staff_id}/{day}", response_model=ScheduleSnapshot)
def schedule(clinic_id: str, staff_id: str, day: date, engine: QueueEngine = Depends(get_engine)):
    return engine.get_schedule(clinic_id, staff_id, day)


@app.get("/slots/{clinic_id}/{staff_id}/{day}", response_model=List[TimeSlot])
def slots(
    clinic_id: str,
    staff_id: str,
    day: date,
    duration: Optional[int] = None,
    engine: QueueEngine = Depends(get_engine),
):
    return engine.available_slots(clinic_id, staff_id, day, duration)


# ===== REAL-TIME =====


@app.get("/events")
async def queue_events(clinic_id: Optional[str] = None, engine: QueueEngine = Depends(get_engine)):
    """Server-Sent Events stream of queue changes, optionally for one clinic."""

    async def event_stream():
        redis_client = get_redis()
        if not redis_client:
            # In-process delivery from this worker's engine
            inbox: "queue.Queue[str]" = queue.Queue()

            def forward(event) -> None:
                if clinic_id is None or event.clinic_id == clinic_id:
                    inbox.put(event.model_dump_json())

            unsubscribe = engine.publisher.subscribe(forward)
            try:
                while True:
                    try:
                        yield f"data: {inbox.get_nowait()}\n\n"
                    except queue.Empty:
                        yield f"data: {json.dumps({'type': 'heartbeat'})}\n\n"
                        await asyncio.sleep(5)
            finally:
                unsubscribe()
        else:
            pubsub = redis_client.pubsub()
            if clinic_id:
                pubsub.subscribe(channel_for(clinic_id))
            else:
                pubsub.psubscribe(CHANNEL_PATTERN)

            try:
                while True:
                    try:
                        message = pubsub.get_message(timeout=5.0)
                        if message and message['type'] in ('message', 'pmessage'):
                            yield f"data: {message['data']}\n\n"
                        else:
                            yield f"data: {json.dumps({'type': 'heartbeat'})}\n\n"
                        await asyncio.sleep(0.1)
                    except Exception as e:
                        logger.warning(f"Event stream error: {e}")
                        yield f"data: {json.dumps({'type': 'error', 'message': str(e)})}\n\n"
                        await asyncio.sleep(1)
            finally:
                pubsub.close()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "Access-Control-Allow-Origin": "*",
        }
    )


@app.get("/health")
def health(engine: QueueEngine = Depends(get_engine)) -> Dict[str, Any]:
    """Health check endpoint."""
    return {
        "status": "healthy",
        "redis": get_redis() is not None,
        "recalculation": engine.recalc_worker.get_stats() if engine.recalc_worker else None,
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)
