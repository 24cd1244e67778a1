"""
Schedules: CRUD, PDF upload, progress events and the grading pipeline.
"""
import asyncio
import json
import os
import shutil
import uuid
from typing import Awaitable, Callable, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, HTTPException, Request, UploadFile
from fastapi.responses import StreamingResponse
from loguru import logger
from sqlalchemy.orm import Session

from ezmark.config import settings
from ezmark.database import get_db
from ezmark.models import Class, Exam, Schedule, User
from ezmark.routes.content import get_or_404, get_user_or_404
from ezmark.schemas import (
    AskSubjectiveRequest,
    PipelineStartResponse,
    ScheduleCreateEnvelope,
    ScheduleResult,
    ScheduleUpdateEnvelope,
)
from ezmark.serializers import schedule_to_dict
from ezmark.services.llm_service import LLMConfigurationError, LLMRequestError
from ezmark.services.matching import start_matching
from ezmark.services.objective import start_objective
from ezmark.services.pipeline import running_stage
from ezmark.services.progress import MATCH, OBJECTIVE, RESULT, SUBJECTIVE, InvalidTransition, Stage, begin_stage, mark_uploaded
from ezmark.services.results import calc_result
from ezmark.services.schedule_store import load_schedule, persist_result, read_result, serialise_schedule_result
from ezmark.services.progress_events import progress_feed
from ezmark.services.subjective import ask_subjective as request_subjective_suggestion
from ezmark.services.subjective import resolve_public_image, start_subjective

logger = logger.bind(module="routes.schedules")

router = APIRouter()

PING_INTERVAL_SECONDS = 30.0


def get_schedule_or_404(db: Session, document_id: str) -> Schedule:
    schedule = load_schedule(db, document_id)
    if schedule is None:
        raise HTTPException(status_code=404, detail=f"Schedule {document_id} not found")
    return schedule


# =============================================================================
# Grading pipeline
# =============================================================================

@router.post("/schedules/askSubjective")
async def ask_subjective(request: AskSubjectiveRequest):
    """
    Ask the vision model for a grading suggestion on one subjective answer.
    The teacher keeps the final say; nothing is persisted here.
    """
    image_path = resolve_public_image(request.image_url)
    if image_path is None:
        raise HTTPException(status_code=404, detail=f"Image not found: {request.image_url}")

    try:
        suggestion = await request_subjective_suggestion(
            request.question, request.answer, request.score, image_path
        )
    except (LLMRequestError, LLMConfigurationError) as e:
        message = e.describe() if isinstance(e, LLMRequestError) else str(e)
        logger.error(f"askSubjective failed: {message}")
        raise HTTPException(status_code=502, detail=message)

    return suggestion.model_dump(by_alias=True)


async def _start_stage(
    document_id: str,
    stage: Stage,
    task: Callable[[str], Awaitable[None]],
    background_tasks: BackgroundTasks,
    db: Session,
) -> PipelineStartResponse:
    schedule = get_schedule_or_404(db, document_id)
    current = running_stage(document_id)
    if current is not None:
        raise HTTPException(status_code=409, detail=f"{current} is already running for schedule {document_id}")

    result = read_result(schedule)
    try:
        begin_stage(result, stage)
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))

    await persist_result(db, schedule, result)
    background_tasks.add_task(task, document_id)
    logger.info(f"Queued {stage.name} for schedule {document_id}")
    return PipelineStartResponse(
        success=True,
        message=f"{stage.name.capitalize()} started",
        document_id=document_id,
    )


@router.post("/schedules/{document_id}/startMatching", response_model=PipelineStartResponse)
async def start_matching_endpoint(document_id: str, background_tasks: BackgroundTasks, db: Session = Depends(get_db)):
    return await _start_stage(document_id, MATCH, start_matching, background_tasks, db)


@router.post("/schedules/{document_id}/startObjective", response_model=PipelineStartResponse)
async def start_objective_endpoint(document_id: str, background_tasks: BackgroundTasks, db: Session = Depends(get_db)):
    return await _start_stage(document_id, OBJECTIVE, start_objective, background_tasks, db)


@router.post("/schedules/{document_id}/startSubjective", response_model=PipelineStartResponse)
async def start_subjective_endpoint(document_id: str, background_tasks: BackgroundTasks, db: Session = Depends(get_db)):
    return await _start_stage(document_id, SUBJECTIVE, start_subjective, background_tasks, db)


@router.post("/schedules/{document_id}/calcResult", response_model=PipelineStartResponse)
async def calc_result_endpoint(document_id: str, background_tasks: BackgroundTasks, db: Session = Depends(get_db)):
    return await _start_stage(document_id, RESULT, calc_result, background_tasks, db)


# =============================================================================
# Schedule CRUD
# =============================================================================

@router.get("/schedules")
def list_schedules(teacher: Optional[str] = None, db: Session = Depends(get_db)):
    query = db.query(Schedule)
    owner = get_user_or_404(db, teacher)
    if owner is not None:
        query = query.filter(Schedule.teacher_id == owner.id)
    return {"data": [schedule_to_dict(s) for s in query.order_by(Schedule.id).all()]}


@router.get("/schedules/{document_id}")
def get_schedule(document_id: str, db: Session = Depends(get_db)):
    return {"data": schedule_to_dict(get_schedule_or_404(db, document_id))}


@router.post("/schedules")
def create_schedule(body: ScheduleCreateEnvelope, db: Session = Depends(get_db)):
    payload = body.data
    exam = get_or_404(db, Exam, payload.exam, "Exam")
    klass = get_or_404(db, Class, payload.class_, "Class")
    owner: Optional[User] = get_user_or_404(db, payload.teacher)

    schedule = Schedule(
        name=payload.name,
        exam_id=exam.id,
        class_id=klass.id,
        teacher_id=owner.id if owner else None,
        result=serialise_schedule_result(ScheduleResult()),
    )
    db.add(schedule)
    db.commit()
    logger.info(f"Created schedule {schedule.document_id} for exam {exam.document_id} / class {klass.document_id}")
    return {"data": schedule_to_dict(get_schedule_or_404(db, schedule.document_id))}


@router.put("/schedules/{document_id}")
async def update_schedule(document_id: str, body: ScheduleUpdateEnvelope, db: Session = Depends(get_db)):
    """Rename a schedule or store teacher edits to its result (answer fixes, subjective scores)."""
    schedule = get_schedule_or_404(db, document_id)
    payload = body.data
    if payload.name is not None:
        schedule.name = payload.name
    if payload.result is not None:
        await persist_result(db, schedule, payload.result)
    else:
        db.commit()
    db.refresh(schedule)
    return {"data": schedule_to_dict(schedule)}


@router.delete("/schedules/{document_id}")
def delete_schedule(document_id: str, db: Session = Depends(get_db)):
    schedule = get_schedule_or_404(db, document_id)
    data = schedule_to_dict(schedule, populate=False)
    db.delete(schedule)
    db.commit()
    return {"data": data}


@router.post("/schedules/{document_id}/upload")
async def upload_schedule_pdf(document_id: str, file: UploadFile = File(...), db: Session = Depends(get_db)):
    """Store the scanned answer sheets and reset the schedule to UPLOADED."""
    schedule = get_schedule_or_404(db, document_id)
    filename = os.path.basename(file.filename or "")
    if not filename.lower().endswith(".pdf"):
        raise HTTPException(status_code=400, detail="Only PDF files can be uploaded")

    os.makedirs(settings.uploads_dir, exist_ok=True)
    stored_name = f"{uuid.uuid4().hex[:12]}_{filename}"
    with open(os.path.join(settings.uploads_dir, stored_name), "wb") as buffer:
        shutil.copyfileobj(file.file, buffer)

    pipeline_dir = os.path.join(settings.pipeline_dir, document_id)
    if os.path.exists(pipeline_dir):
        shutil.rmtree(pipeline_dir)

    await persist_result(db, schedule, mark_uploaded(f"/uploads/{stored_name}"))
    logger.info(f"Uploaded {filename} for schedule {document_id}")
    db.refresh(schedule)
    return {"data": schedule_to_dict(schedule)}


async def progress_stream(document_id: str, request: Request):
    """Server-sent event frames for one schedule, with a comment ping while idle."""
    queue = progress_feed.subscribe(document_id)
    try:
        while True:
            if await request.is_disconnected():
                break
            try:
                event = await asyncio.wait_for(queue.get(), timeout=PING_INTERVAL_SECONDS)
                yield f"data: {json.dumps(event)}\n\n"
            except asyncio.TimeoutError:
                yield ": ping\n\n"
    finally:
        progress_feed.unsubscribe(document_id, queue)


@router.get("/schedules/{document_id}/events")
async def schedule_events(document_id: str, request: Request, db: Session = Depends(get_db)):
    """Stream progress changes of a schedule as server-sent events."""
    get_schedule_or_404(db, document_id)
    return StreamingResponse(progress_stream(document_id, request), media_type="text/event-stream")
