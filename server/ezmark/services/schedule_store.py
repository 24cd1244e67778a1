"""
Loading and persisting schedule results.

Pipeline stages run as background tasks with their own database session, so
every save commits immediately and notifies SSE subscribers.
"""
from datetime import datetime, timezone
import traceback
from typing import Optional

from loguru import logger
from pydantic import ValidationError
from sqlalchemy.orm import Session, joinedload, selectinload

from ezmark.models import Class, Schedule
from ezmark.schemas import ScheduleResult, StageError
from ezmark.services.progress_events import progress_feed

logger = logger.bind(module="services.schedule_store")


def load_schedule(db: Session, document_id: str) -> Optional[Schedule]:
    """Fetch a schedule with exam, class roster and teacher populated."""
    return (
        db.query(Schedule)
        .options(
            joinedload(Schedule.exam),
            joinedload(Schedule.teacher),
            joinedload(Schedule.klass).selectinload(Class.students),
        )
        .filter(Schedule.document_id == document_id)
        .first()
    )


def ensure_schedule_result(raw) -> ScheduleResult:
    """Normalise a stored result; missing or malformed data becomes the default."""
    if isinstance(raw, ScheduleResult):
        return raw
    if not isinstance(raw, dict):
        return ScheduleResult()
    try:
        return ScheduleResult.model_validate(raw)
    except ValidationError as e:
        logger.warning(f"Stored schedule result is malformed, resetting to default: {e.error_count()} error(s)")
        return ScheduleResult()


def serialise_schedule_result(result: ScheduleResult) -> dict:
    return result.model_dump(by_alias=True, mode="json")


def read_result(schedule: Schedule) -> ScheduleResult:
    return ensure_schedule_result(schedule.result)


async def persist_result(db: Session, schedule: Schedule, result: ScheduleResult) -> None:
    schedule.result = serialise_schedule_result(result)
    db.commit()
    progress_feed.publish_progress(schedule.document_id, result)


def build_stage_error(stage: str, message: str, error: Optional[BaseException] = None) -> StageError:
    details = None
    if error is not None:
        details = "".join(traceback.format_exception(type(error), error, error.__traceback__))
    return StageError(
        stage=stage,
        message=message,
        details=details,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )
