"""
Background runner shared by the grading pipeline stages.

A stage function receives an open session, the populated schedule and its
parsed result, mutates the result (persisting intermediate states if it
wants clients to see them) and returns. The runner then marks the stage done,
or records the failure on the result so polling clients can show it.

At most one stage runs per schedule at a time; a second start while one is
in flight is skipped.
"""
from typing import Awaitable, Callable, Dict, Optional

from loguru import logger
from sqlalchemy.orm import Session

from ezmark.database import SessionLocal
from ezmark.models import Schedule
from ezmark.schemas import ScheduleResult
from ezmark.services.llm_service import LLMRequestError
from ezmark.services.progress import Stage, finish_stage
from ezmark.services.schedule_store import build_stage_error, load_schedule, persist_result, read_result

logger = logger.bind(module="services.pipeline")

StageWork = Callable[[Session, Schedule, ScheduleResult], Awaitable[None]]

# schedule document_id -> name of the stage currently running
running_stages: Dict[str, str] = {}


class PipelineError(Exception):
    """A stage cannot continue; the message is shown to the teacher."""


def stage_log(stage: Stage, document_id: str, message: str) -> None:
    logger.info(f"[{stage.name.lower()}:{document_id}] {message}")


def running_stage(document_id: str) -> Optional[str]:
    return running_stages.get(document_id)


async def run_stage(document_id: str, stage: Stage, work: StageWork) -> None:
    current = running_stages.get(document_id)
    if current is not None:
        logger.warning(f"{stage.name}({document_id}): skipped, {current} is still running")
        return
    running_stages[document_id] = stage.name

    db = SessionLocal()
    try:
        schedule = load_schedule(db, document_id)
        if schedule is None:
            logger.error(f"{stage.name}({document_id}): schedule not found")
            return

        result = read_result(schedule)
        try:
            await work(db, schedule, result)
            finish_stage(result, stage)
            await persist_result(db, schedule, result)
            stage_log(stage, document_id, f"stage finished, progress={result.progress.value}")
        except Exception as e:
            db.rollback()
            if isinstance(e, PipelineError):
                message = str(e)
                logger.error(f"{stage.name}({document_id}): {message}")
            elif isinstance(e, LLMRequestError):
                message = e.describe()
                logger.error(f"{stage.name}({document_id}): {message}")
            else:
                message = str(e) or f"Unknown {stage.name.lower()} error"
                logger.exception(f"{stage.name}({document_id}) failed")
            result.error = build_stage_error(stage.name, message, e)
            await persist_result(db, schedule, result)
    finally:
        db.close()
        running_stages.pop(document_id, None)
