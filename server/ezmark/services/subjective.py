"""
SUBJECTIVE stage and on-demand AI grading suggestions.

The stage only prepares one entry per open / fill-in-blank question for the
teacher to grade; suggestions are requested per answer through
ask_subjective, or for every entry up front when prefetching is enabled.
"""
import asyncio
import os
from typing import List, Optional

from loguru import logger
from sqlalchemy.orm import Session

from ezmark.config import settings
from ezmark.models import Schedule
from ezmark.schemas import SUBJECTIVE_TYPES, ExamData, Paper, ScheduleResult, SubjectiveAnswer, SubjectiveSuggestion
from ezmark.services.llm_service import LLMRequestError, llm_service
from ezmark.services.objective import question_image_url
from ezmark.services.pipeline import run_stage, stage_log
from ezmark.services.progress import SUBJECTIVE

logger = logger.bind(module="services.subjective")


def resolve_public_image(image_url: str) -> Optional[str]:
    """
    Map a public relative url ("pipeline/..", "/pipeline/..") or an absolute
    path inside the public directory to a file path. None when the file is
    missing or lies outside the public directory.
    """
    if not image_url:
        return None
    public_dir = os.path.realpath(settings.public_dir)
    if os.path.isabs(image_url) and os.path.realpath(image_url).startswith(public_dir + os.sep):
        candidate = os.path.realpath(image_url)
    else:
        candidate = os.path.realpath(os.path.join(public_dir, image_url.lstrip("/")))
    if not candidate.startswith(public_dir + os.sep):
        logger.warning(f"Rejected image outside public directory: {image_url}")
        return None
    if not os.path.isfile(candidate):
        return None
    return candidate


def build_subjective_answers(document_id: str, exam: ExamData, paper: Paper) -> List[SubjectiveAnswer]:
    return [
        SubjectiveAnswer(
            question_id=q.id,
            image_url=question_image_url(document_id, paper, q.id),
            question_number=q.question_number,
        )
        for q in exam.components
        if q.type in SUBJECTIVE_TYPES
    ]


async def ask_subjective(question: str, answer: str, score: float, image_path: str) -> SubjectiveSuggestion:
    return await llm_service.ask_subjective(question, answer, score, image_path)


async def _prefetch(document_id: str, exam: ExamData, result: ScheduleResult) -> None:
    semaphore = asyncio.Semaphore(settings.llm_concurrency)

    async def suggest(entry: SubjectiveAnswer) -> None:
        question = exam.find(entry.question_id)
        image_path = resolve_public_image(entry.image_url)
        if question is None or image_path is None:
            return
        async with semaphore:
            try:
                entry.ai_suggestion = await llm_service.ask_subjective(
                    question.content, question.answer, question.score, image_path
                )
            except LLMRequestError as e:
                logger.error(f"Suggestion for {entry.question_id} failed: {e.describe()}")

    entries = [e for sp in result.student_papers for e in sp.subjective_questions]
    await asyncio.gather(*(suggest(e) for e in entries))
    stage_log(SUBJECTIVE, document_id, f"prefetched {len(entries)} suggestion(s)")


async def _prepare_subjective(db: Session, schedule: Schedule, result: ScheduleResult) -> None:
    document_id = schedule.document_id
    exam = ExamData.model_validate(schedule.exam.exam_data or {})
    papers = {p.paper_id: p for p in result.papers}

    for student_paper in result.student_papers:
        paper = papers.get(student_paper.paper_id)
        if paper is None:
            paper = Paper(paper_id=student_paper.paper_id, start_page=0, end_page=0)
        student_paper.subjective_questions = build_subjective_answers(document_id, exam, paper)

    stage_log(SUBJECTIVE, document_id, f"prepared subjective entries for {len(result.student_papers)} paper(s)")
    if settings.subjective_prefetch:
        await _prefetch(document_id, exam, result)


async def start_subjective(document_id: str) -> None:
    await run_stage(document_id, SUBJECTIVE, _prepare_subjective)
