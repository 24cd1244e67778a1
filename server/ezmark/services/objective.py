"""
OBJECTIVE stage: read the marked options of every multiple-choice question
on every paper and score them against the reference answers.
"""
import asyncio
import os
import posixpath
from typing import Dict, Iterable, List, Optional, Sequence

from loguru import logger
from sqlalchemy.orm import Session

from ezmark.config import settings
from ezmark.models import Schedule
from ezmark.schemas import (
    OBJECTIVE_TYPES,
    ExamData,
    MultipleChoiceQuestion,
    ObjectiveAnswer,
    Paper,
    ScheduleResult,
    StudentPaper,
    StudentRef,
)
from ezmark.services import imaging
from ezmark.services.llm_service import UNKNOWN, LLMRequestError, llm_service
from ezmark.services.pipeline import run_stage, stage_log
from ezmark.services.progress import OBJECTIVE
from ezmark.services.schedule_store import persist_result

logger = logger.bind(module="services.objective")


def is_llm_unknown(answer: Sequence[str]) -> bool:
    return not answer or UNKNOWN in answer


def score_objective(student_answer: Sequence[str], reference: Iterable[str], full_score: float) -> float:
    """Full score when the chosen option set equals the reference set, 0 otherwise; -1 if unreadable."""
    if is_llm_unknown(student_answer):
        return -1
    chosen = {a.strip().upper() for a in student_answer}
    expected = {a.strip().upper() for a in reference}
    return full_score if chosen == expected else 0


def question_image_url(document_id: str, paper: Paper, question_id: str) -> str:
    """Public relative url of a question crop, preferring the one recorded while matching."""
    mapped = paper.question_image_map.get(question_id)
    if mapped:
        return mapped
    return posixpath.join("pipeline", document_id, paper.paper_id, "questions", f"{question_id}.png")


def build_student_papers(papers: Sequence[Paper], students: Sequence) -> List[StudentPaper]:
    """Attach roster data to each paper and start a blank graded paper for it."""
    by_id = {s.student_id: s for s in students}
    student_papers = []
    for paper in papers:
        student = by_id.get(paper.student_id)
        if student is not None:
            paper.name = student.name
            paper.student_document_id = student.document_id
        student_papers.append(StudentPaper(
            student=StudentRef(
                name=paper.name,
                student_id=paper.student_id,
                document_id=paper.student_document_id or "",
                published_at=student.created_at.isoformat() if student is not None and student.created_at else "",
            ),
            paper_id=paper.paper_id,
        ))
    return student_papers


def locate_answer_image(
    document_id: str,
    paper: Paper,
    question: MultipleChoiceQuestion,
    next_top: Dict[str, Optional[float]],
) -> Optional[str]:
    mapped = paper.question_image_map.get(question.id)
    if mapped:
        path = os.path.join(settings.public_dir, mapped)
        if os.path.exists(path):
            return path
    paper_dir = os.path.join(settings.pipeline_dir, document_id, paper.paper_id)
    return imaging.ensure_question_image(
        paper_dir, question.id, question.position, next_top.get(question.id), settings.crop_padding
    )


async def _grade_objective(db: Session, schedule: Schedule, result: ScheduleResult) -> None:
    document_id = schedule.document_id
    exam = ExamData.model_validate(schedule.exam.exam_data or {})
    questions = [c for c in exam.components if c.type in OBJECTIVE_TYPES]

    result.student_papers = build_student_papers(result.papers, schedule.klass.students)
    await persist_result(db, schedule, result)
    stage_log(OBJECTIVE, document_id, f"grading {len(questions)} question(s) on {len(result.papers)} paper(s)")

    next_top = imaging.compute_next_component_top_map(exam.components)
    semaphore = asyncio.Semaphore(settings.llm_concurrency)

    async def grade(paper: Paper, question: MultipleChoiceQuestion) -> ObjectiveAnswer:
        image_path = locate_answer_image(document_id, paper, question, next_top)
        if image_path is None:
            stage_log(OBJECTIVE, document_id, f"no image for {question.id} on {paper.paper_id}")
            answer = [UNKNOWN]
        else:
            async with semaphore:
                try:
                    answer = await llm_service.recognize_mcq(image_path)
                except LLMRequestError as e:
                    logger.error(f"MCQ recognition failed for {question.id} on {paper.paper_id}: {e.describe()}")
                    answer = [UNKNOWN]
        return ObjectiveAnswer(
            question_id=question.id,
            student_answer=answer,
            llm_unknown=is_llm_unknown(answer),
            score=score_objective(answer, question.answer, question.score),
            image_url=question_image_url(document_id, paper, question.id),
        )

    for paper, student_paper in zip(result.papers, result.student_papers):
        student_paper.objective_questions = list(
            await asyncio.gather(*(grade(paper, q) for q in questions))
        )

    unknown = sum(a.llm_unknown for sp in result.student_papers for a in sp.objective_questions)
    stage_log(OBJECTIVE, document_id, f"objective grading complete, {unknown} answer(s) need review")


async def start_objective(document_id: str) -> None:
    await run_stage(document_id, OBJECTIVE, _grade_objective)
