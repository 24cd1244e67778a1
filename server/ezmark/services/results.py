"""
RESULT stage: total every paper and compute exam and per-question statistics.
"""
import math
from typing import List, Sequence

from sqlalchemy.orm import Session

from ezmark.models import Schedule
from ezmark.schemas import ExamData, QuestionStatistics, ScheduleResult, Statistics, StudentPaper
from ezmark.services.pipeline import run_stage, stage_log
from ezmark.services.progress import RESULT


def graded(score: float) -> float:
    """Ungraded entries carry -1 and count as zero."""
    return score if score > 0 else 0


def total_score(student_paper: StudentPaper) -> float:
    return sum(graded(q.score) for q in student_paper.objective_questions) + \
        sum(graded(q.score) for q in student_paper.subjective_questions)


def summarise(values: Sequence[float]) -> dict:
    """average, highest, lowest, median (upper middle) and population standard deviation."""
    if not values:
        return dict(average=0, highest=0, lowest=0, median=0, standard_deviation=0)
    ordered = sorted(values)
    n = len(ordered)
    mean = sum(ordered) / n
    variance = sum((v - mean) ** 2 for v in ordered) / n
    return dict(
        average=mean,
        highest=ordered[-1],
        lowest=ordered[0],
        median=ordered[n // 2],
        standard_deviation=math.sqrt(variance),
    )


def recorded_scores(student_papers: Sequence[StudentPaper], question_id: str) -> List[float]:
    """Score stored for the question on each paper, -1 where it is missing."""
    scores = []
    for paper in student_papers:
        entry = next(
            (q for q in list(paper.objective_questions) + list(paper.subjective_questions)
             if q.question_id == question_id),
            None,
        )
        scores.append(entry.score if entry is not None else -1)
    return scores


def compute_statistics(exam: ExamData, student_papers: Sequence[StudentPaper]) -> Statistics:
    totals = [p.total_score for p in student_papers]
    questions = []
    for question in exam.questions():
        recorded = recorded_scores(student_papers, question.id)
        scores = [graded(s) for s in recorded]
        correct = incorrect = -1
        if question.type == "multiple-choice":
            # unreadable (-1) answers are never correct, even on a zero-point question
            correct = sum(1 for s in recorded if s >= 0 and s == question.score)
            incorrect = len(scores) - correct
        questions.append(QuestionStatistics(
            question_id=question.id,
            correct=correct,
            incorrect=incorrect,
            **summarise(scores),
        ))
    return Statistics(questions=questions, **summarise(totals))


async def _calc_result(db: Session, schedule: Schedule, result: ScheduleResult) -> None:
    exam = ExamData.model_validate(schedule.exam.exam_data or {})
    for student_paper in result.student_papers:
        student_paper.total_score = total_score(student_paper)
    result.statistics = compute_statistics(exam, result.student_papers)
    stage_log(
        RESULT,
        schedule.document_id,
        f"{len(result.student_papers)} paper(s), average {result.statistics.average:.2f}",
    )


async def calc_result(document_id: str) -> None:
    await run_stage(document_id, RESULT, _calc_result)
