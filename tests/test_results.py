"""Tests for totals and statistics."""

import math

import pytest

from ezmark.schemas import ExamData, ObjectiveAnswer, StudentPaper, StudentRef, SubjectiveAnswer
from ezmark.services.results import compute_statistics, summarise, total_score


def graded_paper(paper_id, q1, q2, q3=None):
    subjective = [SubjectiveAnswer(question_id="q2", score=q2)]
    if q3 is not None:
        subjective.append(SubjectiveAnswer(question_id="q3", score=q3))
    sp = StudentPaper(
        student=StudentRef(student_id=paper_id),
        paper_id=paper_id,
        objective_questions=[ObjectiveAnswer(question_id="q1", student_answer=["A"], score=q1)],
        subjective_questions=subjective,
    )
    sp.total_score = total_score(sp)
    return sp


def test_ungraded_scores_count_as_zero():
    assert graded_paper("p1", q1=-1, q2=4, q3=-1).total_score == 4


def test_summarise_uses_upper_median_and_population_std():
    figures = summarise([1, 2, 3, 4])
    assert figures["average"] == 2.5
    assert figures["median"] == 3
    assert figures["highest"] == 4
    assert figures["lowest"] == 1
    assert figures["standard_deviation"] == pytest.approx(math.sqrt(1.25))


def test_summarise_empty():
    assert summarise([]) == dict(average=0, highest=0, lowest=0, median=0, standard_deviation=0)


def test_compute_statistics(exam_data):
    exam = ExamData.model_validate(exam_data)
    papers = [
        graded_paper("p1", q1=2, q2=5, q3=3),
        graded_paper("p2", q1=0, q2=3, q3=-1),
        graded_paper("p3", q1=2, q2=1),  # q3 missing
    ]
    stats = compute_statistics(exam, papers)

    assert [p.total_score for p in papers] == [10, 3, 3]
    assert stats.average == pytest.approx(16 / 3)
    assert stats.highest == 10
    assert stats.lowest == 3
    assert stats.median == 3

    by_id = {q.question_id: q for q in stats.questions}
    assert set(by_id) == {"q1", "q2", "q3"}
    assert (by_id["q1"].correct, by_id["q1"].incorrect) == (2, 1)
    assert (by_id["q2"].correct, by_id["q2"].incorrect) == (-1, -1)
    assert by_id["q2"].median == 3
    assert by_id["q3"].average == 1
    assert by_id["q3"].lowest == 0


def test_compute_statistics_without_papers(exam_data):
    stats = compute_statistics(ExamData.model_validate(exam_data), [])
    assert (stats.average, stats.highest, stats.lowest, stats.median, stats.standard_deviation) == (0, 0, 0, 0, 0)
    q1 = next(q for q in stats.questions if q.question_id == "q1")
    assert (q1.correct, q1.incorrect) == (0, 0)


def test_unreadable_answer_is_not_correct_on_zero_point_question(exam_data):
    exam_data["components"][1]["score"] = 0
    exam = ExamData.model_validate(exam_data)
    papers = [graded_paper("p1", q1=0, q2=5), graded_paper("p2", q1=-1, q2=5)]

    q1 = next(q for q in compute_statistics(exam, papers).questions if q.question_id == "q1")

    assert (q1.correct, q1.incorrect) == (1, 1)
