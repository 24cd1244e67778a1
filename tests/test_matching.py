"""Tests for paper splitting rules and paper/student matching."""

from types import SimpleNamespace

import pytest

from ezmark.schemas import ExamData, Paper
from ezmark.services.matching import (
    match_papers,
    normalise_header,
    normalise_uploads_path,
    resolve_pages_per_exam,
    string_similarity,
)
from ezmark.services.pipeline import PipelineError


def student(student_id, name="", document_id=None):
    return SimpleNamespace(student_id=student_id, name=name, document_id=document_id or f"doc-{student_id}")


def paper(index, student_id=""):
    return Paper(
        paper_id=f"student-{index + 1}",
        start_page=index,
        end_page=index + 1,
        student_id=student_id,
        header_img_url=f"pipeline/x/student-{index + 1}/questions/header.png",
    )


class TestStringSimilarity:
    def test_identical(self):
        assert string_similarity("S001", "S001") == 1.0

    def test_empty(self):
        assert string_similarity("", "S001") == 0.0

    def test_case_insensitive(self):
        assert string_similarity("abc", "ABC") == 1.0

    def test_one_substitution(self):
        assert string_similarity("20230001", "20230007") == pytest.approx(7 / 8)


class TestNormaliseUploadsPath:
    @pytest.mark.parametrize("raw,expected", [
        ("/uploads/scan.pdf", "uploads/scan.pdf"),
        ("/strapi/uploads/scan.pdf", "uploads/scan.pdf"),
        ("uploads/scan.pdf", "uploads/scan.pdf"),
        ("http://localhost:1337/uploads/scan.pdf", "uploads/scan.pdf"),
        ("", ""),
    ])
    def test_forms(self, raw, expected):
        assert normalise_uploads_path(raw) == expected


class TestPagesPerExam:
    def test_from_component_positions(self, exam_data):
        exam_data["components"][2]["position"]["pageIndex"] = 1
        exam = ExamData.model_validate(exam_data)
        assert resolve_pages_per_exam(exam, total_pages=6, student_count=3) == 2

    def test_falls_back_to_even_split(self, exam_data):
        exam = ExamData.model_validate(exam_data)
        # positions say 1 page per paper, but the scan has 2 per student
        assert resolve_pages_per_exam(exam, total_pages=4, student_count=2) == 2

    def test_no_positions_and_uneven_pages(self):
        exam = ExamData.model_validate({"components": [{"id": "h", "type": "default-header"}]})
        with pytest.raises(PipelineError, match="Unable to determine exam page count"):
            resolve_pages_per_exam(exam, total_pages=5, student_count=2)

    def test_mismatch(self, exam_data):
        exam_data["components"][2]["position"]["pageIndex"] = 1
        exam = ExamData.model_validate(exam_data)
        with pytest.raises(PipelineError, match="page count mismatch"):
            resolve_pages_per_exam(exam, total_pages=5, student_count=2)


class TestNormaliseHeader:
    def test_defaults_missing_position(self):
        exam = ExamData.model_validate({"components": [{"id": "h", "type": "default-header"}]})
        header = normalise_header(exam, pages_per_exam=2)
        assert header.position.page_index == 0
        assert (header.position.width, header.position.height) == (210, 60)

    def test_out_of_range_page(self):
        exam = ExamData.model_validate({"components": [{
            "id": "h", "type": "default-header",
            "position": {"pageIndex": 5, "top": 0, "left": 0, "width": 0, "height": 0},
        }]})
        header = normalise_header(exam, pages_per_exam=2)
        assert header.position.page_index == 0
        assert header.position.width == 210

    def test_missing_header(self):
        exam = ExamData.model_validate({"components": [{"id": "d", "type": "divider"}]})
        with pytest.raises(PipelineError, match="header component"):
            normalise_header(exam, pages_per_exam=1)


class TestMatchPapers:
    def test_exact_matches(self):
        outcome = match_papers([paper(0, "S002"), paper(1, "S001")], [student("S001"), student("S002")])
        assert outcome.result.done is True
        assert {(m.paper_id, m.student_id) for m in outcome.result.matched} == {
            ("student-1", "S002"), ("student-2", "S001"),
        }
        assert outcome.assignments["student-1"].student_id == "S002"

    def test_fuzzy_match_absorbs_ocr_slip(self):
        outcome = match_papers([paper(0, "2023O001")], [student("20230001")])
        assert outcome.result.done is True
        assert outcome.result.matched[0].student_id == "20230001"

    def test_below_threshold_stays_unmatched(self):
        outcome = match_papers([paper(0, "999")], [student("S001")])
        assert outcome.result.done is False
        assert outcome.result.unmatched.student_ids == ["S001"]
        assert [p.paper_id for p in outcome.result.unmatched.papers] == ["student-1"]

    def test_unknown_is_never_fuzzy_matched(self):
        outcome = match_papers([paper(0, "Unknown")], [student("Unknow")])
        assert outcome.result.matched == []

    def test_student_matched_only_once(self):
        outcome = match_papers([paper(0, "S001"), paper(1, "S001")], [student("S001"), student("X999")])
        assert len(outcome.result.matched) == 1
        assert outcome.result.unmatched.student_ids == ["X999"]
        assert [p.paper_id for p in outcome.result.unmatched.papers] == ["student-2"]
        assert outcome.result.done is False
