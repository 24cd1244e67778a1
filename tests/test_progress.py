"""Tests for the grading pipeline state machine."""

import pytest

from ezmark.schemas import Progress, ScheduleResult, StageError
from ezmark.services.progress import (
    MATCH,
    OBJECTIVE,
    RESULT,
    SUBJECTIVE,
    InvalidTransition,
    begin_stage,
    finish_stage,
    mark_uploaded,
)


class TestBeginStage:
    @pytest.mark.parametrize("current", [Progress.UPLOADED, Progress.MATCH_START, Progress.MATCH_DONE])
    def test_matching_can_restart(self, current):
        result = begin_stage(ScheduleResult(progress=current), MATCH)
        assert result.progress == Progress.MATCH_START

    def test_matching_requires_upload(self):
        with pytest.raises(InvalidTransition) as exc:
            begin_stage(ScheduleResult(progress=Progress.CREATED), MATCH)
        assert "MATCH" in str(exc.value)
        assert "CREATED" in str(exc.value)

    def test_objective_only_after_matching(self):
        with pytest.raises(InvalidTransition):
            begin_stage(ScheduleResult(progress=Progress.UPLOADED), OBJECTIVE)
        assert begin_stage(ScheduleResult(progress=Progress.MATCH_DONE), OBJECTIVE).progress == Progress.OBJECTIVE_START

    def test_subjective_only_after_objective(self):
        with pytest.raises(InvalidTransition):
            begin_stage(ScheduleResult(progress=Progress.MATCH_DONE), SUBJECTIVE)
        assert begin_stage(ScheduleResult(progress=Progress.OBJECTIVE_DONE), SUBJECTIVE).progress == Progress.SUBJECTIVE_START

    def test_result_can_be_recalculated(self):
        assert begin_stage(ScheduleResult(progress=Progress.RESULT_DONE), RESULT).progress == Progress.RESULT_START
        with pytest.raises(InvalidTransition):
            begin_stage(ScheduleResult(progress=Progress.OBJECTIVE_DONE), RESULT)

    def test_start_clears_previous_error(self):
        result = ScheduleResult(
            progress=Progress.MATCH_START,
            error=StageError(stage="MATCH", message="boom", timestamp="2024-01-01T00:00:00+00:00"),
        )
        assert begin_stage(result, MATCH).error is None


def test_finish_stage_sets_done():
    result = finish_stage(ScheduleResult(progress=Progress.SUBJECTIVE_START), SUBJECTIVE)
    assert result.progress == Progress.SUBJECTIVE_DONE


def test_upload_resets_result():
    result = mark_uploaded("/uploads/scan.pdf")
    assert result.progress == Progress.UPLOADED
    assert result.pdf_url == "/uploads/scan.pdf"
    assert result.papers == []
    assert result.match_result.done is False
    assert result.statistics.average == -1
