"""End-to-end runs of the pipeline stages against a generated scan, with the vision model faked."""

import asyncio
import os

import pytest
from PIL import Image

from ezmark.config import settings
from ezmark.database import SessionLocal
from ezmark.schemas import HeaderRecognition, Progress, ScheduleResult
from ezmark.services import matching, objective
from ezmark.services.imaging import image_size, mm_to_pixels
from ezmark.services.llm_service import LLMRequestError, llm_service
from ezmark.services.matching import start_matching
from ezmark.services.objective import start_objective
from ezmark.services.pipeline import running_stage
from ezmark.services.results import calc_result
from ezmark.services.schedule_store import load_schedule, persist_result, read_result
from ezmark.services.subjective import start_subjective


def read(document_id) -> ScheduleResult:
    db = SessionLocal()
    try:
        return read_result(load_schedule(db, document_id))
    finally:
        db.close()


async def write(document_id, result: ScheduleResult):
    db = SessionLocal()
    try:
        await persist_result(db, load_schedule(db, document_id), result)
    finally:
        db.close()


@pytest.fixture
def scan(monkeypatch):
    """A two page scan (one page per student) stored under uploads."""
    monkeypatch.setattr(settings, "render_resolution", 72)
    pages = [Image.new("RGB", (595, 842), "white") for _ in range(2)]
    path = os.path.join(settings.uploads_dir, "scan.pdf")
    pages[0].save(path, "PDF", resolution=72, save_all=True, append_images=pages[1:])
    return "/uploads/scan.pdf"


@pytest.fixture
def headers(monkeypatch):
    recognised = {0: ("Bob", "S002"), 1: ("Alice", "S0O1")}

    async def fake(image_path, schedule_id="", header_index=0, total_headers=0):
        assert os.path.exists(image_path)
        name, student_id = recognised[header_index]
        return HeaderRecognition(reason="test", name=name, studentId=student_id)

    monkeypatch.setattr(llm_service, "recognize_header", fake)


@pytest.fixture
def answers(monkeypatch):
    async def fake(image_path):
        return ["B"] if f"{os.sep}student-1{os.sep}" in image_path else ["Unknown"]

    monkeypatch.setattr(llm_service, "recognize_mcq", fake)


@pytest.mark.asyncio
async def test_full_pipeline(seeded, scan, headers, answers):
    document_id = seeded["schedule"]["documentId"]
    await write(document_id, ScheduleResult(progress=Progress.MATCH_START, pdf_url=scan))

    await start_matching(document_id)
    result = read(document_id)
    assert result.error is None
    assert result.progress == Progress.MATCH_DONE
    assert result.match_result.done is True
    assert {(m.paper_id, m.student_id) for m in result.match_result.matched} == {
        ("student-1", "S002"), ("student-2", "S001"),
    }
    paper_dir = os.path.join(settings.pipeline_dir, document_id, "student-1")
    assert os.path.exists(os.path.join(paper_dir, "page-0.png"))
    assert set(result.papers[0].question_image_map) == {"header", "q1", "q2", "q3"}
    assert os.path.exists(os.path.join(settings.public_dir, result.papers[0].question_image_map["q1"]))

    await start_objective(document_id)
    result = read(document_id)
    assert result.progress == Progress.OBJECTIVE_DONE
    bob, alice = result.student_papers
    assert bob.student.name == "Bob"
    assert bob.student.document_id == seeded["students"][1]["documentId"]
    assert bob.objective_questions[0].score == 0
    assert alice.objective_questions[0].llm_unknown is True
    assert alice.objective_questions[0].score == -1

    await start_subjective(document_id)
    result = read(document_id)
    assert result.progress == Progress.SUBJECTIVE_DONE
    entries = result.student_papers[0].subjective_questions
    assert [e.question_id for e in entries] == ["q2", "q3"]
    assert all(e.score == -1 and not e.done for e in entries)
    assert entries[0].image_url == result.papers[0].question_image_map["q2"]

    # teacher grades subjective answers and fixes the unreadable one
    result.student_papers[0].subjective_questions[0].score = 4
    result.student_papers[1].objective_questions[0].score = 2
    result.student_papers[1].subjective_questions[1].score = 3
    await write(document_id, result)

    await calc_result(document_id)
    result = read(document_id)
    assert result.progress == Progress.RESULT_DONE
    assert [p.total_score for p in result.student_papers] == [4, 5]
    assert result.statistics.average == 4.5
    assert result.statistics.median == 5
    q1 = next(q for q in result.statistics.questions if q.question_id == "q1")
    assert (q1.correct, q1.incorrect) == (1, 1)


@pytest.mark.asyncio
async def test_matching_missing_pdf_records_error(seeded):
    document_id = seeded["schedule"]["documentId"]
    await write(document_id, ScheduleResult(progress=Progress.MATCH_START, pdf_url="/uploads/missing.pdf"))

    await start_matching(document_id)

    result = read(document_id)
    assert result.progress == Progress.MATCH_START
    assert result.error.stage == "MATCH"
    assert "PDF file not found" in result.error.message


@pytest.mark.asyncio
async def test_matching_llm_failure_fails_stage(seeded, scan, monkeypatch):
    async def failing(image_path, schedule_id="", header_index=0, total_headers=0):
        raise LLMRequestError("Failed to send image to openai model", {"header": f"{header_index + 1}/2", "model": "gpt-4o-mini"})

    monkeypatch.setattr(llm_service, "recognize_header", failing)
    document_id = seeded["schedule"]["documentId"]
    await write(document_id, ScheduleResult(progress=Progress.MATCH_START, pdf_url=scan))

    await start_matching(document_id)

    result = read(document_id)
    assert result.progress == Progress.MATCH_START
    assert "via gpt-4o-mini" in result.error.message


@pytest.mark.asyncio
async def test_objective_regenerates_missing_crop(seeded, scan, headers, answers):
    document_id = seeded["schedule"]["documentId"]
    await write(document_id, ScheduleResult(progress=Progress.MATCH_START, pdf_url=scan))
    await start_matching(document_id)

    result = read(document_id)
    crop = os.path.join(settings.public_dir, result.papers[0].question_image_map.pop("q1"))
    os.remove(crop)
    await write(document_id, result)

    await start_objective(document_id)

    assert os.path.exists(crop)
    assert read(document_id).student_papers[0].objective_questions[0].student_answer == ["B"]
    # regenerated crops reach down to the next component (q2 starts at 150 mm)
    page = image_size(os.path.join(settings.pipeline_dir, document_id, "student-1", "page-0.png"))
    with Image.open(crop) as image:
        assert image.size[1] == mm_to_pixels(150 - 80, page, "y") + 2 * settings.crop_padding


@pytest.mark.asyncio
async def test_matching_crops_only_the_padded_component(seeded, scan, headers):
    document_id = seeded["schedule"]["documentId"]
    await write(document_id, ScheduleResult(progress=Progress.MATCH_START, pdf_url=scan))

    await start_matching(document_id)

    paper = read(document_id).papers[0]
    page = image_size(os.path.join(settings.pipeline_dir, document_id, paper.paper_id, "page-0.png"))
    with Image.open(os.path.join(settings.public_dir, paper.question_image_map["q1"])) as image:
        assert image.size[1] == mm_to_pixels(30, page, "y") + 2 * settings.crop_padding


@pytest.mark.asyncio
async def test_second_start_while_running_is_skipped(seeded, scan, monkeypatch):
    release = asyncio.Event()
    calls = []
    recognised = {0: ("Bob", "S002"), 1: ("Alice", "S001")}

    async def slow(image_path, schedule_id="", header_index=0, total_headers=0):
        calls.append(header_index)
        await release.wait()
        name, student_id = recognised[header_index]
        return HeaderRecognition(reason="test", name=name, studentId=student_id)

    monkeypatch.setattr(llm_service, "recognize_header", slow)
    document_id = seeded["schedule"]["documentId"]
    await write(document_id, ScheduleResult(progress=Progress.MATCH_START, pdf_url=scan))

    first = asyncio.ensure_future(start_matching(document_id))
    for _ in range(500):
        if len(calls) == 2:
            break
        await asyncio.sleep(0.01)
    assert running_stage(document_id) == "MATCH"

    await start_matching(document_id)
    assert len(calls) == 2

    release.set()
    await first
    assert running_stage(document_id) is None
    result = read(document_id)
    assert result.progress == Progress.MATCH_DONE
    assert len(result.match_result.matched) == 2


def test_stage_modules_share_llm_singleton():
    assert matching.llm_service is objective.llm_service is llm_service


@pytest.mark.asyncio
async def test_subjective_prefetch_fills_suggestions(seeded, scan, headers, answers, monkeypatch):
    from ezmark.schemas import SubjectiveSuggestion

    async def suggest(question, answer, score, image_path):
        return SubjectiveSuggestion(reasoning="r", ocr_result="ocr", suggestion="s", score=score)

    monkeypatch.setattr(settings, "subjective_prefetch", True)
    monkeypatch.setattr(llm_service, "ask_subjective", suggest)
    document_id = seeded["schedule"]["documentId"]
    await write(document_id, ScheduleResult(progress=Progress.MATCH_START, pdf_url=scan))
    await start_matching(document_id)
    await start_objective(document_id)

    await start_subjective(document_id)

    entries = read(document_id).student_papers[1].subjective_questions
    assert [e.ai_suggestion.score for e in entries] == [5, 3]
    assert all(e.score == -1 for e in entries)
