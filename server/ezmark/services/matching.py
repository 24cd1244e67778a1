"""
MATCH stage: split the scanned PDF into per-student papers, read each
header with the vision model and pair papers with the class roster.
"""
import asyncio
import os
import posixpath
import shutil
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

from pypdf.errors import PdfReadError
from sqlalchemy.orm import Session

from ezmark.config import settings
from ezmark.models import Schedule
from ezmark.schemas import (
    ExamData,
    HeaderComponent,
    MatchedPair,
    MatchResult,
    Paper,
    Position,
    ScheduleResult,
    Unmatched,
    UnmatchedPaper,
)
from ezmark.services import imaging
from ezmark.services.llm_service import UNKNOWN, llm_service
from ezmark.services.pipeline import PipelineError, run_stage, stage_log
from ezmark.services.progress import MATCH

DEFAULT_HEADER_WIDTH_MM = 210
DEFAULT_HEADER_HEIGHT_MM = 60


def create_paper_id(index: int) -> str:
    return f"student-{index + 1}"


def normalise_uploads_path(raw_url: str) -> str:
    """'/strapi/uploads/x.pdf' or 'https://host/uploads/x.pdf' -> 'uploads/x.pdf'"""
    url = (raw_url or "").strip()
    if not url:
        return ""
    parsed = urlparse(url)
    if parsed.scheme and parsed.netloc:
        url = parsed.path or ""
    url = url.lstrip("/")
    if url.startswith("strapi/"):
        url = url[len("strapi/"):]
    return url


def levenshtein(a: str, b: str) -> int:
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        current = [i]
        for j, cb in enumerate(b, 1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb),
            ))
        previous = current
    return previous[-1]


def string_similarity(a: str, b: str) -> float:
    """1.0 for identical strings, 0.0 when either is empty; case-insensitive."""
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0
    longer, shorter = (a, b) if len(a) >= len(b) else (b, a)
    distance = levenshtein(longer.lower(), shorter.lower())
    return (len(longer) - distance) / len(longer)


@dataclass
class MatchOutcome:
    result: MatchResult
    # paper_id -> roster student
    assignments: Dict[str, object] = field(default_factory=dict)


def match_papers(papers: Sequence[Paper], students: Sequence, threshold: float = 0.75) -> MatchOutcome:
    """
    Pair papers with roster students.

    Exact student id matches are taken first. Remaining papers with a
    recognised id are paired with the most similar still-free student when
    the similarity reaches the threshold, to absorb OCR slips.
    """
    matched: List[Tuple[Paper, object]] = []
    taken = set()
    leftovers: List[Paper] = []

    by_id = {s.student_id: s for s in students}
    for paper in papers:
        student = by_id.get(paper.student_id) if paper.student_id else None
        if student is not None and student.student_id not in taken:
            matched.append((paper, student))
            taken.add(student.student_id)
        else:
            leftovers.append(paper)

    unmatched_papers: List[Paper] = []
    for paper in leftovers:
        if not paper.student_id or paper.student_id == UNKNOWN:
            unmatched_papers.append(paper)
            continue
        best, best_score = None, 0.0
        for student in students:
            if student.student_id in taken:
                continue
            score = string_similarity(paper.student_id, student.student_id)
            if score > best_score and score >= threshold:
                best, best_score = student, score
        if best is not None:
            matched.append((paper, best))
            taken.add(best.student_id)
        else:
            unmatched_papers.append(paper)

    unmatched_students = [s.student_id for s in students if s.student_id not in taken]
    result = MatchResult(
        matched=[
            MatchedPair(student_id=s.student_id, paper_id=p.paper_id, header_img_url=p.header_img_url)
            for p, s in matched
        ],
        unmatched=Unmatched(
            student_ids=unmatched_students,
            papers=[UnmatchedPaper(paper_id=p.paper_id, header_img_url=p.header_img_url) for p in unmatched_papers],
        ),
        done=not unmatched_papers and not unmatched_students,
    )
    return MatchOutcome(result=result, assignments={p.paper_id: s for p, s in matched})


def resolve_pages_per_exam(exam: ExamData, total_pages: int, student_count: int) -> int:
    """Pages per paper from component positions, falling back to an even split of the PDF."""
    page_indices = [
        c.position.page_index for c in exam.components
        if c.position is not None and c.position.page_index is not None
    ]
    pages_per_exam: Optional[int] = max(page_indices) + 1 if page_indices else None

    if not pages_per_exam or total_pages != student_count * pages_per_exam:
        if total_pages % student_count == 0 and total_pages > 0:
            pages_per_exam = total_pages // student_count

    if not pages_per_exam:
        raise PipelineError(
            f"Unable to determine exam page count. No component positions found and PDF pages "
            f"({total_pages}) cannot be evenly distributed across {student_count} students."
        )
    expected = student_count * pages_per_exam
    if total_pages != expected:
        raise PipelineError(
            f"PDF page count mismatch: expected {expected} pages ({student_count} students x "
            f"{pages_per_exam} pages per exam) but got {total_pages} pages. Please verify the PDF file is correct."
        )
    return pages_per_exam


def normalise_header(exam: ExamData, pages_per_exam: int) -> HeaderComponent:
    header = next((c for c in exam.components if c.type == "default-header"), None)
    if header is None:
        raise PipelineError(
            "Unable to locate header component in exam definition. Please ensure the exam has a header component."
        )
    if header.position is None:
        header.position = Position(
            page_index=0, top=0, left=0, width=DEFAULT_HEADER_WIDTH_MM, height=DEFAULT_HEADER_HEIGHT_MM
        )
    elif header.position.page_index is None or header.position.page_index < 0 \
            or header.position.page_index >= pages_per_exam:
        header.position.page_index = 0
    if not header.position.width:
        header.position.width = DEFAULT_HEADER_WIDTH_MM
    if not header.position.height:
        header.position.height = DEFAULT_HEADER_HEIGHT_MM
    return header


def split_paper(
    document_id: str,
    exam: ExamData,
    header: HeaderComponent,
    pipeline_dir: str,
    page_images: List[str],
    index: int,
    pages_per_exam: int,
) -> Paper:
    """Copy one paper's pages into its own directory and crop every positioned component."""
    paper_id = create_paper_id(index)
    paper_dir = os.path.join(pipeline_dir, paper_id)
    question_dir = os.path.join(paper_dir, "questions")
    os.makedirs(question_dir, exist_ok=True)

    start_page = index * pages_per_exam
    for offset in range(pages_per_exam):
        shutil.copyfile(
            os.path.join(pipeline_dir, page_images[start_page + offset]),
            os.path.join(paper_dir, f"page-{offset}.png"),
        )

    image_map: Dict[str, str] = {}
    for offset in range(pages_per_exam):
        page_path = os.path.join(paper_dir, f"page-{offset}.png")
        size = imaging.image_size(page_path)
        on_page = [c for c in exam.components if c.position is not None and c.position.page_index == offset]
        for component in on_page:
            box = imaging.compute_crop_box(component.position, size, settings.crop_padding)
            if box is None:
                continue
            imaging.crop_to_file(page_path, box, os.path.join(question_dir, f"{component.id}.png"))
            image_map[component.id] = posixpath.join("pipeline", document_id, paper_id, "questions", f"{component.id}.png")

    header_url = image_map.get(header.id)
    if not header_url:
        raise PipelineError(
            f"Unable to locate header image for paper {paper_id} (student {index + 1}). "
            f"Please ensure the exam definition contains a header component with valid positioning data."
        )
    return Paper(
        paper_id=paper_id,
        start_page=start_page,
        end_page=start_page + pages_per_exam,
        header_img_url=header_url,
        question_image_map=image_map,
    )


async def _match(db: Session, schedule: Schedule, result: ScheduleResult) -> None:
    document_id = schedule.document_id
    log = lambda message: stage_log(MATCH, document_id, message)  # noqa: E731

    uploads_path = normalise_uploads_path(result.pdf_url)
    if not uploads_path:
        raise PipelineError("PDF url is missing on the schedule result. Please ensure the PDF was uploaded correctly.")
    pdf_path = os.path.join(settings.public_dir, uploads_path)
    if not os.path.isfile(pdf_path):
        raise PipelineError(f"PDF file not found at path: {pdf_path}. Please check if the file was uploaded correctly.")

    exam = ExamData.model_validate(schedule.exam.exam_data or {})
    students = list(schedule.klass.students)
    if not students:
        raise PipelineError("The class has no students. Cannot proceed with matching.")
    log(f"exam has {len(exam.components)} components, class has {len(students)} students")

    try:
        total_pages = imaging.count_pdf_pages(pdf_path)
    except (PdfReadError, OSError) as e:
        raise PipelineError(f"Failed to load PDF file: {e}") from e
    pages_per_exam = resolve_pages_per_exam(exam, total_pages, len(students))
    log(f"validated PDF structure: {total_pages} pages = {len(students)} students x {pages_per_exam} pages")

    pipeline_dir = os.path.join(settings.pipeline_dir, document_id)
    if os.path.exists(pipeline_dir):
        shutil.rmtree(pipeline_dir)
    page_images = await asyncio.to_thread(
        imaging.render_pdf_pages, pdf_path, pipeline_dir, settings.render_resolution
    )
    if len(page_images) != total_pages:
        raise PipelineError(
            f"PDF conversion error: expected {total_pages} page images but found {len(page_images)}."
        )

    header = normalise_header(exam, pages_per_exam)
    unpositioned = [c.id for c in exam.components if c.position is None or c.position.page_index is None]
    if unpositioned:
        log(f"{len(unpositioned)} component(s) have no position data and will not be extracted: {unpositioned}")

    papers: List[Paper] = []
    for index in range(len(students)):
        paper = await asyncio.to_thread(
            split_paper, document_id, exam, header, pipeline_dir, page_images, index, pages_per_exam
        )
        papers.append(paper)
    log(f"split PDF into {len(papers)} papers")

    semaphore = asyncio.Semaphore(settings.llm_concurrency)

    async def recognise(index: int, paper: Paper):
        async with semaphore:
            return await llm_service.recognize_header(
                os.path.join(settings.public_dir, paper.header_img_url),
                schedule_id=document_id,
                header_index=index,
                total_headers=len(papers),
            )

    headers = await asyncio.gather(*(recognise(i, p) for i, p in enumerate(papers)))
    for paper, header_result in zip(papers, headers):
        paper.name = header_result.name
        paper.student_id = header_result.studentId
    log("header recognition completed")

    outcome = match_papers(papers, students, settings.similarity_threshold)
    for paper in papers:
        student = outcome.assignments.get(paper.paper_id)
        if student is not None:
            paper.student_id = student.student_id
            paper.student_document_id = student.document_id
    result.papers = papers
    result.match_result = outcome.result
    log(
        f"matching complete: {len(outcome.result.matched)} matched, "
        f"{len(outcome.result.unmatched.papers)} unmatched papers, "
        f"{len(outcome.result.unmatched.student_ids)} unmatched students"
    )


async def start_matching(document_id: str) -> None:
    await run_stage(document_id, MATCH, _match)
