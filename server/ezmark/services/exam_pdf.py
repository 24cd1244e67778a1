"""
Printable exam PDF.

Lays the exam's components out top to bottom on A4 pages: title block,
then every question with its options or answer lines. Headers carry no
printable content of their own.
"""
import html
import os
import re
from typing import List

from loguru import logger
from reportlab.lib.colors import Color
from reportlab.lib.pagesizes import A4
from reportlab.pdfbase.pdfmetrics import stringWidth
from reportlab.pdfgen import canvas

from ezmark.schemas import ExamData

logger = logger.bind(module="services.exam_pdf")

PAGE_W, PAGE_H = A4
MARGIN = 50
LINE_SPACING = 1.35

REGULAR = "Helvetica"
BOLD = "Helvetica-Bold"

BLACK = Color(0, 0, 0)
GREY = Color(0.7, 0.7, 0.7)
DARK = Color(0.2, 0.2, 0.2)


def html_to_text(value: str) -> str:
    """Editor rich text -> plain text; ${input} placeholders become blanks."""
    text = re.sub(r"<\s*br\s*/?\s*>", "\n", value or "", flags=re.IGNORECASE)
    text = re.sub(r"</?p[^>]*>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"<[^>]+>", " ", text)
    text = html.unescape(text).replace("\u00a0", " ")
    text = text.replace("${input}", "__________")
    text = re.sub(r"[ \t]+\n", "\n", text)
    text = re.sub(r"\n[ \t]+", "\n", text)
    text = re.sub(r"[ \t]{2,}", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def wrap_text(text: str, font: str, size: float, max_width: float) -> List[str]:
    """Greedy word wrap; words wider than a line are broken by character."""
    lines: List[str] = []
    paragraphs = text.split("\n") if text else [""]
    for paragraph in paragraphs:
        current = ""
        words = paragraph.split()
        if not words:
            lines.append("")
        for word in words:
            candidate = f"{current} {word}" if current else word
            if stringWidth(candidate, font, size) <= max_width:
                current = candidate
                continue
            if current:
                lines.append(current)
                current = ""
            if stringWidth(word, font, size) <= max_width:
                current = word
                continue
            for char in word:
                if stringWidth(current + char, font, size) > max_width and current:
                    lines.append(current)
                    current = ""
                current += char
        if current:
            lines.append(current)
    return lines or [""]


class ExamPdfBuilder:
    """Draws onto a reportlab canvas while tracking the vertical cursor."""

    def __init__(self, c: canvas.Canvas):
        self.c = c
        self.pages = 1
        self.cursor = PAGE_H - MARGIN

    def _new_page(self):
        self.c.showPage()
        self.pages += 1
        self.cursor = PAGE_H - MARGIN

    def _advance(self, height: float) -> float:
        if self.cursor - height < MARGIN:
            self._new_page()
        self.cursor -= height
        return self.cursor

    def move_down(self, points: float):
        if points > 0:
            self._advance(points)

    def paragraph(self, text: str, font: str = REGULAR, size: float = 12, indent: float = 0, gap_after: float = None):
        width = PAGE_W - MARGIN * 2 - indent
        for line in wrap_text(html_to_text(text), font, size, width):
            baseline = self._advance(size * LINE_SPACING)
            if line.strip():
                self.c.setFont(font, size)
                self.c.setFillColor(BLACK)
                self.c.drawString(MARGIN + indent, baseline, line)
        self.move_down(size * 0.6 if gap_after is None else gap_after)

    def centered(self, text: str, font: str, size: float, gap_after: float):
        baseline = self._advance(size * LINE_SPACING)
        self.c.setFont(font, size)
        self.c.setFillColor(BLACK)
        self.c.drawCentredString(PAGE_W / 2, baseline, text)
        self.move_down(gap_after)

    def divider(self):
        baseline = self._advance(12)
        self.c.setStrokeColor(GREY)
        self.c.setLineWidth(1)
        self.c.line(MARGIN, baseline, PAGE_W - MARGIN, baseline)
        self.move_down(6)

    def answer_lines(self, count: int, indent: float = 0):
        self.c.setStrokeColor(DARK)
        self.c.setLineWidth(0.5)
        for _ in range(count):
            baseline = self._advance(18)
            self.c.line(MARGIN + indent, baseline + 4, PAGE_W - MARGIN, baseline + 4)
        self.move_down(6)

    def render(self, exam: ExamData, project_name: str = ""):
        self.centered(exam.title or project_name or "Exam", BOLD, 20, 12)

        subtitle = " - ".join(p for p in (exam.university, exam.course) if p)
        if subtitle:
            self.centered(subtitle, REGULAR, 12, 6)

        meta = []
        if exam.duration:
            meta.append(f"Duration: {exam.duration}")
        if exam.exam_date:
            meta.append(f"Exam Date: {exam.exam_date}")
        if exam.semester or exam.year:
            meta.append(f"Term: {' '.join(p for p in (exam.semester, exam.year) if p)}")
        for line in meta:
            self.centered(line, REGULAR, 11, 4)
        if meta:
            self.move_down(8)

        if exam.description:
            self.paragraph(f"Description: {html_to_text(exam.description)}")
            self.move_down(6)

        self.divider()
        for component in exam.components:
            self.component(component)

    def heading(self, component):
        self.paragraph(f"{component.question_number}. ({component.score:g} pts)", font=BOLD, size=13, gap_after=2)

    def component(self, component):
        if component.type == "multiple-choice":
            self.heading(component)
            self.paragraph(component.question, gap_after=4)
            for option in component.options:
                self.paragraph(f"{option.label}. {html_to_text(option.content)}", size=11, indent=16, gap_after=2)
            self.move_down(10)
        elif component.type == "fill-in-blank":
            self.heading(component)
            self.paragraph(component.content, gap_after=8)
            self.answer_lines(1)
        elif component.type == "open":
            self.heading(component)
            self.paragraph(component.content, gap_after=6)
            self.answer_lines(max(component.lines, 3))
        elif component.type == "blank":
            self.answer_lines(max(component.lines, 1))
        elif component.type == "divider":
            self.divider()


def generate_exam_pdf(exam: ExamData, output_path: str, project_name: str = "") -> int:
    """Write the exam to output_path; returns the page count."""
    os.makedirs(os.path.dirname(output_path), exist_ok=True)
    c = canvas.Canvas(output_path, pagesize=A4)
    c.setTitle(exam.title or project_name or "Exam")
    builder = ExamPdfBuilder(c)
    builder.render(exam, project_name)
    c.save()
    logger.info(f"Wrote {builder.pages} page(s) to {output_path}")
    return builder.pages
