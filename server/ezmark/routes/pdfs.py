"""
Printable exam export. The PDF is written under the public directory and
served by the /pdf static mount.
"""
import asyncio
import os

from fastapi import APIRouter, Depends, HTTPException
from loguru import logger
from sqlalchemy.orm import Session

from ezmark.config import settings
from ezmark.database import get_db
from ezmark.models import Exam
from ezmark.routes.content import get_or_404
from ezmark.schemas import ExamData
from ezmark.services.exam_pdf import generate_exam_pdf

logger = logger.bind(module="routes.pdfs")

router = APIRouter()


def exam_pdf_name(document_id: str) -> str:
    return f"Exam-{document_id}.pdf"


@router.get("/pdfs/{document_id}")
async def export_exam_pdf(document_id: str, db: Session = Depends(get_db)):
    """Render the exam to a PDF and return its public url."""
    exam = get_or_404(db, Exam, document_id, "Exam")
    exam_data = ExamData.model_validate(exam.exam_data or {})
    filename = exam_pdf_name(document_id)

    try:
        await asyncio.to_thread(
            generate_exam_pdf, exam_data, os.path.join(settings.pdf_dir, filename), exam.project_name or ""
        )
    except Exception as e:
        logger.exception(f"PDF generation failed for exam {document_id}")
        raise HTTPException(status_code=400, detail=f"Error generating PDF: {e}")

    return {"data": {"url": f"/pdf/{filename}"}}
