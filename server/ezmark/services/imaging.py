"""
Scan imaging helpers: PDF -> page PNGs, millimetre -> pixel geometry and
component crops.

Component positions come from the editor in millimetres on an A4 page;
rendered pages are measured in pixels, so every crop goes through
mm_to_pixels first.
"""
import os
from typing import Dict, List, Optional, Sequence, Tuple

import pdfplumber
from loguru import logger
from PIL import Image
from pypdf import PdfReader

from ezmark.schemas import Position

logger = logger.bind(module="services.imaging")

A4_WIDTH_MM = 210.0
A4_HEIGHT_MM = 297.0

# (left, top, right, bottom) in pixels, as PIL's Image.crop expects
CropBox = Tuple[int, int, int, int]


def count_pdf_pages(pdf_path: str) -> int:
    reader = PdfReader(pdf_path)
    return len(reader.pages)


def render_pdf_pages(pdf_path: str, output_dir: str, resolution: int = 216) -> List[str]:
    """Render every page to output_dir/page-{i}.png (0-based); returns the file names."""
    os.makedirs(output_dir, exist_ok=True)
    names = []
    with pdfplumber.open(pdf_path) as pdf:
        for index, page in enumerate(pdf.pages):
            name = f"page-{index}.png"
            page.to_image(resolution=resolution).original.save(os.path.join(output_dir, name))
            names.append(name)
    logger.info(f"Rendered {len(names)} page(s) of {pdf_path}")
    return names


def mm_to_pixels(mm: float, image_size: Tuple[int, int], axis: str = "x") -> int:
    """Convert millimetres to pixels along one axis of an A4 page image."""
    width, height = image_size
    if axis == "y":
        return round(mm * height / A4_HEIGHT_MM)
    return round(mm * width / A4_WIDTH_MM)


def compute_crop_box(
    position: Position,
    image_size: Tuple[int, int],
    padding: int = 10,
    next_top_mm: Optional[float] = None,
) -> Optional[CropBox]:
    """
    Pixel box around a component, padded and clamped to the image.

    When next_top_mm is given and lies below the component, the box extends
    down to it so handwriting under the printed question is included.
    Returns None for degenerate positions.
    """
    width_px, height_px = image_size
    if not width_px or not height_px:
        return None
    if not position.width or not position.height or position.width <= 0 or position.height <= 0:
        return None

    height_mm = position.height
    if next_top_mm is not None and next_top_mm > position.top + position.height:
        height_mm = next_top_mm - position.top

    left = max(mm_to_pixels(position.left, image_size, "x") - padding, 0)
    top = max(mm_to_pixels(position.top, image_size, "y") - padding, 0)
    box_width = mm_to_pixels(position.width, image_size, "x") + padding * 2
    box_height = mm_to_pixels(height_mm, image_size, "y") + padding * 2

    right = min(left + box_width, width_px)
    bottom = min(top + box_height, height_px)
    if right <= left or bottom <= top:
        return None
    return left, top, right, bottom


def compute_next_component_top_map(components: Sequence) -> Dict[str, Optional[float]]:
    """For each positioned component, the top (mm) of the next component on the same page."""
    by_page: Dict[int, list] = {}
    for component in components:
        position = component.position
        if position is None or position.page_index is None:
            continue
        by_page.setdefault(position.page_index, []).append(component)

    next_top: Dict[str, Optional[float]] = {}
    for page_components in by_page.values():
        ordered = sorted(page_components, key=lambda c: (c.position.top, c.position.left))
        for current, following in zip(ordered, ordered[1:] + [None]):
            next_top[current.id] = following.position.top if following is not None else None
    return next_top


def crop_to_file(page_path: str, box: CropBox, output_path: str) -> None:
    with Image.open(page_path) as page:
        page.crop(box).save(output_path)


def image_size(path: str) -> Tuple[int, int]:
    with Image.open(path) as image:
        return image.size


def ensure_question_image(
    paper_dir: str,
    question_id: str,
    position: Optional[Position],
    next_top_mm: Optional[float] = None,
    padding: int = 10,
) -> Optional[str]:
    """
    Return paper_dir/questions/{question_id}.png, regenerating it from the
    page image when it is missing. Falls back to the whole page when the
    question has no usable position. None if no page image exists.
    """
    question_dir = os.path.join(paper_dir, "questions")
    question_path = os.path.join(question_dir, f"{question_id}.png")
    if os.path.exists(question_path):
        return question_path

    page_index = position.page_index if position is not None and position.page_index is not None else 0
    page_path = os.path.join(paper_dir, f"page-{page_index}.png")
    if not os.path.exists(page_path):
        logger.warning(f"Page image missing for question {question_id}: {page_path}")
        return None

    os.makedirs(question_dir, exist_ok=True)
    with Image.open(page_path) as page:
        box = compute_crop_box(position, page.size, padding, next_top_mm) if position is not None else None
        if box is not None:
            page.crop(box).save(question_path)
            logger.info(f"Regenerated missing question {question_id} from page {page_index}")
        else:
            page.save(question_path)
            logger.warning(f"Regenerated question {question_id} from full page {page_index}: no usable position")
    return question_path
