"""Tests for the printable exam layout helpers."""

from ezmark.services.exam_pdf import REGULAR, html_to_text, wrap_text


def test_html_to_text_strips_markup_and_blanks():
    text = html_to_text("<p>Water boils at ${input}&nbsp;<b>C</b></p><p>Explain.</p>")
    assert text == "Water boils at __________ C\n\nExplain."


def test_html_to_text_empty():
    assert html_to_text("") == ""


def test_wrap_text_keeps_lines_within_width():
    from reportlab.pdfbase.pdfmetrics import stringWidth

    lines = wrap_text("lorem ipsum dolor sit amet " * 10, REGULAR, 12, 150)

    assert len(lines) > 1
    assert all(stringWidth(line, REGULAR, 12) <= 150 for line in lines)
    assert " ".join(lines).split() == ("lorem ipsum dolor sit amet " * 10).split()


def test_wrap_text_breaks_long_words():
    lines = wrap_text("x" * 200, REGULAR, 12, 100)
    assert len(lines) > 1
    assert "".join(lines) == "x" * 200


def test_wrap_text_keeps_paragraph_breaks():
    assert wrap_text("one\n\ntwo", REGULAR, 12, 500) == ["one", "", "two"]
