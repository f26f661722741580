"""Assemble selected pages into a new PDF and render generated reports."""
import io
import logging
import textwrap
from datetime import datetime, timezone
from typing import Mapping

import fitz  # PyMuPDF
from docx import Document as DocxDocument
from docx.enum.text import WD_ALIGN_PARAGRAPH
from docx.shared import Inches

from services.selection_state import SessionState

logger = logging.getLogger(__name__)

# A4 in points
PAGE_WIDTH = 595
PAGE_HEIGHT = 842
MARGIN = 50
FONT_SIZE = 11
LINE_HEIGHT = 15
WRAP_WIDTH = 90


class EmptySelectionError(Exception):
    """Raised when output is requested with no pages selected."""


def assemble_pages(session: SessionState) -> bytes:
    """
    Copy the selected pages into a new PDF.

    Documents appear in ascending index order and pages ascend within each
    document, whatever order they were selected in. Every selected page
    appears exactly once.

    Args:
        session: Session holding the documents and selection

    Returns:
        The new PDF as bytes

    Raises:
        EmptySelectionError: If no pages are selected
    """
    grouped = session.selected_pages_grouped()
    if not grouped:
        raise EmptySelectionError("Select at least one page to extract")

    output = fitz.open()
    copied = 0
    try:
        for document_index, pages in grouped:
            handle = session.get_document(document_index)
            source = fitz.open(stream=handle.data, filetype="pdf")
            try:
                for page_number in pages:
                    if not 1 <= page_number <= source.page_count:
                        logger.warning(f"Skipping missing page {page_number} of {handle.name}")
                        continue
                    output.insert_pdf(source, from_page=page_number - 1, to_page=page_number - 1)
                    copied += 1
            finally:
                source.close()

        data = output.tobytes(garbage=3, deflate=True)
    finally:
        output.close()

    logger.info(f"Assembled {copied} page(s) from {len(grouped)} document(s)")
    return data


def build_report_docx(title: str, sections: Mapping[str, str]) -> bytes:
    """
    Render generated report text as a Word document.

    Args:
        title: Report title
        sections: Heading to body text, in output order; blank lines split paragraphs
    """
    doc = DocxDocument()
    for section in doc.sections:
        section.left_margin = Inches(0.75)
        section.right_margin = Inches(0.75)

    heading = doc.add_heading(title, level=0)
    heading.alignment = WD_ALIGN_PARAGRAPH.CENTER
    doc.add_paragraph(f"Generated: {datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M UTC')}")

    for section_title, body in sections.items():
        doc.add_heading(section_title, level=1)
        for paragraph in body.split("\n\n"):
            if paragraph.strip():
                doc.add_paragraph(paragraph.strip())

    buffer = io.BytesIO()
    doc.save(buffer)
    return buffer.getvalue()


def build_report_pdf(title: str, sections: Mapping[str, str]) -> bytes:
    """Render the same report as a plain PDF, wrapping long lines and paging as needed."""
    lines = [(title, 16), ("", FONT_SIZE)]
    for section_title, body in sections.items():
        lines.append((section_title, 13))
        for raw_line in body.splitlines():
            wrapped = textwrap.wrap(raw_line, WRAP_WIDTH) or [""]
            lines.extend((line, FONT_SIZE) for line in wrapped)
        lines.append(("", FONT_SIZE))

    doc = fitz.open()
    try:
        page = doc.new_page(width=PAGE_WIDTH, height=PAGE_HEIGHT)
        y = MARGIN
        for text, size in lines:
            if y + LINE_HEIGHT > PAGE_HEIGHT - MARGIN:
                page = doc.new_page(width=PAGE_WIDTH, height=PAGE_HEIGHT)
                y = MARGIN
            y += LINE_HEIGHT if size == FONT_SIZE else size + 6
            if text:
                page.insert_text((MARGIN, y), text, fontsize=size)
        return doc.tobytes()
    finally:
        doc.close()
