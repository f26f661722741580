"""Per-page text extraction from PDFs with optional OCR."""
import asyncio
import base64
import io
import logging
from enum import Enum
from typing import Callable, List, Optional, Tuple

import fitz  # PyMuPDF
import pytesseract
from PIL import Image

from config import IMAGE_SCALE, MIN_TEXT_CHARS, OCR_SCALE, ROW_TOLERANCE
from models.document import DocumentHandle, PageText, TextFragment
from services.cancellation import CancellationToken

logger = logging.getLogger(__name__)


class DocumentParseError(Exception):
    """Raised when a PDF cannot be opened or decoded."""


class OCRMode(str, Enum):
    """When OCR output is added to a page's text layer."""
    OFF = "off"
    AUTO = "auto"  # only pages whose text layer is (nearly) empty
    ALWAYS = "always"


class TesseractOCR:
    """OCR capability backed by the Tesseract engine."""

    def __init__(self, lang: str = "eng", config: str = "--psm 3"):
        self.lang = lang
        self.config = config

    def recognize(self, image: Image.Image) -> str:
        """Return recognized plain text for a page bitmap."""
        return pytesseract.image_to_string(image, lang=self.lang, config=self.config)


def layout_text(fragments: List[TextFragment], row_tolerance: float = ROW_TOLERANCE) -> str:
    """
    Join positioned fragments into reading-order text.

    Fragments whose y coordinates lie within `row_tolerance` of a row's first
    fragment share that row. Rows are emitted top to bottom and fragments
    left to right, so table columns on one line stay on one line.
    """
    if not fragments:
        return ""

    rows: List[List[TextFragment]] = []
    row_y = None
    for fragment in sorted(fragments, key=lambda f: (f.y, f.x)):
        if row_y is None or fragment.y - row_y > row_tolerance:
            rows.append([])
            row_y = fragment.y
        rows[-1].append(fragment)

    lines = []
    for row in rows:
        line = " ".join(f.text.strip() for f in sorted(row, key=lambda f: f.x) if f.text.strip())
        if line:
            lines.append(line)
    return "\n".join(lines)


class TextExtractor:
    """Extracts plain text per page, combining the text layer with OCR output."""

    def __init__(
        self,
        ocr_engine: Optional[TesseractOCR] = None,
        ocr_scale: float = OCR_SCALE,
        min_text_chars: int = MIN_TEXT_CHARS,
        row_tolerance: float = ROW_TOLERANCE
    ):
        """
        Initialize TextExtractor.

        Args:
            ocr_engine: Object with a recognize(image) -> str method
            ocr_scale: Render scale used for OCR bitmaps
            min_text_chars: Text layers shorter than this get OCR in auto mode
            row_tolerance: Vertical distance (points) grouping fragments into rows
        """
        self.ocr_engine = ocr_engine if ocr_engine is not None else TesseractOCR()
        self.ocr_scale = ocr_scale
        self.min_text_chars = min_text_chars
        self.row_tolerance = row_tolerance

    def open_document(self, handle: DocumentHandle) -> fitz.Document:
        """
        Parse a document's bytes and resolve its page count.

        Raises:
            DocumentParseError: If the bytes are not a readable PDF
        """
        try:
            pdf = fitz.open(stream=handle.data, filetype="pdf")
        except Exception as e:
            raise DocumentParseError(f"Cannot read {handle.name}: {e}") from e

        if pdf.needs_pass:
            pdf.close()
            raise DocumentParseError(f"{handle.name} is password protected")

        handle.resolve_page_count(pdf.page_count)
        return pdf

    @staticmethod
    def get_fragments(pdf: fitz.Document, page_number: int) -> List[TextFragment]:
        """Word-level text layer of a page (page_number is 1-indexed)."""
        page = pdf.load_page(page_number - 1)
        fragments = []
        # Each word: (x0, y0, x1, y1, text, block_no, line_no, word_no)
        for word in page.get_text("words"):
            text = word[4]
            if text.strip():
                fragments.append(TextFragment(text=text, x=word[0], y=word[3]))
        return fragments

    @staticmethod
    def render_page(pdf: fitz.Document, page_number: int, scale: float) -> Image.Image:
        """Rasterize a page to an RGB bitmap."""
        page = pdf.load_page(page_number - 1)
        pix = page.get_pixmap(matrix=fitz.Matrix(scale, scale), alpha=False)
        return Image.frombytes("RGB", (pix.width, pix.height), pix.samples)

    def page_image_data_url(
        self,
        pdf: fitz.Document,
        page_number: int,
        scale: float = IMAGE_SCALE,
        quality: int = 85
    ) -> str:
        """JPEG data URL of a page, as sent to the vision diagnosis service."""
        image = self.render_page(pdf, page_number, scale)
        buffer = io.BytesIO()
        image.save(buffer, format="JPEG", quality=quality, optimize=True)
        encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
        return f"data:image/jpeg;base64,{encoded}"

    def extract_page(
        self,
        pdf: fitz.Document,
        handle: DocumentHandle,
        page_number: int,
        ocr_mode: OCRMode = OCRMode.AUTO
    ) -> PageText:
        """
        Extract one page's text.

        A failing text layer yields empty text; a failing render or OCR keeps
        whatever the text layer produced. Neither aborts the document.
        """
        try:
            layer_text = layout_text(self.get_fragments(pdf, page_number), self.row_tolerance)
        except Exception as e:
            logger.warning(f"Text layer failed for {handle.name} page {page_number}: {e}")
            layer_text = ""

        needs_ocr = (
            ocr_mode == OCRMode.ALWAYS
            or (ocr_mode == OCRMode.AUTO and len(layer_text.strip()) < self.min_text_chars)
        )

        ocr_text = ""
        if needs_ocr:
            try:
                image = self.render_page(pdf, page_number, self.ocr_scale)
                ocr_text = (self.ocr_engine.recognize(image) or "").strip()
                logger.debug(f"OCR {handle.name} page {page_number}: {len(ocr_text)} chars")
            except Exception as e:
                logger.warning(
                    f"OCR failed for {handle.name} page {page_number}, "
                    f"keeping text layer: {e}"
                )

        text = "\n".join(part for part in (layer_text.strip(), ocr_text) if part)
        return PageText(
            document_index=handle.index,
            page_number=page_number,
            text=text,
            ocr_applied=bool(ocr_text)
        )

    async def extract_document(
        self,
        handle: DocumentHandle,
        ocr_mode: OCRMode = OCRMode.AUTO,
        cancel_token: Optional[CancellationToken] = None,
        on_page: Optional[Callable[[DocumentHandle, PageText], None]] = None
    ) -> List[PageText]:
        """
        Extract every page of a document in increasing page order.

        Args:
            handle: Document to extract
            ocr_mode: When to run OCR
            cancel_token: Checked between pages; extraction stops after the current page
            on_page: Called with (handle, page) for each finished page so callers can
                merge incrementally

        Returns:
            Page text records extracted before completion or cancellation

        Raises:
            DocumentParseError: If the document cannot be opened
        """
        pdf = await asyncio.to_thread(self.open_document, handle)
        pages: List[PageText] = []

        try:
            for page_number in range(1, pdf.page_count + 1):
                if cancel_token is not None and cancel_token.cancelled:
                    logger.info(
                        f"Extraction of {handle.name} stopped after "
                        f"{len(pages)}/{pdf.page_count} pages"
                    )
                    break

                record = await asyncio.to_thread(
                    self.extract_page, pdf, handle, page_number, ocr_mode
                )
                pages.append(record)
                if on_page is not None:
                    on_page(handle, record)
        finally:
            pdf.close()

        logger.info(
            f"Extracted {len(pages)} pages from {handle.name} "
            f"({sum(1 for p in pages if p.ocr_applied)} with OCR)"
        )
        return pages

    async def extract_all(
        self,
        documents: List[DocumentHandle],
        ocr_mode: OCRMode = OCRMode.AUTO,
        cancel_token: Optional[CancellationToken] = None,
        on_page: Optional[Callable[[DocumentHandle, PageText], None]] = None
    ) -> List[Tuple[DocumentHandle, List[PageText]]]:
        """
        Extract all documents in load order.

        Documents that fail to parse are marked with `error` and skipped.
        Results are paired with the handle rather than its index, which can
        shift if a document is removed while extraction runs.

        Returns:
            (handle, page text records) for every document that was read
        """
        results: List[Tuple[DocumentHandle, List[PageText]]] = []

        for handle in documents:
            if cancel_token is not None and cancel_token.cancelled:
                break
            try:
                pages = await self.extract_document(
                    handle, ocr_mode, cancel_token, on_page
                )
                results.append((handle, pages))
                handle.error = None
            except DocumentParseError as e:
                handle.error = str(e)
                logger.error(f"Skipping {handle.name}: {e}")
                continue

        return results
