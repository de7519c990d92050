"""PDF handling: embedded-text fast path and page rasterisation.

Embedded text: pdfplumber, accurate for digitally produced reports.
Rasterisation: PyMuPDF (fitz), one PNG per page for scanned reports.

A PDF whose embedded text has fewer than ``EMBEDDED_TEXT_MIN_WORDS`` words is
treated as scan-only and routed to rasterisation + OCR.
"""

from __future__ import annotations

import asyncio
import io
import logging
from dataclasses import dataclass, field

import fitz  # PyMuPDF
import pdfplumber

from src.ocr.concurrency import gather_bounded, with_deadline
from src.ocr.errors import OcrError, OcrErrorCode

logger = logging.getLogger("bioage.ocr.pdf_utils")

# 2x gives good OCR results without blowing up memory.
DEFAULT_SCALE = 2.0
DEFAULT_RENDER_CONCURRENCY = 3
EMBEDDED_TEXT_MIN_WORDS = 20

PAGE_SEPARATOR = "\n\n"


# ---------------------------------------------------------------------------
# Public types
# ---------------------------------------------------------------------------


@dataclass
class PdfPageImage:
    page_number: int    # 1-based
    image_bytes: bytes  # PNG
    width: int
    height: int


@dataclass(frozen=True)
class PdfInfo:
    page_count: int
    title: str | None = None
    author: str | None = None


@dataclass
class PdfText:
    pages: list[tuple[int, str]] = field(default_factory=list)  # (page_number, text)
    full_text: str = ""

    @property
    def word_count(self) -> int:
        return len(self.full_text.split())


@dataclass
class PdfRenderResult:
    pages: list[PdfPageImage]
    total_pages: int


# ---------------------------------------------------------------------------
# Blocking helpers (run in worker threads)
# ---------------------------------------------------------------------------


def _open_document(data: bytes) -> fitz.Document:
    try:
        return fitz.open(stream=data, filetype="pdf")
    except Exception as exc:
        raise OcrError(
            OcrErrorCode.CORRUPTED_FILE, exc, message=f"Could not open PDF: {exc}"
        ) from exc


def _check_page(page_number: int, page_count: int) -> None:
    if page_number < 1 or page_number > page_count:
        raise ValueError(f"Invalid page number: {page_number}. PDF has {page_count} pages.")


def _render(doc: fitz.Document, page_number: int, scale: float) -> PdfPageImage:
    _check_page(page_number, doc.page_count)
    try:
        pix = doc[page_number - 1].get_pixmap(matrix=fitz.Matrix(scale, scale), alpha=False)
        return PdfPageImage(
            page_number=page_number,
            image_bytes=pix.tobytes("png"),
            width=pix.width,
            height=pix.height,
        )
    except Exception as exc:
        raise OcrError(
            OcrErrorCode.PDF_CONVERSION_FAILED,
            exc,
            message=f"Failed to render PDF page {page_number}: {exc}",
        ) from exc


def _render_single(data: bytes, page_number: int, scale: float) -> PdfPageImage:
    with _open_document(data) as doc:
        return _render(doc, page_number, scale)


def _page_bounds(
    page_count: int,
    max_pages: int | None,
    start_page: int,
    end_page: int | None,
) -> range:
    first = max(1, start_page)
    last = min(page_count, end_page or page_count)
    count = max(0, last - first + 1)
    if max_pages is not None:
        count = min(count, max_pages)
    return range(first, first + count)


def _render_range(
    data: bytes,
    scale: float,
    max_pages: int | None,
    start_page: int,
    end_page: int | None,
) -> PdfRenderResult:
    with _open_document(data) as doc:
        total = doc.page_count
        pages = [
            _render(doc, n, scale)
            for n in _page_bounds(total, max_pages, start_page, end_page)
        ]
    return PdfRenderResult(pages=pages, total_pages=total)


def _page_count(data: bytes) -> int:
    with _open_document(data) as doc:
        return doc.page_count


def _info(data: bytes) -> PdfInfo:
    with _open_document(data) as doc:
        meta = doc.metadata or {}
        return PdfInfo(
            page_count=doc.page_count,
            title=meta.get("title") or None,
            author=meta.get("author") or None,
        )


def _extract_text(data: bytes) -> PdfText:
    try:
        with pdfplumber.open(io.BytesIO(data)) as pdf:
            pages = [
                (i, page.extract_text(x_tolerance=3, y_tolerance=3) or "")
                for i, page in enumerate(pdf.pages, start=1)
            ]
    except Exception as exc:
        raise OcrError(
            OcrErrorCode.CORRUPTED_FILE, exc, message=f"Could not read PDF text: {exc}"
        ) from exc
    return PdfText(pages=pages, full_text=PAGE_SEPARATOR.join(text for _, text in pages))


async def _run(func, *args, deadline: float | None = None):
    try:
        return await with_deadline(asyncio.to_thread(func, *args), deadline, "PDF conversion")
    except (OcrError, ValueError):
        raise
    except Exception as exc:
        raise OcrError(OcrErrorCode.PDF_CONVERSION_FAILED, exc) from exc


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def is_pdf(data: bytes) -> bool:
    return data[:5] == b"%PDF-"


async def get_pdf_info(data: bytes) -> PdfInfo:
    return await _run(_info, data)


async def render_pdf_page(
    data: bytes,
    page_number: int,
    scale: float = DEFAULT_SCALE,
    deadline: float | None = None,
) -> PdfPageImage:
    """Render one 1-based page to PNG.

    Raises:
        ValueError: *page_number* is outside the document.
        OcrError:   CORRUPTED_FILE when the PDF cannot be opened,
                    PDF_CONVERSION_FAILED when rendering fails.
    """
    return await _run(_render_single, data, page_number, scale, deadline=deadline)


async def convert_pdf_to_images(
    data: bytes,
    scale: float = DEFAULT_SCALE,
    max_pages: int | None = None,
    start_page: int = 1,
    end_page: int | None = None,
    deadline: float | None = None,
) -> PdfRenderResult:
    """Render a page range sequentially, one document open for all pages."""
    result = await _run(
        _render_range, data, scale, max_pages, start_page, end_page, deadline=deadline
    )
    logger.info("Rendered %d of %d PDF page(s)", len(result.pages), result.total_pages)
    return result


async def convert_pdf_to_images_parallel(
    data: bytes,
    scale: float = DEFAULT_SCALE,
    max_pages: int | None = None,
    concurrency: int = DEFAULT_RENDER_CONCURRENCY,
    deadline: float | None = None,
) -> PdfRenderResult:
    """Render pages concurrently, at most *concurrency* at a time.

    Each render opens its own document handle; results are placed by page
    index so ordering does not depend on completion order.
    """
    total = await _run(_page_count, data)
    page_numbers = list(_page_bounds(total, max_pages, 1, None))

    async def _worker(page_number: int, _index: int) -> PdfPageImage:
        return await render_pdf_page(data, page_number, scale)

    pages = await with_deadline(
        gather_bounded(page_numbers, _worker, concurrency), deadline, "PDF conversion"
    )
    logger.info("Rendered %d of %d PDF page(s) in parallel", len(pages), total)
    return PdfRenderResult(pages=pages, total_pages=total)


async def extract_pdf_text(data: bytes) -> PdfText:
    """Per-page embedded text, pages joined by a blank line."""
    return await _run(_extract_text, data)


async def needs_ocr(data: bytes, min_words: int = EMBEDDED_TEXT_MIN_WORDS) -> bool:
    """True when the PDF carries too little embedded text to skip OCR."""
    text = await extract_pdf_text(data)
    return text.word_count < min_words
