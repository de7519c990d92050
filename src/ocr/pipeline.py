"""Document-level orchestration: uploaded bytes in, nine biomarkers out.

    validate -> PDF?  embedded text  -> extract per page -> merge
                      else rasterise -> OCR per page     -> extract -> merge
             -> image: convert if needed -> OCR -> extract
    -> unit conversion -> OcrExtractionResult

Every failure leaving :func:`extract_document` is an :class:`OcrError`.
A biomarker that cannot be found is never a failure: it comes back with
``value=None`` and confidence 0.
"""

from __future__ import annotations

import dataclasses
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Mapping

from src.ocr.base import (
    ALL_BIOMARKERS,
    BiomarkerExtraction,
    BiomarkerKey,
    OcrExtractionResult,
)
from src.ocr.biomarkers import get_display_name
from src.ocr.concurrency import gather_bounded, with_deadline
from src.ocr.errors import OcrError, OcrErrorCode, create_ocr_error
from src.ocr.extractor import PageText, extract_all_biomarkers, extract_from_multiple_pages
from src.ocr.formats import (
    MAGIC_HEADER_LENGTH,
    FileValidationResult,
    convert_to_standard_format,
    validate_file,
)
from src.ocr.image_processor import MIN_DIMENSION, check_image_quality
from src.ocr.ocr_service import OcrEngine, fallback_strategies, get_engine, recognize_with_fallback
from src.ocr.pdf_utils import (
    PdfPageImage,
    convert_pdf_to_images_parallel,
    extract_pdf_text,
    is_pdf,
)
from src.ocr.phenoage import calculate_phenoage
from src.ocr.units import smart_convert

if TYPE_CHECKING:
    from src.config import Settings

logger = logging.getLogger("bioage.ocr.pipeline")

METHOD_EMBEDDED_TEXT = "embedded_text"
METHOD_OCR = "ocr"

# A PhenoAge further than this from the calendar age suggests a misread value.
PLAUSIBLE_AGE_GAP = 25.0


@dataclass
class PhenoAgeCheck:
    phenoage: float | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"phenoage": self.phenoage, "warnings": self.warnings}


# ---------------------------------------------------------------------------
# Result helpers
# ---------------------------------------------------------------------------


def create_empty_result(errors: list[str], page_count: int) -> OcrExtractionResult:
    """A failed result that still carries all nine (not-found) biomarkers."""
    return OcrExtractionResult(
        success=False,
        extractions={key: BiomarkerExtraction.not_found(key, page_number=0) for key in ALL_BIOMARKERS},
        raw_text="",
        page_count=page_count,
        errors=list(errors),
    )


def apply_unit_conversions(
    extractions: Mapping[BiomarkerKey, BiomarkerExtraction],
) -> dict[BiomarkerKey, BiomarkerExtraction]:
    """Express every found value in its canonical unit.

    Confidence is scaled by the conversion confidence, so an inferred unit
    lowers the score.  The value and unit as read stay on the extraction
    for the confidence breakdown.  Not-found extractions pass through
    untouched.
    """
    converted: dict[BiomarkerKey, BiomarkerExtraction] = {}
    for key, extraction in extractions.items():
        if extraction.value is None:
            converted[key] = extraction
            continue
        result = smart_convert(key, extraction.value, extraction.unit)
        if result.converted or result.unit_detected:
            logger.debug(
                "%s: %s %s -> %s %s (x%.2f confidence)",
                key.value, extraction.value, extraction.unit,
                result.value, result.unit, result.confidence,
            )
        read_value = extraction.value if extraction.source_value is None else extraction.source_value
        read_unit = extraction.unit if extraction.factors is None else extraction.source_unit
        converted[key] = dataclasses.replace(
            extraction,
            value=round(result.value, 6),
            unit=result.unit,
            confidence=extraction.confidence * result.confidence,
            source_value=read_value,
            source_unit=read_unit,
            unit_converted=result.converted,
            unit_inferred=result.unit_detected,
            conversion_confidence=extraction.conversion_confidence * result.confidence,
        )
    return converted


def check_phenoage_plausibility(
    extractions: Mapping[BiomarkerKey, BiomarkerExtraction],
    chronological_age: float | None = None,
) -> PhenoAgeCheck:
    """Run the PhenoAge formula over an extracted record as a sanity check.

    The record is not changed.  Warnings flag an incomplete record or a
    PhenoAge implausibly far from *chronological_age*.
    """
    missing = [key for key in ALL_BIOMARKERS if extractions[key].value is None]
    if missing:
        names = ", ".join(get_display_name(key) for key in missing)
        return PhenoAgeCheck(warnings=[f"PhenoAge check skipped, missing: {names}"])
    if chronological_age is None:
        return PhenoAgeCheck()

    values = {key: extractions[key].value for key in ALL_BIOMARKERS}
    phenoage = calculate_phenoage(values, chronological_age)  # type: ignore[arg-type]
    check = PhenoAgeCheck(phenoage=phenoage)
    if abs(phenoage - chronological_age) > PLAUSIBLE_AGE_GAP:
        check.warnings.append(
            f"Estimated PhenoAge {phenoage:g} is more than {PLAUSIBLE_AGE_GAP:g} years from "
            f"chronological age {chronological_age:g}; check the extracted values and units"
        )
    return check


def _validation_error(validation: FileValidationResult, size: int, max_size_mb: float) -> OcrError:
    if size == 0:
        code = OcrErrorCode.EMPTY_FILE
    elif size > max_size_mb * 1024 * 1024:
        code = OcrErrorCode.FILE_TOO_LARGE
    else:
        code = OcrErrorCode.INVALID_FILE_TYPE
    return OcrError(code, message=". ".join(validation.errors))


# ---------------------------------------------------------------------------
# Processing paths
# ---------------------------------------------------------------------------


async def process_pdf(
    data: bytes,
    settings: Settings,
    engine: OcrEngine | None = None,
) -> OcrExtractionResult:
    """Embedded-text fast path, else rasterise and OCR up to ``max_pdf_pages``."""
    embedded = await extract_pdf_text(data)
    if embedded.word_count >= settings.embedded_text_min_words:
        logger.info(
            "PDF has embedded text (%d words, %d pages), skipping OCR",
            embedded.word_count, len(embedded.pages),
        )
        extractions = extract_from_multiple_pages(
            PageText(text, page_number) for page_number, text in embedded.pages
        )
        return OcrExtractionResult(
            success=True,
            extractions=apply_unit_conversions(extractions),
            raw_text=embedded.full_text,
            page_count=len(embedded.pages),
            method=METHOD_EMBEDDED_TEXT,
        )

    rendered = await convert_pdf_to_images_parallel(
        data,
        scale=settings.pdf_render_scale,
        max_pages=settings.max_pdf_pages,
        concurrency=settings.pdf_render_concurrency,
    )
    if not rendered.pages:
        return create_empty_result(["Could not extract any pages from PDF"], rendered.total_pages)

    engine = engine or await get_engine()
    strategies = fallback_strategies(settings.preprocessing_options())

    async def _recognize_page(page: PdfPageImage, _index: int) -> PageText | str:
        try:
            ocr = await recognize_with_fallback(
                page.image_bytes,
                strategies=strategies,
                good_enough=settings.ocr_good_enough_confidence,
                engine=engine,
            )
        except OcrError as exc:
            if exc.code is OcrErrorCode.EXTRACTION_TIMEOUT:
                raise
            logger.warning("OCR failed on PDF page %d: %s", page.page_number, exc)
            return f"Failed to OCR page {page.page_number}: {exc}"
        return PageText(ocr.text, page.page_number, ocr.confidence)

    # page order is preserved, so errors read page by page
    outcomes = await gather_bounded(rendered.pages, _recognize_page, settings.image_concurrency)
    pages = [o for o in outcomes if isinstance(o, PageText)]
    errors = [o for o in outcomes if isinstance(o, str)]

    if not pages:
        errors.append("OCR failed on all pages")
        return create_empty_result(errors, rendered.total_pages)
    if not any(p.text.strip() for p in pages):
        raise OcrError(OcrErrorCode.NO_TEXT_DETECTED)

    extractions = extract_from_multiple_pages(pages)
    return OcrExtractionResult(
        success=True,
        extractions=apply_unit_conversions(extractions),
        raw_text="\n\n".join(f"--- Page {p.page_number} ---\n{p.text}" for p in pages),
        page_count=rendered.total_pages,
        errors=errors,
        method=METHOD_OCR,
    )


async def process_image(
    data: bytes,
    settings: Settings,
    engine: OcrEngine | None = None,
) -> OcrExtractionResult:
    """OCR a single image.  Quality issues other than tiny dimensions become notes."""
    quality = await check_image_quality(data)
    if quality.width < MIN_DIMENSION or quality.height < MIN_DIMENSION:
        raise OcrError(OcrErrorCode.LOW_QUALITY_IMAGE, message="; ".join(quality.issues))

    engine = engine or await get_engine()
    ocr = await recognize_with_fallback(
        data,
        strategies=fallback_strategies(settings.preprocessing_options()),
        good_enough=settings.ocr_good_enough_confidence,
        engine=engine,
    )
    if not ocr.text.strip():
        raise OcrError(OcrErrorCode.NO_TEXT_DETECTED)

    extractions = extract_all_biomarkers(ocr.text, 1, ocr.confidence)
    return OcrExtractionResult(
        success=True,
        extractions=apply_unit_conversions(extractions),
        raw_text=ocr.text,
        page_count=1,
        method=METHOD_OCR,
        notes=list(quality.issues),
    )


async def _extract(
    data: bytes,
    mime_type: str,
    filename: str,
    size: int,
    settings: Settings,
    engine: OcrEngine | None,
) -> OcrExtractionResult:
    validation = validate_file(
        mime_type, filename, size, data[:MAGIC_HEADER_LENGTH], settings.max_upload_mb
    )
    if not validation.valid:
        logger.info("Rejected upload %r: %s", filename, "; ".join(validation.errors))
        raise _validation_error(validation, size, settings.max_upload_mb)

    info = validation.format_info
    if info is None:
        raise OcrError(OcrErrorCode.INVALID_FILE_TYPE)
    notes = list(validation.warnings)

    if info.category == "pdf" or is_pdf(data):
        result = await process_pdf(data, settings, engine)
    else:
        converted = await convert_to_standard_format(data, info)
        if converted.converted:
            notes.append(f"Converted from {converted.original_format.upper()} to PNG")
        result = await process_image(converted.data, settings, engine)

    result.notes = notes + result.notes
    return result


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


async def extract_document(
    data: bytes,
    mime_type: str,
    filename: str,
    size: int | None = None,
    settings: Settings | None = None,
    engine: OcrEngine | None = None,
) -> OcrExtractionResult:
    """Extract the nine biomarkers from an uploaded lab report.

    Args:
        data:      Full file bytes.
        mime_type: Declared MIME type (may be wrong or empty).
        filename:  Original filename.
        size:      Declared size in bytes; ``len(data)`` when omitted.
        settings:  Configuration; the cached application settings when None.
        engine:    OCR engine; the shared process-wide engine when None.

    Returns:
        An :class:`OcrExtractionResult` with all nine biomarkers present.

    Raises:
        OcrError: on validation failure, engine failure, or when the
            ``extraction_deadline_seconds`` deadline passes.
    """
    if settings is None:
        from src.config import get_settings

        settings = get_settings()
    size = len(data) if size is None else size

    started = time.perf_counter()
    try:
        result = await with_deadline(
            _extract(data, mime_type, filename, size, settings, engine),
            settings.extraction_deadline_seconds,
            "Extraction",
        )
    except OcrError:
        raise
    except Exception as exc:
        logger.exception("Unexpected failure extracting %r", filename)
        raise create_ocr_error(exc) from exc

    result.processing_time_ms = int((time.perf_counter() - started) * 1000)
    logger.info(
        "Extracted %d/%d biomarkers from %r via %s in %d ms",
        sum(e.found for e in result.extractions.values()),
        len(result.extractions),
        filename,
        result.method,
        result.processing_time_ms,
    )
    return result
