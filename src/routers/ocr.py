"""Lab report OCR endpoints.

Endpoints:
    POST /ocr/extract  Upload a PDF or image, return the nine PhenoAge biomarkers
    GET  /ocr/formats  Accepted upload formats (for the file picker)

Failures are raised as :class:`OcrError` and serialised by the application
exception handler in ``src.main``.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, File, Form, UploadFile

from src.config import get_settings
from src.ocr.base import ALL_BIOMARKERS
from src.ocr.biomarkers import get_display_name
from src.ocr.confidence import (
    aggregate_confidence,
    generate_detailed_confidence_breakdown,
    get_extraction_summary,
)
from src.ocr.formats import (
    MAGIC_HEADER_LENGTH,
    detect_file_format,
    get_accept_string,
    get_supported_extensions,
    get_supported_formats_display,
    get_supported_mime_types,
)
from src.ocr.pipeline import check_phenoage_plausibility, extract_document

logger = logging.getLogger("bioage.routers.ocr")

router = APIRouter(prefix="/ocr", tags=["ocr"])


# ---------------------------------------------------------------------------
# POST /ocr/extract
# ---------------------------------------------------------------------------


@router.post("/extract")
async def extract_biomarkers(
    file: UploadFile = File(...),
    chronological_age: float | None = Form(default=None, gt=0, le=150),
) -> Any:
    """Run the extraction pipeline over an uploaded lab report.

    The response always lists all nine biomarkers.  Missing ones have
    ``value: null`` and confidence 0 so the client can prompt for manual
    entry.  ``chronological_age`` is optional and only enables the
    PhenoAge plausibility check.
    """
    settings = get_settings()
    thresholds = settings.confidence_thresholds()

    data = await file.read()
    filename = file.filename or "upload"
    mime_type = file.content_type or ""

    result = await extract_document(data, mime_type, filename, size=len(data), settings=settings)

    breakdowns = {
        key.value: generate_detailed_confidence_breakdown(
            extraction,
            was_unit_converted=extraction.unit_converted,
            thresholds=thresholds,
        ).to_dict()
        for key, extraction in result.extractions.items()
    }
    format_info = detect_file_format(mime_type, filename, data[:MAGIC_HEADER_LENGTH])
    check = check_phenoage_plausibility(result.extractions, chronological_age)

    return {
        "success": result.success,
        "result": result.to_dict(),
        "summary": get_extraction_summary(result.extractions, thresholds),
        "stats": aggregate_confidence(result.extractions, thresholds).to_dict(),
        "displayNames": {key.value: get_display_name(key) for key in ALL_BIOMARKERS},
        "breakdowns": breakdowns,
        "fileInfo": {
            "filename": filename,
            "size": len(data),
            "format": format_info.to_dict() if format_info else None,
        },
        "processingNotes": result.notes,
        "phenoageCheck": check.to_dict(),
    }


# ---------------------------------------------------------------------------
# GET /ocr/formats
# ---------------------------------------------------------------------------


@router.get("/formats")
async def supported_formats() -> dict:
    settings = get_settings()
    return {
        "mimeTypes": get_supported_mime_types(),
        "extensions": get_supported_extensions(),
        "display": get_supported_formats_display(),
        "accept": get_accept_string(),
        "maxUploadMb": settings.max_upload_mb,
    }
