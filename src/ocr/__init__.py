"""BioAge lab-report OCR engine: public API.

Usage::

    from src.ocr import extract_document

    with open("labs.pdf", "rb") as f:
        data = f.read()
    result = await extract_document(data, "application/pdf", "labs.pdf")

    for key, extraction in result.extractions.items():
        print(key.value, extraction.value, extraction.unit, extraction.confidence)
"""

from __future__ import annotations

from src.ocr.base import (
    ALL_BIOMARKERS,
    BiomarkerExtraction,
    BiomarkerKey,
    ConfidenceLevel,
    OcrExtractionResult,
)
from src.ocr.errors import OcrError, OcrErrorCode
from src.ocr.extractor import extract_all_biomarkers, extract_from_multiple_pages
from src.ocr.pipeline import extract_document

__all__ = [
    "extract_document",
    "extract_all_biomarkers",
    "extract_from_multiple_pages",
    "ALL_BIOMARKERS",
    "BiomarkerExtraction",
    "BiomarkerKey",
    "ConfidenceLevel",
    "OcrError",
    "OcrErrorCode",
    "OcrExtractionResult",
]
