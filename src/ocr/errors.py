"""Classified OCR errors.

Every failure that leaves the pipeline is an :class:`OcrError` carrying a
code, an internal message, a user-facing message, an optional suggestion and
a retry flag, so callers can decide between retry, surface-to-user and
abandon without parsing exception text.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum


class OcrErrorCode(str, Enum):
    # File errors
    FILE_TOO_LARGE = "FILE_TOO_LARGE"
    INVALID_FILE_TYPE = "INVALID_FILE_TYPE"
    CORRUPTED_FILE = "CORRUPTED_FILE"
    EMPTY_FILE = "EMPTY_FILE"

    # Processing errors
    IMAGE_PROCESSING_FAILED = "IMAGE_PROCESSING_FAILED"
    OCR_ENGINE_FAILED = "OCR_ENGINE_FAILED"
    PDF_CONVERSION_FAILED = "PDF_CONVERSION_FAILED"
    LOW_QUALITY_IMAGE = "LOW_QUALITY_IMAGE"

    # Extraction errors
    NO_TEXT_DETECTED = "NO_TEXT_DETECTED"
    NO_BIOMARKERS_FOUND = "NO_BIOMARKERS_FOUND"
    EXTRACTION_TIMEOUT = "EXTRACTION_TIMEOUT"

    # Network errors
    NETWORK_ERROR = "NETWORK_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"

    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class OcrErrorDetails:
    message: str
    user_message: str
    suggestion: str | None
    retryable: bool


OCR_ERROR_DETAILS: dict[OcrErrorCode, OcrErrorDetails] = {
    OcrErrorCode.FILE_TOO_LARGE: OcrErrorDetails(
        "File exceeds maximum size limit",
        "This file is too large to process.",
        "Please upload a file smaller than 10MB.",
        False,
    ),
    OcrErrorCode.INVALID_FILE_TYPE: OcrErrorDetails(
        "Invalid file type",
        "This file type is not supported.",
        "Please upload a PDF, PNG, or JPG file.",
        False,
    ),
    OcrErrorCode.CORRUPTED_FILE: OcrErrorDetails(
        "File appears to be corrupted",
        "We couldn't read this file.",
        "Try re-downloading or re-scanning your lab report.",
        False,
    ),
    OcrErrorCode.EMPTY_FILE: OcrErrorDetails(
        "File is empty",
        "This file appears to be empty.",
        "Please upload a valid lab report.",
        False,
    ),
    OcrErrorCode.IMAGE_PROCESSING_FAILED: OcrErrorDetails(
        "Failed to process image",
        "We had trouble processing your image.",
        "Try uploading a clearer photo or scan.",
        True,
    ),
    OcrErrorCode.OCR_ENGINE_FAILED: OcrErrorDetails(
        "OCR engine error",
        "Text extraction failed.",
        "Please try again in a moment.",
        True,
    ),
    OcrErrorCode.PDF_CONVERSION_FAILED: OcrErrorDetails(
        "PDF conversion failed",
        "We couldn't process this PDF.",
        "Try exporting the PDF again or take a screenshot of the page.",
        True,
    ),
    OcrErrorCode.LOW_QUALITY_IMAGE: OcrErrorDetails(
        "Image quality too low",
        "The image quality is too low for accurate reading.",
        "Please upload a clearer, higher resolution image.",
        False,
    ),
    OcrErrorCode.NO_TEXT_DETECTED: OcrErrorDetails(
        "No text detected in image",
        "We couldn't find any text in this file.",
        "Make sure the image contains your lab report values.",
        False,
    ),
    OcrErrorCode.NO_BIOMARKERS_FOUND: OcrErrorDetails(
        "No biomarkers found",
        "We couldn't find any biomarker values.",
        "Make sure your lab report includes the required blood tests "
        "(Albumin, Creatinine, Glucose, CRP, Lymphocyte %, MCV, RDW, "
        "Alkaline Phosphatase and WBC).",
        False,
    ),
    OcrErrorCode.EXTRACTION_TIMEOUT: OcrErrorDetails(
        "Extraction timed out",
        "Processing took too long.",
        "Try uploading a smaller file or fewer pages.",
        True,
    ),
    OcrErrorCode.NETWORK_ERROR: OcrErrorDetails(
        "Network error",
        "Connection problem occurred.",
        "Check your internet connection and try again.",
        True,
    ),
    OcrErrorCode.SERVICE_UNAVAILABLE: OcrErrorDetails(
        "Service temporarily unavailable",
        "Our service is temporarily busy.",
        "Please wait a moment and try again.",
        True,
    ),
    OcrErrorCode.UNKNOWN: OcrErrorDetails(
        "Unknown error",
        "Something went wrong.",
        "Please try again or contact support if the problem persists.",
        True,
    ),
}


class OcrError(Exception):
    """A classified pipeline failure.

    Args:
        code:     The error classification.
        original: Underlying exception, if any (also chained via ``raise from``).
        message:  Internal message override; defaults to the code's message.
    """

    def __init__(
        self,
        code: OcrErrorCode,
        original: BaseException | None = None,
        message: str | None = None,
    ) -> None:
        details = OCR_ERROR_DETAILS[code]
        super().__init__(message or details.message)
        self.code = code
        self.message = message or details.message
        self.user_message = details.user_message
        self.suggestion = details.suggestion
        self.retryable = details.retryable
        self.original = original

    def to_dict(self) -> dict:
        return {
            "code": self.code.value,
            "message": self.message,
            "userMessage": self.user_message,
            "suggestion": self.suggestion,
            "retryable": self.retryable,
        }


# Keyword → code, checked in order against the lowercased exception text.
_KEYWORD_CLASSIFICATION: tuple[tuple[tuple[str, ...], OcrErrorCode], ...] = (
    (("timeout", "timed out"), OcrErrorCode.EXTRACTION_TIMEOUT),
    (("network", "fetch", "connection"), OcrErrorCode.NETWORK_ERROR),
    (("corrupt", "invalid"), OcrErrorCode.CORRUPTED_FILE),
    (("pil", "image"), OcrErrorCode.IMAGE_PROCESSING_FAILED),
    (("tesseract", "ocr"), OcrErrorCode.OCR_ENGINE_FAILED),
    (("pdf", "mupdf"), OcrErrorCode.PDF_CONVERSION_FAILED),
)


def create_ocr_error(error: BaseException | None) -> OcrError:
    """Normalise any exception into an :class:`OcrError`.

    Explicit classifications pass through unchanged; everything else is
    classified by keyword sniffing of its message, falling back to UNKNOWN.
    """
    if isinstance(error, OcrError):
        return error
    if error is None:
        return OcrError(OcrErrorCode.UNKNOWN)
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return OcrError(OcrErrorCode.EXTRACTION_TIMEOUT, error)
    if isinstance(error, ConnectionError):
        return OcrError(OcrErrorCode.NETWORK_ERROR, error)

    text = f"{type(error).__name__} {error}".lower()
    for keywords, code in _KEYWORD_CLASSIFICATION:
        if any(k in text for k in keywords):
            return OcrError(code, error)
    return OcrError(OcrErrorCode.UNKNOWN, error)


def format_ocr_error_response(error: BaseException | None) -> dict:
    """Serialise any exception as the API error body."""
    ocr_error = create_ocr_error(error)
    return {
        "error": ocr_error.message,
        "userMessage": ocr_error.user_message,
        "suggestion": ocr_error.suggestion,
        "retryable": ocr_error.retryable,
        "code": ocr_error.code.value,
    }
