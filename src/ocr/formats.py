"""Upload format detection, validation and conversion.

Detection order is declared MIME type, then filename extension, then magic
bytes, so a browser that sends ``application/octet-stream`` for a perfectly
good PNG does not get the upload rejected.
"""

from __future__ import annotations

import asyncio
import io
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

from PIL import Image

from src.ocr.errors import OcrError, OcrErrorCode

logger = logging.getLogger("bioage.ocr.formats")

DEFAULT_MAX_SIZE_MB = 10
MAGIC_HEADER_LENGTH = 12


@dataclass(frozen=True)
class FileFormatInfo:
    mime_type: str
    extension: str
    category: str  # pdf | image | document | unknown
    display_name: str
    needs_conversion: bool
    conversion_target: str | None = None

    def to_dict(self) -> dict:
        return {
            "mimeType": self.mime_type,
            "extension": self.extension,
            "category": self.category,
            "displayName": self.display_name,
            "needsConversion": self.needs_conversion,
            "conversionTarget": self.conversion_target,
        }


@dataclass
class FileValidationResult:
    valid: bool
    format_info: FileFormatInfo | None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ConvertedFile:
    data: bytes
    original_format: str
    converted: bool


# ---------------------------------------------------------------------------
# Format tables
# ---------------------------------------------------------------------------

_PDF = FileFormatInfo("application/pdf", "pdf", "pdf", "PDF Document", False)
_PNG = FileFormatInfo("image/png", "png", "image", "PNG Image", False)
_JPEG = FileFormatInfo("image/jpeg", "jpg", "image", "JPEG Image", False)
_WEBP = FileFormatInfo("image/webp", "webp", "image", "WebP Image", True, "png")
_HEIC = FileFormatInfo("image/heic", "heic", "image", "HEIC Image (Apple)", True, "png")
_HEIF = FileFormatInfo("image/heif", "heif", "image", "HEIF Image", True, "png")
_TIFF = FileFormatInfo("image/tiff", "tiff", "image", "TIFF Image", True, "png")
_TIF = FileFormatInfo("image/tiff", "tif", "image", "TIFF Image", True, "png")
_BMP = FileFormatInfo("image/bmp", "bmp", "image", "BMP Image", True, "png")
_GIF = FileFormatInfo("image/gif", "gif", "image", "GIF Image", True, "png")
_AVIF = FileFormatInfo("image/avif", "avif", "image", "AVIF Image", True, "png")
_SVG = FileFormatInfo("image/svg+xml", "svg", "image", "SVG Image", True, "png")

FILE_FORMAT_MAP: Mapping[str, FileFormatInfo] = MappingProxyType(
    {
        "application/pdf": _PDF,
        "image/png": _PNG,
        "image/jpeg": _JPEG,
        "image/jpg": _JPEG,
        "image/webp": _WEBP,
        "image/heic": _HEIC,
        "image/heif": _HEIF,
        "image/tiff": _TIFF,
        "image/tif": _TIF,
        "image/bmp": _BMP,
        "image/x-bmp": _BMP,
        "image/x-ms-bmp": _BMP,
        "image/gif": _GIF,
        "image/avif": _AVIF,
        "image/svg+xml": _SVG,
    }
)

# Used when the browser sends no (or a generic) MIME type.
EXTENSION_TO_MIME: Mapping[str, str] = MappingProxyType(
    {
        "pdf": "application/pdf",
        "png": "image/png",
        "jpg": "image/jpeg",
        "jpeg": "image/jpeg",
        "webp": "image/webp",
        "heic": "image/heic",
        "heif": "image/heif",
        "tiff": "image/tiff",
        "tif": "image/tiff",
        "bmp": "image/bmp",
        "gif": "image/gif",
        "avif": "image/avif",
        "svg": "image/svg+xml",
    }
)

_HEIC_BRANDS = frozenset({b"heic", b"heix", b"hevc", b"hevx", b"mif1", b"msf1"})
_AVIF_BRANDS = frozenset({b"avif", b"avis"})


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


def get_file_extension(filename: str) -> str:
    parts = filename.lower().split(".")
    return parts[-1] if len(parts) > 1 else ""


def detect_from_magic_bytes(header: bytes) -> FileFormatInfo | None:
    """Identify a file from its signature.  Needs at least 12 bytes."""
    if len(header) < MAGIC_HEADER_LENGTH:
        return None

    if header.startswith(b"%PDF"):
        return _PDF
    if header.startswith(b"\x89PNG"):
        return _PNG
    if header.startswith(b"\xff\xd8\xff"):
        return _JPEG
    if header[:4] == b"RIFF" and header[8:12] == b"WEBP":
        return _WEBP
    if header.startswith(b"GIF"):
        return _GIF
    if header.startswith(b"BM"):
        return _BMP
    if header[:2] in (b"II", b"MM"):
        return _TIFF
    if header[4:8] == b"ftyp":
        brand = header[8:12]
        if brand in _HEIC_BRANDS:
            return _HEIC
        if brand in _AVIF_BRANDS:
            return _AVIF
    return None


def detect_file_format(
    mime_type: str,
    filename: str,
    header: bytes | None = None,
) -> FileFormatInfo | None:
    """Classify an upload by MIME type, then extension, then magic bytes."""
    info = FILE_FORMAT_MAP.get((mime_type or "").lower().strip())
    if info is not None:
        return info

    fallback_mime = EXTENSION_TO_MIME.get(get_file_extension(filename))
    if fallback_mime is not None:
        return FILE_FORMAT_MAP[fallback_mime]

    if header:
        return detect_from_magic_bytes(header)
    return None


def is_format_supported(mime_type: str, filename: str) -> bool:
    return detect_file_format(mime_type, filename) is not None


def get_supported_mime_types() -> list[str]:
    return list(FILE_FORMAT_MAP)


def get_supported_extensions() -> list[str]:
    return list(EXTENSION_TO_MIME)


def get_supported_formats_display() -> str:
    """E.g. ``"AVIF, BMP, GIF, ..., WEBP"``."""
    return ", ".join(sorted({info.extension.upper() for info in FILE_FORMAT_MAP.values()}))


def get_accept_string() -> str:
    """Value for an ``<input type=file accept=...>`` attribute."""
    return ",".join([*get_supported_mime_types(), *(f".{e}" for e in get_supported_extensions())])


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_file(
    mime_type: str,
    filename: str,
    size: int,
    header: bytes | None = None,
    max_size_mb: float = DEFAULT_MAX_SIZE_MB,
) -> FileValidationResult:
    """Check size and format of an upload before any processing.

    Args:
        mime_type:   Declared MIME type (may be empty or wrong).
        filename:    Original filename.
        size:        Declared size in bytes.
        header:      Leading bytes of the file for magic-byte sniffing.
        max_size_mb: Size ceiling.

    Returns:
        A :class:`FileValidationResult`; ``valid`` is False when there are
        errors.  Warnings never invalidate a file.
    """
    errors: list[str] = []
    warnings: list[str] = []

    max_bytes = max_size_mb * 1024 * 1024
    if size > max_bytes:
        errors.append(
            f"File too large. Maximum size is {max_size_mb:g}MB, "
            f"got {size / 1024 / 1024:.1f}MB"
        )
    if size == 0:
        errors.append("File is empty")

    info = detect_file_format(mime_type, filename, header)
    if info is None:
        declared = mime_type or get_file_extension(filename) or "unknown"
        errors.append(
            f"Unsupported file format: {declared}. "
            f"Supported formats: {get_supported_formats_display()}"
        )
    else:
        if info.needs_conversion:
            warnings.append(
                f"{info.display_name} will be converted to "
                f"{(info.conversion_target or 'png').upper()} for processing"
            )
        if info.extension == "gif":
            warnings.append(
                "GIF format may have reduced quality. "
                "Consider using PNG or JPEG for best results."
            )
        if info.extension == "svg":
            warnings.append(
                "SVG images may not render correctly. "
                "Consider using a raster format (PNG, JPEG)."
            )

    return FileValidationResult(
        valid=not errors,
        format_info=info,
        errors=errors,
        warnings=warnings,
    )


# ---------------------------------------------------------------------------
# Conversion
# ---------------------------------------------------------------------------


def _reencode(data: bytes, target: str) -> bytes:
    with Image.open(io.BytesIO(data)) as img:
        # animated GIF / WebP: first frame only
        img.seek(0)
        frame = img.convert("RGBA" if target == "png" else "RGB")
        out = io.BytesIO()
        if target == "png":
            frame.save(out, format="PNG", compress_level=6)
        else:
            frame.convert("RGB").save(out, format="JPEG", quality=95)
        return out.getvalue()


async def convert_to_standard_format(data: bytes, format_info: FileFormatInfo) -> ConvertedFile:
    """Re-encode formats the OCR engine does not read well to PNG (or JPEG).

    Raises:
        OcrError: IMAGE_PROCESSING_FAILED naming the source format.
    """
    if not format_info.needs_conversion:
        return ConvertedFile(data=data, original_format=format_info.extension, converted=False)

    target = format_info.conversion_target or "png"
    try:
        converted = await asyncio.to_thread(_reencode, data, target)
    except Exception as exc:
        raise OcrError(
            OcrErrorCode.IMAGE_PROCESSING_FAILED,
            exc,
            message=f"Failed to convert {format_info.display_name} to {target}: {exc}",
        ) from exc

    logger.info(
        "Converted %s to %s (%d → %d bytes)",
        format_info.display_name, target.upper(), len(data), len(converted),
    )
    return ConvertedFile(data=converted, original_format=format_info.extension, converted=True)
