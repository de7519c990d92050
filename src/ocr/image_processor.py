"""Raster preprocessing for OCR.

All operations take and return encoded image bytes.  Pillow work is CPU
bound, so every public coroutine runs it in a worker thread via
``asyncio.to_thread``.  Any Pillow failure surfaces as a retryable
``OcrError(IMAGE_PROCESSING_FAILED)`` naming the source format; a corrupt
buffer is never passed through untouched.
"""

from __future__ import annotations

import asyncio
import io
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Sequence, TypeVar

from PIL import Image, ImageFilter, ImageOps

from src.ocr.base import DEFAULT_PREPROCESSING, PreprocessingOptions
from src.ocr.concurrency import gather_bounded, with_deadline
from src.ocr.errors import OcrError, OcrErrorCode
from src.ocr.formats import MAGIC_HEADER_LENGTH, detect_from_magic_bytes

logger = logging.getLogger("bioage.ocr.image_processor")

T = TypeVar("T")

# Letter-page height in inches; target_dpi * 11 is the target long edge.
PAGE_HEIGHT_INCHES = 11
UPSCALE_TRIGGER = 0.8

FAST_MAX_DIMENSION = 2000
DEFAULT_MAX_DIMENSION = 4000
DEFAULT_CONCURRENCY = 2

MIN_DIMENSION = 200
MAX_DIMENSION = 10000
MIN_BYTES = 1000


@dataclass(frozen=True)
class ImageMetadata:
    width: int
    height: int
    format: str
    size: int


@dataclass
class ImageQualityReport:
    is_acceptable: bool
    issues: list[str] = field(default_factory=list)
    width: int = 0
    height: int = 0
    format: str = "unknown"


# ---------------------------------------------------------------------------
# Internal helpers (run in worker threads)
# ---------------------------------------------------------------------------


def _source_format(data: bytes) -> str:
    info = detect_from_magic_bytes(data[:MAGIC_HEADER_LENGTH])
    return info.extension.upper() if info else "unknown"


def _open(data: bytes) -> Image.Image:
    img = Image.open(io.BytesIO(data))
    img.load()
    return img


def _encode_png(img: Image.Image, compress_level: int = 6) -> bytes:
    out = io.BytesIO()
    img.save(out, format="PNG", compress_level=compress_level)
    return out.getvalue()


def _binarize(img: Image.Image, level: int) -> Image.Image:
    return img.convert("L").point(lambda p: 255 if p >= level else 0)


def _preprocess(data: bytes, opts: PreprocessingOptions) -> bytes:
    img = ImageOps.exif_transpose(_open(data))

    if opts.target_dpi:
        target = opts.target_dpi * PAGE_HEIGHT_INCHES
        longest = max(img.size)
        if longest < target * UPSCALE_TRIGGER:
            ratio = target / longest
            size = (round(img.width * ratio), round(img.height * ratio))
            img = img.resize(size, Image.Resampling.LANCZOS)

    if opts.grayscale:
        img = ImageOps.grayscale(img)
    if img.mode not in ("L", "RGB"):
        img = img.convert("RGB")

    if opts.normalize:
        img = ImageOps.autocontrast(img)
    if opts.sharpen:
        img = img.filter(ImageFilter.UnsharpMask(radius=1.5, percent=100, threshold=0))
    if opts.denoise:
        img = img.filter(ImageFilter.MedianFilter(3))
    if opts.threshold is not None:
        img = _binarize(img, opts.threshold)

    return _encode_png(img)


def _preprocess_fast(data: bytes) -> bytes:
    img = ImageOps.grayscale(_open(data))
    img.thumbnail((FAST_MAX_DIMENSION, FAST_MAX_DIMENSION))
    return _encode_png(img)


def _auto_rotate(data: bytes) -> bytes:
    return _encode_png(ImageOps.exif_transpose(_open(data)))


def _to_png(data: bytes) -> bytes:
    return _encode_png(_open(data))


def _metadata(data: bytes) -> ImageMetadata:
    with Image.open(io.BytesIO(data)) as img:
        return ImageMetadata(
            width=img.width,
            height=img.height,
            format=(img.format or "unknown").lower(),
            size=len(data),
        )


def _resize_if_needed(data: bytes, max_dimension: int) -> tuple[bytes, bool]:
    img = _open(data)
    if max(img.size) <= max_dimension:
        return data, False
    img.thumbnail((max_dimension, max_dimension), Image.Resampling.LANCZOS)
    return _encode_png(img), True


def _enhance_faded(data: bytes) -> bytes:
    img = ImageOps.grayscale(_open(data))
    img = img.point(lambda p: max(0, min(255, int(p * 1.5 - 30))))
    img = ImageOps.autocontrast(img)
    img = img.filter(ImageFilter.UnsharpMask(radius=2, percent=150, threshold=0))
    return _encode_png(img)


def _remove_colored_background(data: bytes) -> bytes:
    img = ImageOps.autocontrast(ImageOps.grayscale(_open(data)))
    # light background → white, then keep only clearly dark strokes
    img = _binarize(img, 200)
    img = _binarize(ImageOps.invert(img), 50)
    return _encode_png(ImageOps.invert(img))


def _split(data: bytes, rows: int, cols: int) -> list[bytes]:
    img = _open(data)
    w, h = img.width // cols, img.height // rows
    if not w or not h:
        return [data]
    return [
        _encode_png(img.crop((c * w, r * h, (c + 1) * w, (r + 1) * h)))
        for r in range(rows)
        for c in range(cols)
    ]


async def _run(
    func: Callable[..., T],
    data: bytes,
    *args,
    deadline: float | None = None,
) -> T:
    fmt = _source_format(data)
    try:
        return await with_deadline(
            asyncio.to_thread(func, data, *args), deadline, f"Processing {fmt} image"
        )
    except OcrError:
        raise
    except Exception as exc:
        logger.warning("Image processing failed for %s image: %s", fmt, exc)
        raise OcrError(
            OcrErrorCode.IMAGE_PROCESSING_FAILED,
            exc,
            message=f"Failed to process {fmt} image: {exc}",
        ) from exc


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def preprocess_image(
    data: bytes,
    options: PreprocessingOptions = DEFAULT_PREPROCESSING,
    deadline: float | None = None,
) -> bytes:
    """Prepare an image for recognition.

    Steps, each toggled by *options*, in this order: EXIF auto-orient,
    Lanczos upscale when the long edge is under 80 % of ``target_dpi * 11``,
    grayscale, autocontrast, unsharp mask, 3×3 median filter, binarise.
    Output is always PNG.

    Raises:
        OcrError: IMAGE_PROCESSING_FAILED, or EXTRACTION_TIMEOUT past *deadline*.
    """
    return await _run(_preprocess, data, options, deadline=deadline)


async def preprocess_fast(data: bytes) -> bytes:
    """Grayscale and shrink to fit 2000×2000, for quick text-presence checks."""
    return await _run(_preprocess_fast, data)


async def auto_rotate(data: bytes) -> bytes:
    return await _run(_auto_rotate, data)


async def convert_to_png(data: bytes) -> bytes:
    return await _run(_to_png, data)


async def get_image_metadata(data: bytes) -> ImageMetadata:
    return await _run(_metadata, data)


async def resize_if_needed(
    data: bytes,
    max_dimension: int = DEFAULT_MAX_DIMENSION,
) -> tuple[bytes, bool]:
    """Shrink to fit *max_dimension*; returns ``(data, was_resized)``."""
    return await _run(_resize_if_needed, data, max_dimension)


async def enhance_faded_document(data: bytes) -> bytes:
    return await _run(_enhance_faded, data)


async def remove_colored_background(data: bytes) -> bytes:
    return await _run(_remove_colored_background, data)


async def split_into_regions(data: bytes, rows: int = 1, cols: int = 1) -> list[bytes]:
    """Cut an image into a rows×cols grid, row-major, for multi-column layouts."""
    if rows < 1 or cols < 1:
        raise ValueError(f"rows and cols must be >= 1, got {rows}x{cols}")
    return await _run(_split, data, rows, cols)


async def check_image_quality(data: bytes) -> ImageQualityReport:
    """Reject images too small, too large or too trivial to hold a lab report."""
    meta = await get_image_metadata(data)
    issues = []
    if meta.width < MIN_DIMENSION or meta.height < MIN_DIMENSION:
        issues.append(f"Image resolution too low (minimum {MIN_DIMENSION}x{MIN_DIMENSION})")
    if meta.width > MAX_DIMENSION or meta.height > MAX_DIMENSION:
        issues.append(f"Image dimensions too large (maximum {MAX_DIMENSION}x{MAX_DIMENSION})")
    if meta.size < MIN_BYTES:
        issues.append("Image appears to be empty or very simple")
    return ImageQualityReport(
        is_acceptable=not issues,
        issues=issues,
        width=meta.width,
        height=meta.height,
        format=meta.format,
    )


async def process_images_parallel(
    buffers: Sequence[bytes],
    processor: Callable[[bytes, int], Awaitable[T]],
    concurrency: int = DEFAULT_CONCURRENCY,
) -> list[T]:
    """Apply *processor* to every buffer, bounded, preserving input order."""
    return await gather_bounded(buffers, processor, concurrency)
