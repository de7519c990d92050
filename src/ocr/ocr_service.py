"""Character recognition adapter around Tesseract (pytesseract).

The engine is expensive to bring up (binary + language data checks), so it
is created at most once per process by :class:`EngineManager` and shared by
every recognition call.  Concurrent first callers all await the same
initialisation task; if it fails every waiter gets the same error and the
next call starts a fresh attempt.

Recognition output is built from ``image_to_data`` so each word and line
carries its own confidence (scaled to 0.0-1.0) and bounding box.
"""

from __future__ import annotations

import asyncio
import io
import logging
from dataclasses import dataclass, field, replace
from typing import Callable, Sequence

import pytesseract
from PIL import Image
from pytesseract import Output

from src.ocr.base import (
    DEFAULT_PREPROCESSING,
    BoundingBox,
    OcrLine,
    OcrResult,
    OcrWord,
    PreprocessingOptions,
)
from src.ocr.concurrency import with_deadline
from src.ocr.errors import OcrError, OcrErrorCode, create_ocr_error
from src.ocr.image_processor import auto_rotate, preprocess_image

logger = logging.getLogger("bioage.ocr.ocr_service")

DEFAULT_LANGUAGE = "eng"
# LSTM engine, single uniform block of text: suits tabular lab reports.
DEFAULT_TESSERACT_CONFIG = "--oem 3 --psm 6"

GOOD_ENOUGH_CONFIDENCE = 0.85
PAGE_BREAK = "\n\n--- PAGE BREAK ---\n\n"
MIN_WORDS_FOR_TEXT = 5

MINIMAL_PREPROCESSING = PreprocessingOptions(grayscale=True, normalize=True)


def fallback_strategies(base: PreprocessingOptions) -> tuple[PreprocessingOptions, ...]:
    """Preprocessing variants tried in order until one clears the confidence bar."""
    return (
        base,
        replace(base, threshold=None),   # coloured backgrounds
        replace(base, threshold=180),    # faded originals
        MINIMAL_PREPROCESSING,
    )


FALLBACK_STRATEGIES = fallback_strategies(DEFAULT_PREPROCESSING)


@dataclass
class MultiPageOcrResult:
    pages: list[OcrResult] = field(default_factory=list)
    combined_text: str = ""
    average_confidence: float = 0.0


@dataclass(frozen=True)
class TextDetection:
    has_text: bool
    estimated_text_density: float


# ---------------------------------------------------------------------------
# Result construction
# ---------------------------------------------------------------------------


def build_ocr_result(data: dict) -> OcrResult:
    """Turn an ``image_to_data(output_type=Output.DICT)`` payload into an OcrResult.

    Words are grouped into lines by (block, paragraph, line) number.  Entries
    with empty text or a negative confidence (layout rows) are skipped.
    """
    lines: dict[tuple[int, int, int], list[OcrWord]] = {}
    words: list[OcrWord] = []

    for i, text in enumerate(data.get("text", [])):
        text = (text or "").strip()
        conf = float(data["conf"][i])
        if not text or conf < 0:
            continue
        left, top = int(data["left"][i]), int(data["top"][i])
        word = OcrWord(
            text=text,
            confidence=conf / 100,
            bbox=BoundingBox(left, top, left + int(data["width"][i]), top + int(data["height"][i])),
        )
        words.append(word)
        key = (int(data["block_num"][i]), int(data["par_num"][i]), int(data["line_num"][i]))
        lines.setdefault(key, []).append(word)

    ocr_lines = [
        OcrLine(
            text=" ".join(w.text for w in line_words),
            confidence=sum(w.confidence for w in line_words) / len(line_words),
            words=[w.text for w in line_words],
        )
        for line_words in lines.values()
    ]
    confidence = sum(w.confidence for w in words) / len(words) if words else 0.0
    return OcrResult(
        text="\n".join(line.text for line in ocr_lines),
        confidence=confidence,
        words=words,
        lines=ocr_lines,
    )


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class OcrEngine:
    """A started Tesseract configuration.

    Args:
        language:      Tesseract language string, e.g. ``"eng"`` or ``"eng+deu"``.
        tesseract_cmd: Path to the tesseract binary; PATH lookup when None.
        config:        Extra tesseract CLI flags.
    """

    def __init__(
        self,
        language: str = DEFAULT_LANGUAGE,
        tesseract_cmd: str | None = None,
        config: str = DEFAULT_TESSERACT_CONFIG,
    ) -> None:
        self.language = language
        self.tesseract_cmd = tesseract_cmd
        self.config = config
        self.version: str | None = None
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    def _start_blocking(self) -> None:
        if self.tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = self.tesseract_cmd
        self.version = str(pytesseract.get_tesseract_version())
        available = set(pytesseract.get_languages(config=""))
        missing = [lang for lang in self.language.split("+") if lang not in available]
        if missing:
            raise OcrError(
                OcrErrorCode.OCR_ENGINE_FAILED,
                message=f"Tesseract language data missing: {', '.join(missing)}",
            )

    async def start(self) -> None:
        """Verify the binary and language data.  Raises OcrError on failure."""
        try:
            await asyncio.to_thread(self._start_blocking)
        except OcrError:
            raise
        except Exception as exc:
            raise OcrError(
                OcrErrorCode.OCR_ENGINE_FAILED,
                exc,
                message=f"Tesseract OCR engine failed to start: {exc}",
            ) from exc
        self._started = True
        logger.info("Tesseract %s ready (lang=%s)", self.version, self.language)

    def _recognize_blocking(self, image_bytes: bytes) -> OcrResult:
        with Image.open(io.BytesIO(image_bytes)) as img:
            data = pytesseract.image_to_data(
                img, lang=self.language, config=self.config, output_type=Output.DICT
            )
        return build_ocr_result(data)

    async def recognize(self, image_bytes: bytes) -> OcrResult:
        if not self._started:
            raise OcrError(OcrErrorCode.OCR_ENGINE_FAILED, message="OCR engine not started")
        try:
            return await asyncio.to_thread(self._recognize_blocking, image_bytes)
        except OcrError:
            raise
        except Exception as exc:
            raise create_ocr_error(exc) from exc

    async def terminate(self) -> None:
        self._started = False
        logger.info("Tesseract engine terminated")


def _default_engine_factory() -> OcrEngine:
    from src.config import get_settings

    settings = get_settings()
    return OcrEngine(
        language=settings.ocr_language,
        tesseract_cmd=settings.tesseract_cmd,
        config=settings.tesseract_config,
    )


class EngineManager:
    """Owns the process-wide engine: single-flight creation and teardown."""

    def __init__(self, factory: Callable[[], OcrEngine] | None = None) -> None:
        self._factory = factory or _default_engine_factory
        self._engine: OcrEngine | None = None
        self._init_task: asyncio.Task[OcrEngine] | None = None

    @property
    def is_ready(self) -> bool:
        return self._engine is not None

    @property
    def is_initializing(self) -> bool:
        return self._init_task is not None and not self._init_task.done()

    async def _initialize(self) -> OcrEngine:
        engine = self._factory()
        await engine.start()
        self._engine = engine
        return engine

    async def get(self) -> OcrEngine:
        """Return the engine, creating it on first use.

        Raises:
            OcrError: initialisation failed (the same instance for every
                concurrent waiter).
        """
        if self._engine is not None:
            return self._engine

        if self._init_task is None:
            logger.info("Initialising OCR engine")
            self._init_task = asyncio.ensure_future(self._initialize())

        task = self._init_task
        try:
            # shield: one cancelled waiter must not abort initialisation for the rest
            return await asyncio.shield(task)
        except Exception:
            if task.done() and self._init_task is task:
                self._init_task = None
            raise

    async def shutdown(self) -> None:
        task, self._init_task = self._init_task, None
        engine, self._engine = self._engine, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as exc:
                logger.debug("Engine initialisation aborted during shutdown: %s", exc)
        if engine is not None:
            await engine.terminate()


_manager: EngineManager | None = None


def get_engine_manager() -> EngineManager:
    """Return the process-wide manager (lazy singleton)."""
    global _manager
    if _manager is None:
        _manager = EngineManager()
    return _manager


async def get_engine() -> OcrEngine:
    return await get_engine_manager().get()


async def terminate_engine() -> None:
    """Tear down the shared engine, if any.  Safe to call repeatedly."""
    if _manager is not None:
        await _manager.shutdown()


# ---------------------------------------------------------------------------
# Recognition entry points
# ---------------------------------------------------------------------------


async def _recognize(
    data: bytes,
    preprocess: bool,
    options: PreprocessingOptions,
    engine: OcrEngine | None,
) -> OcrResult:
    if preprocess:
        # preprocess_image auto-orients as its first step
        processed = await preprocess_image(data, options)
    else:
        processed = await auto_rotate(data)
    engine = engine or await get_engine()
    return await engine.recognize(processed)


async def recognize_image(
    data: bytes,
    preprocess: bool = True,
    options: PreprocessingOptions = DEFAULT_PREPROCESSING,
    deadline: float | None = None,
    engine: OcrEngine | None = None,
) -> OcrResult:
    """Preprocess and recognise one image.

    Args:
        data:       Encoded image bytes.
        preprocess: Apply *options*; otherwise only EXIF auto-orient.
        options:    Preprocessing switches.
        deadline:   Seconds before a retryable EXTRACTION_TIMEOUT.
        engine:     Engine to use; the shared one when None.
    """
    return await with_deadline(
        _recognize(data, preprocess, options, engine), deadline, "Text recognition"
    )


async def recognize_with_fallback(
    data: bytes,
    strategies: Sequence[PreprocessingOptions] = FALLBACK_STRATEGIES,
    good_enough: float = GOOD_ENOUGH_CONFIDENCE,
    deadline: float | None = None,
    engine: OcrEngine | None = None,
) -> OcrResult:
    """Try preprocessing strategies in order, keeping the most confident result.

    Stops at the first result above *good_enough*.  A strategy that raises is
    skipped; only when every strategy raises does the call fail.

    Raises:
        OcrError: OCR_ENGINE_FAILED when all strategies failed.
    """

    async def _attempt() -> OcrResult:
        best: OcrResult | None = None
        last_error: Exception | None = None
        for n, strategy in enumerate(strategies, start=1):
            try:
                result = await _recognize(data, True, strategy, engine)
            except Exception as exc:
                logger.warning("OCR strategy %d/%d failed: %s", n, len(strategies), exc)
                last_error = exc
                continue

            logger.debug("OCR strategy %d/%d confidence %.3f", n, len(strategies), result.confidence)
            if best is None or result.confidence > best.confidence:
                best = result
            if result.confidence > good_enough:
                break

        if best is None:
            raise OcrError(
                OcrErrorCode.OCR_ENGINE_FAILED,
                last_error,
                message="All OCR strategies failed",
            ) from last_error
        return best

    return await with_deadline(_attempt(), deadline, "Text recognition")


async def recognize_multiple_images(
    buffers: Sequence[bytes],
    preprocess: bool = True,
    options: PreprocessingOptions = DEFAULT_PREPROCESSING,
    engine: OcrEngine | None = None,
) -> MultiPageOcrResult:
    """Recognise pages one after another and combine their text."""
    pages = [await recognize_image(b, preprocess, options, engine=engine) for b in buffers]
    return MultiPageOcrResult(
        pages=pages,
        combined_text=PAGE_BREAK.join(p.text for p in pages),
        average_confidence=sum(p.confidence for p in pages) / len(pages) if pages else 0.0,
    )


async def detect_text(data: bytes, engine: OcrEngine | None = None) -> TextDetection:
    """Cheap check for whether an image holds any text worth extracting."""
    result = await recognize_image(data, True, MINIMAL_PREPROCESSING, engine=engine)
    word_count = len(result.words)
    return TextDetection(
        has_text=word_count > MIN_WORDS_FOR_TEXT,
        estimated_text_density=min(1.0, word_count / 100 * result.confidence),
    )
