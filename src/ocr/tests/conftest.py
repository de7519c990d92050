"""Shared fixtures and helpers for the OCR pipeline test suite.

Documents are built in memory (Pillow for images, PyMuPDF for PDFs) so no
real lab reports are committed to the repo.  Recognition is replaced by
:class:`FakeEngine`, which returns canned text, so the suite does not need
the tesseract binary.
"""

from __future__ import annotations

import asyncio
import io
from typing import Sequence

import fitz  # PyMuPDF
import pytest
from PIL import Image, ImageDraw

from src.config import Settings
from src.ocr.base import BoundingBox, OcrResult, OcrWord


# ---------------------------------------------------------------------------
# Synthetic report text
# ---------------------------------------------------------------------------

# One "Label: value unit" line per biomarker, all values in the optimal range.
E2E_TEXT = (
    "Albumin: 4.5 g/dL\n"
    "Creatinine: 0.9 mg/dL\n"
    "Glucose: 85 mg/dL\n"
    "CRP: 0.5 mg/L\n"
    "Lymphocyte %: 30.0%\n"
    "MCV: 90.0 fL\n"
    "RDW: 12.5%\n"
    "ALP: 70.0 U/L\n"
    "WBC: 6.0 K/uL"
)

E2E_VALUES = {
    "albumin": 4.5,
    "creatinine": 0.9,
    "glucose": 85.0,
    "crp": 0.5,
    "lymphocytePercent": 30.0,
    "mcv": 90.0,
    "rdw": 12.5,
    "alp": 70.0,
    "wbc": 6.0,
}

# Chemistry on page 1, blood count on page 2 (typical two-panel report).
CHEMISTRY_PAGE = """\
COMPREHENSIVE METABOLIC PANEL
Albumin: 4.2 g/dL
Creatinine: 1.0 mg/dL
Glucose: 92 mg/dL
Alkaline Phosphatase: 65 U/L
"""

CBC_PAGE = """\
CBC WITH DIFFERENTIAL
WBC: 5.8 K/uL
MCV: 88 fL
RDW: 13.1 %
Lymphocytes: 32 %
hs-CRP: 1.2 mg/L
"""

# SI units and decimal commas (German laboratory layout).
EUROPEAN_TEXT = """\
Klinische Chemie
Albumin: 42 g/l
Kreatinin: 80 umol/l
Glukose: 5,1 mmol/l
CRP: 2,0 mg/l
Leukozyten: 6,2 10^9/l
"""

NO_BIOMARKER_TEXT = """\
Patient: JANE DOE
Collected: 2024-03-15
Thank you for choosing our laboratory.
"""


# ---------------------------------------------------------------------------
# Document builders
# ---------------------------------------------------------------------------


def make_image(
    size: tuple[int, int] = (400, 300),
    fmt: str = "PNG",
    noise: bool = True,
    exif_orientation: int | None = None,
) -> bytes:
    """Encode a synthetic image.  Noise keeps the encoded size realistic."""
    if noise:
        img = Image.effect_noise(size, 40).convert("RGB")
    else:
        img = Image.new("RGB", size, "white")
    ImageDraw.Draw(img).text((10, 10), "Albumin: 4.5 g/dL", fill="black")

    out = io.BytesIO()
    if exif_orientation is not None:
        exif = Image.Exif()
        exif[0x0112] = exif_orientation
        img.save(out, format=fmt, exif=exif)
    else:
        img.save(out, format=fmt)
    return out.getvalue()


def make_text_pdf(pages: Sequence[str], width: int = 300, height: int = 400) -> bytes:
    """A digitally produced PDF: every page carries real (extractable) text."""
    doc = fitz.open()
    for text in pages:
        page = doc.new_page(width=width, height=height)
        for i, line in enumerate(text.splitlines()):
            page.insert_text((20, 30 + i * 16), line, fontsize=10)
    data = doc.tobytes()
    doc.close()
    return data


def make_scanned_pdf(page_count: int = 1, width: int = 300, height: int = 400) -> bytes:
    """A scan-only PDF: pages hold drawings but no text layer."""
    doc = fitz.open()
    for n in range(page_count):
        page = doc.new_page(width=width, height=height)
        page.draw_rect(fitz.Rect(20, 20 + n * 10, 200, 60 + n * 10), color=(0, 0, 0), fill=(0, 0, 0))
    data = doc.tobytes()
    doc.close()
    return data


# ---------------------------------------------------------------------------
# Fake recognition engine
# ---------------------------------------------------------------------------


def ocr_result(text: str, confidence: float = 0.9) -> OcrResult:
    words = [
        OcrWord(text=w, confidence=confidence, bbox=BoundingBox(0, 0, 10, 10))
        for w in text.split()
    ]
    return OcrResult(text=text, confidence=confidence, words=words)


class FakeEngine:
    """Stands in for :class:`OcrEngine`; returns *outcomes* in call order.

    Each outcome is an :class:`OcrResult` or an exception to raise.  The last
    outcome repeats once the list is exhausted.
    """

    def __init__(
        self,
        outcomes: Sequence[OcrResult | BaseException] | None = None,
        delay: float = 0.0,
        start_error: BaseException | None = None,
    ) -> None:
        self.outcomes = list(outcomes or [ocr_result(E2E_TEXT)])
        self.delay = delay
        self.start_error = start_error
        self.calls = 0
        self.images: list[bytes] = []
        self.started = False
        self.terminated = False

    async def start(self) -> None:
        await asyncio.sleep(0.01)
        if self.start_error is not None:
            raise self.start_error
        self.started = True

    async def recognize(self, image_bytes: bytes) -> OcrResult:
        self.calls += 1
        self.images.append(image_bytes)
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcomes[min(self.calls, len(self.outcomes)) - 1]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def terminate(self) -> None:
        self.terminated = True


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    """Settings with upscaling off so raster tests stay fast."""
    return Settings(preprocess_target_dpi=None, _env_file=None)


@pytest.fixture
def png_bytes() -> bytes:
    return make_image()


@pytest.fixture
def text_pdf() -> bytes:
    return make_text_pdf([E2E_TEXT])


@pytest.fixture
def two_page_pdf() -> bytes:
    return make_text_pdf([CHEMISTRY_PAGE, CBC_PAGE])


@pytest.fixture
def scanned_pdf() -> bytes:
    return make_scanned_pdf(page_count=2)


@pytest.fixture
def fake_engine() -> FakeEngine:
    return FakeEngine()
