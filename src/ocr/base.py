"""Core data types for the lab-report OCR pipeline.

Every stage of the pipeline (format detection, rasterisation, recognition,
extraction, unit conversion, confidence scoring) exchanges the types defined
here.  They are the single source of truth consumed by the FastAPI layer and
by whatever persists the extraction downstream.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class BiomarkerKey(str, Enum):
    """The nine PhenoAge blood biomarkers the pipeline extracts.

    Values are the wire identifiers used by the submission form, hence the
    camelCase ``lymphocytePercent``.
    """

    ALBUMIN = "albumin"
    CREATININE = "creatinine"
    GLUCOSE = "glucose"
    CRP = "crp"
    LYMPHOCYTE_PERCENT = "lymphocytePercent"
    MCV = "mcv"
    RDW = "rdw"
    ALP = "alp"
    WBC = "wbc"


ALL_BIOMARKERS: tuple[BiomarkerKey, ...] = tuple(BiomarkerKey)


class ConfidenceLevel(str, Enum):
    """Display band for a confidence score.

    Thresholds (configurable, see :class:`ConfidenceThresholds`):
        HIGH    >= 0.8  auto-fill with a green check
        MEDIUM  >= 0.5  auto-fill with a warning
        LOW     >= 0.3  suggest only, never auto-fill
        NONE     < 0.3
    """

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    NONE = "none"

    @classmethod
    def from_score(
        cls,
        score: float,
        thresholds: "ConfidenceThresholds | None" = None,
    ) -> "ConfidenceLevel":
        t = thresholds or CONFIDENCE_THRESHOLDS
        if score >= t.high:
            return cls.HIGH
        if score >= t.medium:
            return cls.MEDIUM
        if score >= t.low:
            return cls.LOW
        return cls.NONE


# ---------------------------------------------------------------------------
# Policy value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConfidenceThresholds:
    high: float = 0.8
    medium: float = 0.5
    low: float = 0.3


CONFIDENCE_THRESHOLDS = ConfidenceThresholds()

# Engine confidence assumed when the recognition engine reports none.
DEFAULT_OCR_CONFIDENCE = 0.8


@dataclass(frozen=True)
class PreprocessingOptions:
    """Raster preprocessing switches.

    ``threshold=None`` disables binarisation; ``target_dpi=None`` disables
    upscaling.
    """

    grayscale: bool = False
    normalize: bool = False
    threshold: int | None = None
    sharpen: bool = False
    denoise: bool = False
    target_dpi: int | None = None


DEFAULT_PREPROCESSING = PreprocessingOptions(
    grayscale=True,
    normalize=True,
    threshold=128,
    sharpen=True,
    denoise=True,
    target_dpi=300,
)


# ---------------------------------------------------------------------------
# Biomarker extraction
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BiomarkerRange:
    """Plausible and optimal value range for one biomarker (canonical unit)."""

    min: float
    max: float
    optimal_min: float
    optimal_max: float
    unit: str
    name: str

    def contains(self, value: float) -> bool:
        return self.min <= value <= self.max

    def is_optimal(self, value: float) -> bool:
        return self.optimal_min <= value <= self.optimal_max


@dataclass
class BiomarkerExtraction:
    """One biomarker as read from a document.

    Attributes:
        biomarker:   Which of the nine keys this is.
        value:       Parsed numeric value, or ``None`` when not found.
        unit:        Unit as detected (later normalised to canonical).
        confidence:  0.0-1.0 overall confidence.
        raw_text:    Text window the value was read from (max 200 chars).
        line_number: 0-based line of the name match, ``-1`` if not found.
        page_number: 1-based page, ``0`` for an unset merge slot.

    The remaining attributes record how ``confidence`` was scored, so a
    breakdown recomputed after unit conversion still matches it:

        factors:               Factor scores set by the extractor.
        source_value:          Value as read, before unit conversion.
        source_unit:           Unit as printed, ``None`` when none was.
        unit_converted:        Value was converted to the canonical unit.
        unit_inferred:         Unit was guessed from the value's magnitude.
        conversion_confidence: Multiplier applied by the unit conversion.
    """

    biomarker: BiomarkerKey
    value: float | None
    unit: str | None
    confidence: float
    raw_text: str
    line_number: int
    page_number: int
    factors: ConfidenceFactors | None = None
    source_value: float | None = None
    source_unit: str | None = None
    unit_converted: bool = False
    unit_inferred: bool = False
    conversion_confidence: float = 1.0

    @classmethod
    def not_found(
        cls, biomarker: BiomarkerKey, page_number: int = 1
    ) -> "BiomarkerExtraction":
        return cls(
            biomarker=biomarker,
            value=None,
            unit=None,
            confidence=0.0,
            raw_text="",
            line_number=-1,
            page_number=page_number,
        )

    @property
    def found(self) -> bool:
        return self.value is not None

    def to_dict(self) -> dict:
        return {
            "biomarker": self.biomarker.value,
            "value": self.value,
            "unit": self.unit,
            "confidence": round(self.confidence, 4),
            "rawText": self.raw_text,
            "lineNumber": self.line_number,
            "pageNumber": self.page_number,
            "sourceUnit": self.source_unit,
            "unitConverted": self.unit_converted,
            "unitInferred": self.unit_inferred,
        }


# ---------------------------------------------------------------------------
# Confidence
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConfidenceFactors:
    """The five independent confidence signals, each 0.0-1.0."""

    name_match_quality: float
    value_in_range: float
    unit_recognized: float
    context_clarity: float
    ocr_confidence: float

    def to_dict(self) -> dict:
        return {
            "nameMatchQuality": self.name_match_quality,
            "valueInRange": self.value_in_range,
            "unitRecognized": self.unit_recognized,
            "contextClarity": self.context_clarity,
            "ocrConfidence": self.ocr_confidence,
        }


@dataclass(frozen=True)
class ConfidenceFactorDetail:
    score: float
    explanation: str
    suggestion: str | None = None

    def to_dict(self) -> dict:
        return {
            "score": round(self.score, 4),
            "explanation": self.explanation,
            "suggestion": self.suggestion,
        }


@dataclass(frozen=True)
class ConfidenceBreakdownDetailed:
    """Presentation-ready projection of :class:`ConfidenceFactors`.

    Never stored: always recomputed from an extraction so the displayed
    confidence cannot drift from the extracted one.
    """

    overall: float
    level: ConfidenceLevel
    factors: dict[str, ConfidenceFactorDetail]
    actionable_suggestions: list[str] = field(default_factory=list)
    conversion_confidence: float = 1.0

    def to_dict(self) -> dict:
        return {
            "overall": round(self.overall, 4),
            "level": self.level.value,
            "factors": {k: v.to_dict() for k, v in self.factors.items()},
            "actionableSuggestions": self.actionable_suggestions,
            "conversionConfidence": round(self.conversion_confidence, 4),
        }


# ---------------------------------------------------------------------------
# Recognition output
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BoundingBox:
    x0: int
    y0: int
    x1: int
    y1: int


@dataclass
class OcrWord:
    text: str
    confidence: float
    bbox: BoundingBox


@dataclass
class OcrLine:
    text: str
    confidence: float
    words: list[str] = field(default_factory=list)


@dataclass
class OcrResult:
    """Recognised text with document-, line- and word-level confidence (0-1)."""

    text: str
    confidence: float
    words: list[OcrWord] = field(default_factory=list)
    lines: list[OcrLine] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Document result
# ---------------------------------------------------------------------------


@dataclass
class OcrExtractionResult:
    """Top-level result of :func:`src.ocr.pipeline.extract_document`.

    Attributes:
        success:            Whether text was obtained and scanned.
        extractions:        Always all nine keys (some possibly not found).
        raw_text:           Full recognised / embedded text.
        page_count:         Pages in the source document.
        processing_time_ms: Wall-clock time for the whole call.
        errors:             Non-fatal per-page failures.
        method:             ``"embedded_text"`` | ``"ocr"`` | ``"none"``.
        notes:              Processing notes (conversion, validation warnings).
    """

    success: bool
    extractions: dict[BiomarkerKey, BiomarkerExtraction]
    raw_text: str = ""
    page_count: int = 0
    processing_time_ms: int = 0
    errors: list[str] = field(default_factory=list)
    method: str = "none"
    notes: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "extractions": {
                key.value: extraction.to_dict()
                for key, extraction in self.extractions.items()
            },
            "rawText": self.raw_text,
            "pageCount": self.page_count,
            "processingTimeMs": self.processing_time_ms,
            "errors": self.errors,
            "method": self.method,
            "notes": self.notes,
        }
