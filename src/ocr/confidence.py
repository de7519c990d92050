"""Confidence scoring for extracted biomarkers.

Five independent signals are scored 0.0-1.0 and combined as a weighted sum.

Weights (must sum to 1.0):
    name_match_quality  0.30  how well the label matched a known alias
    value_in_range      0.25  plausibility of the value for the biomarker
    unit_recognized     0.20  a known unit was printed next to the value
    context_clarity     0.15  how many competing numbers surround the value
    ocr_confidence      0.10  the recognition engine's own confidence

Each ``score_*`` rule returns a :class:`FactorScore` so it can be tested in
isolation.  The detailed breakdown is always recomputed from an extraction
and never stored.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Mapping

from src.ocr.base import (
    CONFIDENCE_THRESHOLDS,
    DEFAULT_OCR_CONFIDENCE,
    BiomarkerExtraction,
    BiomarkerKey,
    ConfidenceBreakdownDetailed,
    ConfidenceFactorDetail,
    ConfidenceFactors,
    ConfidenceLevel,
    ConfidenceThresholds,
)
from src.ocr.biomarkers import BIOMARKER_ALIASES, BIOMARKER_RANGES
from src.ocr.units import needs_conversion

# ---------------------------------------------------------------------------
# Weight constants
# ---------------------------------------------------------------------------

W_NAME_MATCH = 0.30
W_VALUE_IN_RANGE = 0.25
W_UNIT_RECOGNIZED = 0.20
W_CONTEXT_CLARITY = 0.15
W_OCR_CONFIDENCE = 0.10

CONFIDENCE_WEIGHTS: dict[str, float] = {
    "nameMatchQuality": W_NAME_MATCH,
    "valueInRange": W_VALUE_IN_RANGE,
    "unitRecognized": W_UNIT_RECOGNIZED,
    "contextClarity": W_CONTEXT_CLARITY,
    "ocrConfidence": W_OCR_CONFIDENCE,
}

# Factor scores below this get an actionable suggestion in the breakdown.
SUGGESTION_THRESHOLD = 0.7

_NUMBER_RE = re.compile(r"\d+\.?\d*")


@dataclass(frozen=True)
class FactorScore:
    score: float
    warning: str | None = None
    suggestion: str | None = None


@dataclass
class ConfidenceBreakdown:
    """Overall confidence plus the raw factors, warnings and suggestions."""

    overall: float
    factors: ConfidenceFactors
    level: ConfidenceLevel
    auto_fill: bool
    warnings: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "overall": round(self.overall, 4),
            "factors": self.factors.to_dict(),
            "level": self.level.value,
            "autoFill": self.auto_fill,
            "warnings": self.warnings,
            "suggestions": self.suggestions,
        }


@dataclass(frozen=True)
class ConfidenceAggregate:
    """Document-level roll-up across all nine fields."""

    average_confidence: float
    high_confidence_count: int
    medium_confidence_count: int
    low_confidence_count: int
    missing_count: int
    overall_quality: str

    def to_dict(self) -> dict:
        return {
            "averageConfidence": round(self.average_confidence, 4),
            "highConfidenceCount": self.high_confidence_count,
            "mediumConfidenceCount": self.medium_confidence_count,
            "lowConfidenceCount": self.low_confidence_count,
            "missingCount": self.missing_count,
            "overallQuality": self.overall_quality,
        }


# ---------------------------------------------------------------------------
# Individual factor rules
# ---------------------------------------------------------------------------


def count_numbers(text: str) -> int:
    return len(_NUMBER_RE.findall(text or ""))


def score_name_match(
    matched_text: str,
    biomarker: BiomarkerKey,
    is_exact_match: bool,
) -> FactorScore:
    if is_exact_match:
        return FactorScore(1.0)
    if not matched_text:
        return FactorScore(0.0, warning=f'Could not find "{biomarker.value}" in the document')
    return FactorScore(
        0.7,
        warning=f'Partial match found for "{biomarker.value}": "{matched_text}"',
    )


def score_name_quality(
    quality: float,
    matched_text: str,
    biomarker: BiomarkerKey,
) -> FactorScore:
    """Graded name factor, as measured by the extractor's label matching."""
    if quality >= 1.0:
        return FactorScore(1.0)
    if quality <= 0 or not matched_text:
        return FactorScore(0.0, warning=f'Could not find "{biomarker.value}" in the document')
    return FactorScore(
        quality,
        warning=f'Partial match found for "{biomarker.value}": "{matched_text}"',
    )


def score_value_range(biomarker: BiomarkerKey, value: float | None) -> FactorScore:
    """Score a value against the biomarker's optimal and acceptable ranges.

    1.0 optimal, 0.9 acceptable, 0.5 within 0.5×min to 2×max (possible unit
    issue), 0.1 beyond that, 0.0 when there is no value.
    """
    if value is None:
        return FactorScore(
            0.0,
            warning="No numeric value found",
            suggestion="Please enter the value manually",
        )

    rng = BIOMARKER_RANGES.get(biomarker)
    if rng is None:
        return FactorScore(0.5)

    if rng.is_optimal(value):
        return FactorScore(1.0)
    if rng.contains(value):
        return FactorScore(0.9)
    if rng.min * 0.5 <= value <= rng.max * 2:
        return FactorScore(
            0.5,
            warning=f"Value {value:g} is outside typical range ({rng.min:g}-{rng.max:g})",
            suggestion="Please verify the value and unit are correct",
        )
    return FactorScore(
        0.1,
        warning=f"Value {value:g} is far outside expected range ({rng.min:g}-{rng.max:g})",
        suggestion="This may indicate a unit conversion issue or misread value",
    )


def score_unit_recognition(
    biomarker: BiomarkerKey,
    unit: str | None,
    was_converted: bool,
) -> FactorScore:
    if not unit:
        return FactorScore(0.3, warning="Unit not recognized - assumed standard unit")
    if was_converted:
        return FactorScore(0.8, warning=f"Value was converted from {unit} to standard unit")
    return FactorScore(1.0)


def score_context_clarity(raw_text: str, value: float | None) -> FactorScore:
    """Score how isolated the value is within its text window."""
    if not raw_text or value is None:
        return FactorScore(0.3)

    numbers = count_numbers(raw_text)
    if numbers == 1:
        return FactorScore(1.0)
    if numbers == 2:
        # value + reference range
        return FactorScore(0.85)
    if numbers > 3:
        return FactorScore(
            0.5,
            warning="Multiple values found nearby - please verify correct value was extracted",
        )
    return FactorScore(0.7)


def weighted_score(factors: ConfidenceFactors) -> float:
    return (
        factors.name_match_quality * W_NAME_MATCH
        + factors.value_in_range * W_VALUE_IN_RANGE
        + factors.unit_recognized * W_UNIT_RECOGNIZED
        + factors.context_clarity * W_CONTEXT_CLARITY
        + factors.ocr_confidence * W_OCR_CONFIDENCE
    )


def get_confidence_level(
    confidence: float,
    thresholds: ConfidenceThresholds | None = None,
) -> ConfidenceLevel:
    return ConfidenceLevel.from_score(confidence, thresholds)


def should_auto_fill(
    confidence: float,
    value: float | None = 0.0,
    thresholds: ConfidenceThresholds | None = None,
) -> bool:
    """Auto-fill needs at least medium confidence and an actual value."""
    t = thresholds or CONFIDENCE_THRESHOLDS
    return value is not None and confidence >= t.medium


# ---------------------------------------------------------------------------
# Comprehensive scoring
# ---------------------------------------------------------------------------


def _scored_reading(extraction: BiomarkerExtraction) -> tuple[float | None, str | None]:
    """Value and unit as read from the document, before any unit conversion."""
    if extraction.factors is None:
        return extraction.value, extraction.unit
    if extraction.source_value is not None:
        return extraction.source_value, extraction.source_unit
    return extraction.value, extraction.source_unit


def _factor_scores(
    extraction: BiomarkerExtraction,
    ocr_confidence: float | None,
    is_exact_name_match: bool | None,
    was_unit_converted: bool | None,
) -> dict[str, FactorScore]:
    """Score the five factors, filling unset hints from the extraction.

    An extraction from the extractor carries the factors it was scored with
    and the value and unit as read, so the result reproduces its stored
    confidence even after unit conversion.  Explicit hints override.
    """
    stored = extraction.factors
    value, unit = _scored_reading(extraction)

    if is_exact_name_match is not None:
        name = score_name_match(extraction.raw_text, extraction.biomarker, is_exact_name_match)
    elif stored is not None:
        name = score_name_quality(stored.name_match_quality, extraction.raw_text, extraction.biomarker)
    else:
        name = score_name_match(
            extraction.raw_text, extraction.biomarker, extraction.confidence > 0.9
        )

    if was_unit_converted is None:
        was_unit_converted = needs_conversion(extraction.biomarker, unit)

    if ocr_confidence is None:
        ocr_confidence = stored.ocr_confidence if stored is not None else DEFAULT_OCR_CONFIDENCE

    return {
        "nameMatchQuality": name,
        "valueInRange": score_value_range(extraction.biomarker, value),
        "unitRecognized": score_unit_recognition(extraction.biomarker, unit, was_unit_converted),
        "contextClarity": score_context_clarity(extraction.raw_text, value),
        "ocrConfidence": FactorScore(ocr_confidence),
    }


def _to_factors(scores: Mapping[str, FactorScore]) -> ConfidenceFactors:
    return ConfidenceFactors(
        name_match_quality=scores["nameMatchQuality"].score,
        value_in_range=scores["valueInRange"].score,
        unit_recognized=scores["unitRecognized"].score,
        context_clarity=scores["contextClarity"].score,
        ocr_confidence=scores["ocrConfidence"].score,
    )


def _overall(extraction: BiomarkerExtraction, factors: ConfidenceFactors) -> float:
    # never located: stored as 0 whatever the factors say
    if extraction.line_number < 0:
        return 0.0
    return weighted_score(factors) * extraction.conversion_confidence


def calculate_comprehensive_confidence(
    extraction: BiomarkerExtraction,
    ocr_confidence: float | None = None,
    is_exact_name_match: bool | None = None,
    was_unit_converted: bool | None = None,
    thresholds: ConfidenceThresholds | None = None,
) -> ConfidenceBreakdown:
    """Score an extraction and collect the warnings each factor raised.

    Args:
        extraction:          The extraction to score.
        ocr_confidence:      Engine confidence; the extraction's own, else 0.8.
        is_exact_name_match: Overrides the extraction's name-match quality.
        was_unit_converted:  Overrides the unit check; by default a printed
                             non-canonical unit counts as converted.
        thresholds:          Level thresholds; module defaults when omitted.

    Returns:
        A :class:`ConfidenceBreakdown` whose overall includes the
        extraction's unit conversion penalty.
    """
    scores = _factor_scores(extraction, ocr_confidence, is_exact_name_match, was_unit_converted)

    warnings = [s.warning for s in scores.values() if s.warning]
    rng = scores["valueInRange"]
    suggestions = [rng.suggestion] if rng.suggestion else []

    factors = _to_factors(scores)
    overall = _overall(extraction, factors)

    return ConfidenceBreakdown(
        overall=overall,
        factors=factors,
        level=get_confidence_level(overall, thresholds),
        auto_fill=should_auto_fill(overall, extraction.value, thresholds),
        warnings=warnings,
        suggestions=suggestions,
    )


def get_confidence_explanation(breakdown: ConfidenceBreakdown) -> str:
    """One-line explanation, e.g. ``"72% confidence (medium) | unit: 30%"``."""
    f = breakdown.factors
    parts = [f"{round(breakdown.overall * 100)}% confidence ({breakdown.level.value})"]
    if f.name_match_quality < 1:
        parts.append(f"name match: {round(f.name_match_quality * 100)}%")
    if f.value_in_range < 0.9:
        parts.append(f"value range: {round(f.value_in_range * 100)}%")
    if f.unit_recognized < 1:
        parts.append(f"unit: {round(f.unit_recognized * 100)}%")
    return " | ".join(parts)


# ---------------------------------------------------------------------------
# Detailed breakdown (UI projection)
# ---------------------------------------------------------------------------


def _value_repr(value: float | None) -> str:
    return "None" if value is None else f"{value:g}"


def _factor_explanation(
    factor: str,
    score: float,
    extraction: BiomarkerExtraction,
    value: float | None,
    unit: str | None,
) -> str:
    name = extraction.biomarker.value

    if factor == "nameMatchQuality":
        if score >= 0.95:
            return f'Exact match found for "{name}"'
        if score >= 0.7:
            return f'Partial match: "{extraction.raw_text[:30]}..."'
        if score > 0:
            return f"Weak match detected - text may not refer to {name}"
        return f'Could not find "{name}" in the document'

    if factor == "valueInRange":
        rng = BIOMARKER_RANGES.get(extraction.biomarker)
        if rng is None:
            return f"No reference range available for {name}"
        shown = _value_repr(value)
        if score >= 0.9:
            return f"Value {shown} is within normal range ({rng.min:g}-{rng.max:g})"
        if score >= 0.5:
            return f"Value {shown} is slightly outside typical range"
        if value is None:
            return "No numeric value could be extracted"
        return (
            f"Value {shown} is far outside expected range - "
            "may indicate wrong value or unit"
        )

    if factor == "unitRecognized":
        if score >= 0.9:
            return f'Standard unit "{unit}" recognized'
        if score >= 0.7:
            return f'Unit converted from "{unit}" to standard'
        if extraction.unit_inferred:
            return f'Unit not found - inferred "{extraction.unit}" from the value'
        return "Unit not found - using assumed standard unit"

    if factor == "contextClarity":
        numbers = count_numbers(extraction.raw_text)
        if score >= 0.9:
            return "Value clearly isolated in text"
        if score >= 0.7:
            return f"{numbers} numbers found nearby - likely includes reference range"
        return f"{numbers} numbers found nearby - verify correct value was extracted"

    # ocrConfidence
    if score >= 0.9:
        return "Text recognition highly confident"
    if score >= 0.7:
        return "Text recognition moderately confident"
    return "Text recognition uncertain - image quality may be poor"


def _factor_suggestion(factor: str, score: float, biomarker: BiomarkerKey) -> str | None:
    if score >= SUGGESTION_THRESHOLD:
        return None
    if factor == "nameMatchQuality":
        names = ", ".join(BIOMARKER_ALIASES[biomarker][:3])
        return f"Try searching for alternative names: {names}, etc."
    if factor == "valueInRange":
        if score < 0.3:
            return "Check if the unit needs conversion (e.g., mmol/L to mg/dL)"
        return "Verify the value matches what's on your lab report"
    if factor == "unitRecognized":
        return "Enter the unit shown on your lab report for accurate conversion"
    if factor == "contextClarity":
        return "If multiple values are shown, select the result value (not the reference range)"
    return "Try uploading a higher quality image or PDF of your lab report"


def generate_detailed_confidence_breakdown(
    extraction: BiomarkerExtraction,
    ocr_confidence: float | None = None,
    is_exact_name_match: bool | None = None,
    was_unit_converted: bool | None = None,
    thresholds: ConfidenceThresholds | None = None,
) -> ConfidenceBreakdownDetailed:
    """Build the per-factor explanation and suggestion view of an extraction.

    Hints default to what the extraction recorded, so for an extractor
    result ``overall`` equals ``extraction.confidence``.
    """
    scores = _factor_scores(extraction, ocr_confidence, is_exact_name_match, was_unit_converted)
    value, unit = _scored_reading(extraction)

    factors = {
        key: ConfidenceFactorDetail(
            score=s.score,
            explanation=_factor_explanation(key, s.score, extraction, value, unit),
            suggestion=_factor_suggestion(key, s.score, extraction.biomarker),
        )
        for key, s in scores.items()
    }

    overall = _overall(extraction, _to_factors(scores))

    # dedupe, keep first-seen order
    suggestions: list[str] = []
    for detail in factors.values():
        if detail.suggestion and detail.suggestion not in suggestions:
            suggestions.append(detail.suggestion)

    return ConfidenceBreakdownDetailed(
        overall=overall,
        level=get_confidence_level(overall, thresholds),
        factors=factors,
        actionable_suggestions=suggestions,
        conversion_confidence=extraction.conversion_confidence,
    )


# ---------------------------------------------------------------------------
# Document-level aggregation
# ---------------------------------------------------------------------------


def aggregate_confidence(
    extractions: Mapping[BiomarkerKey, BiomarkerExtraction],
    thresholds: ConfidenceThresholds | None = None,
) -> ConfidenceAggregate:
    """Roll the per-field confidences up into an excellent/good/fair/poor verdict."""
    t = thresholds or CONFIDENCE_THRESHOLDS
    high = medium = low = missing = 0
    total = 0.0

    for extraction in extractions.values():
        total += extraction.confidence
        if extraction.value is None:
            missing += 1
        elif extraction.confidence >= t.high:
            high += 1
        elif extraction.confidence >= t.medium:
            medium += 1
        else:
            low += 1

    if high >= 7 and missing <= 1:
        quality = "excellent"
    elif high + medium >= 6 and missing <= 2:
        quality = "good"
    elif high + medium >= 4:
        quality = "fair"
    else:
        quality = "poor"

    return ConfidenceAggregate(
        average_confidence=total / len(extractions) if extractions else 0.0,
        high_confidence_count=high,
        medium_confidence_count=medium,
        low_confidence_count=low,
        missing_count=missing,
        overall_quality=quality,
    )


def get_extraction_summary(
    extractions: Mapping[BiomarkerKey, BiomarkerExtraction],
    thresholds: ConfidenceThresholds | None = None,
) -> str:
    """E.g. ``"Good extraction: 6 high confidence, 2 medium confidence, 1 not found"``."""
    stats = aggregate_confidence(extractions, thresholds)
    parts = []
    if stats.high_confidence_count:
        parts.append(f"{stats.high_confidence_count} high confidence")
    if stats.medium_confidence_count:
        parts.append(f"{stats.medium_confidence_count} medium confidence")
    if stats.low_confidence_count:
        parts.append(f"{stats.low_confidence_count} low confidence")
    if stats.missing_count:
        parts.append(f"{stats.missing_count} not found")
    return f"{stats.overall_quality.capitalize()} extraction: {', '.join(parts)}"


# ---------------------------------------------------------------------------
# Display helpers
# ---------------------------------------------------------------------------


def get_confidence_color(
    score: float,
    thresholds: ConfidenceThresholds | None = None,
) -> str:
    t = thresholds or CONFIDENCE_THRESHOLDS
    if score >= t.high:
        return "green"
    if score >= t.medium:
        return "yellow"
    if score >= t.low:
        return "orange"
    return "red"


def get_confidence_level_label(
    overall: float,
    thresholds: ConfidenceThresholds | None = None,
) -> str:
    t = thresholds or CONFIDENCE_THRESHOLDS
    pct = round(overall * 100)
    if overall >= t.high:
        return f"High ({pct}%)"
    if overall >= t.medium:
        return f"Medium ({pct}%)"
    if overall >= t.low:
        return f"Low ({pct}%)"
    return f"Very Low ({pct}%)"
