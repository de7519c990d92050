"""Biomarker extraction from recognised lab-report text.

Text is scanned line by line for any alias of the target biomarker.  The
first line that mentions the biomarker anchors a search window (that line
plus the next two, since values are often wrapped onto the following line)
from which the numeric value and the unit are read.

Name-match tiers, applied to the line's *label* (the text before the first
colon, or before the first number when there is no colon):

    label equals an alias          1.0
    alias contained in the label   min(0.95, len(alias) / len(label) + 0.3)
    Levenshtein distance <= 2      1 - distance / max(len)

Fuzzy matching only runs when no line mentions an alias verbatim.
"""

from __future__ import annotations

import logging
import re
from typing import Iterable, Mapping, NamedTuple

from rapidfuzz.distance import Levenshtein

from src.ocr.base import (
    ALL_BIOMARKERS,
    BiomarkerExtraction,
    BiomarkerKey,
    ConfidenceFactors,
    ConfidenceLevel,
    ConfidenceThresholds,
    DEFAULT_OCR_CONFIDENCE,
)
from src.ocr.biomarkers import BIOMARKER_ALIASES, BIOMARKER_UNITS
from src.ocr.confidence import (
    get_confidence_level as _level_for,
    score_context_clarity,
    score_unit_recognition,
    score_value_range,
    should_auto_fill as _auto_fill,
    weighted_score,
)
from src.ocr.units import needs_conversion

logger = logging.getLogger("bioage.ocr.extractor")

# Lines searched for a value: the name line plus this many following lines.
WINDOW_LINES = 3
RAW_TEXT_LIMIT = 200

MAX_FUZZY_DISTANCE = 2
# Shorter aliases are too ambiguous for edit-distance matching.
MIN_FUZZY_ALIAS_LENGTH = 5
# Aliases this short must stand alone ("alb" must not match inside "albania").
SHORT_ALIAS_LENGTH = 4

EXACT_MATCH = 1.0
CONTAINED_MATCH_CAP = 0.95
CONTAINED_MATCH_BONUS = 0.3

_EURO_DECIMAL_RE = re.compile(r"(\d),(\d)")
_COLON_VALUE_RE = re.compile(r":\s*([<>]?\s*\d+\.?\d*)")

# Fallbacks after the "Label: value" form, in priority order.
_VALUE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"(\d+\.\d+)"),                  # decimal: 4.2
    re.compile(r"(\d+)"),                       # integer: 85
    re.compile(r"(\d+\.?\d*)\s*\([^)]+\)"),     # value before range: 4.2 (3.5-5.0)
    re.compile(r"[<>]\s*(\d+\.?\d*)"),          # comparison: < 0.5
)

_LABEL_END_RE = re.compile(r"[\d<>]")

RDW_RATIO_MAX = 1.0


class PageText(NamedTuple):
    text: str
    page_number: int
    ocr_confidence: float = DEFAULT_OCR_CONFIDENCE


class NameMatch(NamedTuple):
    biomarker: BiomarkerKey
    quality: float


# ---------------------------------------------------------------------------
# Name matching
# ---------------------------------------------------------------------------


def _fold(text: str) -> str:
    return text.lower().replace("μ", "u").replace("µ", "u")


def _alias_pattern(alias: str) -> re.Pattern[str]:
    if len(alias) <= SHORT_ALIAS_LENGTH:
        return re.compile(rf"(?<![a-z]){re.escape(alias)}(?![a-z])")
    return re.compile(re.escape(alias))


_ALIAS_PATTERNS: dict[BiomarkerKey, tuple[tuple[str, re.Pattern[str]], ...]] = {
    key: tuple((alias, _alias_pattern(alias)) for alias in aliases)
    for key, aliases in BIOMARKER_ALIASES.items()
}


def _label_of(line: str) -> str:
    """Return the lower-cased label part of a ``Label: value`` line."""
    lowered = line.lower()
    if ":" in lowered:
        label = lowered.split(":", 1)[0]
    else:
        m = _LABEL_END_RE.search(lowered)
        label = lowered[: m.start()] if m else lowered
    label = label.strip()
    return label or lowered.strip()


def _contained_aliases(text: str, biomarker: BiomarkerKey) -> list[str]:
    return [alias for alias, pattern in _ALIAS_PATTERNS[biomarker] if pattern.search(text)]


def _contained_quality(alias: str, text: str) -> float:
    return min(CONTAINED_MATCH_CAP, len(alias) / len(text) + CONTAINED_MATCH_BONUS)


def _fuzzy_quality(label: str, biomarker: BiomarkerKey, max_distance: int) -> float | None:
    best: float | None = None
    for alias in BIOMARKER_ALIASES[biomarker]:
        if len(alias) < MIN_FUZZY_ALIAS_LENGTH:
            continue
        d = Levenshtein.distance(label, alias)
        if d <= max_distance:
            quality = 1 - d / max(len(label), len(alias))
            if best is None or quality > best:
                best = quality
    return best


def mentions_biomarker(line: str, biomarker: BiomarkerKey) -> bool:
    """True when *line* contains any alias of *biomarker* verbatim."""
    lowered = line.lower()
    return any(pattern.search(lowered) for _, pattern in _ALIAS_PATTERNS[biomarker])


def match_biomarker_name(
    text: str,
    biomarker: BiomarkerKey,
    max_distance: int = MAX_FUZZY_DISTANCE,
) -> float | None:
    """Score how well *text* names *biomarker*.

    Returns:
        Match quality in (0, 1], or ``None`` when nothing matches.
    """
    label = _label_of(text)
    if not label:
        return None

    if label in BIOMARKER_ALIASES[biomarker]:
        return EXACT_MATCH

    contained = _contained_aliases(label, biomarker)
    if contained:
        return _contained_quality(max(contained, key=len), label)

    # Alias printed after the value ("4.2 g/dL albumin")
    line = text.lower().strip()
    contained = _contained_aliases(line, biomarker)
    if contained:
        return _contained_quality(max(contained, key=len), line)

    return _fuzzy_quality(label, biomarker, max_distance)


def fuzzy_match_biomarker(
    text: str,
    max_distance: int = MAX_FUZZY_DISTANCE,
) -> NameMatch | None:
    """Find which biomarker *text* most likely names.

    Ties go to the biomarker listed first in :class:`BiomarkerKey`.
    """
    best: NameMatch | None = None
    for biomarker in ALL_BIOMARKERS:
        quality = match_biomarker_name(text, biomarker, max_distance)
        if quality is not None and (best is None or quality > best.quality):
            best = NameMatch(biomarker, quality)
    return best


# ---------------------------------------------------------------------------
# Value / unit extraction
# ---------------------------------------------------------------------------


def normalize_decimal_commas(text: str) -> str:
    """``4,5`` → ``4.5``.  Commas not between two digits are left alone."""
    return _EURO_DECIMAL_RE.sub(r"\1.\2", text)


def extract_numeric_value(text: str) -> float | None:
    """Pull the most likely result value out of a text window."""
    normalized = normalize_decimal_commas(text)

    m = _COLON_VALUE_RE.search(normalized)
    if m:
        value = float(re.sub(r"[<>\s]", "", m.group(1)))
        if value > 0:
            return value

    for pattern in _VALUE_PATTERNS:
        m = pattern.search(normalized)
        if m:
            return float(m.group(1))
    return None


def _earliest_unit(folded: str, biomarker: BiomarkerKey) -> tuple[int, str] | None:
    best: tuple[int, str] | None = None
    for unit in BIOMARKER_UNITS[biomarker]:
        m = re.search(rf"(?<![a-z]){re.escape(_fold(unit))}(?![a-z])", folded)
        # same position: the table lists longer spellings first
        if m and (best is None or m.start() < best[0]):
            best = (m.start(), unit)
    return best


def extract_unit(text: str, biomarker: BiomarkerKey) -> str | None:
    """Return the known unit spelling of *biomarker* that occurs earliest in *text*.

    Units printed after the value are preferred, so a label such as
    ``RDW-CV`` does not supply ``cv``.  A unit only found before the value
    (``Glucose (mg/dL): 92``) is used otherwise.  The window spans several
    lines, so the earliest unit is the one printed next to the value rather
    than one belonging to a later line.  Matching is case-insensitive and
    treats µ, μ and u alike.  A spelling must not be glued to other letters,
    so ``g/dl`` is not found in ``mg/dl``.
    """
    folded = _fold(text)
    value_start = _LABEL_END_RE.search(folded)
    if value_start:
        after = _earliest_unit(folded[value_start.start():], biomarker)
        if after:
            return after[1]
    best = _earliest_unit(folded, biomarker)
    return best[1] if best else None


# ---------------------------------------------------------------------------
# Confidence
# ---------------------------------------------------------------------------


def calculate_confidence(
    biomarker: BiomarkerKey,
    value: float | None,
    match_quality: float,
    unit: str | None,
    raw_text: str,
    ocr_confidence: float = DEFAULT_OCR_CONFIDENCE,
) -> tuple[float, ConfidenceFactors]:
    """Weighted confidence for one extraction plus the factors behind it."""
    factors = ConfidenceFactors(
        name_match_quality=match_quality,
        value_in_range=score_value_range(biomarker, value).score,
        unit_recognized=score_unit_recognition(
            biomarker, unit, needs_conversion(biomarker, unit)
        ).score,
        context_clarity=score_context_clarity(raw_text, value).score,
        ocr_confidence=ocr_confidence,
    )
    return weighted_score(factors), factors


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------


def _find_name_line(lines: list[str], biomarker: BiomarkerKey) -> tuple[int, float] | None:
    for i, line in enumerate(lines):
        if mentions_biomarker(line, biomarker):
            quality = match_biomarker_name(line, biomarker)
            if quality is not None:
                return i, quality

    for i, line in enumerate(lines):
        label = _label_of(line)
        if len(label) < MIN_FUZZY_ALIAS_LENGTH - MAX_FUZZY_DISTANCE:
            continue
        quality = _fuzzy_quality(label, biomarker, MAX_FUZZY_DISTANCE)
        if quality is not None:
            logger.debug("Fuzzy match for %s on line %d: %r", biomarker.value, i, line)
            return i, quality
    return None


def extract_biomarker_from_text(
    text: str,
    biomarker: BiomarkerKey,
    page_number: int = 1,
    ocr_confidence: float = DEFAULT_OCR_CONFIDENCE,
) -> BiomarkerExtraction:
    """Extract one biomarker from a page of text.

    Args:
        text:           Recognised or embedded text of one page.
        biomarker:      Which biomarker to look for.
        page_number:    1-based page the text came from.
        ocr_confidence: Engine confidence for the page, 0.8 when unknown.

    Returns:
        A :class:`BiomarkerExtraction`; a not-found extraction (value
        ``None``, confidence 0) when the biomarker is not mentioned.
    """
    lines = text.split("\n")
    hit = _find_name_line(lines, biomarker)
    if hit is None:
        return BiomarkerExtraction.not_found(biomarker, page_number)

    line_number, match_quality = hit
    window = " ".join(lines[line_number : line_number + WINDOW_LINES])
    raw_text = window[:RAW_TEXT_LIMIT]

    value = extract_numeric_value(window)
    unit = extract_unit(window, biomarker)

    # RDW printed as a ratio (0.125 rather than 12.5 %)
    if biomarker is BiomarkerKey.RDW and value is not None and value < RDW_RATIO_MAX:
        value = round(value * 100, 6)
        unit = "%"

    confidence, factors = calculate_confidence(
        biomarker, value, match_quality, unit, raw_text, ocr_confidence
    )
    logger.debug(
        "%s: value=%s unit=%s quality=%.2f confidence=%.3f (page %d, line %d)",
        biomarker.value, value, unit, match_quality, confidence, page_number, line_number,
    )

    return BiomarkerExtraction(
        biomarker=biomarker,
        value=value,
        unit=unit,
        confidence=confidence,
        raw_text=raw_text,
        line_number=line_number,
        page_number=page_number,
        factors=factors,
        source_value=value,
        source_unit=unit,
    )


def extract_all_biomarkers(
    text: str,
    page_number: int = 1,
    ocr_confidence: float = DEFAULT_OCR_CONFIDENCE,
) -> dict[BiomarkerKey, BiomarkerExtraction]:
    """Extract all nine biomarkers; every key is present in the result."""
    return {
        biomarker: extract_biomarker_from_text(text, biomarker, page_number, ocr_confidence)
        for biomarker in ALL_BIOMARKERS
    }


# ---------------------------------------------------------------------------
# Multi-page merge
# ---------------------------------------------------------------------------


def _takes_precedence(candidate: BiomarkerExtraction, current: BiomarkerExtraction) -> bool:
    if candidate.confidence != current.confidence:
        return candidate.confidence > current.confidence
    # equal confidence: the earlier page wins; an unset slot (page 0) never loses
    return 0 < candidate.page_number < current.page_number and candidate.found


def merge_page_extractions(
    extraction_sets: Iterable[Mapping[BiomarkerKey, BiomarkerExtraction]],
) -> dict[BiomarkerKey, BiomarkerExtraction]:
    """Merge per-page extraction sets, keeping the best instance per biomarker.

    Higher confidence wins; on equal confidence the lower page number wins,
    so the result does not depend on the order pages were processed in.
    Biomarkers found nowhere come back as not-found with page number 0.
    """
    merged = {key: BiomarkerExtraction.not_found(key, page_number=0) for key in ALL_BIOMARKERS}
    for extractions in extraction_sets:
        for key, candidate in extractions.items():
            if _takes_precedence(candidate, merged[key]):
                merged[key] = candidate
    return merged


def extract_from_multiple_pages(
    pages: Iterable[PageText | tuple],
) -> dict[BiomarkerKey, BiomarkerExtraction]:
    """Extract from every page and merge.  *pages* are ``(text, page_number)`` pairs."""
    page_sets = []
    for page in pages:
        page = PageText(*page)
        page_sets.append(extract_all_biomarkers(page.text, page.page_number, page.ocr_confidence))
    merged = merge_page_extractions(page_sets)
    logger.info(
        "Merged %d page(s): %d/%d biomarkers found",
        len(page_sets), sum(e.found for e in merged.values()), len(merged),
    )
    return merged


def get_confidence_level(
    confidence: float,
    thresholds: ConfidenceThresholds | None = None,
) -> ConfidenceLevel:
    return _level_for(confidence, thresholds)


def should_auto_fill(
    confidence: float,
    thresholds: ConfidenceThresholds | None = None,
) -> bool:
    return _auto_fill(confidence, thresholds=thresholds)
