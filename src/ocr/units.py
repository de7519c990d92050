"""Unit conversion for international lab values.

Converts SI and other regional units to the canonical (US conventional)
unit each biomarker is expressed in for the PhenoAge formula:

    albumin g/dL · creatinine mg/dL · glucose mg/dL · crp mg/L ·
    lymphocytePercent % · mcv fL · rdw % · alp U/L · wbc K/uL

Unit strings are compared after :func:`normalize_unit` so ``µmol/L``,
``μmol/L`` and ``umol/l`` are the same unit.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

from src.ocr.base import BiomarkerKey

logger = logging.getLogger("bioage.ocr.units")


@dataclass(frozen=True)
class UnitConversion:
    """Multiplicative conversion from ``from_unit`` (and aliases) to canonical."""

    from_unit: str
    factor: float
    aliases: tuple[str, ...] = ()


@dataclass(frozen=True)
class UnitConversionResult:
    value: float
    unit: str
    converted: bool


@dataclass(frozen=True)
class SmartConversionResult:
    value: float
    unit: str
    converted: bool
    unit_detected: bool
    confidence: float


# ---------------------------------------------------------------------------
# Conversion tables
# ---------------------------------------------------------------------------

STANDARD_UNITS: Mapping[BiomarkerKey, str] = MappingProxyType(
    {
        BiomarkerKey.ALBUMIN: "g/dL",
        BiomarkerKey.CREATININE: "mg/dL",
        BiomarkerKey.GLUCOSE: "mg/dL",
        BiomarkerKey.CRP: "mg/L",
        BiomarkerKey.LYMPHOCYTE_PERCENT: "%",
        BiomarkerKey.MCV: "fL",
        BiomarkerKey.RDW: "%",
        BiomarkerKey.ALP: "U/L",
        BiomarkerKey.WBC: "K/uL",
    }
)

UNIT_CONVERSIONS: Mapping[BiomarkerKey, tuple[UnitConversion, ...]] = MappingProxyType(
    {
        BiomarkerKey.ALBUMIN: (
            UnitConversion("g/l", 0.1, ("grams/l", "grams/liter")),
            UnitConversion("g/dl", 1, ("gm/dl", "g%")),
        ),
        BiomarkerKey.CREATININE: (
            # µmol/L ÷ 88.4
            UnitConversion("umol/l", 0.0113, ("μmol/l", "µmol/l", "micromol/l")),
            UnitConversion("mg/l", 0.1),
            UnitConversion("mg/dl", 1, ("mg%",)),
        ),
        BiomarkerKey.GLUCOSE: (
            UnitConversion("mmol/l", 18.0182, ("millimol/l",)),
            UnitConversion("mg/l", 0.1),
            UnitConversion("mg/dl", 1, ("mg%",)),
        ),
        BiomarkerKey.CRP: (
            UnitConversion("nmol/l", 0.0001047, ("nanomol/l",)),
            UnitConversion("mg/dl", 10),
            UnitConversion("ug/ml", 1, ("μg/ml", "µg/ml", "mcg/ml")),
            UnitConversion("mg/l", 1),
        ),
        BiomarkerKey.LYMPHOCYTE_PERCENT: (
            UnitConversion("%", 1, ("percent", "pct")),
            # fraction of 1 (0.35 instead of 35 %)
            UnitConversion("decimal", 100, ("fraction",)),
        ),
        BiomarkerKey.MCV: (
            UnitConversion("fl", 1, ("femtoliters", "femtoliter")),
            UnitConversion("um3", 1, ("μm3", "µm3", "cubic microns")),
        ),
        BiomarkerKey.RDW: (
            UnitConversion("%", 1, ("percent", "pct", "cv")),
        ),
        BiomarkerKey.ALP: (
            UnitConversion("u/l", 1, ("iu/l", "units/l", "unit/l", "u/i")),
            UnitConversion("ukat/l", 60, ("μkat/l", "µkat/l", "microkat/l")),
            UnitConversion("nkat/l", 0.06, ("nanokat/l",)),
        ),
        BiomarkerKey.WBC: (
            UnitConversion("10^9/l", 1, ("x10^9/l", "giga/l", "g/l")),
            UnitConversion("10^3/ul", 1, ("x10^3/ul", "thou/ul", "k/mcl")),
            UnitConversion("k/ul", 1, ("k/μl", "k/µl")),
            UnitConversion("cells/ul", 0.001, ("/ul", "/μl", "/µl")),
        ),
    }
)

# Plausible raw-value ranges per candidate unit, used when no unit was
# printed.  Tried in order; the first hit wins.
EXPECTED_UNIT_RANGES: Mapping[BiomarkerKey, tuple[tuple[str, float, float], ...]] = (
    MappingProxyType(
        {
            BiomarkerKey.ALBUMIN: (("g/dL", 2, 6), ("g/L", 20, 60)),
            BiomarkerKey.CREATININE: (("mg/dL", 0.3, 3), ("μmol/L", 26, 265)),
            BiomarkerKey.GLUCOSE: (("mg/dL", 40, 300), ("mmol/L", 2.2, 16.7)),
            BiomarkerKey.CRP: (("mg/L", 0, 50), ("mg/dL", 0, 5)),
            BiomarkerKey.LYMPHOCYTE_PERCENT: (("%", 5, 60),),
            BiomarkerKey.MCV: (("fL", 60, 120),),
            BiomarkerKey.RDW: (("%", 10, 25),),
            BiomarkerKey.ALP: (("U/L", 20, 300),),
            BiomarkerKey.WBC: (("K/uL", 2, 20), ("cells/uL", 2000, 20000)),
        }
    )
)

INFERRED_IN_RANGE = 0.8
INFERRED_NEAR_RANGE = 0.5
INFERRED_FALLBACK = 0.2


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def normalize_unit(unit: str) -> str:
    """Lower-case, drop whitespace and fold µ/μ to ``u``."""
    return re.sub(r"\s+", "", unit.lower()).replace("μ", "u").replace("µ", "u")


def find_conversion(biomarker: BiomarkerKey, unit: str) -> UnitConversion | None:
    """Return the conversion whose unit or aliases match *unit*, if any."""
    key = normalize_unit(unit)
    for conversion in UNIT_CONVERSIONS[biomarker]:
        candidates = (conversion.from_unit, *conversion.aliases)
        if key in {normalize_unit(c) for c in candidates}:
            return conversion
    return None


def is_known_unit(biomarker: BiomarkerKey, unit: str) -> bool:
    return find_conversion(biomarker, unit) is not None


def needs_conversion(biomarker: BiomarkerKey, unit: str | None) -> bool:
    """True when *unit* is recognised but is not the canonical unit."""
    if not unit:
        return False
    conversion = find_conversion(biomarker, unit)
    return conversion is not None and conversion.factor != 1


def convert_to_standard_unit(
    biomarker: BiomarkerKey,
    value: float,
    from_unit: str,
) -> UnitConversionResult:
    """Express *value* (in *from_unit*) in the biomarker's canonical unit.

    An unrecognised unit is returned unchanged with ``converted=False`` so the
    caller always has a usable value.
    """
    conversion = find_conversion(biomarker, from_unit)
    if conversion is None:
        logger.debug("No conversion for %s unit %r, leaving as-is", biomarker.value, from_unit)
        return UnitConversionResult(value=value, unit=from_unit, converted=False)

    if conversion.factor == 1:
        return UnitConversionResult(
            value=value, unit=STANDARD_UNITS[biomarker], converted=False
        )

    return UnitConversionResult(
        value=value * conversion.factor,
        unit=STANDARD_UNITS[biomarker],
        converted=True,
    )


def detect_unit_from_value(
    biomarker: BiomarkerKey,
    value: float,
) -> tuple[str, float]:
    """Guess the most likely unit for a bare number.

    Returns:
        ``(unit, confidence)``: 0.8 inside a candidate's plausible range,
        0.5 within a 0.5× to 1.5× margin of it, else the canonical unit at 0.2.
    """
    for unit, low, high in EXPECTED_UNIT_RANGES[biomarker]:
        if low <= value <= high:
            return unit, INFERRED_IN_RANGE
        if low * 0.5 <= value <= high * 1.5:
            return unit, INFERRED_NEAR_RANGE
    return STANDARD_UNITS[biomarker], INFERRED_FALLBACK


def smart_convert(
    biomarker: BiomarkerKey,
    value: float,
    provided_unit: str | None = None,
) -> SmartConversionResult:
    """Convert with the printed unit, or infer one from the magnitude first."""
    if provided_unit:
        result = convert_to_standard_unit(biomarker, value, provided_unit)
        return SmartConversionResult(
            value=result.value,
            unit=result.unit,
            converted=result.converted,
            unit_detected=False,
            confidence=0.9 if result.converted else 1.0,
        )

    likely_unit, detection_confidence = detect_unit_from_value(biomarker, value)
    result = convert_to_standard_unit(biomarker, value, likely_unit)
    return SmartConversionResult(
        value=result.value,
        unit=result.unit,
        converted=result.converted,
        unit_detected=True,
        confidence=detection_confidence * (0.8 if result.converted else 1.0),
    )


def format_with_unit(value: float, unit: str, decimals: int = 2) -> str:
    return f"{value:.{decimals}f} {unit}"
