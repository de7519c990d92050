"""Levine (2018) PhenoAge, used only to sanity-check an extracted record.

Inputs are in the canonical units the extractor produces (albumin g/dL,
creatinine mg/dL, glucose mg/dL, CRP mg/L, ...).  The published coefficients
expect SI units, so values are converted here before the linear predictor.

Levine, M.E. et al. "An epigenetic biomarker of aging for lifespan and
healthspan." Aging (2018). https://doi.org/10.18632/aging.101414
"""

from __future__ import annotations

import math
from typing import Mapping

from src.ocr.base import ALL_BIOMARKERS, BiomarkerKey

INTERCEPT = -19.9067
COEFFICIENTS: dict[BiomarkerKey, float] = {
    BiomarkerKey.ALBUMIN: -0.0336,           # g/L
    BiomarkerKey.CREATININE: 0.0095,         # umol/L
    BiomarkerKey.GLUCOSE: 0.1953,            # mmol/L
    BiomarkerKey.CRP: 0.0954,                # ln(mg/dL)
    BiomarkerKey.LYMPHOCYTE_PERCENT: -0.0120,
    BiomarkerKey.MCV: 0.0268,
    BiomarkerKey.RDW: 0.3306,
    BiomarkerKey.ALP: 0.00188,
    BiomarkerKey.WBC: 0.0554,
}
AGE_COEFFICIENT = 0.0804

GAMMA = 0.0076927
MORTALITY_HORIZON_MONTHS = 120

MIN_CRP_MG_DL = 0.01
MIN_AGE, MAX_AGE = 0.0, 150.0


def _si_value(biomarker: BiomarkerKey, value: float) -> float:
    if biomarker is BiomarkerKey.ALBUMIN:
        return value * 10                          # g/dL -> g/L
    if biomarker is BiomarkerKey.CREATININE:
        return value * 88.4                        # mg/dL -> umol/L
    if biomarker is BiomarkerKey.GLUCOSE:
        return value / 18.0182                     # mg/dL -> mmol/L
    if biomarker is BiomarkerKey.CRP:
        return math.log(max(value / 10, MIN_CRP_MG_DL))  # mg/L -> ln(mg/dL)
    return value


def mortality_score(values: Mapping[BiomarkerKey, float], chronological_age: float) -> float:
    """Ten-year mortality probability, clamped to [0.0001, 0.9999]."""
    xb = INTERCEPT + AGE_COEFFICIENT * chronological_age
    for biomarker in ALL_BIOMARKERS:
        xb += COEFFICIENTS[biomarker] * _si_value(biomarker, values[biomarker])
    score = 1 - math.exp(
        -math.exp(xb) * (math.exp(MORTALITY_HORIZON_MONTHS * GAMMA) - 1) / GAMMA
    )
    return min(max(score, 0.0001), 0.9999)


def calculate_phenoage(values: Mapping[BiomarkerKey, float], chronological_age: float) -> float:
    """PhenoAge in years, clamped to 0-150 and rounded to one decimal.

    Args:
        values:            All nine biomarkers in canonical units.
        chronological_age: Age in years.

    Raises:
        KeyError: a biomarker is missing from *values*.
    """
    m = mortality_score(values, chronological_age)
    phenoage = 141.50225 + math.log(-0.00553 * math.log(1 - m)) / 0.090165
    return round(min(max(phenoage, MIN_AGE), MAX_AGE), 1)


def calculate_age_reduction(chronological_age: float, phenoage: float) -> float:
    """Positive means biologically younger."""
    return chronological_age - phenoage


def calculate_pace_of_aging(chronological_age: float, phenoage: float) -> float:
    """Below 1.0 means ageing slower than the calendar."""
    return phenoage / chronological_age
