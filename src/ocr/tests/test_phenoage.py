"""Tests for the PhenoAge sanity-check calculation."""

from __future__ import annotations

import pytest

from src.ocr.base import ALL_BIOMARKERS, BiomarkerKey
from src.ocr.phenoage import (
    calculate_age_reduction,
    calculate_pace_of_aging,
    calculate_phenoage,
    mortality_score,
)
from src.ocr.tests.conftest import E2E_VALUES


@pytest.fixture
def values() -> dict[BiomarkerKey, float]:
    return {key: E2E_VALUES[key.value] for key in ALL_BIOMARKERS}


class TestCalculatePhenoAge:
    def test_healthy_profile_is_younger(self, values):
        assert calculate_phenoage(values, 40) == pytest.approx(29.7, abs=0.5)

    def test_rounded_to_one_decimal(self, values):
        phenoage = calculate_phenoage(values, 40)
        assert phenoage == round(phenoage, 1)

    def test_increases_with_age(self, values):
        assert calculate_phenoage(values, 60) > calculate_phenoage(values, 40)

    @pytest.mark.parametrize(
        "key, worse",
        [
            (BiomarkerKey.CRP, 10.0),
            (BiomarkerKey.GLUCOSE, 140.0),
            (BiomarkerKey.RDW, 16.0),
            (BiomarkerKey.ALBUMIN, 3.0),
        ],
    )
    def test_worse_markers_raise_phenoage(self, values, key, worse):
        baseline = calculate_phenoage(values, 40)
        values[key] = worse
        assert calculate_phenoage(values, 40) > baseline

    def test_zero_crp_is_floored(self, values):
        values[BiomarkerKey.CRP] = 0.0
        assert 0 <= calculate_phenoage(values, 40) <= 150

    def test_extreme_values_are_clamped(self, values):
        values[BiomarkerKey.GLUCOSE] = 2000
        values[BiomarkerKey.RDW] = 60
        assert calculate_phenoage(values, 120) <= 150

    def test_missing_biomarker(self, values):
        del values[BiomarkerKey.WBC]
        with pytest.raises(KeyError):
            calculate_phenoage(values, 40)


def test_mortality_score_is_a_probability(values):
    score = mortality_score(values, 40)
    assert 0.0001 <= score <= 0.9999


def test_age_reduction_and_pace():
    assert calculate_age_reduction(40, 30) == 10
    assert calculate_age_reduction(40, 45) == -5
    assert calculate_pace_of_aging(40, 30) == pytest.approx(0.75)
