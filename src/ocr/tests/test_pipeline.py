"""End-to-end tests for document extraction.

Real PDFs and images are generated in memory; recognition goes through
FakeEngine so the suite runs without tesseract.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from src.config import Settings
from src.ocr.base import ALL_BIOMARKERS, BiomarkerExtraction, BiomarkerKey
from src.ocr.confidence import generate_detailed_confidence_breakdown, get_confidence_level
from src.ocr.errors import OcrError, OcrErrorCode
from src.ocr.extractor import extract_all_biomarkers
from src.ocr.formats import FileValidationResult
from src.ocr.pipeline import (
    METHOD_EMBEDDED_TEXT,
    METHOD_OCR,
    apply_unit_conversions,
    check_phenoage_plausibility,
    create_empty_result,
    extract_document,
)
from src.ocr.tests.conftest import (
    E2E_VALUES,
    FakeEngine,
    make_image,
    make_text_pdf,
    ocr_result,
)


def _values(result) -> dict[str, float | None]:
    return {key.value: e.value for key, e in result.extractions.items()}


def _found(key: BiomarkerKey, value: float, unit: str | None = None, confidence: float = 0.9):
    return BiomarkerExtraction(
        biomarker=key,
        value=value,
        unit=unit,
        confidence=confidence,
        raw_text=f"{key.value}: {value}",
        line_number=0,
        page_number=1,
    )


def _record(overrides: dict[BiomarkerKey, float] | None = None):
    record = {key: _found(key, E2E_VALUES[key.value]) for key in ALL_BIOMARKERS}
    for key, value in (overrides or {}).items():
        record[key] = _found(key, value)
    return record


# ---------------------------------------------------------------------------
# PDF path
# ---------------------------------------------------------------------------


class TestPdfExtraction:
    @pytest.mark.asyncio
    async def test_embedded_text_skips_ocr(self, text_pdf, settings, fake_engine):
        result = await extract_document(
            text_pdf, "application/pdf", "labs.pdf", settings=settings, engine=fake_engine
        )
        assert result.success
        assert result.method == METHOD_EMBEDDED_TEXT
        assert result.page_count == 1
        assert fake_engine.calls == 0
        assert _values(result) == pytest.approx(E2E_VALUES)
        assert all(e.found for e in result.extractions.values())

    @pytest.mark.asyncio
    async def test_panels_on_separate_pages(self, two_page_pdf, settings, fake_engine):
        result = await extract_document(
            two_page_pdf, "application/pdf", "labs.pdf", settings=settings, engine=fake_engine
        )
        assert result.page_count == 2
        assert result.extractions[BiomarkerKey.ALBUMIN].page_number == 1
        assert result.extractions[BiomarkerKey.WBC].page_number == 2
        assert result.extractions[BiomarkerKey.GLUCOSE].value == 92

    @pytest.mark.asyncio
    async def test_generic_mime_type_uses_extension(self, text_pdf, settings, fake_engine):
        result = await extract_document(
            text_pdf, "application/octet-stream", "labs.pdf", settings=settings, engine=fake_engine
        )
        assert result.method == METHOD_EMBEDDED_TEXT

    @pytest.mark.asyncio
    async def test_scanned_pdf_is_ocred_page_by_page(self, scanned_pdf, settings, fake_engine):
        result = await extract_document(
            scanned_pdf, "application/pdf", "scan.pdf", settings=settings, engine=fake_engine
        )
        assert result.success
        assert result.method == METHOD_OCR
        assert result.page_count == 2
        assert fake_engine.calls == 2
        assert result.raw_text.startswith("--- Page 1 ---\nAlbumin: 4.5 g/dL")
        assert "--- Page 2 ---" in result.raw_text
        assert _values(result) == pytest.approx(E2E_VALUES)
        # identical pages: the lower page wins
        assert all(e.page_number == 1 for e in result.extractions.values())

    @pytest.mark.asyncio
    async def test_text_pdf_below_word_threshold_is_ocred(self, settings, fake_engine):
        settings.embedded_text_min_words = 1000
        pdf = make_text_pdf(["Albumin: 4.5 g/dL"])
        result = await extract_document(
            pdf, "application/pdf", "labs.pdf", settings=settings, engine=fake_engine
        )
        assert result.method == METHOD_OCR
        assert fake_engine.calls == 1

    @pytest.mark.asyncio
    async def test_page_failures_are_recorded(self, scanned_pdf, settings):
        engine = FakeEngine([RuntimeError("boom")])
        result = await extract_document(
            scanned_pdf, "application/pdf", "scan.pdf", settings=settings, engine=engine
        )
        assert not result.success
        assert result.errors == [
            "Failed to OCR page 1: All OCR strategies failed",
            "Failed to OCR page 2: All OCR strategies failed",
            "OCR failed on all pages",
        ]
        assert set(result.extractions) == set(ALL_BIOMARKERS)
        assert all(e.page_number == 0 for e in result.extractions.values())

    @pytest.mark.asyncio
    async def test_one_failed_page_is_not_fatal(self, scanned_pdf, settings):
        # page 1 fails on every strategy (4 calls), page 2 succeeds
        settings.image_concurrency = 1
        failure = OcrError(OcrErrorCode.OCR_ENGINE_FAILED)
        engine = FakeEngine([failure] * 4 + [ocr_result("Glucose: 92 mg/dL")])
        result = await extract_document(
            scanned_pdf, "application/pdf", "scan.pdf", settings=settings, engine=engine
        )
        assert result.success
        assert result.errors == ["Failed to OCR page 1: All OCR strategies failed"]
        assert result.extractions[BiomarkerKey.GLUCOSE].value == 92
        assert result.extractions[BiomarkerKey.GLUCOSE].page_number == 2

    @pytest.mark.asyncio
    async def test_no_text_detected(self, scanned_pdf, settings):
        engine = FakeEngine([ocr_result("", 0.9)])
        with pytest.raises(OcrError) as exc_info:
            await extract_document(
                scanned_pdf, "application/pdf", "scan.pdf", settings=settings, engine=engine
            )
        assert exc_info.value.code is OcrErrorCode.NO_TEXT_DETECTED

    @pytest.mark.asyncio
    async def test_corrupt_pdf(self, settings, fake_engine):
        corrupt = b"%PDF-1.7\n" + b"\x00" * 64
        with pytest.raises(OcrError) as exc_info:
            await extract_document(
                corrupt, "application/pdf", "labs.pdf", settings=settings, engine=fake_engine
            )
        assert exc_info.value.code is OcrErrorCode.CORRUPTED_FILE


# ---------------------------------------------------------------------------
# Image path
# ---------------------------------------------------------------------------


class TestImageExtraction:
    @pytest.mark.asyncio
    async def test_png(self, png_bytes, settings, fake_engine):
        result = await extract_document(
            png_bytes, "image/png", "labs.png", settings=settings, engine=fake_engine
        )
        assert result.success
        assert result.method == METHOD_OCR
        assert result.page_count == 1
        assert result.notes == []
        assert _values(result) == pytest.approx(E2E_VALUES)

    @pytest.mark.asyncio
    async def test_bmp_is_converted(self, settings, fake_engine):
        bmp = make_image(fmt="BMP")
        result = await extract_document(
            bmp, "image/bmp", "labs.bmp", settings=settings, engine=fake_engine
        )
        assert result.notes == [
            "BMP Image will be converted to PNG for processing",
            "Converted from BMP to PNG",
        ]
        assert fake_engine.images[0].startswith(b"\x89PNG")

    @pytest.mark.asyncio
    async def test_tiny_image_is_rejected(self, settings, fake_engine):
        tiny = make_image(size=(150, 150))
        with pytest.raises(OcrError) as exc_info:
            await extract_document(tiny, "image/png", "tiny.png", settings=settings, engine=fake_engine)
        assert exc_info.value.code is OcrErrorCode.LOW_QUALITY_IMAGE
        assert fake_engine.calls == 0

    @pytest.mark.asyncio
    async def test_no_text(self, png_bytes, settings):
        engine = FakeEngine([ocr_result("   ", 0.9)])
        with pytest.raises(OcrError) as exc_info:
            await extract_document(png_bytes, "image/png", "blank.png", settings=settings, engine=engine)
        assert exc_info.value.code is OcrErrorCode.NO_TEXT_DETECTED

    @pytest.mark.asyncio
    async def test_ocr_confidence_feeds_extraction(self, png_bytes, settings):
        confident = await extract_document(
            png_bytes, "image/png", "a.png", settings=settings,
            engine=FakeEngine([ocr_result("Albumin: 4.5 g/dL", 0.95)]),
        )
        shaky = await extract_document(
            png_bytes, "image/png", "b.png", settings=settings,
            engine=FakeEngine([ocr_result("Albumin: 4.5 g/dL", 0.4)]),
        )
        assert (
            confident.extractions[BiomarkerKey.ALBUMIN].confidence
            > shaky.extractions[BiomarkerKey.ALBUMIN].confidence
        )


# ---------------------------------------------------------------------------
# Validation and failure classification
# ---------------------------------------------------------------------------


class TestFailures:
    @pytest.mark.asyncio
    async def test_empty_file(self, settings, fake_engine):
        with pytest.raises(OcrError) as exc_info:
            await extract_document(b"", "application/pdf", "labs.pdf", settings=settings, engine=fake_engine)
        assert exc_info.value.code is OcrErrorCode.EMPTY_FILE

    @pytest.mark.asyncio
    async def test_too_large(self, text_pdf, settings, fake_engine):
        with pytest.raises(OcrError) as exc_info:
            await extract_document(
                text_pdf, "application/pdf", "labs.pdf",
                size=11 * 1024 * 1024, settings=settings, engine=fake_engine,
            )
        assert exc_info.value.code is OcrErrorCode.FILE_TOO_LARGE
        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_unsupported_type(self, settings, fake_engine):
        zip_bytes = b"PK\x03\x04" + b"\x00" * 60
        with pytest.raises(OcrError) as exc_info:
            await extract_document(zip_bytes, "application/zip", "labs.zip", settings=settings, engine=fake_engine)
        assert exc_info.value.code is OcrErrorCode.INVALID_FILE_TYPE
        assert exc_info.value.message.startswith("Unsupported file format: application/zip")

    @pytest.mark.asyncio
    async def test_valid_upload_without_format_is_rejected(self, png_bytes, settings, fake_engine):
        unknown = FileValidationResult(valid=True, format_info=None)
        with patch("src.ocr.pipeline.validate_file", return_value=unknown):
            with pytest.raises(OcrError) as exc_info:
                await extract_document(png_bytes, "image/png", "labs.png", settings=settings, engine=fake_engine)
        assert exc_info.value.code is OcrErrorCode.INVALID_FILE_TYPE

    @pytest.mark.asyncio
    async def test_deadline(self, png_bytes, fake_engine):
        settings = Settings(
            preprocess_target_dpi=None, extraction_deadline_seconds=0.05, _env_file=None
        )
        fake_engine.delay = 1.0
        with pytest.raises(OcrError) as exc_info:
            await extract_document(png_bytes, "image/png", "labs.png", settings=settings, engine=fake_engine)
        assert exc_info.value.code is OcrErrorCode.EXTRACTION_TIMEOUT
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_unexpected_errors_are_classified(self, png_bytes, settings, fake_engine):
        boom = AsyncMock(side_effect=RuntimeError("tesseract exploded"))
        with patch("src.ocr.pipeline.check_image_quality", boom):
            with pytest.raises(OcrError) as exc_info:
                await extract_document(png_bytes, "image/png", "labs.png", settings=settings, engine=fake_engine)
        assert exc_info.value.code is OcrErrorCode.OCR_ENGINE_FAILED
        assert isinstance(exc_info.value.original, RuntimeError)

    @pytest.mark.asyncio
    async def test_processing_time_is_recorded(self, text_pdf, settings, fake_engine):
        result = await extract_document(text_pdf, "application/pdf", "labs.pdf", settings=settings, engine=fake_engine)
        assert result.processing_time_ms >= 0
        assert result.to_dict()["processingTimeMs"] == result.processing_time_ms


# ---------------------------------------------------------------------------
# Result helpers
# ---------------------------------------------------------------------------


class TestCreateEmptyResult:
    def test_all_keys_not_found(self):
        result = create_empty_result(["nothing"], page_count=3)
        assert not result.success
        assert result.errors == ["nothing"]
        assert result.page_count == 3
        assert set(result.extractions) == set(ALL_BIOMARKERS)
        assert all(not e.found and e.page_number == 0 for e in result.extractions.values())


class TestApplyUnitConversions:
    def test_declared_si_unit(self):
        converted = apply_unit_conversions(
            {BiomarkerKey.GLUCOSE: _found(BiomarkerKey.GLUCOSE, 5.1, "mmol/L", 0.9)}
        )
        glucose = converted[BiomarkerKey.GLUCOSE]
        assert glucose.unit == "mg/dL"
        assert glucose.value == pytest.approx(91.89282)
        assert glucose.confidence == pytest.approx(0.81)

    def test_inferred_unit_lowers_confidence(self):
        converted = apply_unit_conversions(
            {BiomarkerKey.ALBUMIN: _found(BiomarkerKey.ALBUMIN, 42, None, 0.9)}
        )
        albumin = converted[BiomarkerKey.ALBUMIN]
        assert albumin.value == pytest.approx(4.2)
        assert albumin.unit == "g/dL"
        assert albumin.confidence == pytest.approx(0.9 * 0.8 * 0.8)

    def test_canonical_unit_untouched(self):
        converted = apply_unit_conversions({BiomarkerKey.MCV: _found(BiomarkerKey.MCV, 90, "fL")})
        assert converted[BiomarkerKey.MCV].value == 90
        assert converted[BiomarkerKey.MCV].confidence == pytest.approx(0.9)

    def test_not_found_passes_through(self):
        missing = BiomarkerExtraction.not_found(BiomarkerKey.CRP)
        assert apply_unit_conversions({BiomarkerKey.CRP: missing})[BiomarkerKey.CRP] is missing

    def test_keeps_reading_as_printed(self):
        converted = apply_unit_conversions(
            {BiomarkerKey.GLUCOSE: _found(BiomarkerKey.GLUCOSE, 5.1, "mmol/L", 0.9)}
        )
        glucose = converted[BiomarkerKey.GLUCOSE]
        assert glucose.source_value == 5.1
        assert glucose.source_unit == "mmol/L"
        assert glucose.unit_converted
        assert not glucose.unit_inferred
        assert glucose.conversion_confidence == pytest.approx(0.9)

    def test_flags_inferred_unit(self):
        converted = apply_unit_conversions(
            {BiomarkerKey.ALBUMIN: _found(BiomarkerKey.ALBUMIN, 4.5, None, 0.9)}
        )
        albumin = converted[BiomarkerKey.ALBUMIN]
        assert albumin.unit == "g/dL"
        assert albumin.source_unit is None
        assert albumin.unit_inferred
        assert albumin.to_dict()["unitInferred"] is True


class TestBreakdownMatchesStoredConfidence:
    TEXT = "Albumin: 4.5\nGlucose: 5.0 mmol/L"

    def _converted(self, ocr_confidence: float = 0.8):
        return apply_unit_conversions(extract_all_biomarkers(self.TEXT, 1, ocr_confidence))

    def test_overall_and_factors_agree(self):
        for key, extraction in self._converted().items():
            breakdown = generate_detailed_confidence_breakdown(
                extraction, was_unit_converted=extraction.unit_converted
            )
            assert breakdown.overall == pytest.approx(extraction.confidence), key
            assert breakdown.level is get_confidence_level(extraction.confidence), key
            if extraction.factors is not None:
                stored = extraction.factors.to_dict()
                shown = {name: f.score for name, f in breakdown.factors.items()}
                assert shown == pytest.approx(stored), key

    def test_missing_unit_is_flagged(self):
        albumin = self._converted()[BiomarkerKey.ALBUMIN]
        unit = generate_detailed_confidence_breakdown(albumin).factors["unitRecognized"]
        assert unit.score == 0.3
        assert unit.explanation == 'Unit not found - inferred "g/dL" from the value'
        assert unit.suggestion is not None

    def test_converted_unit_is_flagged(self):
        glucose = self._converted()[BiomarkerKey.GLUCOSE]
        breakdown = generate_detailed_confidence_breakdown(glucose)
        assert breakdown.factors["unitRecognized"].score == 0.8
        assert breakdown.factors["unitRecognized"].explanation == (
            'Unit converted from "mmol/l" to standard'
        )
        assert breakdown.factors["nameMatchQuality"].score == 1.0
        assert breakdown.conversion_confidence == pytest.approx(0.9)

    def test_page_ocr_confidence_is_shown(self):
        glucose = self._converted(ocr_confidence=0.42)[BiomarkerKey.GLUCOSE]
        breakdown = generate_detailed_confidence_breakdown(glucose)
        assert breakdown.factors["ocrConfidence"].score == pytest.approx(0.42)
        assert breakdown.overall == pytest.approx(glucose.confidence)

    def test_not_found_shows_zero(self):
        crp = self._converted()[BiomarkerKey.CRP]
        assert not crp.found
        assert generate_detailed_confidence_breakdown(crp).overall == 0.0


class TestPhenoAgePlausibility:
    def test_plausible_record(self):
        check = check_phenoage_plausibility(_record(), chronological_age=40)
        assert check.phenoage == pytest.approx(29.7, abs=0.5)
        assert check.warnings == []

    def test_without_age(self):
        check = check_phenoage_plausibility(_record())
        assert check.phenoage is None
        assert check.warnings == []

    def test_incomplete_record(self):
        record = _record()
        record[BiomarkerKey.CRP] = BiomarkerExtraction.not_found(BiomarkerKey.CRP)
        check = check_phenoage_plausibility(record, chronological_age=40)
        assert check.phenoage is None
        assert check.warnings == ["PhenoAge check skipped, missing: C-Reactive Protein"]

    def test_implausible_record_warns(self):
        record = _record({
            BiomarkerKey.GLUCOSE: 300,
            BiomarkerKey.CRP: 50,
            BiomarkerKey.RDW: 20,
        })
        check = check_phenoage_plausibility(record, chronological_age=40)
        assert check.phenoage > 65
        assert len(check.warnings) == 1
        assert "more than 25 years" in check.warnings[0]
