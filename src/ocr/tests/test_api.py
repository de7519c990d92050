"""HTTP tests for the OCR and health endpoints (FastAPI TestClient)."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from src.main import create_app
from src.ocr.base import ALL_BIOMARKERS, BiomarkerExtraction, OcrExtractionResult
from src.ocr.errors import OcrError, OcrErrorCode
from src.ocr.tests.conftest import E2E_VALUES

EXTRACT_URL = "/api/v1/ocr/extract"


@pytest.fixture
def client():
    with TestClient(create_app()) as c:
        yield c


def _e2e_result() -> OcrExtractionResult:
    extractions = {
        key: BiomarkerExtraction(
            biomarker=key,
            value=E2E_VALUES[key.value],
            unit=None,
            confidence=0.9,
            raw_text=f"{key.value}: {E2E_VALUES[key.value]}",
            line_number=n,
            page_number=1,
        )
        for n, key in enumerate(ALL_BIOMARKERS)
    }
    return OcrExtractionResult(
        success=True,
        extractions=extractions,
        raw_text="...",
        page_count=1,
        method="embedded_text",
    )


def _upload(client, content=b"%PDF-1.7 fake", filename="labs.pdf", mime="application/pdf", **data):
    return client.post(EXTRACT_URL, files={"file": (filename, content, mime)}, data=data)


class TestExtractEndpoint:
    def test_success_payload(self, client):
        mock = AsyncMock(return_value=_e2e_result())
        with patch("src.routers.ocr.extract_document", mock):
            resp = _upload(client)

        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert set(body["result"]["extractions"]) == {k.value for k in ALL_BIOMARKERS}
        assert body["summary"] == "Excellent extraction: 9 high confidence"
        assert body["stats"]["highConfidenceCount"] == 9
        assert body["displayNames"]["crp"] == "C-Reactive Protein"
        assert set(body["breakdowns"]) == {k.value for k in ALL_BIOMARKERS}
        assert body["fileInfo"]["filename"] == "labs.pdf"
        assert body["fileInfo"]["format"]["extension"] == "pdf"
        assert body["phenoageCheck"] == {"phenoage": None, "warnings": []}

        args, kwargs = mock.call_args
        assert args[:3] == (b"%PDF-1.7 fake", "application/pdf", "labs.pdf")
        assert kwargs["size"] == len(b"%PDF-1.7 fake")

    def test_chronological_age_enables_phenoage_check(self, client):
        with patch("src.routers.ocr.extract_document", AsyncMock(return_value=_e2e_result())):
            resp = _upload(client, chronological_age="40")
        check = resp.json()["phenoageCheck"]
        assert check["phenoage"] == pytest.approx(29.7, abs=0.5)
        assert check["warnings"] == []

    @pytest.mark.parametrize("age", ["0", "-3", "200"])
    def test_invalid_age(self, client, age):
        with patch("src.routers.ocr.extract_document", AsyncMock(return_value=_e2e_result())):
            resp = _upload(client, chronological_age=age)
        assert resp.status_code == 422

    def test_missing_file(self, client):
        assert client.post(EXTRACT_URL).status_code == 422

    @pytest.mark.parametrize(
        "code, status",
        [
            (OcrErrorCode.INVALID_FILE_TYPE, 400),
            (OcrErrorCode.EMPTY_FILE, 400),
            (OcrErrorCode.OCR_ENGINE_FAILED, 503),
            (OcrErrorCode.EXTRACTION_TIMEOUT, 504),
        ],
    )
    def test_error_status(self, client, code, status):
        with patch("src.routers.ocr.extract_document", AsyncMock(side_effect=OcrError(code))):
            resp = _upload(client)
        assert resp.status_code == status
        body = resp.json()
        assert body["code"] == code.value
        assert body["retryable"] is (status != 400)
        assert "PDF" in body["supportedFormats"]

    def test_unsupported_upload_end_to_end(self, client):
        resp = _upload(client, content=b"PK\x03\x04" + b"\x00" * 60, filename="labs.zip", mime="application/zip")
        assert resp.status_code == 400
        body = resp.json()
        assert body["code"] == "INVALID_FILE_TYPE"
        assert body["error"].startswith("Unsupported file format: application/zip")

    def test_text_pdf_end_to_end(self, client, text_pdf):
        resp = _upload(client, content=text_pdf)
        assert resp.status_code == 200
        result = resp.json()["result"]
        assert result["method"] == "embedded_text"
        values = {key: e["value"] for key, e in result["extractions"].items()}
        assert values == pytest.approx(E2E_VALUES)

        breakdowns = resp.json()["breakdowns"]
        for key, extraction in result["extractions"].items():
            assert breakdowns[key]["overall"] == pytest.approx(extraction["confidence"], abs=1e-4)


class TestFormatsEndpoint:
    def test_formats(self, client):
        resp = client.get("/api/v1/ocr/formats")
        assert resp.status_code == 200
        body = resp.json()
        assert "application/pdf" in body["mimeTypes"]
        assert "heic" in body["extensions"]
        assert ".pdf" in body["accept"].split(",")
        assert body["maxUploadMb"] == 10


class TestHealth:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["ocrEngine"] in {"ready", "initializing", "not_started"}

    def test_security_headers(self, client):
        resp = client.get("/health")
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert resp.headers["X-Frame-Options"] == "DENY"
        assert resp.headers["Cache-Control"] == "no-store"
        assert int(resp.headers["X-Process-Time-Ms"]) >= 0
