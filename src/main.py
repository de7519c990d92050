"""BioAge OCR API: FastAPI application entry point.

Run locally:
    uvicorn src.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.config import get_settings
from src.middleware.security import SecurityHeadersMiddleware
from src.ocr.errors import OcrError, OcrErrorCode, format_ocr_error_response
from src.ocr.formats import get_supported_formats_display
from src.ocr.ocr_service import terminate_engine
from src.routers import health, ocr

# ---------- Logging ----------

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("bioage")


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks.  The OCR engine itself starts lazily."""
    settings = get_settings()
    logger.info(
        "Starting BioAge OCR API v%s [%s]",
        settings.app_version,
        settings.environment,
    )
    yield
    await terminate_engine()
    logger.info("BioAge OCR API shut down")


# ---------- Error handling ----------

def ocr_error_status(error: OcrError) -> int:
    if error.code is OcrErrorCode.EXTRACTION_TIMEOUT:
        return 504
    if error.retryable:
        return 503
    return 400


async def ocr_error_handler(request: Request, exc: OcrError) -> JSONResponse:
    status = ocr_error_status(exc)
    log = logger.warning if status >= 500 else logger.info
    log("OCR request %s failed [%s]: %s", request.url.path, exc.code.value, exc.message)
    body = format_ocr_error_response(exc)
    body["supportedFormats"] = get_supported_formats_display()
    return JSONResponse(status_code=status, content=body)


# ---------- App factory ----------

def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description=(
            "Extracts the nine PhenoAge blood biomarkers from uploaded lab "
            "report PDFs and images."
        ),
        version=settings.app_version,
        debug=settings.debug,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    app.add_exception_handler(OcrError, ocr_error_handler)

    # ---------- Middleware (order matters: outermost first) ----------

    # Security headers on every response
    app.add_middleware(SecurityHeadersMiddleware)

    # CORS must be the innermost middleware so it can handle preflight
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Process-Time-Ms"],
    )

    # ---------- Health check (outside v1 prefix, always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    v1_prefix = "/api/v1"

    app.include_router(ocr.router, prefix=v1_prefix)

    return app


app = create_app()
