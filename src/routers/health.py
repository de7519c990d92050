"""Health check endpoint (public, no auth)."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter

from src.config import get_settings
from src.ocr.ocr_service import get_engine_manager

router = APIRouter(tags=["system"])
logger = logging.getLogger("bioage.health")


def _engine_state() -> str:
    manager = get_engine_manager()
    if manager.is_ready:
        return "ready"
    if manager.is_initializing:
        return "initializing"
    return "not_started"


@router.get("/health")
async def health_check() -> dict:
    """Liveness probe. Returns 200 if the API process is up.

    The OCR engine is started lazily on the first scanned upload, so
    ``not_started`` is a healthy state.
    """
    settings = get_settings()
    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
        "ocrEngine": _engine_state(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
