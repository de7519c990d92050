"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.ocr.base import ConfidenceThresholds, PreprocessingOptions


class Settings(BaseSettings):
    """All configuration is loaded from ``BIOAGE_*`` environment variables (or .env)."""

    # --- App ---
    app_name: str = "BioAge OCR"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Uploads ---
    max_upload_mb: float = Field(default=10, gt=0)

    # --- PDF ---
    pdf_render_scale: float = Field(default=2.0, gt=0)
    pdf_render_concurrency: int = Field(default=3, ge=1)
    max_pdf_pages: int = Field(default=10, ge=1)
    embedded_text_min_words: int = Field(default=20, ge=0)

    # --- Raster preprocessing ---
    image_concurrency: int = Field(default=2, ge=1)
    preprocess_grayscale: bool = True
    preprocess_normalize: bool = True
    preprocess_threshold: int | None = Field(default=128, ge=0, le=255)
    preprocess_sharpen: bool = True
    preprocess_denoise: bool = True
    preprocess_target_dpi: int | None = Field(default=300, gt=0)

    # --- Tesseract ---
    ocr_language: str = "eng"
    tesseract_cmd: str | None = None  # PATH lookup when unset
    tesseract_config: str = "--oem 3 --psm 6"
    ocr_good_enough_confidence: float = Field(default=0.85, ge=0, le=1)
    extraction_deadline_seconds: float | None = Field(default=None, gt=0)

    # --- Confidence display thresholds ---
    confidence_high: float = Field(default=0.8, ge=0, le=1)
    confidence_medium: float = Field(default=0.5, ge=0, le=1)
    confidence_low: float = Field(default=0.3, ge=0, le=1)

    # --- CORS ---
    cors_origins: list[str] = ["http://localhost:3000"]

    model_config = SettingsConfigDict(
        env_prefix="BIOAGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def preprocessing_options(self) -> PreprocessingOptions:
        return PreprocessingOptions(
            grayscale=self.preprocess_grayscale,
            normalize=self.preprocess_normalize,
            threshold=self.preprocess_threshold,
            sharpen=self.preprocess_sharpen,
            denoise=self.preprocess_denoise,
            target_dpi=self.preprocess_target_dpi,
        )

    def confidence_thresholds(self) -> ConfidenceThresholds:
        return ConfidenceThresholds(
            high=self.confidence_high,
            medium=self.confidence_medium,
            low=self.confidence_low,
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()
