# ProcWise/config/settings.py

import logging
import os
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
ENV_FILE_PATH = os.path.join(PROJECT_ROOT, '.env')
REFERENCE_DATA_DIR = os.path.join(PROJECT_ROOT, "resources", "reference_data")


class Settings(BaseSettings):
    # Parse log persistence
    output_dir: str = Field(default="./output", env="OUTPUT_DIR")
    brands_file_path: str = Field(
        default=os.path.join(REFERENCE_DATA_DIR, "brands_grouped_by_category.json"),
        env="BRANDS_FILE_PATH",
    )

    # Header detection
    fuzzy_match_threshold: float = Field(default=0.75, env="FUZZY_MATCH_THRESHOLD")
    min_header_score: float = Field(default=8.0, env="MIN_HEADER_SCORE")
    strong_header_score: float = Field(default=15.0, env="STRONG_HEADER_SCORE")
    max_header_search_lines: int = Field(default=40, env="MAX_HEADER_SEARCH_LINES")
    header_bonus_line_qty: float = Field(default=3.0, env="HEADER_BONUS_LINE_QTY")
    header_bonus_qty_uom: float = Field(default=2.0, env="HEADER_BONUS_QTY_UOM")
    header_bonus_description: float = Field(
        default=2.0, env="HEADER_BONUS_DESCRIPTION"
    )
    header_bonus_code: float = Field(default=1.0, env="HEADER_BONUS_CODE")
    min_form_metadata_hits: int = Field(default=2, env="MIN_FORM_METADATA_HITS")

    # Item extraction
    min_items_for_header_success: int = Field(
        default=3, env="MIN_ITEMS_FOR_HEADER_SUCCESS"
    )
    position_y_tolerance: float = Field(default=5.0, env="POSITION_Y_TOLERANCE")
    max_quantity: float = Field(default=100000.0, env="MAX_QUANTITY")
    min_description_chars: int = Field(default=3, env="MIN_DESCRIPTION_CHARS")
    continuation_max_chars: int = Field(default=100, env="CONTINUATION_MAX_CHARS")

    # Confidence scoring
    confidence_low_threshold: int = Field(default=50, env="CONFIDENCE_LOW_THRESHOLD")
    confidence_review_threshold: int = Field(
        default=40, env="CONFIDENCE_REVIEW_THRESHOLD"
    )
    max_low_confidence_ratio: float = Field(
        default=0.5, env="MAX_LOW_CONFIDENCE_RATIO"
    )

    # Image filtering
    image_min_pixels: int = Field(default=40000, env="IMAGE_MIN_PIXELS")
    image_max_icon_size: int = Field(default=64, env="IMAGE_MAX_ICON_SIZE")
    image_max_logo_aspect_ratio: float = Field(
        default=3.5, env="IMAGE_MAX_LOGO_ASPECT_RATIO"
    )
    image_min_logo_height: int = Field(default=120, env="IMAGE_MIN_LOGO_HEIGHT")
    image_min_bytes: int = Field(default=5000, env="IMAGE_MIN_BYTES")
    image_footer_small_bytes: int = Field(
        default=20000, env="IMAGE_FOOTER_SMALL_BYTES"
    )
    image_min_ocr_chars: int = Field(default=15, env="IMAGE_MIN_OCR_CHARS")
    image_enable_ocr_check: bool = Field(default=False, env="IMAGE_ENABLE_OCR_CHECK")

    # PDF / OCR
    ocr_languages: str = Field(default="fra+eng", env="OCR_LANGUAGES")
    ocr_dpi: int = Field(default=300, env="OCR_DPI")
    ocr_timeout_seconds: int = Field(default=60, env="OCR_TIMEOUT_SECONDS")
    ocr_max_pages: int = Field(default=20, env="OCR_MAX_PAGES")
    ocr_tesseract_config: str = Field(default="--psm 6", env="OCR_TESSERACT_CONFIG")
    tesseract_cmd: Optional[str] = Field(default=None, env="TESSERACT_CMD")
    pdf_min_text_chars: int = Field(default=50, env="PDF_MIN_TEXT_CHARS")
    ocr_min_text_chars: int = Field(default=20, env="OCR_MIN_TEXT_CHARS")

    class Config:
        env_file = ENV_FILE_PATH
        env_file_encoding = 'utf-8'
        extra = "ignore"

    @field_validator("ocr_languages", mode="before")
    @classmethod
    def _coerce_ocr_languages(cls, value):
        """Accept comma or space separated language lists from the environment."""

        if value is None:
            return "fra+eng"
        if isinstance(value, (list, tuple)):
            parts = [str(part).strip() for part in value]
        else:
            parts = str(value).replace(",", "+").replace(" ", "+").split("+")
        cleaned = [part for part in parts if part]
        return "+".join(cleaned) or "fra+eng"

    @field_validator("fuzzy_match_threshold", "max_low_confidence_ratio")
    @classmethod
    def _check_ratio(cls, value):
        if not 0.0 < float(value) <= 1.0:
            raise ValueError("ratio settings must be within (0, 1]")
        return value


try:
    settings = Settings()
except Exception as e:
    logger.critical("Could not load ingestion settings from .env file: %s", e)
    raise
