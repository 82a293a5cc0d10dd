"""Separate document images from e-mail noise (signatures, icons, pixels).

:meth:`ImageFilter.classify` applies an ordered rule list where the first
decisive rule wins: filename, decoded pixel dimensions, byte size, footer
position, surrounding text, CID shape.  Anything left is accepted.  A failure
while classifying accepts the image with a reduced confidence so a real
attachment is never lost to a decoding problem.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from io import BytesIO
from typing import Any, Dict, List, Optional, Pattern, Sequence, Tuple

from config.settings import settings
from utils.procurement_schema import FilteredImage, FilterReason

try:  # pragma: no cover - optional dependency
    from PIL import Image  # type: ignore
except Exception:  # pragma: no cover - Pillow is optional
    Image = None  # type: ignore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ImageFilterConfig:
    min_pixels: int = 40000
    max_icon_size: int = 64
    max_logo_aspect_ratio: float = 3.5
    min_logo_height: int = 120
    min_bytes: int = 5000
    footer_small_bytes: int = 20000
    min_ocr_chars: int = 15
    enable_ocr_check: bool = False

    @classmethod
    def from_settings(cls) -> "ImageFilterConfig":
        return cls(
            min_pixels=settings.image_min_pixels,
            max_icon_size=settings.image_max_icon_size,
            max_logo_aspect_ratio=settings.image_max_logo_aspect_ratio,
            min_logo_height=settings.image_min_logo_height,
            min_bytes=settings.image_min_bytes,
            footer_small_bytes=settings.image_footer_small_bytes,
            min_ocr_chars=settings.image_min_ocr_chars,
            enable_ocr_check=settings.image_enable_ocr_check,
        )


@dataclass(frozen=True)
class ImageMetadata:
    filename: str
    content: Optional[bytes] = None
    size: Optional[int] = None
    content_type: Optional[str] = None
    is_inline: bool = False
    position: Optional[str] = None  # header, body or footer
    cid: Optional[str] = None
    surrounding_text: Optional[str] = None

    @property
    def byte_size(self) -> Optional[int]:
        if self.size:
            return self.size
        if self.content:
            return len(self.content)
        return None


@dataclass(frozen=True)
class ImageClassification:
    filtered: bool
    confidence: float
    reason: Optional[FilterReason] = None
    width: Optional[int] = None
    height: Optional[int] = None
    ocr_text: Optional[str] = None

    def to_filtered_image(self, metadata: ImageMetadata) -> FilteredImage:
        if self.reason is None:
            raise ValueError("accepted images have no filter reason")
        ratio = None
        if self.width and self.height:
            ratio = round(self.width / self.height, 2)
        return FilteredImage(
            name=metadata.filename,
            reason=self.reason,
            width=self.width,
            height=self.height,
            ratio=ratio,
            size=metadata.byte_size,
            ocr_text=self.ocr_text,
        )

    def to_json(self) -> Dict[str, Any]:
        return {
            "filtered": self.filtered,
            "confidence": self.confidence,
            "reason": self.reason.value if self.reason else None,
            "width": self.width,
            "height": self.height,
        }


def _word(alternation: str) -> str:
    """Match the alternatives only where no letter touches them."""

    return rf"(?<![a-z])(?:{alternation})(?![a-z])"


FILENAME_REJECT_PATTERNS: Tuple[Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"^outlook",
        r"^image\d+\.",
        _word("logo"),
        _word("icon"),
        _word("signature|sig"),
        _word("facebook|twitter|linkedin|instagram|youtube|whatsapp"),
        _word("banner"),
        _word("badge"),
        _word("tracking|pixel|beacon|spacer"),
        _word("header"),
        _word("footer"),
        r"^att\d+\.",
        r"^cid[:\-_]",
        r"^[a-f0-9]{8,}[-_]",
        r"desc\.(?:png|jpe?g|gif)$",
        r"~wrl\d+\.tmp$",
        r"winmail\.dat$",
    )
)

# First match decides the reason attached to a filename rejection.
FILENAME_REASONS: Tuple[Tuple[Pattern[str], FilterReason], ...] = (
    (re.compile(_word("logo"), re.IGNORECASE), FilterReason.LOGO),
    (re.compile(_word("icon"), re.IGNORECASE), FilterReason.TINY_ICON),
    (
        re.compile(_word("facebook|twitter|linkedin|instagram|youtube|whatsapp"), re.IGNORECASE),
        FilterReason.SOCIAL_ICON,
    ),
    (re.compile(_word("banner"), re.IGNORECASE), FilterReason.BANNER),
    (re.compile(_word("tracking|pixel|beacon|spacer"), re.IGNORECASE), FilterReason.TRACKING_PIXEL),
    (re.compile(r"^cid", re.IGNORECASE), FilterReason.CID_PATTERN),
    (re.compile(r"^[a-f0-9]{8,}[-_]", re.IGNORECASE), FilterReason.HEX_ID_PATTERN),
)

SIGNATURE_TEXT_PATTERNS: Tuple[Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE | re.MULTILINE)
    for pattern in (
        r"cordialement",
        r"\bregards\b",
        r"sincerely",
        r"best regards",
        r"sent from",
        r"envoyé depuis",
        r"^\s*tel\b",
        r"^\s*mobile\b",
        r"^\s*phone\b",
        r"linkedin\.com",
        r"twitter\.com",
        r"facebook\.com",
    )
)
CID_HEX_PATTERN = re.compile(r"^[a-f0-9]{8,}[@_\-]", re.IGNORECASE)


def _basename(filename: str) -> str:
    name = (filename or "").split("?", 1)[0]
    return re.split(r"[\\/]", name)[-1].strip()


class ImageFilter:
    """Classify e-mail and attachment images as content or noise."""

    def __init__(
        self,
        config: Optional[ImageFilterConfig] = None,
        ocr_engine: Optional[Any] = None,
    ) -> None:
        self.config = config or ImageFilterConfig.from_settings()
        self.ocr_engine = ocr_engine

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def classify(self, metadata: ImageMetadata) -> ImageClassification:
        try:
            return self._classify(metadata)
        except Exception:
            logger.warning("Image classification failed for %s; accepting", metadata.filename, exc_info=True)
            return ImageClassification(filtered=False, confidence=0.5)

    def filter_images(
        self, images: Sequence[ImageMetadata]
    ) -> Tuple[List[ImageMetadata], List[FilteredImage]]:
        """Split ``images`` into accepted metadata and filtered records, order preserved."""

        accepted: List[ImageMetadata] = []
        rejected: List[FilteredImage] = []
        for image in images:
            result = self.classify(image)
            if result.filtered:
                rejected.append(result.to_filtered_image(image))
                logger.debug(
                    "image_filtered name=%s reason=%s confidence=%.2f",
                    image.filename,
                    result.reason.value if result.reason else None,
                    result.confidence,
                )
            else:
                accepted.append(image)
        return accepted, rejected

    def is_likely_signature_by_name(self, filename: str) -> bool:
        result = self._check_filename(_basename(filename))
        return result is not None and result.confidence >= 0.8

    def is_likely_signature_by_size(self, size: Optional[int]) -> bool:
        return bool(size) and size < self.config.min_bytes

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------
    def _classify(self, metadata: ImageMetadata) -> ImageClassification:
        by_name = self._check_filename(_basename(metadata.filename))
        if by_name is not None:
            return by_name

        width, height = self._dimensions(metadata.content)
        if width is not None and height is not None:
            by_size = self._check_dimensions(width, height)
            if by_size is not None:
                return by_size

        size = metadata.byte_size
        if size and size < self.config.min_bytes:
            return ImageClassification(True, 0.7, FilterReason.LIKELY_SIGNATURE, width, height)

        if (metadata.position or "").lower() == "footer" and size and size < self.config.footer_small_bytes:
            return ImageClassification(True, 0.8, FilterReason.FOOTER_POSITION, width, height)

        if metadata.surrounding_text:
            hits = sum(1 for pattern in SIGNATURE_TEXT_PATTERNS if pattern.search(metadata.surrounding_text))
            if hits >= 2:
                return ImageClassification(True, 0.85, FilterReason.LIKELY_SIGNATURE, width, height)
            if hits == 1:
                return ImageClassification(True, 0.6, FilterReason.LIKELY_SIGNATURE, width, height)

        if metadata.cid and CID_HEX_PATTERN.match(metadata.cid):
            return ImageClassification(True, 0.6, FilterReason.CID_PATTERN, width, height)

        if self.config.enable_ocr_check and self.ocr_engine is not None and metadata.content:
            text = self.ocr_engine.image_to_text(metadata.content).text
            if len(text.strip()) < self.config.min_ocr_chars:
                return ImageClassification(
                    True, 0.7, FilterReason.LOW_OCR_VALUE, width, height, ocr_text=text.strip() or None
                )

        return ImageClassification(False, 1.0, None, width, height)

    @staticmethod
    def _check_filename(name: str) -> Optional[ImageClassification]:
        if not name:
            return None
        if not any(pattern.search(name) for pattern in FILENAME_REJECT_PATTERNS):
            return None
        reason = FilterReason.LIKELY_SIGNATURE
        for pattern, candidate in FILENAME_REASONS:
            if pattern.search(name):
                reason = candidate
                break
        return ImageClassification(True, 0.9, reason)

    def _check_dimensions(self, width: int, height: int) -> Optional[ImageClassification]:
        if width <= 2 and height <= 2:
            return ImageClassification(True, 1.0, FilterReason.TRACKING_PIXEL, width, height)
        if width <= self.config.max_icon_size and height <= self.config.max_icon_size:
            return ImageClassification(True, 0.95, FilterReason.TINY_ICON, width, height)
        if width * height < self.config.min_pixels:
            return ImageClassification(True, 0.8, FilterReason.LIKELY_SIGNATURE, width, height)
        if height and width / height > self.config.max_logo_aspect_ratio and height < self.config.min_logo_height:
            return ImageClassification(True, 0.75, FilterReason.ASPECT_RATIO, width, height)
        return None

    @staticmethod
    def _dimensions(content: Optional[bytes]) -> Tuple[Optional[int], Optional[int]]:
        if not content or Image is None:
            return None, None
        try:
            with Image.open(BytesIO(content)) as image:
                width, height = image.size
        except Exception:
            logger.debug("Image dimensions could not be decoded", exc_info=True)
            return None, None
        return int(width), int(height)


__all__ = [
    "FILENAME_REJECT_PATTERNS",
    "ImageClassification",
    "ImageFilter",
    "ImageFilterConfig",
    "ImageMetadata",
    "SIGNATURE_TEXT_PATTERNS",
]
