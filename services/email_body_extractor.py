"""E-mail bodies to :class:`NormalizedDocument` plus the inline images they reference.

HTML bodies are flattened with the standard library :class:`HTMLParser`:
block elements become line breaks and table cells become tabs so the row
splitter can recover columns.  ``<table>`` markup is also returned as 2-D
tables.  Plain text bodies contribute "text tables": two or more consecutive
lines that split into the same number of cells.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from html.parser import HTMLParser
from typing import Dict, List, Optional, Sequence, Tuple

from services.email_message import EmailAttachment, IncomingEmail
from services.header_detector import text_rows
from services.image_filter import ImageMetadata
from utils.procurement_schema import NormalizedDocument, SourceType, Table, table_from_rows

logger = logging.getLogger(__name__)

_HTML_MARKERS = re.compile(r"<html|<body|<div|<table|<p\b|<br", re.IGNORECASE)
_BLOCK_TAGS = {"div", "p", "br", "tr", "li", "h1", "h2", "h3", "h4", "h5", "h6", "table"}
_CELL_TAGS = {"td", "th"}
_SKIP_TAGS = {"script", "style", "head", "title"}

QUOTED_REPLY_MARKERS: Tuple[re.Pattern, ...] = (
    re.compile(r"^\s*On .{3,200} wrote:\s*$", re.IGNORECASE),
    re.compile(r"^\s*Le .{3,200} a écrit\s*:\s*$", re.IGNORECASE),
    re.compile(r"^\s*-{2,}\s*Original Message\s*-{2,}", re.IGNORECASE),
    re.compile(r"^\s*-{2,}\s*Message d'origine\s*-{2,}", re.IGNORECASE),
)
DISCLAIMER_MARKERS: Tuple[re.Pattern, ...] = (
    re.compile(r"^\s*(?:this|the information in this) (?:e-?mail|message)\b.*\bconfidential", re.IGNORECASE),
    re.compile(r"^\s*ce (?:message|courriel)\b.*\bconfidenti", re.IGNORECASE),
    re.compile(r"^\s*(?:disclaimer|avertissement)\s*:", re.IGNORECASE),
)
FOOTER_MARKERS = re.compile(
    r"signature|cordialement|regards|sincerely|^--\s*$|_{3,}",
    re.IGNORECASE | re.MULTILINE,
)
HEADER_WINDOW_CHARS = 500
SURROUNDING_CHARS = 100
_IMAGE_EXTENSIONS = re.compile(r"\.(?:png|jpe?g|gif|bmp|webp|tiff?)$", re.IGNORECASE)


def is_html(content: Optional[str]) -> bool:
    return bool(content) and bool(_HTML_MARKERS.search(content))


@dataclass
class _ImageTag:
    src: str
    cid: Optional[str]
    alt: Optional[str]
    text_offset: int


class _HTMLFlattener(HTMLParser):
    """Collect text, tables and ``<img>`` tags in a single pass."""

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self._parts: List[str] = []
        self._length = 0
        self._skip_depth = 0
        self.images: List[_ImageTag] = []
        self.tables: List[List[List[str]]] = []
        self._table_stack: List[List[List[str]]] = []
        self._cell: Optional[List[str]] = None

    def _emit(self, text: str) -> None:
        self._parts.append(text)
        self._length += len(text)

    def handle_starttag(self, tag, attrs):
        tag = tag.lower()
        if tag in _SKIP_TAGS:
            self._skip_depth += 1
            return
        if tag == "img":
            values = {key.lower(): (value or "") for key, value in attrs}
            src = values.get("src", "").strip()
            cid = src[4:] if src.lower().startswith("cid:") else None
            if src:
                self.images.append(_ImageTag(src=src, cid=cid, alt=values.get("alt") or None, text_offset=self._length))
            return
        if tag == "table":
            self._table_stack.append([])
        elif tag == "tr" and self._table_stack:
            self._table_stack[-1].append([])
        elif tag in _CELL_TAGS and self._table_stack:
            self._cell = []
        if tag in _BLOCK_TAGS:
            self._emit("\n")
        elif tag in _CELL_TAGS:
            self._emit("\t")

    def handle_startendtag(self, tag, attrs):
        self.handle_starttag(tag, attrs)

    def handle_endtag(self, tag):
        tag = tag.lower()
        if tag in _SKIP_TAGS:
            self._skip_depth = max(0, self._skip_depth - 1)
            return
        if tag in _CELL_TAGS and self._cell is not None and self._table_stack:
            rows = self._table_stack[-1]
            if not rows:
                rows.append([])
            rows[-1].append(re.sub(r"\s+", " ", "".join(self._cell)).strip())
            self._cell = None
        elif tag == "table" and self._table_stack:
            rows = [row for row in self._table_stack.pop() if row]
            if rows:
                self.tables.append(rows)
        if tag in _BLOCK_TAGS:
            self._emit("\n")
        elif tag in _CELL_TAGS:
            self._emit("\t")

    def handle_data(self, data):
        if self._skip_depth or not data:
            return
        if self._cell is not None:
            self._cell.append(data)
        self._emit(data.replace(" ", " "))

    @property
    def text(self) -> str:
        return "".join(self._parts)


def _tidy_flattened(text: str) -> str:
    lines = []
    for line in text.split("\n"):
        cells = [cell.strip() for cell in line.split("\t")]
        joined = "\t".join(cell for cell in cells if cell)
        lines.append(joined)
    tidy = "\n".join(lines)
    return re.sub(r"\n{3,}", "\n\n", tidy).strip()


def _flatten(html: str) -> _HTMLFlattener:
    parser = _HTMLFlattener()
    parser.feed(html or "")
    parser.close()
    return parser


def html_to_text(html: str) -> str:
    """Plain text of ``html`` with block elements on their own lines and cells tab separated."""

    return _tidy_flattened(_flatten(html).text)


def extract_html_tables(html: str) -> List[Table]:
    return [table_from_rows(rows) for rows in _flatten(html).tables]


def extract_text_tables(text: str) -> List[Table]:
    """Runs of at least two lines splitting into the same number (>= 2) of cells."""

    tables: List[Table] = []
    current: List[List[str]] = []
    width = 0

    def flush() -> None:
        if len(current) > 1:
            tables.append(table_from_rows(current))

    for line in (text or "").split("\n"):
        stripped = line.strip()
        if "\t" in stripped:
            cells = [cell.strip() for cell in stripped.split("\t")]
        elif "  " in stripped:
            cells = [cell.strip() for cell in re.split(r"\s{2,}", stripped)]
        else:
            cells = [stripped] if stripped else []
        if len(cells) < 2:
            flush()
            current, width = [], 0
            continue
        if width and len(cells) != width:
            flush()
            current = []
        current.append(cells)
        width = len(cells)
    flush()
    return tables


def clean_email_body(text: str) -> str:
    """Drop quoted replies, ``>`` quoted lines and trailing disclaimers."""

    kept: List[str] = []
    for line in (text or "").replace("\r\n", "\n").replace("\r", "\n").split("\n"):
        if any(marker.match(line) for marker in QUOTED_REPLY_MARKERS):
            break
        if any(marker.match(line) for marker in DISCLAIMER_MARKERS):
            break
        if line.lstrip().startswith(">"):
            continue
        kept.append(line.rstrip())
    return "\n".join(kept).strip()


def _position_in_email(offset: int, footer_start: Optional[int]) -> str:
    if footer_start is not None and offset > footer_start:
        return "footer"
    if offset < HEADER_WINDOW_CHARS:
        return "header"
    return "body"


def _resolve_cid(cid: str, attachments: Sequence[EmailAttachment]) -> Optional[EmailAttachment]:
    wanted = cid.strip("<> ").lower()
    for attachment in attachments:
        if attachment.content_id and attachment.content_id.strip("<> ").lower() == wanted:
            return attachment
    for attachment in attachments:
        name = attachment.filename.lower()
        if name == wanted or wanted in name or name.split(".")[0] in wanted.split("@")[0]:
            return attachment
    return None


def find_inline_images(
    html: str, attachments: Sequence[EmailAttachment]
) -> List[ImageMetadata]:
    """Resolve ``<img src="cid:...">`` references and inline image parts.

    Each image carries its position in the e-mail (header/body/footer) and
    about 100 characters of text on either side for signature detection.
    """

    images: List[ImageMetadata] = []
    seen: set = set()
    text = ""
    footer_start: Optional[int] = None
    if html:
        parser = _flatten(html)
        text = parser.text
        footer = FOOTER_MARKERS.search(text)
        footer_start = footer.start() if footer else None
        for tag in parser.images:
            if not tag.cid:
                if not tag.src.startswith("data:"):
                    logger.debug("External inline image ignored: %s", tag.src)
                continue
            attachment = _resolve_cid(tag.cid, attachments)
            if attachment is None or attachment.filename in seen:
                continue
            seen.add(attachment.filename)
            start = max(0, tag.text_offset - SURROUNDING_CHARS)
            surrounding = text[start : tag.text_offset + SURROUNDING_CHARS]
            images.append(
                ImageMetadata(
                    filename=attachment.filename,
                    content=attachment.content,
                    size=attachment.byte_size,
                    content_type=attachment.content_type,
                    is_inline=True,
                    position=_position_in_email(tag.text_offset, footer_start),
                    cid=tag.cid,
                    surrounding_text=re.sub(r"\s+", " ", surrounding).strip(),
                )
            )
    for attachment in attachments:
        if not attachment.is_inline or attachment.filename in seen:
            continue
        is_image = (attachment.content_type or "").startswith("image/") or _IMAGE_EXTENSIONS.search(attachment.filename)
        if not is_image:
            continue
        seen.add(attachment.filename)
        images.append(
            ImageMetadata(
                filename=attachment.filename,
                content=attachment.content,
                size=attachment.byte_size,
                content_type=attachment.content_type,
                is_inline=True,
                cid=attachment.content_id,
            )
        )
    return images


@dataclass
class EmailBodyResult:
    document: Optional[NormalizedDocument]
    inline_images: List[ImageMetadata] = field(default_factory=list)
    is_html: bool = False
    text: str = ""

    def to_json(self) -> Dict[str, object]:
        return {
            "has_document": self.document is not None,
            "inline_images": [image.filename for image in self.inline_images],
            "is_html": self.is_html,
        }


class EmailBodyExtractor:
    def extract(self, email: IncomingEmail) -> EmailBodyResult:
        html = email.body_html
        if not html and is_html(email.body_text):
            html = email.body_text
        if html:
            text = clean_email_body(html_to_text(html))
            tables = extract_html_tables(html)
            if not tables:
                tables = extract_text_tables(text)
        else:
            text = clean_email_body(email.body_text)
            tables = extract_text_tables(text)
        inline = find_inline_images(html or "", email.attachments)

        rows = tuple(row for row in text_rows(text) if row.raw)
        document = None
        if text.strip() or tables:
            document = NormalizedDocument(
                source_type=SourceType.EMAIL_HTML if html else SourceType.EMAIL_TEXT,
                source_name="email_body",
                raw_text=text,
                rows=rows,
                tables=tuple(tables),
            )
        logger.info(
            "email_body html=%s rows=%d tables=%d inline_images=%d",
            bool(html),
            len(rows),
            len(tables),
            len(inline),
        )
        return EmailBodyResult(document=document, inline_images=inline, is_html=bool(html), text=text)


__all__ = [
    "EmailBodyExtractor",
    "EmailBodyResult",
    "clean_email_body",
    "extract_html_tables",
    "extract_text_tables",
    "find_inline_images",
    "html_to_text",
    "is_html",
]
