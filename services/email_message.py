"""E-mail abstraction consumed by the ingestion pipeline and RFC 822 decoding."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmailAttachment:
    filename: str
    content: bytes
    content_type: Optional[str] = None
    size: Optional[int] = None
    content_id: Optional[str] = None
    is_inline: bool = False

    @property
    def byte_size(self) -> int:
        return self.size if self.size else len(self.content or b"")


@dataclass(frozen=True)
class EmailClassification:
    """Label produced by the external offer/decline/pending classifier."""

    label: str
    score: float
    reasons: Tuple[str, ...] = ()

    def to_json(self) -> Dict[str, Any]:
        return {"label": self.label, "score": self.score, "reasons": list(self.reasons)}


@dataclass
class IncomingEmail:
    subject: str = ""
    body_text: str = ""
    body_html: Optional[str] = None
    attachments: List[EmailAttachment] = field(default_factory=list)
    from_address: Optional[str] = None
    message_id: Optional[str] = None
    received_at: Optional[datetime] = None


def _decode_message(raw: bytes) -> EmailMessage:
    return BytesParser(policy=policy.default).parsebytes(raw)


def _extract_bodies(message: EmailMessage) -> Tuple[str, Optional[str]]:
    text_content: Optional[str] = None
    html_content: Optional[str] = None
    for part in message.walk():
        if part.is_multipart():
            continue
        ctype = part.get_content_type()
        disp = (part.get("Content-Disposition") or "").lower()
        if "attachment" in disp or ctype not in ("text/plain", "text/html"):
            continue
        try:
            candidate = part.get_content()
        except Exception as exc:
            logger.warning("Failed to extract %s content: %s", ctype, exc)
            continue
        if not isinstance(candidate, str) or not candidate.strip():
            continue
        if ctype == "text/plain" and text_content is None:
            text_content = candidate.strip()
        elif ctype == "text/html" and html_content is None:
            html_content = candidate
    return text_content or "", html_content


def _extract_attachments(message: EmailMessage) -> List[EmailAttachment]:
    attachments: List[EmailAttachment] = []
    for part in message.walk():
        if part.is_multipart():
            continue
        disp = (part.get("Content-Disposition") or "").lower()
        ctype = part.get_content_type()
        filename = part.get_filename()
        content_id = (part.get("Content-ID") or "").strip("<> ") or None
        if not filename and "attachment" not in disp and not (content_id and ctype.startswith("image/")):
            continue
        try:
            payload = part.get_payload(decode=True) or b""
        except Exception:
            logger.warning("Failed to decode attachment %s", filename, exc_info=True)
            continue
        if not filename:
            extension = ctype.split("/", 1)[-1] if "/" in ctype else "bin"
            filename = f"{content_id or 'attachment'}.{extension}"
        attachments.append(
            EmailAttachment(
                filename=filename,
                content=payload,
                content_type=ctype,
                size=len(payload),
                content_id=content_id,
                is_inline="inline" in disp or (content_id is not None and "attachment" not in disp),
            )
        )
    return attachments


def parse_email_bytes(raw: bytes) -> IncomingEmail:
    """Parse raw RFC 822 bytes into :class:`IncomingEmail`."""

    message = _decode_message(raw)
    body_text, body_html = _extract_bodies(message)

    date_header = message.get("Date")
    try:
        received_at = parsedate_to_datetime(date_header) if date_header else None
    except Exception:
        received_at = None
    if received_at is not None and received_at.tzinfo is None:
        received_at = received_at.replace(tzinfo=timezone.utc)

    return IncomingEmail(
        subject=str(message.get("Subject") or ""),
        body_text=body_text,
        body_html=body_html,
        attachments=_extract_attachments(message),
        from_address=message.get("From"),
        message_id=(message.get("Message-ID") or "").strip("<> ") or None,
        received_at=received_at,
    )


__all__ = [
    "EmailAttachment",
    "EmailClassification",
    "IncomingEmail",
    "parse_email_bytes",
]
