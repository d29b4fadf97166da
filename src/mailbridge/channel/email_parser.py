"""Email parser for inbound RFC822/MIME messages.

Parses the raw bytes fetched from the mailbox into an :class:`InboundEmail`
carrying exactly what the inbox processor needs: sender, subject, threading
headers, a plain-text body and attachment payloads.

Design:
- Uses the Python standard library ``email`` parser with the modern policy
- HTML-only messages are converted to text with ``html2text``
- Messages without a Message-ID get a ``<epoch-ms>@local`` fallback
"""

from __future__ import annotations

import logging
import re
import time
from datetime import datetime, timezone
from email import message_from_bytes
from email.message import EmailMessage as StdEmailMessage
from email.policy import default as email_policy
from email.utils import getaddresses, parsedate_to_datetime
from html import unescape
from typing import List, Optional, Tuple

import html2text
from pydantic import BaseModel, Field, field_validator

from .addressing import extract_name

logger = logging.getLogger(__name__)


class EmailAddress(BaseModel):
    """Parsed email address with display name."""

    address: str = Field(..., description="Email address (user@domain.com)")
    display_name: Optional[str] = Field(
        default=None, description="Display name (e.g., 'John Doe')"
    )

    @field_validator("address")
    @classmethod
    def _normalize_address(cls, value: str) -> str:  # type: ignore[override]
        return value.strip().lower()

    @classmethod
    def from_header(cls, header_value: str) -> List[EmailAddress]:
        """Parse email addresses from header value.

        Args:
            header_value: Raw header value (e.g., "John Doe <john@example.com>, jane@example.com")

        Returns:
            List of parsed EmailAddress objects
        """
        if not header_value or not header_value.strip():
            return []

        result = []
        for display_name, addr in getaddresses([header_value]):
            if not addr or "@" not in addr:
                continue
            result.append(
                cls(
                    address=addr,
                    display_name=display_name.strip() if display_name else None,
                )
            )
        return result


class InboundAttachment(BaseModel):
    """Attachment part with its decoded payload."""

    filename: str = Field(..., description="Attachment filename")
    content_type: str = Field(..., description="MIME content type")
    size_bytes: int = Field(..., ge=0, description="Decoded size in bytes")
    content: bytes = Field(default=b"", repr=False, description="Decoded payload")
    is_inline: bool = Field(default=False, description="True if inline attachment")


class InboundEmail(BaseModel):
    """Inbound message as consumed by the inbox processor."""

    message_id: str = Field(..., description="Message-ID without angle brackets")
    uid: int = Field(..., description="IMAP UID")
    subject: Optional[str] = Field(default=None, description="Decoded subject")
    from_address: Optional[EmailAddress] = Field(default=None, description="Sender")
    date: datetime = Field(..., description="Sent date (UTC fallback when missing)")
    in_reply_to: Optional[str] = Field(default=None, description="Parent Message-ID")
    references: List[str] = Field(default_factory=list, description="Thread chain")
    body_plain: Optional[str] = Field(default=None, description="Plain text part")
    body_html: Optional[str] = Field(default=None, description="HTML part")
    body_text: str = Field(default="", description="Plain text, HTML converted when needed")
    attachments: List[InboundAttachment] = Field(default_factory=list)

    @property
    def sender(self) -> str:
        return self.from_address.address if self.from_address else ""

    @property
    def sender_name(self) -> str:
        if self.from_address and self.from_address.display_name:
            return self.from_address.display_name
        return extract_name(self.sender)

    @property
    def has_attachments(self) -> bool:
        return len(self.attachments) > 0


class EmailParser:
    """Parse RFC822/MIME bytes into :class:`InboundEmail`."""

    def __init__(self) -> None:
        self.html_converter = html2text.HTML2Text()
        self.html_converter.ignore_links = False
        self.html_converter.ignore_images = True
        self.html_converter.ignore_emphasis = False
        self.html_converter.body_width = 0  # No line wrapping

    def parse_message(self, *, raw_message: bytes, uid: int) -> InboundEmail:
        """Parse a raw message.

        Args:
            raw_message: Raw RFC822/MIME message bytes
            uid: IMAP UID

        Returns:
            Parsed InboundEmail

        Raises:
            ValueError: If the message cannot be parsed
        """
        try:
            msg = message_from_bytes(raw_message, policy=email_policy)

            body_plain, body_html = self._extract_body(msg)
            from_addresses = EmailAddress.from_header(str(msg.get("From", "")))
            if not from_addresses:
                logger.warning(f"Message UID {uid} has no usable From header")

            return InboundEmail(
                message_id=self._extract_message_id(msg),
                uid=uid,
                subject=self._extract_subject(msg),
                from_address=from_addresses[0] if from_addresses else None,
                date=self._extract_date(msg),
                in_reply_to=self._extract_in_reply_to(msg),
                references=self._extract_references(msg),
                body_plain=body_plain,
                body_html=body_html,
                body_text=self._normalize_body(body_plain, body_html),
                attachments=self._extract_attachments(msg),
            )
        except Exception as e:
            logger.error(
                f"Failed to parse email message: {e}",
                extra={"uid": uid, "error": str(e)},
            )
            raise ValueError(f"Email parsing failed: {e}") from e

    def _extract_message_id(self, msg: StdEmailMessage) -> str:
        message_id = str(msg.get("Message-ID", "")).strip().strip("<>").strip()
        if not message_id:
            fallback_id = f"{int(time.time() * 1000)}@local"
            logger.debug(f"Message missing Message-ID, generated fallback: {fallback_id}")
            return fallback_id
        return message_id

    def _extract_subject(self, msg: StdEmailMessage) -> Optional[str]:
        # The default policy already decodes RFC 2047 encoded words.
        subject = str(msg.get("Subject", "")).strip()
        return subject or None

    def _extract_date(self, msg: StdEmailMessage) -> datetime:
        date_header = msg.get("Date")
        if date_header:
            try:
                parsed = parsedate_to_datetime(str(date_header))
                if parsed.tzinfo is None:
                    parsed = parsed.replace(tzinfo=timezone.utc)
                return parsed
            except (TypeError, ValueError) as e:
                logger.warning(f"Failed to parse Date header '{date_header}': {e}, using current time")
        return datetime.now(timezone.utc)

    def _extract_in_reply_to(self, msg: StdEmailMessage) -> Optional[str]:
        in_reply_to = str(msg.get("In-Reply-To", "")).strip().strip("<>").strip()
        return in_reply_to or None

    def _extract_references(self, msg: StdEmailMessage) -> List[str]:
        references = str(msg.get("References", ""))
        return [ref.strip("<>").strip() for ref in references.split() if ref.strip()]

    def _extract_body(self, msg: StdEmailMessage) -> Tuple[Optional[str], Optional[str]]:
        """Extract the first text/plain and text/html parts, skipping attachments."""
        body_plain = None
        body_html = None

        for part in msg.walk() if msg.is_multipart() else [msg]:
            if part.is_multipart() or part.get_content_disposition() == "attachment":
                continue
            content_type = part.get_content_type()
            try:
                if content_type == "text/plain" and body_plain is None:
                    body_plain = part.get_content()
                elif content_type == "text/html" and body_html is None:
                    body_html = part.get_content()
            except Exception as e:
                logger.warning(f"Failed to extract {content_type} body: {e}")

        return body_plain, body_html

    def _normalize_body(self, plain: Optional[str], html: Optional[str]) -> str:
        if plain is not None:
            return plain.strip()

        if html is not None:
            try:
                return self.html_converter.handle(html).strip()
            except Exception as e:
                logger.warning(f"HTML to text conversion failed: {e}")
                return unescape(re.sub("<[^<]+?>", "", html)).strip()

        return ""

    def _extract_attachments(self, msg: StdEmailMessage) -> List[InboundAttachment]:
        attachments: List[InboundAttachment] = []
        if not msg.is_multipart():
            return attachments

        for part in msg.walk():
            disposition = part.get_content_disposition()
            filename = part.get_filename()
            if disposition not in ("attachment", "inline") or not filename:
                continue
            try:
                payload = part.get_payload(decode=True) or b""
                attachments.append(
                    InboundAttachment(
                        filename=filename,
                        content_type=part.get_content_type(),
                        size_bytes=len(payload),
                        content=payload,
                        is_inline=disposition == "inline",
                    )
                )
            except Exception as e:
                logger.warning(f"Failed to extract attachment '{filename}': {e}")

        return attachments


__all__ = [
    "EmailAddress",
    "EmailParser",
    "InboundAttachment",
    "InboundEmail",
]
