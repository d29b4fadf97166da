"""Body normalization for the email channel.

Inbound bodies are reduced to the newly written text before they reach the
dispatch layer: mail clients quote the whole previous conversation under every
reply, and handing that to the conversation pipeline would repeat history the
thread already has. Outbound replies are rendered as plain text plus a light
HTML alternative.
"""

from __future__ import annotations

import html
import re
from typing import List, Optional


QUOTE_MARKER = re.compile(r"^>")

REPLY_MARKERS = [
    re.compile(r"^On .+ wrote:$", re.IGNORECASE),
    re.compile(r"寫道[：:]\s*$"),
    re.compile(r"写道[：:]\s*$"),
    re.compile(r"^Le .+ a écrit\s?:$", re.IGNORECASE),
    re.compile(r"^Am .+ schrieb .+:$", re.IGNORECASE),
    re.compile(r"^El .+ escribió:$", re.IGNORECASE),
    QUOTE_MARKER,
    re.compile(r"^-{5,}"),
    re.compile(r"^_{5,}"),
    re.compile(r"^-- ?$"),
    re.compile(r"^From:.*<.*@.*>"),
    re.compile(r"^Sent from my"),
]

_URL = re.compile(r"(https?://[^\s<]+)")
_PARAGRAPH_BREAK = re.compile(r"\n\n+")
_HTML_WRAPPER = (
    '<div style="font-family: -apple-system, BlinkMacSystemFont, \'Segoe UI\', '
    'Roboto, sans-serif; font-size: 14px; line-height: 1.5;">{}</div>'
)

REPLY_PREFIX = "Re:"
DEFAULT_REPLY_SUBJECT = "Reply"


def _is_reply_marker(line: str) -> bool:
    return any(pattern.search(line) for pattern in REPLY_MARKERS)


def strip_quoted_replies(text: str) -> str:
    """Strip quoted reply content from an email body.

    Lines starting with ``>`` are always dropped. Scanning stops at the first
    reply marker, but only once some non-quoted content has been seen, so a
    message that opens with a marker-like line keeps its real content.

    Args:
        text: Plain-text body

    Returns:
        The new content, or the original minus ``>`` lines if stripping
        would leave nothing
    """
    lines = text.splitlines()
    result: List[str] = []
    found_content = False

    for line in lines:
        if line.strip() and not QUOTE_MARKER.match(line):
            found_content = True

        if found_content and _is_reply_marker(line):
            break

        if QUOTE_MARKER.match(line):
            continue

        result.append(line)

    cleaned = "\n".join(result).strip()
    if not cleaned:
        return "\n".join(line for line in lines if not QUOTE_MARKER.match(line)).strip()
    return cleaned


def text_to_html(text: str) -> str:
    """Render plain text as a minimal HTML email body.

    Escapes entities, links bare URLs, and turns blank-line separated blocks
    into paragraphs.
    """
    escaped = html.escape(text, quote=False).replace('"', "&quot;")
    with_links = _URL.sub(r'<a href="\1">\1</a>', escaped)

    paragraphs = [p.strip() for p in _PARAGRAPH_BREAK.split(with_links) if p.strip()]
    if len(paragraphs) <= 1:
        return _HTML_WRAPPER.format(with_links.replace("\n", "<br>"))

    body = "\n".join(
        f'<p style="margin: 0 0 1em 0;">{p.replace(chr(10), "<br>")}</p>' for p in paragraphs
    )
    return _HTML_WRAPPER.format(body)


def reply_subject(subject: Optional[str], default: str = DEFAULT_REPLY_SUBJECT) -> str:
    """Subject for a reply: ``Re: <subject>`` unless already prefixed."""
    if not subject:
        return default
    if subject[: len(REPLY_PREFIX)].lower() == REPLY_PREFIX.lower():
        return subject
    return f"{REPLY_PREFIX} {subject}"


__all__ = [
    "DEFAULT_REPLY_SUBJECT",
    "REPLY_MARKERS",
    "reply_subject",
    "strip_quoted_replies",
    "text_to_html",
]
