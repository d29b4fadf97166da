"""Address helpers and deterministic thread identity.

Email has no chat id, so a conversation is identified by the unordered pair of
participants: the remote sender and the account's own address. Sorting the two
normalized addresses makes the key identical no matter who wrote last.
"""

from __future__ import annotations

import re

_ANGLE_ADDRESS = re.compile(r"<([^>]+)>")
_DISPLAY_NAME = re.compile(r"^([^<]+)<")
_SURROUNDING_QUOTES = re.compile(r"^[\"']|[\"']$")

THREAD_PREFIX = "email"


def extract_email(addr: str) -> str:
    """Extract the bare, lowercased address from ``Name <addr>`` or ``addr``."""
    match = _ANGLE_ADDRESS.search(addr)
    return (match.group(1) if match else addr).strip().lower()


def extract_name(addr: str) -> str:
    """Extract the display name, falling back to the address local part."""
    match = _DISPLAY_NAME.match(addr)
    if match:
        return _SURROUNDING_QUOTES.sub("", match.group(1).strip())
    return addr.split("@")[0]


def get_thread_id(first: str, second: str) -> str:
    """Return the thread identity for a two-party conversation.

    ``get_thread_id(a, b) == get_thread_id(b, a)`` for any two addresses.
    """
    emails = sorted([extract_email(first), extract_email(second)])
    return f"{THREAD_PREFIX}:{':'.join(emails)}"


def format_email_address(email: str, name: str | None = None) -> str:
    """Format a From/To header value with an optional display name."""
    if name and name.strip():
        escaped = name.replace('"', '\\"')
        return f'"{escaped}" <{email}>'
    return f"<{email}>"


__all__ = [
    "THREAD_PREFIX",
    "extract_email",
    "extract_name",
    "format_email_address",
    "get_thread_id",
]
