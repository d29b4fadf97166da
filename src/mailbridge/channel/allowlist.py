"""Sender allowlist evaluation.

Patterns are evaluated in order, case-insensitively:

- ``*`` admits every sender
- an exact address admits that sender
- ``@example.com`` admits any sender whose address ends with the domain
- anything else admits senders whose address contains the pattern

An empty list admits everyone. There is no deny list; not matching any
pattern is the only way a sender is rejected.
"""

from __future__ import annotations

from typing import Iterable, List, Sequence


def normalize_allow_entry(entry: object) -> str:
    return str(entry).strip().lower()


def format_allow_from(allow_from: Iterable[object]) -> List[str]:
    """Normalize allowlist entries, dropping blanks."""
    return [entry for entry in (normalize_allow_entry(e) for e in allow_from) if entry]


def matches_allowlist(address: str, patterns: Sequence[str]) -> bool:
    """Return True if ``address`` is admitted by ``patterns``.

    Args:
        address: Sender address (bare, any case)
        patterns: Ordered allowlist entries

    Returns:
        True when the list is empty or any pattern matches
    """
    if not patterns:
        return True

    normalized = address.strip().lower()

    for entry in patterns:
        pattern = normalize_allow_entry(entry)
        if not pattern:
            continue
        if pattern == "*":
            return True
        if pattern == normalized:
            return True
        if pattern.startswith("@") and normalized.endswith(pattern):
            return True
        # NOTE: containment is broad ("doe" admits "johndoechicago@y.com").
        if pattern in normalized:
            return True

    return False


__all__ = ["format_allow_from", "matches_allowlist", "normalize_allow_entry"]
