"""Saving inbound attachments to disk."""

from __future__ import annotations

import logging
import re
import time
from pathlib import Path
from typing import Callable, List, Sequence

from .email_parser import InboundAttachment


logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def sanitize_filename(filename: str) -> str:
    """Reduce ``filename`` to a safe basename (no separators, no leading dots)."""
    name = Path(filename.replace("\\", "/")).name
    name = _UNSAFE_CHARS.sub("_", name).lstrip(".")
    return name or "attachment"


class AttachmentStore:
    """Write attachments of accepted messages into one directory.

    Files are named ``<epoch-ms>_<sanitized-name>``. Parts larger than
    ``max_size`` bytes are skipped with a warning.
    """

    def __init__(
        self,
        directory: Path,
        *,
        max_size: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.directory = Path(directory).expanduser()
        self.max_size = max_size
        self._clock = clock

    def save_all(self, attachments: Sequence[InboundAttachment]) -> List[Path]:
        saved: List[Path] = []
        for attachment in attachments:
            if attachment.size_bytes > self.max_size:
                logger.warning(
                    f"Skipping attachment '{attachment.filename}' "
                    f"({attachment.size_bytes} bytes > {self.max_size})"
                )
                continue
            try:
                saved.append(self.save(attachment))
            except OSError as exc:
                logger.error(
                    f"Failed to save attachment '{attachment.filename}': {exc}",
                    extra={"directory": str(self.directory)},
                )
        return saved

    def save(self, attachment: InboundAttachment) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        stamp = int(self._clock() * 1000)
        path = self.directory / f"{stamp}_{sanitize_filename(attachment.filename)}"
        path.write_bytes(attachment.content)
        return path


def describe_saved(paths: Sequence[Path]) -> str:
    """Body note listing saved attachment paths ("" when none)."""
    if not paths:
        return ""
    lines = "\n".join(f"- {path}" for path in paths)
    return f"\n\n[Attachments saved]\n{lines}"


__all__ = ["AttachmentStore", "describe_saved", "sanitize_filename"]
