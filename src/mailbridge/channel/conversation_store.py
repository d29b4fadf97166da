"""In-memory conversation state for reply threading.

Maps a thread id to the last inbound Message-ID and subject so that replies
(both dispatched replies and proactive ``send_text`` calls) land in the same
thread in the remote mail client. State is process-local and bounded: at most
``max_conversations`` entries, each expiring ``max_age`` after its last update.
"""

from __future__ import annotations

import asyncio
import logging
import math
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, Optional


logger = logging.getLogger(__name__)

MAX_CONVERSATIONS = 1000
MAX_AGE_SECONDS = 7 * 24 * 60 * 60
CLEANUP_INTERVAL_SECONDS = 60 * 60
EVICTION_FRACTION = 0.1


@dataclass(frozen=True)
class Conversation:
    """Threading state for one two-party conversation.

    Timestamps are epoch seconds; ``updated_at >= created_at``.
    """

    thread_id: str
    last_message_id: str
    subject: Optional[str]
    created_at: float
    updated_at: float


class ConversationStore:
    """Bounded, expiring map of thread id to :class:`Conversation`.

    Safe to share between accounts; all mutations hold an internal lock.
    The hourly sweep is started on first write when an event loop is running.
    """

    def __init__(
        self,
        *,
        max_conversations: int = MAX_CONVERSATIONS,
        max_age: float = MAX_AGE_SECONDS,
        cleanup_interval: float = CLEANUP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store: Dict[str, Conversation] = {}
        self._lock = threading.RLock()
        self._max_conversations = max_conversations
        self._max_age = max_age
        self._cleanup_interval = cleanup_interval
        self._clock = clock
        self._cleanup_task: Optional[asyncio.Task[None]] = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)

    def __contains__(self, thread_id: object) -> bool:
        with self._lock:
            return thread_id in self._store

    def get(self, thread_id: str) -> Optional[Conversation]:
        with self._lock:
            return self._store.get(thread_id)

    def set(
        self,
        thread_id: str,
        *,
        last_message_id: str,
        subject: Optional[str],
    ) -> Conversation:
        """Insert or update a conversation.

        ``created_at`` of an existing entry is preserved; ``updated_at`` is
        always refreshed. Exceeding capacity evicts the oldest entries.
        """
        now = self._clock()
        with self._lock:
            existing = self._store.get(thread_id)
            if existing is None:
                conversation = Conversation(
                    thread_id=thread_id,
                    last_message_id=last_message_id,
                    subject=subject,
                    created_at=now,
                    updated_at=now,
                )
            else:
                conversation = replace(
                    existing,
                    last_message_id=last_message_id,
                    subject=subject,
                    updated_at=max(now, existing.created_at),
                )
            self._store[thread_id] = conversation

            if len(self._store) > self._max_conversations:
                self._evict_oldest()

        self._ensure_cleanup_task()
        return conversation

    def delete(self, thread_id: str) -> bool:
        with self._lock:
            return self._store.pop(thread_id, None) is not None

    def cleanup(self) -> int:
        """Drop conversations not updated within ``max_age``. Returns the count removed."""
        cutoff = self._clock() - self._max_age
        with self._lock:
            expired = [key for key, conv in self._store.items() if conv.updated_at < cutoff]
            for key in expired:
                del self._store[key]
        if expired:
            logger.debug(f"Expired {len(expired)} conversation(s)")
        return len(expired)

    def _evict_oldest(self) -> None:
        to_remove = math.ceil(len(self._store) * EVICTION_FRACTION)
        oldest = sorted(self._store.values(), key=lambda conv: conv.updated_at)[:to_remove]
        for conv in oldest:
            del self._store[conv.thread_id]
        logger.debug(f"Conversation store over capacity, evicted {len(oldest)} oldest entries")

    def _ensure_cleanup_task(self) -> None:
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._cleanup_task = loop.create_task(self._cleanup_loop())

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self._cleanup_interval)
            try:
                self.cleanup()
            except Exception as exc:  # noqa: BLE001
                logger.error(f"Conversation cleanup failed: {exc}", exc_info=True)

    def destroy(self) -> None:
        """Stop the sweep and clear all state."""
        task, self._cleanup_task = self._cleanup_task, None
        # A task whose loop already closed cannot be cancelled
        if task is not None and not task.done() and not task.get_loop().is_closed():
            task.cancel()
        with self._lock:
            self._store.clear()


__all__ = [
    "CLEANUP_INTERVAL_SECONDS",
    "Conversation",
    "ConversationStore",
    "MAX_AGE_SECONDS",
    "MAX_CONVERSATIONS",
]
