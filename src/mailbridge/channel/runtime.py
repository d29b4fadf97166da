"""Host runtime contract.

The channel does not decide what to answer: every accepted message is handed
to the host's reply pipeline, which calls back ``deliver`` once per reply
payload. The host registers itself once with :func:`set_runtime` before any
account starts.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Protocol, runtime_checkable

from mailbridge.errors import RuntimeNotInitializedError


@dataclass(frozen=True)
class InboundRecord:
    """Normalized inbound message handed to the host."""

    account_id: str
    sender: str
    sender_name: str
    thread_id: str
    body: str
    raw_body: str
    message_id: str
    subject: Optional[str] = None
    source_surface: str = "email"
    chat_type: str = "direct"
    attachments: tuple = ()

    def to_context(self) -> Dict[str, Any]:
        return {
            "Surface": self.source_surface,
            "Provider": self.source_surface,
            "AccountId": self.account_id,
            "From": self.sender,
            "FromName": self.sender_name,
            "To": self.thread_id,
            "ChatType": self.chat_type,
            "Body": self.body,
            "RawBody": self.raw_body,
            "MessageSid": self.message_id,
            "Subject": self.subject,
            "Attachments": [str(path) for path in self.attachments],
        }


@dataclass(frozen=True)
class ReplyPayload:
    """One reply produced by the host for an inbound message."""

    text: Optional[str] = None
    media: Optional[str] = None
    file_path: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not (self.text or self.media or self.file_path)


DeliverFn = Callable[[ReplyPayload], Awaitable[None]]


@runtime_checkable
class ChannelRuntime(Protocol):
    """What the host provides to the channel."""

    def load_config(self) -> Mapping[str, Any]:
        ...

    def finalize_inbound_context(self, record: InboundRecord) -> Any:
        ...

    async def dispatch_reply_with_buffered_dispatcher(
        self,
        *,
        context: Any,
        config: Mapping[str, Any],
        deliver: DeliverFn,
    ) -> None:
        ...


@runtime_checkable
class StatusSink(Protocol):
    """Receives per-account runtime status snapshots."""

    def set_status(self, status: Mapping[str, Any]) -> None:
        ...

    def get_status(self) -> Dict[str, Any]:
        ...


class InMemoryStatusSink:
    """Status sink keeping the latest snapshot (and history) in memory."""

    def __init__(self) -> None:
        self._status: Dict[str, Any] = {}
        self.history: list = []

    def set_status(self, status: Mapping[str, Any]) -> None:
        self._status = dict(status)
        self.history.append(dict(status))

    def get_status(self) -> Dict[str, Any]:
        return dict(self._status)


_runtime: Optional[ChannelRuntime] = None


def set_runtime(runtime: Optional[ChannelRuntime]) -> None:
    global _runtime
    _runtime = runtime


def get_runtime() -> ChannelRuntime:
    if _runtime is None:
        raise RuntimeNotInitializedError()
    return _runtime


__all__ = [
    "ChannelRuntime",
    "DeliverFn",
    "InMemoryStatusSink",
    "InboundRecord",
    "ReplyPayload",
    "StatusSink",
    "get_runtime",
    "set_runtime",
]
