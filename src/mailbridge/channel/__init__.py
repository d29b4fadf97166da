"""Email channel: IMAP polling, reply threading and pooled SMTP delivery."""

from .addressing import extract_email, extract_name, format_email_address, get_thread_id
from .allowlist import format_allow_from, matches_allowlist, normalize_allow_entry
from .attachments import AttachmentStore
from .connection_manager import (
    ConnectionState,
    ImapConnection,
    RetryStrategy,
    connect_with_retry,
    is_authentication_error,
    is_connection_error,
)
from .conversation_store import Conversation, ConversationStore
from .email_normalizer import reply_subject, strip_quoted_replies, text_to_html
from .email_parser import EmailAddress, EmailParser, InboundAttachment, InboundEmail
from .inbox_processor import BatchResult, InboxProcessor
from .outbound import OutboundMailer, build_reply_message
from .plugin import AccountContext, DmPolicy, EmailChannelPlugin
from .poller import AccountHandle, AccountPoller
from .runtime import (
    ChannelRuntime,
    InMemoryStatusSink,
    InboundRecord,
    ReplyPayload,
    StatusSink,
    get_runtime,
    set_runtime,
)
from .smtp_pool import PooledTransport, SmtpTransportPool
from .status import AccountStatus

__all__ = [
    "AccountContext",
    "AccountHandle",
    "AccountPoller",
    "AccountStatus",
    "AttachmentStore",
    "BatchResult",
    "ChannelRuntime",
    "ConnectionState",
    "Conversation",
    "ConversationStore",
    "DmPolicy",
    "EmailAddress",
    "EmailChannelPlugin",
    "EmailParser",
    "ImapConnection",
    "InMemoryStatusSink",
    "InboundAttachment",
    "InboundEmail",
    "InboundRecord",
    "InboxProcessor",
    "OutboundMailer",
    "PooledTransport",
    "ReplyPayload",
    "RetryStrategy",
    "SmtpTransportPool",
    "StatusSink",
    "build_reply_message",
    "connect_with_retry",
    "extract_email",
    "extract_name",
    "format_allow_from",
    "format_email_address",
    "get_runtime",
    "get_thread_id",
    "is_authentication_error",
    "is_connection_error",
    "matches_allowlist",
    "normalize_allow_entry",
    "reply_subject",
    "set_runtime",
    "strip_quoted_replies",
    "text_to_html",
]
