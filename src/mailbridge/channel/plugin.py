"""Email channel plugin: the surface the host talks to.

The plugin owns the services shared by every account (conversation store and
SMTP transport pool) and one :class:`AccountHandle` per running account.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from mailbridge.configuration import (
    DEFAULT_ACCOUNT_ID,
    ResolvedEmailAccount,
    list_email_account_ids,
    resolve_default_email_account_id,
    resolve_email_account,
)
from mailbridge.errors import MailBridgeError, MissingConfigError

from . import allowlist
from .addressing import extract_email, get_thread_id
from .connection_manager import ImapConnection, RetryStrategy
from .conversation_store import ConversationStore
from .email_normalizer import reply_subject
from .inbox_processor import InboxProcessor
from .outbound import OutboundMailer
from .poller import AccountHandle, AccountPoller
from .runtime import ChannelRuntime, InMemoryStatusSink, StatusSink, get_runtime
from .smtp_pool import SmtpTransportPool
from .status import AccountStatus, now_ms


logger = logging.getLogger(__name__)

PLUGIN_ID = "email"
DEFAULT_SEND_SUBJECT = "Message"
TEXT_CHUNK_LIMIT = 50_000


@dataclass(frozen=True)
class PluginMeta:
    id: str = PLUGIN_ID
    label: str = "Email"
    selection_label: str = "Email (IMAP/SMTP)"
    docs_path: str = "/channels/email"
    docs_label: str = "email"
    blurb: str = "Two-way email communication via IMAP/SMTP"
    order: int = 70
    aliases: Tuple[str, ...] = ("mail", "smtp", "imap")


@dataclass(frozen=True)
class ChannelCapabilities:
    chat_types: Tuple[str, ...] = ("direct",)
    media: bool = True


@dataclass(frozen=True)
class DmPolicy:
    """Direct-message admission policy reported to the host."""

    policy: str
    allow_from: List[str]
    policy_path: str = "channels.email.dmPolicy"
    allow_from_path: str = "channels.email.allowFrom"
    approve_hint: str = "Add the sender's email address to channels.email.allowFrom"

    @staticmethod
    def normalize_entry(raw: str) -> str:
        return allowlist.normalize_allow_entry(raw)


@dataclass
class AccountContext:
    """Everything ``start_account`` needs for one account."""

    account: ResolvedEmailAccount
    status_sink: StatusSink = field(default_factory=InMemoryStatusSink)
    connection: Optional[ImapConnection] = None


class EmailChannelPlugin:
    """IMAP/SMTP direct-chat channel."""

    id = PLUGIN_ID
    meta = PluginMeta()
    capabilities = ChannelCapabilities()
    reload_config_prefixes = ("channels.email", "plugins.entries.email")
    delivery_mode = "direct"
    text_chunk_limit = TEXT_CHUNK_LIMIT
    target_hint = "<email address>"

    def __init__(
        self,
        *,
        runtime: Optional[ChannelRuntime] = None,
        conversations: Optional[ConversationStore] = None,
        pool: Optional[SmtpTransportPool] = None,
        retry_strategy: Optional[RetryStrategy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._runtime = runtime
        self.conversations = conversations if conversations is not None else ConversationStore()
        self.pool = pool if pool is not None else SmtpTransportPool()
        self.mailer = OutboundMailer(self.pool)
        self.retry_strategy = retry_strategy if retry_strategy is not None else RetryStrategy()
        self._sleep = sleep
        self._handles: Dict[str, AccountHandle] = {}

    @property
    def runtime(self) -> ChannelRuntime:
        return self._runtime if self._runtime is not None else get_runtime()

    @property
    def handles(self) -> Dict[str, AccountHandle]:
        return dict(self._handles)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def list_account_ids(self, cfg: Optional[Mapping[str, Any]]) -> List[str]:
        return list_email_account_ids(cfg)

    def resolve_account(
        self,
        cfg: Optional[Mapping[str, Any]],
        account_id: Optional[str] = None,
    ) -> ResolvedEmailAccount:
        return resolve_email_account(cfg, account_id)

    def default_account_id(self, cfg: Optional[Mapping[str, Any]]) -> str:
        return resolve_default_email_account_id(cfg)

    @staticmethod
    def is_configured(account: ResolvedEmailAccount) -> bool:
        return account.configured

    @staticmethod
    def describe_account(account: ResolvedEmailAccount) -> Dict[str, Any]:
        return {
            "accountId": account.account_id,
            "name": account.name,
            "enabled": account.enabled,
            "configured": account.configured,
            "fromAddress": account.from_address,
        }

    def resolve_allow_from(
        self,
        cfg: Optional[Mapping[str, Any]],
        account_id: Optional[str] = None,
    ) -> List[str]:
        return resolve_email_account(cfg, account_id).allow_from

    @staticmethod
    def format_allow_from(allow_from: Iterable[object]) -> List[str]:
        return allowlist.format_allow_from(allow_from)

    @staticmethod
    def normalize_allow_entry(entry: str) -> str:
        return allowlist.normalize_allow_entry(entry)

    @staticmethod
    def resolve_dm_policy(account: ResolvedEmailAccount) -> DmPolicy:
        return DmPolicy(
            policy=account.config.dm_policy or "allowlist",
            allow_from=list(account.allow_from),
        )

    @staticmethod
    def normalize_target(target: str) -> str:
        return extract_email(target)

    @staticmethod
    def looks_like_id(value: str) -> bool:
        return "@" in value

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @staticmethod
    def default_runtime_status() -> Dict[str, Any]:
        return {
            "accountId": DEFAULT_ACCOUNT_ID,
            "running": False,
            "lastStartAt": None,
            "lastStopAt": None,
            "lastError": None,
        }

    @staticmethod
    def build_account_snapshot(
        account: ResolvedEmailAccount,
        runtime_status: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        status = runtime_status or {}
        return {
            "accountId": account.account_id,
            "name": account.name,
            "enabled": account.enabled,
            "configured": account.configured,
            "fromAddress": account.from_address,
            "running": status.get("running", False),
            "lastStartAt": status.get("lastStartAt"),
            "lastStopAt": status.get("lastStopAt"),
            "lastError": status.get("lastError"),
            "lastInboundAt": status.get("lastInboundAt"),
            "lastOutboundAt": status.get("lastOutboundAt"),
        }

    # ------------------------------------------------------------------
    # Gateway
    # ------------------------------------------------------------------

    async def start_account(self, ctx: AccountContext) -> AccountHandle:
        """Start polling one account.

        Raises:
            MissingConfigError: The account lacks IMAP/SMTP settings
            MailboxAuthenticationError: Credentials rejected
            MailboxConnectionError: Server unreachable
        """
        account = ctx.account
        existing = self._handles.get(account.account_id)
        if existing is not None and existing.running:
            logger.warning(f"[{account.account_id}] Account already polling")
            return existing

        if not account.configured:
            error = MissingConfigError(details={"account_id": account.account_id})
            ctx.status_sink.set_status(
                AccountStatus(
                    account_id=account.account_id,
                    from_address=account.from_address,
                    last_error=error.message,
                    last_stop_at=now_ms(),
                ).to_dict()
            )
            raise error

        processor = InboxProcessor(
            account=account,
            runtime=self.runtime,
            conversations=self.conversations,
            mailer=self.mailer,
        )
        poller = AccountPoller(
            account=account,
            processor=processor,
            status_sink=ctx.status_sink,
            connection=ctx.connection,
            retry_strategy=self.retry_strategy,
            sleep=self._sleep,
        )
        await poller.start()

        handle = AccountHandle(account.account_id, poller, on_stop=self._forget)
        self._handles[account.account_id] = handle
        return handle

    def _forget(self, account_id: str) -> None:
        self._handles.pop(account_id, None)

    async def start_all_accounts(
        self,
        cfg: Optional[Mapping[str, Any]] = None,
        *,
        status_sink_factory: Callable[[str], StatusSink] = lambda _aid: InMemoryStatusSink(),
    ) -> Dict[str, AccountHandle]:
        """Start every enabled, configured account. Failures are logged per account."""
        config = cfg if cfg is not None else self.runtime.load_config()
        account_ids = self.list_account_ids(config)
        if not account_ids:
            logger.info("No email accounts configured")

        for account_id in account_ids:
            account = self.resolve_account(config, account_id)
            if not account.enabled:
                logger.info(f"[{account_id}] Account disabled, skipping")
                continue
            if not account.configured:
                logger.info(f"[{account_id}] Account not configured, skipping")
                continue
            try:
                await self.start_account(
                    AccountContext(account=account, status_sink=status_sink_factory(account_id))
                )
            except MailBridgeError as exc:
                logger.error(
                    f"[{account_id}] Failed to start polling: {exc.message}",
                    extra={"account_id": account_id, "code": exc.code},
                )
        return self.handles

    async def stop_all(self) -> None:
        for handle in list(self._handles.values()):
            await handle.stop()
        await self.pool.close_all()

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send_text(
        self,
        *,
        to: str,
        text: str,
        account_id: Optional[str] = None,
        media: Optional[str] = None,
        file_path: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Send a message outside of an inbound dispatch.

        Threads onto the last known conversation with ``to`` when there is one.

        Raises:
            MissingConfigError: The account is not configured
            DeliveryError: SMTP delivery failed
        """
        aid = account_id or DEFAULT_ACCOUNT_ID
        account = resolve_email_account(self.runtime.load_config(), aid)
        if not account.configured:
            raise MissingConfigError("Email not configured", details={"account_id": aid})

        to_email = extract_email(to)
        conversation = self.conversations.get(get_thread_id(to_email, account.from_address))
        if conversation is not None:
            subject = reply_subject(conversation.subject, default=DEFAULT_SEND_SUBJECT)
            in_reply_to: Optional[str] = conversation.last_message_id
        else:
            subject = DEFAULT_SEND_SUBJECT
            in_reply_to = None

        message = await self.mailer.send_reply(
            account,
            to=to_email,
            subject=subject,
            text=text,
            in_reply_to=in_reply_to,
            media=media,
            file_path=file_path,
        )

        handle = self._handles.get(aid)
        if handle is not None:
            handle.poller.record_outbound()

        return {"channel": PLUGIN_ID, "to": to_email, "messageId": str(message["Message-ID"])}


__all__ = [
    "AccountContext",
    "ChannelCapabilities",
    "DmPolicy",
    "EmailChannelPlugin",
    "PLUGIN_ID",
    "PluginMeta",
]
