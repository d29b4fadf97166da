"""One inbox pass: fetch unseen mail, filter, thread and dispatch it.

A pass runs under the connection's mailbox lock. Each message is isolated:
a message that cannot be fetched or parsed is logged and left unseen, a failed
dispatch is logged and the message is still flagged ``\\Seen`` so it is not
answered twice. Only mailbox-level connection failures abort the batch; they
propagate so the poller can reconnect.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from mailbridge.configuration import ResolvedEmailAccount
from mailbridge.errors import MessageProcessingError

from .addressing import get_thread_id
from .allowlist import matches_allowlist
from .attachments import AttachmentStore, describe_saved
from .connection_manager import ImapConnection, is_authentication_error, is_connection_error
from .conversation_store import ConversationStore
from .email_normalizer import reply_subject, strip_quoted_replies
from .email_parser import EmailParser, InboundEmail
from .outbound import OutboundMailer
from .runtime import ChannelRuntime, InboundRecord, ReplyPayload


logger = logging.getLogger(__name__)


@dataclass
class BatchResult:
    """Outcome counts for one inbox pass."""

    dispatched: int = 0
    rejected: int = 0
    skipped: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.dispatched + self.rejected + self.skipped + self.failed


class InboxProcessor:
    """Processes the unseen messages of one account."""

    def __init__(
        self,
        *,
        account: ResolvedEmailAccount,
        runtime: ChannelRuntime,
        conversations: ConversationStore,
        mailer: OutboundMailer,
        parser: Optional[EmailParser] = None,
        attachment_store: Optional[AttachmentStore] = None,
        on_outbound: Optional[Callable[[], None]] = None,
    ) -> None:
        self.account = account
        self.runtime = runtime
        self.conversations = conversations
        self.mailer = mailer
        self.parser = parser if parser is not None else EmailParser()
        if attachment_store is None and account.attachments_dir is not None:
            attachment_store = AttachmentStore(
                account.attachments_dir / account.account_id,
                max_size=account.max_attachment_size,
            )
        self.attachment_store = attachment_store
        self.on_outbound = on_outbound

    @property
    def _prefix(self) -> str:
        return f"[{self.account.account_id}]"

    async def process(
        self,
        connection: ImapConnection,
        *,
        should_stop: Callable[[], bool] = lambda: False,
    ) -> BatchResult:
        """Run one pass over INBOX.

        Raises:
            Exception: Connection-class or authentication failures, unchanged
        """
        result = BatchResult()

        async with connection.mailbox_lock():
            uids = await connection.search_unseen()
            if uids:
                logger.debug(f"{self._prefix} {len(uids)} unseen message(s)")

            for uid in uids:
                if should_stop():
                    logger.debug(f"{self._prefix} Stop requested, ending batch early")
                    break
                try:
                    outcome = await self._process_uid(connection, uid)
                except MessageProcessingError as exc:
                    logger.error(f"{self._prefix} {exc.message}", extra={"uid": uid, **exc.details})
                    result.failed += 1
                    continue
                except Exception as exc:  # noqa: BLE001
                    if is_connection_error(exc) or is_authentication_error(exc):
                        raise
                    logger.error(
                        f"{self._prefix} Failed to process message UID {uid}: {exc}",
                        extra={"uid": uid, "error": str(exc)},
                        exc_info=True,
                    )
                    result.failed += 1
                    continue

                setattr(result, outcome, getattr(result, outcome) + 1)

        return result

    async def _process_uid(self, connection: ImapConnection, uid: int) -> str:
        raw = await connection.fetch_raw(uid)
        if not raw:
            logger.warning(f"{self._prefix} Message UID {uid} has no source, leaving unseen")
            return "skipped"

        try:
            email = self.parser.parse_message(raw_message=raw, uid=uid)
        except ValueError as exc:
            raise MessageProcessingError(
                f"Failed to parse message UID {uid}: {exc}",
                details={"uid": uid},
            ) from exc

        sender = email.sender
        if not sender:
            logger.warning(f"{self._prefix} Message UID {uid} has no sender address, ignoring")
            await connection.mark_seen(uid)
            return "rejected"

        if not matches_allowlist(sender, self.account.allow_from):
            logger.debug(f"{self._prefix} Email from {sender} not in allowlist")
            await connection.mark_seen(uid)
            return "rejected"

        logger.info(f"{self._prefix} Email from {sender}: {email.subject}")

        try:
            await self._dispatch(email)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                f"{self._prefix} Dispatch failed for message {email.message_id}: {exc}",
                extra={"uid": uid, "message_id": email.message_id, "error": str(exc)},
                exc_info=True,
            )

        await connection.mark_seen(uid)
        return "dispatched"

    def _build_record(self, email: InboundEmail, thread_id: str) -> InboundRecord:
        body = strip_quoted_replies(email.body_text)

        saved = []
        if self.attachment_store is not None and email.has_attachments:
            saved = self.attachment_store.save_all(email.attachments)
            body += describe_saved(saved)

        return InboundRecord(
            account_id=self.account.account_id,
            sender=email.sender,
            sender_name=email.sender_name,
            thread_id=thread_id,
            body=body,
            raw_body=email.body_text,
            message_id=email.message_id,
            subject=email.subject,
            attachments=tuple(saved),
        )

    async def _dispatch(self, email: InboundEmail) -> None:
        thread_id = get_thread_id(email.sender, self.account.from_address)
        record = self._build_record(email, thread_id)
        conversation = self.conversations.set(
            thread_id,
            last_message_id=email.message_id,
            subject=email.subject,
        )
        subject = reply_subject(conversation.subject)

        async def deliver(payload: ReplyPayload) -> None:
            if payload.is_empty:
                return
            await self.mailer.send_reply(
                self.account,
                to=email.sender,
                subject=subject,
                text=payload.text or "",
                in_reply_to=email.message_id,
                media=payload.media,
                file_path=payload.file_path,
            )
            logger.info(f"{self._prefix} Email reply sent to {email.sender}")
            if self.on_outbound is not None:
                self.on_outbound()

        context = self.runtime.finalize_inbound_context(record)
        config = self.runtime.load_config()
        await self.runtime.dispatch_reply_with_buffered_dispatcher(
            context=context,
            config=config,
            deliver=deliver,
        )


__all__ = ["BatchResult", "InboxProcessor"]
