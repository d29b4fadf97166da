"""Outbound message construction and delivery."""

from __future__ import annotations

import logging
import mimetypes
from email.message import EmailMessage
from email.utils import formatdate, make_msgid
from pathlib import Path
from typing import List, Optional
from urllib.parse import urlparse

from mailbridge.configuration import ResolvedEmailAccount
from mailbridge.errors import DeliveryError, MailBridgeError

from .addressing import extract_email, format_email_address
from .email_normalizer import text_to_html
from .smtp_pool import SmtpTransportPool


logger = logging.getLogger(__name__)

_REMOTE_SCHEMES = {"http", "https"}


def _local_path(reference: str) -> Optional[Path]:
    """Return a filesystem path for ``reference``, or None for remote URLs."""
    parsed = urlparse(reference)
    if parsed.scheme in _REMOTE_SCHEMES:
        return None
    if parsed.scheme == "file":
        return Path(parsed.path)
    return Path(reference).expanduser()


def _wrap_id(message_id: str) -> str:
    return f"<{message_id.strip().strip('<>')}>"


def build_reply_message(
    *,
    account: ResolvedEmailAccount,
    to: str,
    subject: str,
    text: str,
    in_reply_to: Optional[str] = None,
    media: Optional[str] = None,
    file_path: Optional[str] = None,
) -> EmailMessage:
    """Build a plain-text + HTML message from ``account`` to ``to``.

    Local ``media``/``file_path`` references are attached; remote media URLs
    are appended to the text instead. ``in_reply_to`` (bare or bracketed)
    sets both ``In-Reply-To`` and ``References``.

    Raises:
        DeliveryError: An attachment path does not exist
    """
    body = text
    attachments: List[Path] = []
    for reference in (media, file_path):
        if not reference:
            continue
        path = _local_path(reference)
        if path is None:
            body = f"{body}\n\n{reference}" if body else reference
        else:
            attachments.append(path)

    domain = account.from_address.rpartition("@")[2] or None

    message = EmailMessage()
    message["From"] = format_email_address(account.from_address, account.from_name)
    message["To"] = extract_email(to)
    message["Subject"] = subject
    message["Date"] = formatdate(usegmt=True)
    message["Message-ID"] = make_msgid(domain=domain)
    if in_reply_to:
        message["In-Reply-To"] = _wrap_id(in_reply_to)
        message["References"] = _wrap_id(in_reply_to)

    message.set_content(body)
    message.add_alternative(text_to_html(body), subtype="html")

    for path in attachments:
        if not path.is_file():
            raise DeliveryError(
                f"Attachment not found: {path}",
                details={"path": str(path)},
            )
        content_type, _ = mimetypes.guess_type(path.name)
        maintype, _, subtype = (content_type or "application/octet-stream").partition("/")
        message.add_attachment(
            path.read_bytes(),
            maintype=maintype,
            subtype=subtype,
            filename=path.name,
        )

    return message


class OutboundMailer:
    """Send messages for an account through the shared transport pool."""

    def __init__(self, pool: SmtpTransportPool) -> None:
        self.pool = pool

    async def send(self, account: ResolvedEmailAccount, message: EmailMessage) -> None:
        try:
            async with self.pool.transport(account.smtp) as client:
                await client.send_message(message)
        except MailBridgeError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise DeliveryError(
                f"Failed to send email to {message['To']}: {exc}",
                details={
                    "account_id": account.account_id,
                    "host": account.smtp.host,
                    "to": str(message["To"]),
                },
            ) from exc

        logger.info(f"[{account.account_id}] Email sent to {message['To']}")

    async def send_reply(
        self,
        account: ResolvedEmailAccount,
        *,
        to: str,
        subject: str,
        text: str,
        in_reply_to: Optional[str] = None,
        media: Optional[str] = None,
        file_path: Optional[str] = None,
    ) -> EmailMessage:
        message = build_reply_message(
            account=account,
            to=to,
            subject=subject,
            text=text,
            in_reply_to=in_reply_to,
            media=media,
            file_path=file_path,
        )
        await self.send(account, message)
        return message


__all__ = ["OutboundMailer", "build_reply_message"]
