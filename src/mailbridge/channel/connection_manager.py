"""IMAP connection lifecycle for the email channel.

One :class:`ImapConnection` per polling account. All imapclient calls are
blocking, so every network operation is pushed to a worker thread with
``asyncio.to_thread``; a slow server on one account never stalls the others.

The module also owns error classification: authentication failures are
terminal for an account, connection-class failures trigger a reconnect.
"""

from __future__ import annotations

import asyncio
import logging
import socket
import ssl
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, List, Optional

import aiosmtplib
import certifi
from imapclient import SEEN, IMAPClient
from imapclient.exceptions import IMAPClientAbortError, LoginError

from mailbridge.configuration import ImapSettings
from mailbridge.errors import MailboxAuthenticationError, MailboxConnectionError


logger = logging.getLogger(__name__)

INBOX = "INBOX"


# ---------------------------------------------------------------------------
# Connection state
# ---------------------------------------------------------------------------


class ConnectionState(str, Enum):
    """Lifecycle states of an account poller."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CHECKING_INBOX = "checking_inbox"
    RECONNECTING = "reconnecting"
    STOPPED = "stopped"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------


_AUTH_CODES = {"AUTHENTICATIONFAILED", "535", "534", "EAUTH"}
_AUTH_FRAGMENTS = (
    "authentication failed",
    "authenticationfailed",
    "invalid credentials",
    "login failed",
    "username and password not accepted",
)

_CONNECTION_CODES = {"ECONNRESET", "ECONNREFUSED", "ETIMEDOUT", "EPIPE", "ESOCKET", "ECONNECTION"}
_CONNECTION_FRAGMENTS = (
    "connect",
    "socket",
    "econnreset",
    "timed out",
    "timeout",
    "reset by peer",
    "broken pipe",
)


def is_authentication_error(exc: BaseException) -> bool:
    """Return True when ``exc`` means the server rejected the credentials."""
    if isinstance(exc, (MailboxAuthenticationError, LoginError, aiosmtplib.SMTPAuthenticationError)):
        return True
    if getattr(exc, "authentication_failed", False) or getattr(exc, "authenticationFailed", False):
        return True

    code = getattr(exc, "code", None)
    if code is not None and str(code).upper() in _AUTH_CODES:
        return True

    message = str(exc).lower()
    return any(fragment in message for fragment in _AUTH_FRAGMENTS)


def is_connection_error(exc: BaseException) -> bool:
    """Return True for failures that a fresh connection may fix.

    Authentication failures are never connection errors even when the
    transport reported them as an OS-level failure.
    """
    if is_authentication_error(exc):
        return False
    if isinstance(
        exc,
        (
            MailboxConnectionError,
            TimeoutError,
            asyncio.TimeoutError,
            socket.timeout,
            ConnectionError,
            OSError,
            IMAPClientAbortError,
            aiosmtplib.SMTPServerDisconnected,
            aiosmtplib.SMTPConnectError,
        ),
    ):
        return True

    code = getattr(exc, "code", None)
    if code is not None and str(code).upper() in _CONNECTION_CODES:
        return True

    message = str(exc).lower()
    return any(fragment in message for fragment in _CONNECTION_FRAGMENTS)


# ---------------------------------------------------------------------------
# Retry strategy
# ---------------------------------------------------------------------------


@dataclass
class RetryStrategy:
    """Linear backoff between connect attempts.

    The delay before attempt ``n + 1`` is ``base_delay * n``.
    """

    max_attempts: int = 3
    base_delay: float = 2.0

    def calculate_delay(self, attempt: int) -> float:
        return self.base_delay * attempt

    def should_retry(self, attempt: int, exc: BaseException) -> bool:
        if attempt >= self.max_attempts:
            return False
        return not is_authentication_error(exc)


# ---------------------------------------------------------------------------
# Connection implementation
# ---------------------------------------------------------------------------


def create_ssl_context() -> ssl.SSLContext:
    context = ssl.create_default_context(cafile=certifi.where())
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    return context


@dataclass
class ImapConnection:
    """A single IMAP session for one account.

    The mailbox lock serializes INBOX sessions: a tick holds it from folder
    selection until the last message of the batch has been flagged.
    """

    settings: ImapSettings
    account_id: str = "default"
    connection_timeout: int = 30

    client: Optional[IMAPClient] = field(default=None, init=False)
    last_activity: Optional[datetime] = field(default=None, init=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)

    @property
    def connected(self) -> bool:
        return self.client is not None

    async def connect(self) -> None:
        """Open the socket and authenticate."""
        await asyncio.to_thread(self._establish_connection)

    def _establish_connection(self) -> None:
        ssl_context = create_ssl_context()
        client = IMAPClient(
            self.settings.host,
            port=self.settings.port,
            ssl=self.settings.secure,
            ssl_context=ssl_context,
            timeout=self.connection_timeout,
            use_uid=True,
        )
        try:
            if not self.settings.secure:
                client.starttls(ssl_context)
            client.login(self.settings.user, self.settings.password.get_secret_value())
        except Exception:
            self._shutdown_quietly(client)
            raise

        self.client = client
        self.last_activity = datetime.now(timezone.utc)
        logger.info(
            f"[{self.account_id}] IMAP connected to {self.settings.host}:{self.settings.port}"
        )

    @staticmethod
    def _shutdown_quietly(client: IMAPClient) -> None:
        try:
            client.shutdown()
        except Exception as exc:  # noqa: BLE001
            logger.debug(f"Error shutting down half-open IMAP client: {exc}")

    def _require_client(self) -> IMAPClient:
        if self.client is None:
            raise MailboxConnectionError(
                "IMAP connection is not open",
                details={"account_id": self.account_id},
            )
        return self.client

    @asynccontextmanager
    async def mailbox_lock(self) -> AsyncIterator[ImapConnection]:
        """Hold the INBOX session for the duration of the block."""
        async with self._lock:
            client = self._require_client()
            await asyncio.to_thread(client.select_folder, INBOX)
            yield self

    async def search_unseen(self) -> List[int]:
        client = self._require_client()
        uids = await asyncio.to_thread(client.search, ["UNSEEN"])
        self.last_activity = datetime.now(timezone.utc)
        return sorted(int(uid) for uid in uids)

    async def fetch_raw(self, uid: int) -> Optional[bytes]:
        """Fetch the full RFC822 source of ``uid`` (None when the server has none)."""
        client = self._require_client()
        response = await asyncio.to_thread(client.fetch, [uid], ["RFC822"])
        data = response.get(uid) or {}
        return data.get(b"RFC822")

    async def mark_seen(self, uid: int) -> None:
        client = self._require_client()
        await asyncio.to_thread(client.add_flags, [uid], [SEEN])

    async def is_alive(self) -> bool:
        if self.client is None:
            return False
        try:
            await asyncio.to_thread(self.client.noop)
        except Exception:  # noqa: BLE001
            return False
        self.last_activity = datetime.now(timezone.utc)
        return True

    async def close(self) -> None:
        """Log out best-effort. Never raises."""
        client, self.client = self.client, None
        if client is None:
            return
        try:
            await asyncio.to_thread(client.logout)
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"[{self.account_id}] Error during IMAP logout: {exc}")


async def connect_with_retry(
    connection: ImapConnection,
    retry_strategy: Optional[RetryStrategy] = None,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> None:
    """Connect ``connection``, retrying transient failures.

    Raises:
        MailboxAuthenticationError: Credentials rejected (after one attempt)
        MailboxConnectionError: All attempts failed
    """
    strategy = retry_strategy if retry_strategy is not None else RetryStrategy()
    attempt = 0
    while True:
        attempt += 1
        try:
            await connection.connect()
            return
        except Exception as exc:  # noqa: BLE001
            details = {
                "account_id": connection.account_id,
                "host": connection.settings.host,
                "attempt": attempt,
            }
            if is_authentication_error(exc):
                logger.error(
                    f"[{connection.account_id}] IMAP authentication failed: {exc}",
                    extra=details,
                )
                raise MailboxAuthenticationError(str(exc), details=details) from exc
            if not strategy.should_retry(attempt, exc):
                logger.error(
                    f"[{connection.account_id}] IMAP connection failed after {attempt} attempt(s): {exc}",
                    extra=details,
                )
                raise MailboxConnectionError(str(exc), details=details) from exc

            delay = strategy.calculate_delay(attempt)
            logger.warning(
                f"[{connection.account_id}] IMAP connection attempt {attempt} failed, "
                f"retrying in {delay:.0f}s: {exc}"
            )
            await sleep(delay)


__all__ = [
    "ConnectionState",
    "INBOX",
    "ImapConnection",
    "RetryStrategy",
    "connect_with_retry",
    "create_ssl_context",
    "is_authentication_error",
    "is_connection_error",
]
