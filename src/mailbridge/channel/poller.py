"""Per-account polling engine.

An :class:`AccountPoller` owns one IMAP connection and drives it through the
connection state machine::

    DISCONNECTED -> CONNECTING -> CONNECTED -> CHECKING_INBOX
        -> CONNECTED | RECONNECTING ... -> STOPPED

``FAILED`` is terminal: credentials were rejected, or the first connection
could not be established. Ticks never overlap; a tick that finds the previous
one still running is skipped.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from mailbridge.configuration import ResolvedEmailAccount
from mailbridge.errors import MailboxAuthenticationError, MailBridgeError

from .connection_manager import (
    ConnectionState,
    ImapConnection,
    RetryStrategy,
    connect_with_retry,
    is_authentication_error,
    is_connection_error,
)
from .inbox_processor import BatchResult, InboxProcessor
from .runtime import InMemoryStatusSink, StatusSink
from .status import AccountStatus, now_ms


logger = logging.getLogger(__name__)

DEFAULT_STOP_TIMEOUT_SECONDS = 30.0


class AccountPoller:
    """Poll one account's INBOX on a fixed interval."""

    def __init__(
        self,
        *,
        account: ResolvedEmailAccount,
        processor: InboxProcessor,
        status_sink: Optional[StatusSink] = None,
        connection: Optional[ImapConnection] = None,
        retry_strategy: Optional[RetryStrategy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        stop_timeout: float = DEFAULT_STOP_TIMEOUT_SECONDS,
    ) -> None:
        self.account = account
        self.processor = processor
        self.status_sink = status_sink if status_sink is not None else InMemoryStatusSink()
        if connection is None:
            connection = ImapConnection(settings=account.imap, account_id=account.account_id)
        self.connection = connection
        self.retry_strategy = retry_strategy if retry_strategy is not None else RetryStrategy()
        self.poll_interval = account.poll_interval_seconds
        self.stop_timeout = stop_timeout
        self._sleep = sleep

        self.state = ConnectionState.DISCONNECTED
        self._status = AccountStatus(
            account_id=account.account_id,
            from_address=account.from_address,
        )
        self._stopped = False
        self._closed = False
        self._busy = False
        self._stop_event = asyncio.Event()
        self._poll_task: Optional[asyncio.Task[None]] = None

        if self.processor.on_outbound is None:
            self.processor.on_outbound = self.record_outbound

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @property
    def stopped(self) -> bool:
        return self._stopped

    @property
    def status(self) -> AccountStatus:
        return self._status

    @property
    def _prefix(self) -> str:
        return f"[{self.account.account_id}]"

    def _transition(self, state: ConnectionState, **changes: object) -> None:
        if state != self.state:
            logger.debug(f"{self._prefix} {self.state.value} -> {state.value}")
        self.state = state
        self._status = self._status.model_copy(update={"state": state, **changes})
        self._publish()

    def _publish(self) -> None:
        try:
            self.status_sink.set_status(self._status.to_dict())
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"{self._prefix} Status sink rejected update: {exc}")

    def record_outbound(self) -> None:
        self._status = self._status.model_copy(update={"last_outbound_at": now_ms()})
        self._publish()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Connect, run one immediate tick, then schedule periodic ticks.

        Raises:
            MailboxAuthenticationError: Credentials rejected (no polling scheduled)
            MailboxConnectionError: Server unreachable after all attempts
        """
        if self._poll_task and not self._poll_task.done():
            raise RuntimeError(f"Poller for account {self.account.account_id} already running")

        logger.info(f"{self._prefix} Starting email provider ({self.account.from_address})")
        self._transition(
            ConnectionState.CONNECTING,
            running=True,
            last_start_at=now_ms(),
            last_error=None,
        )

        try:
            await connect_with_retry(self.connection, self.retry_strategy, sleep=self._sleep)
        except MailBridgeError as exc:
            if not self._stopped:
                await self._fail(exc)
            raise

        if self._stopped:
            # stop() ran while connecting; drop the session it could not close
            await self.connection.close()
            return

        self._transition(ConnectionState.CONNECTED)
        await self.tick()

        if self._stopped:
            return

        self._stop_event.clear()
        loop = asyncio.get_running_loop()
        self._poll_task = loop.create_task(self._poll_loop())
        logger.info(f"{self._prefix} Email polling started (every {self.poll_interval:g}s)")

    async def stop(self) -> None:
        """Stop polling and close the connection. Safe to call repeatedly."""
        if self._closed:
            return
        self._closed = True
        self._stopped = True
        self._stop_event.set()

        task = self._poll_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=self.stop_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"{self._prefix} In-flight check did not finish in {self.stop_timeout:g}s, cancelling")
                task.cancel()
            except Exception as exc:  # noqa: BLE001
                logger.error(f"{self._prefix} Polling task ended with error: {exc}", exc_info=True)

        await self.connection.close()

        if self.state != ConnectionState.FAILED:
            self._transition(ConnectionState.STOPPED, running=False, last_stop_at=now_ms())
        logger.info(f"{self._prefix} Email provider stopped")

    async def _fail(self, exc: BaseException) -> None:
        """Enter the terminal FAILED state."""
        message = exc.message if isinstance(exc, MailBridgeError) else str(exc)
        self._stopped = True
        self._stop_event.set()
        await self.connection.close()
        self._transition(
            ConnectionState.FAILED,
            running=False,
            last_error=message,
            last_stop_at=now_ms(),
        )
        logger.error(f"{self._prefix} Email provider failed: {message}")

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def _poll_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

            if self._stop_event.is_set():
                break

            try:
                await self.tick()
            except Exception as exc:  # noqa: BLE001
                logger.error(f"{self._prefix} Unexpected polling error: {exc}", exc_info=exc)

    async def tick(self) -> Optional[BatchResult]:
        """Run one inbox pass. Returns None when the pass did not run to completion."""
        if self._stopped or self._busy:
            return None

        self._busy = True
        try:
            if not self.connection.connected and not await self._reconnect():
                return None

            self._transition(ConnectionState.CHECKING_INBOX)
            try:
                result = await self.processor.process(
                    self.connection,
                    should_stop=lambda: self._stopped,
                )
            except Exception as exc:  # noqa: BLE001
                await self._handle_tick_error(exc)
                return None

            if self._stopped:
                return result

            changes = {}
            if result.dispatched:
                changes["last_inbound_at"] = now_ms()
                changes["messages_processed"] = self._status.messages_processed + result.dispatched
            self._transition(ConnectionState.CONNECTED, **changes)
            return result
        finally:
            self._busy = False

    async def _handle_tick_error(self, exc: Exception) -> None:
        if is_authentication_error(exc):
            await self._fail(exc)
            return

        logger.error(f"{self._prefix} Email check error: {exc}", extra={"error": str(exc)})
        if is_connection_error(exc) and not self._stopped:
            await self._reconnect()
        elif not self._stopped:
            self._transition(ConnectionState.CONNECTED, last_error=str(exc))

    async def _reconnect(self) -> bool:
        self._transition(ConnectionState.RECONNECTING)
        logger.info(f"{self._prefix} Attempting IMAP reconnection...")
        await self.connection.close()

        try:
            await connect_with_retry(self.connection, self.retry_strategy, sleep=self._sleep)
        except MailboxAuthenticationError as exc:
            if not self._stopped:
                await self._fail(exc)
            return False
        except MailBridgeError as exc:
            logger.error(f"{self._prefix} IMAP reconnection failed: {exc.message}")
            if not self._stopped:
                self._transition(ConnectionState.DISCONNECTED, last_error=exc.message)
            return False

        if self._stopped:
            await self.connection.close()
            return False
        self._transition(ConnectionState.CONNECTED, last_error=None)
        return True


@dataclass
class AccountHandle:
    """Returned by ``start_account``; stopping it stops the poller."""

    account_id: str
    poller: AccountPoller
    on_stop: Optional[Callable[[str], None]] = None

    @property
    def state(self) -> ConnectionState:
        return self.poller.state

    @property
    def running(self) -> bool:
        return not self.poller.stopped

    async def stop(self) -> None:
        await self.poller.stop()
        if self.on_stop is not None:
            self.on_stop(self.account_id)


__all__ = ["AccountHandle", "AccountPoller", "DEFAULT_STOP_TIMEOUT_SECONDS"]
