"""Pooled SMTP transports keyed by ``(host, port, user)``.

Each key holds at most one live transport. A transport is handed to exactly
one caller at a time; later callers for the same key wait on a key-scoped
condition until it is released. Idle transports are liveness-checked with
``NOOP`` before reuse and reaped after ``idle_timeout`` seconds unused.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Dict, Optional, Tuple

import aiosmtplib

from mailbridge.configuration import SmtpSettings

from .connection_manager import create_ssl_context


logger = logging.getLogger(__name__)

PoolKey = Tuple[str, int, str]

IDLE_TIMEOUT_SECONDS = 5 * 60
REAP_INTERVAL_SECONDS = 60
SMTP_TIMEOUT_SECONDS = 30


@dataclass
class PooledTransport:
    key: PoolKey
    client: aiosmtplib.SMTP
    last_used: float
    in_use: bool = False


def _default_client_factory(settings: SmtpSettings) -> aiosmtplib.SMTP:
    return aiosmtplib.SMTP(
        hostname=settings.host,
        port=settings.port,
        use_tls=settings.secure,
        timeout=SMTP_TIMEOUT_SECONDS,
        tls_context=create_ssl_context(),
    )


class SmtpTransportPool:
    """Reusable SMTP connections shared by every account."""

    def __init__(
        self,
        *,
        idle_timeout: float = IDLE_TIMEOUT_SECONDS,
        reap_interval: float = REAP_INTERVAL_SECONDS,
        client_factory: Callable[[SmtpSettings], aiosmtplib.SMTP] = _default_client_factory,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._pools: Dict[PoolKey, PooledTransport] = {}
        self._conditions: Dict[PoolKey, asyncio.Condition] = {}
        self._idle_timeout = idle_timeout
        self._reap_interval = reap_interval
        self._client_factory = client_factory
        self._clock = clock
        self._reaper_task: Optional[asyncio.Task[None]] = None

    def __len__(self) -> int:
        return len(self._pools)

    def get(self, key: PoolKey) -> Optional[PooledTransport]:
        return self._pools.get(key)

    def _condition_for(self, key: PoolKey) -> asyncio.Condition:
        condition = self._conditions.get(key)
        if condition is None:
            condition = self._conditions[key] = asyncio.Condition()
        return condition

    def _is_busy(self, key: PoolKey) -> bool:
        pooled = self._pools.get(key)
        return pooled is not None and pooled.in_use

    async def acquire(self, settings: SmtpSettings) -> aiosmtplib.SMTP:
        """Return an exclusive, connected transport for ``settings``.

        Callers must :meth:`release` the key afterwards; prefer
        :meth:`transport`, which does it automatically.
        """
        key = settings.pool_key
        condition = self._condition_for(key)

        async with condition:
            await condition.wait_for(lambda: not self._is_busy(key))

            pooled = self._pools.get(key)
            if pooled is not None:
                if await self._is_alive(pooled.client):
                    pooled.in_use = True
                    pooled.last_used = self._clock()
                    self._ensure_reaper()
                    return pooled.client
                logger.info(f"Pooled SMTP transport for {key[0]}:{key[1]} is dead, replacing")
                del self._pools[key]
                await self._close_client(pooled.client)

            client = await self._open(settings)
            self._pools[key] = PooledTransport(
                key=key,
                client=client,
                last_used=self._clock(),
                in_use=True,
            )

        self._ensure_reaper()
        return client

    async def release(self, key: PoolKey) -> None:
        """Mark the transport for ``key`` idle and wake one waiting caller."""
        condition = self._condition_for(key)
        async with condition:
            pooled = self._pools.get(key)
            if pooled is not None:
                pooled.in_use = False
                pooled.last_used = self._clock()
            condition.notify_all()

    @asynccontextmanager
    async def transport(self, settings: SmtpSettings) -> AsyncIterator[aiosmtplib.SMTP]:
        client = await self.acquire(settings)
        try:
            yield client
        finally:
            await self.release(settings.pool_key)

    async def _open(self, settings: SmtpSettings) -> aiosmtplib.SMTP:
        client = self._client_factory(settings)
        await client.connect()
        try:
            if settings.user:
                await client.login(settings.user, settings.password.get_secret_value())
        except Exception:
            await self._close_client(client)
            raise
        logger.debug(f"Opened SMTP transport to {settings.host}:{settings.port}")
        return client

    @staticmethod
    async def _is_alive(client: aiosmtplib.SMTP) -> bool:
        if not client.is_connected:
            return False
        try:
            await client.noop()
        except Exception as exc:  # noqa: BLE001
            logger.debug(f"SMTP NOOP failed: {exc}")
            return False
        return True

    @staticmethod
    async def _close_client(client: aiosmtplib.SMTP) -> None:
        try:
            await client.quit()
        except Exception as exc:  # noqa: BLE001
            logger.debug(f"SMTP QUIT failed, closing socket: {exc}")
            client.close()

    def _ensure_reaper(self) -> None:
        if self._reaper_task is not None and not self._reaper_task.done():
            return
        self._reaper_task = asyncio.get_running_loop().create_task(self._reap_loop())

    async def _reap_loop(self) -> None:
        while True:
            await asyncio.sleep(self._reap_interval)
            try:
                await self.reap_idle()
            except Exception as exc:  # noqa: BLE001
                logger.error(f"SMTP pool reaper failed: {exc}", exc_info=True)

    async def reap_idle(self) -> int:
        """Close transports idle longer than ``idle_timeout``. Returns the count closed."""
        now = self._clock()
        closed = 0
        for key in list(self._pools):
            condition = self._condition_for(key)
            async with condition:
                pooled = self._pools.get(key)
                if pooled is None or pooled.in_use:
                    continue
                if now - pooled.last_used <= self._idle_timeout:
                    continue
                del self._pools[key]
            await self._close_client(pooled.client)
            closed += 1
        if closed:
            logger.debug(f"Reaped {closed} idle SMTP transport(s)")
        return closed

    async def close_all(self) -> None:
        if self._reaper_task is not None:
            self._reaper_task.cancel()
            self._reaper_task = None
        pools, self._pools = self._pools, {}
        for pooled in pools.values():
            await self._close_client(pooled.client)


__all__ = [
    "IDLE_TIMEOUT_SECONDS",
    "PoolKey",
    "PooledTransport",
    "REAP_INTERVAL_SECONDS",
    "SmtpTransportPool",
]
