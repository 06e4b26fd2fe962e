# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Asyncio-friendly SMTP connection pool used by the SMTP email provider."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass

import aiosmtplib

from .logger import get_logger

CONNECT_TIMEOUT = 10.0
NOOP_TIMEOUT = 5.0


@dataclass(frozen=True)
class SmtpEndpoint:
    """Connection parameters of one SMTP server."""

    host: str
    port: int
    user: str | None = None
    password: str | None = None
    use_tls: bool = False
    start_tls: bool = False


@dataclass
class _PooledConnection:
    smtp: aiosmtplib.SMTP
    endpoint: SmtpEndpoint
    last_used: float


class SMTPPool:
    """Reuse one SMTP connection per worker task to avoid reconnecting per message."""

    def __init__(self, ttl: int = 300):
        """Create a pool whose idle connections expire after ``ttl`` seconds."""
        self.ttl = ttl
        self.pool: dict[int, _PooledConnection] = {}
        self.lock = asyncio.Lock()
        self.logger = get_logger("CommsDispatch.smtp")

    async def _connect(self, endpoint: SmtpEndpoint) -> aiosmtplib.SMTP:
        """Open a new SMTP connection and authenticate if credentials are set."""
        smtp = aiosmtplib.SMTP(
            hostname=endpoint.host,
            port=endpoint.port,
            use_tls=endpoint.use_tls,
            start_tls=endpoint.start_tls,
            timeout=CONNECT_TIMEOUT,
        )
        async with asyncio.timeout(CONNECT_TIMEOUT + 5):
            await smtp.connect()
            if endpoint.user and endpoint.password:
                await smtp.login(endpoint.user, endpoint.password)
        return smtp

    async def _is_alive(self, smtp: aiosmtplib.SMTP) -> bool:
        """Return ``True`` when the connection answers NOOP with 250."""
        try:
            response = await asyncio.wait_for(smtp.noop(), timeout=NOOP_TIMEOUT)
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError):
            return False
        return response.code == 250

    async def _close(self, smtp: aiosmtplib.SMTP) -> None:
        try:
            await smtp.quit()
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError) as exc:
            self.logger.debug("Ignoring error while closing SMTP connection: %s", exc)

    async def get_connection(self, endpoint: SmtpEndpoint) -> aiosmtplib.SMTP:
        """Return a live connection to ``endpoint`` bound to the calling task."""
        task_id = id(asyncio.current_task())

        async with self.lock:
            entry = self.pool.get(task_id)

        if entry is not None:
            reusable = entry.endpoint == endpoint and (time.time() - entry.last_used) < self.ttl
            if reusable and await self._is_alive(entry.smtp):
                entry.last_used = time.time()
                return entry.smtp
            async with self.lock:
                self.pool.pop(task_id, None)
            await self._close(entry.smtp)

        smtp = await self._connect(endpoint)
        async with self.lock:
            self.pool[task_id] = _PooledConnection(smtp=smtp, endpoint=endpoint, last_used=time.time())
        return smtp

    async def discard(self) -> None:
        """Drop the calling task's connection, e.g. after a send error."""
        task_id = id(asyncio.current_task())
        async with self.lock:
            entry = self.pool.pop(task_id, None)
        if entry is not None:
            await self._close(entry.smtp)

    async def cleanup(self) -> None:
        """Close idle or broken connections still registered in the pool."""
        now = time.time()
        async with self.lock:
            items = list(self.pool.items())

        stale: list[int] = []
        for task_id, entry in items:
            if (now - entry.last_used) > self.ttl or not await self._is_alive(entry.smtp):
                stale.append(task_id)

        for task_id in stale:
            async with self.lock:
                entry = self.pool.pop(task_id, None)
            if entry is not None:
                await self._close(entry.smtp)

    async def close_all(self) -> None:
        async with self.lock:
            entries = list(self.pool.values())
            self.pool.clear()
        for entry in entries:
            await self._close(entry.smtp)


__all__ = ["SMTPPool", "SmtpEndpoint"]
