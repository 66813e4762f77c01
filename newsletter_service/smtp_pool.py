# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Lightweight asyncio-friendly SMTP connection pool."""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional, Tuple

import aiosmtplib

ConnectionParams = Tuple[str, int, Optional[str], Optional[str], bool]


class SMTPPool:
    """Reuse idle SMTP connections between sends.

    A connection is lent to exactly one sender at a time through
    :meth:`connection`; it goes back to the idle list when the send succeeds
    and is closed when it fails.
    """

    def __init__(self, ttl: int = 300, connect_timeout: float = 10.0):
        """Create a pool with the given time-to-live, in seconds."""
        self.ttl = ttl
        self.connect_timeout = connect_timeout
        self.idle: Dict[ConnectionParams, List[Tuple[aiosmtplib.SMTP, float]]] = {}
        self.lock = asyncio.Lock()

    async def _connect(self, params: ConnectionParams) -> aiosmtplib.SMTP:
        """Open a new SMTP connection and authenticate if needed."""
        host, port, user, password, use_tls = params
        # use_tls=True means implicit TLS (port 465); STARTTLS is not negotiated
        smtp = aiosmtplib.SMTP(
            hostname=host, port=port, start_tls=False, use_tls=use_tls, timeout=self.connect_timeout
        )

        async def _do_connect():
            await smtp.connect()
            if user and password:
                await smtp.login(user, password)

        await asyncio.wait_for(_do_connect(), timeout=self.connect_timeout + 5.0)
        return smtp

    async def _is_alive(self, smtp: aiosmtplib.SMTP) -> bool:
        """Return ``True`` when the connection responds correctly to NOOP."""
        try:
            code, _ = await asyncio.wait_for(smtp.noop(), timeout=5.0)
            return code == 250
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError):
            return False

    @staticmethod
    async def _quit(smtp: aiosmtplib.SMTP) -> None:
        try:
            await smtp.quit()
        except (aiosmtplib.SMTPException, OSError):
            smtp.close()

    async def _checkout(self, params: ConnectionParams) -> aiosmtplib.SMTP:
        while True:
            async with self.lock:
                entries = self.idle.get(params)
                entry = entries.pop() if entries else None
            if entry is None:
                return await self._connect(params)
            smtp, last_used = entry
            if (time.time() - last_used) < self.ttl and await self._is_alive(smtp):
                return smtp
            await self._quit(smtp)

    async def _checkin(self, params: ConnectionParams, smtp: aiosmtplib.SMTP) -> None:
        async with self.lock:
            self.idle.setdefault(params, []).append((smtp, time.time()))

    @asynccontextmanager
    async def connection(
        self,
        host: str,
        port: int,
        user: Optional[str],
        password: Optional[str],
        *,
        use_tls: bool,
    ) -> AsyncIterator[aiosmtplib.SMTP]:
        """Lend a connection to the caller for the duration of the block."""
        params: ConnectionParams = (host, port, user, password, use_tls)
        smtp = await self._checkout(params)
        try:
            yield smtp
        except BaseException:
            await self._quit(smtp)
            raise
        await self._checkin(params, smtp)

    async def cleanup(self) -> None:
        """Close idle connections that expired or no longer answer."""
        now = time.time()
        async with self.lock:
            items = [(params, entry) for params, entries in self.idle.items() for entry in entries]
            self.idle = {}

        for params, (smtp, last_used) in items:
            if (now - last_used) <= self.ttl and await self._is_alive(smtp):
                async with self.lock:
                    self.idle.setdefault(params, []).append((smtp, last_used))
            else:
                await self._quit(smtp)

    async def close(self) -> None:
        """Close every idle connection."""
        async with self.lock:
            items = [smtp for entries in self.idle.values() for smtp, _ in entries]
            self.idle = {}
        for smtp in items:
            await self._quit(smtp)
