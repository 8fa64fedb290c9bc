"""Asyncio-friendly SMTP connection reuse for the dispatch loop."""

import asyncio
import time
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import aiosmtplib


@dataclass(frozen=True)
class SmtpSettings:
    host: str
    port: int
    user: Optional[str] = None
    password: Optional[str] = None
    use_tls: bool = False
    start_tls: bool = False
    timeout: float = 10.0


class SMTPPool:
    """Keep one SMTP connection per task alive between recipients."""

    def __init__(self, settings: SmtpSettings, ttl: int = 300):
        """Create a pool with the given time-to-live, in seconds."""
        self.settings = settings
        self.ttl = ttl
        self.pool: Dict[int, Tuple[aiosmtplib.SMTP, float]] = {}
        self.lock = asyncio.Lock()

    async def _connect(self) -> aiosmtplib.SMTP:
        """Open a new SMTP connection and authenticate if needed."""
        s = self.settings
        smtp = aiosmtplib.SMTP(
            hostname=s.host,
            port=s.port,
            use_tls=s.use_tls,
            start_tls=s.start_tls,
            timeout=s.timeout,
        )

        async def _do_connect():
            await smtp.connect()
            if s.user and s.password:
                await smtp.login(s.user, s.password)

        await asyncio.wait_for(_do_connect(), timeout=s.timeout + 5.0)
        return smtp

    async def _is_alive(self, smtp: aiosmtplib.SMTP) -> bool:
        """Return ``True`` when the connection responds correctly to NOOP."""
        try:
            code, _ = await asyncio.wait_for(smtp.noop(), timeout=5.0)
            return code == 250
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError):
            return False

    async def get_connection(self) -> aiosmtplib.SMTP:
        """Return a pooled connection bound to the calling task."""
        task_id = id(asyncio.current_task())

        async with self.lock:
            entry = self.pool.pop(task_id, None)

        if entry:
            smtp, last_used = entry
            if (time.time() - last_used) < self.ttl and await self._is_alive(smtp):
                async with self.lock:
                    self.pool[task_id] = (smtp, time.time())
                return smtp
            await self._quit(smtp)

        smtp = await self._connect()
        async with self.lock:
            self.pool[task_id] = (smtp, time.time())
        return smtp

    async def discard(self) -> None:
        """Drop the connection of the calling task, e.g. after a send error."""
        task_id = id(asyncio.current_task())
        async with self.lock:
            entry = self.pool.pop(task_id, None)
        if entry:
            await self._quit(entry[0])

    async def cleanup(self) -> None:
        """Close idle or broken connections still registered in the pool."""
        now = time.time()
        async with self.lock:
            items = list(self.pool.items())

        expired = []
        for task_id, (smtp, last_used) in items:
            if (now - last_used) > self.ttl or not await self._is_alive(smtp):
                expired.append(task_id)

        for task_id in expired:
            async with self.lock:
                entry = self.pool.pop(task_id, None)
            if entry:
                await self._quit(entry[0])

    async def close_all(self) -> None:
        """Quit every pooled connection, used at shutdown."""
        async with self.lock:
            entries = list(self.pool.values())
            self.pool.clear()
        for smtp, _ in entries:
            await self._quit(smtp)

    @staticmethod
    async def _quit(smtp: aiosmtplib.SMTP) -> None:
        try:
            await smtp.quit()
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError):
            pass
