"""Background sweep of expired and idle sessions.

Every interval (24 hours by default) the worker deletes primary and sub-user
sessions whose refresh token has expired, or which are still active but have
been idle longer than ``session_idle_days``, and prunes expired entries from
the in-process blacklist. Each pass only removes rows already past expiry,
so an interrupted pass is simply repeated on the next tick.
"""

from __future__ import annotations

import asyncio
from typing import Optional

from venueauth.logging import get_logger
from venueauth.service.tokens import TokenService

logger = get_logger(__name__)

DEFAULT_INTERVAL_SECONDS = 24 * 60 * 60
MAX_BACKOFF_SECONDS = 60 * 60


class SessionCleanupWorker:
    def __init__(
        self,
        tokens: TokenService,
        *,
        interval_seconds: int = DEFAULT_INTERVAL_SECONDS,
    ) -> None:
        self.tokens = tokens
        self.interval_seconds = interval_seconds
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("session_cleanup_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("session_cleanup_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("session_cleanup_stopped")

    async def run_once(self) -> int:
        return await asyncio.to_thread(self.tokens.cleanup_expired_sessions)

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                await self.run_once()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "session_cleanup_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                # retry sooner than a full interval, backing off on repeats
                backoff = min(MAX_BACKOFF_SECONDS, 60 * (2 ** (consecutive_errors - 1)))
                await asyncio.sleep(min(backoff, self.interval_seconds))
                continue
            await asyncio.sleep(self.interval_seconds)
