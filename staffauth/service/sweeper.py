"""Background job that deletes expired refresh tokens.

Runs once per interval inside the application's event loop. Deleting an
expired row is idempotent, so the sweep is safe alongside token issuance.
"""

from __future__ import annotations

import asyncio
from typing import Optional

from staffauth.logging import get_logger
from staffauth.service.tokens import AccessTokenDenylist, TokenService

logger = get_logger(__name__)

DEFAULT_SWEEP_INTERVAL_SECONDS = 24 * 60 * 60
MAX_BACKOFF_SECONDS = 3600


class TokenSweeper:
    def __init__(
        self,
        tokens: TokenService,
        denylist: Optional[AccessTokenDenylist] = None,
        *,
        interval: int = DEFAULT_SWEEP_INTERVAL_SECONDS,
    ) -> None:
        self.tokens = tokens
        self.denylist = denylist
        self.interval = interval
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            logger.warning("token_sweeper_already_running")
            return
        self._stop = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop())
        logger.info("token_sweeper_started", interval_seconds=self.interval)

    async def stop(self) -> None:
        self._stop.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("token_sweeper_stopped")

    def run_once(self) -> int:
        removed = self.tokens.sweep_expired()
        if self.denylist is not None:
            self.denylist.cleanup()
        logger.info("expired_refresh_tokens_swept", removed=removed)
        return removed

    async def _wait(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while not self._stop.is_set():
            try:
                await asyncio.to_thread(self.run_once)
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "token_sweep_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                if consecutive_errors > 3:
                    backoff = min(
                        MAX_BACKOFF_SECONDS, 60 * (2 ** (consecutive_errors - 3))
                    )
                    logger.warning(
                        "token_sweeper_backoff",
                        backoff_seconds=backoff,
                        consecutive_errors=consecutive_errors,
                    )
                    await self._wait(backoff)
                    continue
            await self._wait(self.interval)
