"""Periodic cleanup of expired authentication state.

Removes blacklist entries whose access token has expired anyway, refresh
token rows past the audit retention window and stale password reset
tokens. Runs as a background task for the lifetime of the application.
"""

import asyncio

from config.config import Settings, settings
from core.logging import logger
from services.blacklist import TokenBlacklist, get_token_blacklist
from services.password_reset import PasswordResetStore, get_password_reset_store
from services.refresh_tokens import RefreshTokenStore, get_refresh_token_store
from sqlalchemy.exc import SQLAlchemyError

MAX_BACKOFF_SECONDS = 3600


class TokenCleanupWorker:
    def __init__(
        self,
        blacklist: TokenBlacklist,
        refresh_tokens: RefreshTokenStore,
        resets: PasswordResetStore,
        config: Settings = settings,
    ):
        self.blacklist = blacklist
        self.refresh_tokens = refresh_tokens
        self.resets = resets
        self.interval = config.BLACKLIST_CLEANUP_INTERVAL_SECONDS
        self._running = False
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        if self._running:
            logger.warning("Token cleanup worker already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Token cleanup worker started (interval={}s)", self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Token cleanup worker stopped")

    async def run_once(self) -> dict[str, int]:
        """Run every cleanup step once.

        Returns:
            dict[str, int]: Rows removed per table.
        """
        removed = {
            "blacklisted_tokens": await self.blacklist.cleanup_expired(),
            "refresh_tokens": await self.refresh_tokens.cleanup_expired(),
            "password_reset_tokens": await self.resets.cleanup_expired(),
        }
        logger.debug("Token cleanup finished: {}", removed)
        return removed

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            delay = self.interval
            try:
                await self.run_once()
                consecutive_errors = 0
            except SQLAlchemyError:
                consecutive_errors += 1
                logger.exception(
                    "Token cleanup failed (consecutive_errors={})", consecutive_errors
                )
                delay = min(MAX_BACKOFF_SECONDS, self.interval * 2 ** (consecutive_errors - 1))
            await asyncio.sleep(delay)


def create_cleanup_worker() -> TokenCleanupWorker:
    return TokenCleanupWorker(
        blacklist=get_token_blacklist(),
        refresh_tokens=get_refresh_token_store(),
        resets=get_password_reset_store(),
    )
