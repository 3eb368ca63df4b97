"""
App Config Cache - TTL cache over the app_config key/value table.

Holds app-wide settings only (e.g. app_wallet_account). Balances and usage
are never cached.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chainchat.db.models import AppConfig
from chainchat.observability.logging import get_logger

logger = get_logger(__name__)

APP_WALLET_ACCOUNT_KEY = "app_wallet_account"

ConfigLoader = Callable[[], Awaitable[dict[str, str]]]


def database_loader(session_factory: async_sessionmaker[AsyncSession]) -> ConfigLoader:
    """Build a loader that reads every app_config row in a fresh session."""

    async def load() -> dict[str, str]:
        async with session_factory() as session:
            result = await session.execute(select(AppConfig))
            return {row.key: row.value for row in result.scalars().all()}

    return load


class AppConfigCache:
    """
    Process-wide app config with a time-to-live.

    All rows are reloaded together on first use and after expiry. The clock
    is injectable so tests can step over the TTL.
    """

    def __init__(
        self,
        loader: ConfigLoader,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._loader = loader
        self._ttl = ttl_seconds
        self._clock = clock
        self._values: dict[str, str] = {}
        self._loaded_at: float | None = None
        self._lock = asyncio.Lock()

    def _expired(self) -> bool:
        if self._loaded_at is None or not self._values:
            return True
        return self._clock() - self._loaded_at >= self._ttl

    async def get(self, key: str, fallback: str | None = None) -> str | None:
        """Get a config value, reloading the table when the cache has expired."""
        if self._expired():
            async with self._lock:
                if self._expired():
                    self._values = await self._loader()
                    self._loaded_at = self._clock()
                    logger.debug("app_config_loaded", keys=sorted(self._values))
        value = self._values.get(key)
        return value if value else fallback

    def invalidate(self) -> None:
        """Force a reload on the next read."""
        self._loaded_at = None
