import asyncpg
from loguru import logger
from typing import Optional

from leadflow.config import Settings


class Database:
    """Lazily created asyncpg pool.

    Each long-lived component (repositories, the queue backend) is handed a
    Database by the container; nothing here is module-global.
    """

    def __init__(self, settings: Settings, min_size: Optional[int] = None, max_size: Optional[int] = None):
        self._settings = settings
        self._min_size = min_size or settings.database_pool_min
        self._max_size = max_size or settings.database_pool_max
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self) -> asyncpg.Pool:
        if self.pool is None:
            self.pool = await asyncpg.create_pool(
                host=self._settings.database_host,
                port=self._settings.database_port,
                database=self._settings.database_name,
                user=self._settings.database_user,
                password=self._settings.database_password,
                min_size=self._min_size,
                max_size=self._max_size,
                timeout=self._settings.database_pool_timeout,
                ssl="disable",
            )
            logger.debug(
                f"Database pool opened ({self._min_size}-{self._max_size} connections)"
            )
        return self.pool

    async def close(self):
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.debug("Database pool closed")

    @property
    def is_connected(self) -> bool:
        return self.pool is not None

    async def get_pool(self) -> asyncpg.Pool:
        if self.pool is None:
            await self.connect()
        return self.pool

    async def fetch(self, query, *args):
        pool = await self.get_pool()
        return await pool.fetch(query, *args)

    async def fetchrow(self, query, *args):
        pool = await self.get_pool()
        return await pool.fetchrow(query, *args)

    async def fetchval(self, query, *args):
        pool = await self.get_pool()
        return await pool.fetchval(query, *args)

    async def execute(self, query, *args):
        pool = await self.get_pool()
        return await pool.execute(query, *args)
