# Fleetwatch/src/state/redis_client.py
"""
Redis async client for Fleetwatch.

Uses the redis.asyncio from_url() pattern with decode_responses=True.
Retries the initial connect so the service survives starting before Redis.
"""
from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Optional

import redis.asyncio as redis

if TYPE_CHECKING:
    from redis.asyncio import Redis

    from ..config import Settings

logger = logging.getLogger(__name__)


class RedisClient:
    """
    Async Redis client wrapper with health check and retry logic.

    Usage:
        client = RedisClient.from_settings(settings)
        await client.connect()
        await client.ping()
        await client.close()
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        password: str = "",
        db: int = 0,
        retry_attempts: int = 10,
        retry_delay: float = 2.0,
    ):
        self.host = host
        self.port = port
        self.password = password
        self.db = db
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self._client: Optional["Redis"] = None

    @classmethod
    def from_settings(cls, settings: "Settings") -> "RedisClient":
        return cls(
            host=settings.redis_host,
            port=settings.redis_port,
            password=settings.redis_password,
            db=settings.redis_db,
            retry_attempts=settings.redis_retry_attempts,
            retry_delay=settings.redis_retry_delay,
        )

    @property
    def url(self) -> str:
        """Build Redis connection URL."""
        if self.password:
            return f"redis://:{self.password}@{self.host}:{self.port}/{self.db}"
        return f"redis://{self.host}:{self.port}/{self.db}"

    async def connect(self) -> "Redis":
        """
        Connect with up to retry_attempts tries, retry_delay seconds apart.

        Raises ConnectionError once all attempts fail.
        """
        if self._client is not None:
            return self._client

        logger.info(f"Connecting to Redis at {self.host}:{self.port}")
        last_error: Optional[Exception] = None

        for attempt in range(1, self.retry_attempts + 1):
            try:
                self._client = redis.Redis.from_url(self.url, decode_responses=True)
                await self.ping()
                logger.info(f"Redis connection established (attempt {attempt})")
                return self._client
            except (redis.ConnectionError, ConnectionError) as e:
                last_error = e
                self._client = None
                if attempt < self.retry_attempts:
                    logger.warning(
                        f"Redis connection attempt {attempt}/{self.retry_attempts} failed: {e}. "
                        f"Retrying in {self.retry_delay}s..."
                    )
                    await asyncio.sleep(self.retry_delay)
                else:
                    logger.error(f"Redis connection failed after {self.retry_attempts} attempts: {e}")

        raise ConnectionError(
            f"Failed to connect to Redis after {self.retry_attempts} attempts: {last_error}"
        )

    async def ping(self) -> bool:
        """Raises ConnectionError if Redis does not answer PING."""
        if self._client is None:
            raise ConnectionError("Redis client not connected")
        try:
            return await self._client.ping()
        except redis.ConnectionError as e:
            logger.error(f"Redis health check failed: {e}")
            raise ConnectionError(f"Redis unavailable: {e}") from e

    async def close(self) -> None:
        if self._client is not None:
            logger.info("Closing Redis connection")
            await self._client.aclose()
            self._client = None
