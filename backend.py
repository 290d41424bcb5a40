import asyncio
from typing import AsyncIterator, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from constants import REDIS_HOST, REDIS_PORT, REDIS_PASSWORD, REDIS_DB, PUBSUB_POLL_TIMEOUT
from errors import BrokerError
from logging_config import get_logger

logger = get_logger(__name__)


class RedisBackend:
    """Owns the Redis connections of one relay instance."""

    def __init__(self, host: str = REDIS_HOST, port: int = REDIS_PORT,
                 password: Optional[str] = REDIS_PASSWORD, db: int = REDIS_DB):
        self.host = host
        self.port = port
        self.redis_client = redis.Redis(host=host, port=port, password=password, db=db, decode_responses=True)
        # Separate connection for pub/sub (required by Redis)
        self.pubsub_client = redis.Redis(host=host, port=port, password=password, db=db, decode_responses=True)
        logger.info(f"Initializing RedisBackend for {host}:{port}")

    async def connect(self):
        """Ping both clients. Raises if Redis is unreachable, which aborts startup."""
        try:
            await self.redis_client.ping()
            await self.pubsub_client.ping()
        except RedisError as e:
            logger.error(f"Failed to connect to Redis at {self.host}:{self.port}: {e}", exc_info=True)
            raise
        logger.info(f"Redis clients connected successfully to {self.host}:{self.port}")

    async def ping(self) -> bool:
        try:
            return bool(await self.redis_client.ping())
        except RedisError as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    async def close(self):
        await self.redis_client.aclose()
        await self.pubsub_client.aclose()
        logger.info("Redis clients closed")


class RedisBroker:
    """Broker contract on top of one shared Redis pub/sub connection."""

    def __init__(self, pubsub_client: redis.Redis, poll_timeout: float = PUBSUB_POLL_TIMEOUT):
        self.pubsub_client = pubsub_client
        self.pubsub = pubsub_client.pubsub(ignore_subscribe_messages=True)
        self.poll_timeout = poll_timeout

    async def subscribe(self, channel: str):
        try:
            await self.pubsub.subscribe(channel)
        except RedisError as e:
            raise BrokerError(f"subscribe to {channel} failed: {e}") from e
        logger.debug(f"Subscribed to Redis channel {channel}")

    async def unsubscribe(self, channel: str):
        try:
            await self.pubsub.unsubscribe(channel)
        except RedisError as e:
            raise BrokerError(f"unsubscribe from {channel} failed: {e}") from e
        logger.debug(f"Unsubscribed from Redis channel {channel}")

    async def publish(self, channel: str, data: str) -> int:
        try:
            receivers = await self.pubsub_client.publish(channel, data)
        except RedisError as e:
            raise BrokerError(f"publish to {channel} failed: {e}") from e
        logger.debug(f"Published to channel {channel}, {receivers} instance subscribers")
        return receivers

    async def listen(self) -> AsyncIterator[Tuple[str, str]]:
        """Yield (channel, data) for every message on subscribed channels."""
        while True:
            if not self.pubsub.subscribed:
                await asyncio.sleep(self.poll_timeout)
                continue
            try:
                message = await self.pubsub.get_message(ignore_subscribe_messages=True, timeout=self.poll_timeout)
            except RedisError as e:
                logger.error(f"Error in pubsub.get_message(): {e}", exc_info=True)
                await asyncio.sleep(self.poll_timeout)
                continue
            if message is None:
                continue
            if message.get("type") == "message":
                yield message["channel"], message["data"]

    async def close(self):
        await self.pubsub.aclose()


redis_backend = RedisBackend()
