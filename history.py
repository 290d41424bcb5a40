from datetime import datetime
from typing import List, Optional

from pydantic import ValidationError
from redis.exceptions import RedisError

from constants import HISTORY_LIMIT, MAX_HISTORY_LIMIT
from errors import PersistenceError
from logging_config import get_logger
from redis_keys import REDIS_HISTORY_KEY
from room_keys import belongs_to_tenant
from schemas.messages import Message

logger = get_logger(__name__)


class HistoryStore:
    """Append-only message history, one Redis stream per tenant and room."""

    def __init__(self, redis_client, default_limit: int = HISTORY_LIMIT):
        self.redis_client = redis_client
        self.default_limit = default_limit

    def history_key(self, tenant: str, room: str) -> str:
        return REDIS_HISTORY_KEY.format(tenant=tenant, room=room)

    async def append(self, message: Message) -> str:
        """Persist one message. Raises PersistenceError if Redis rejects the write."""
        key = self.history_key(message.tenant, message.room)
        fields = {
            "id": message.id,
            "tenant": message.tenant,
            "room": message.room,
            "sender": message.sender,
            "text": message.text,
            "timestamp": message.timestamp.isoformat(),
        }
        try:
            entry_id = await self.redis_client.xadd(key, fields)
        except RedisError as e:
            raise PersistenceError(f"append to {key} failed: {e}") from e
        logger.debug(f"Stored message {message.id} in {key} as {entry_id}")
        return entry_id

    async def recent_messages(self, tenant: str, room: str, limit: Optional[int] = None) -> List[Message]:
        """Most recent messages of a room, oldest first, at most 50."""
        if not belongs_to_tenant(room, tenant):
            logger.warning(f"History query for room {room} outside tenant {tenant}")
            return []

        limit = self.default_limit if limit is None else limit
        limit = max(1, min(limit, MAX_HISTORY_LIMIT))
        key = self.history_key(tenant, room)
        try:
            entries = await self.redis_client.xrevrange(key, count=limit)
        except RedisError as e:
            raise PersistenceError(f"read from {key} failed: {e}") from e

        messages = []
        for entry_id, fields in entries:
            if fields.get("tenant") != tenant or fields.get("room") != room:
                logger.warning(f"Skipping entry {entry_id} in {key} scoped to another room")
                continue
            try:
                messages.append(Message(
                    id=fields.get("id") or entry_id,
                    tenant=fields["tenant"],
                    room=fields["room"],
                    sender=fields["sender"],
                    text=fields["text"],
                    timestamp=datetime.fromisoformat(fields["timestamp"]),
                ))
            except (KeyError, ValueError, ValidationError) as e:
                logger.error(f"Skipping malformed history entry {entry_id} in {key}: {e}")

        # Stream order follows insertion; timestamps decide across instances
        messages.sort(key=lambda m: m.timestamp)
        logger.debug(f"Loaded {len(messages)} history messages from {key}")
        return messages
