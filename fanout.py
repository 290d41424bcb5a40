import asyncio
from typing import Dict, Optional, Protocol

from pydantic import ValidationError

from errors import BrokerError
from logging_config import get_logger
from redis_keys import REDIS_ROOM_CHANNEL
from schemas.messages import Message

logger = get_logger(__name__)


class Subscriber(Protocol):
    connection_id: str

    def deliver(self, message: Message) -> None:
        ...


class FanoutRouter:
    """Delivers published messages to every subscribed connection on every instance.

    Each instance tracks only its own connections. The broker distributes a
    published message to all instances listening on the room channel, and each
    instance hands it to its local subscribers.
    """

    def __init__(self, broker):
        self.broker = broker
        # {room: {connection_id: subscriber}}
        self.room_subscribers: Dict[str, Dict[str, Subscriber]] = {}
        self._publish_lock = asyncio.Lock()
        self._listener_task: Optional[asyncio.Task] = None

    @staticmethod
    def channel_name(room: str) -> str:
        return REDIS_ROOM_CHANNEL.format(room=room)

    @staticmethod
    def room_from_channel(channel: str) -> str:
        return channel[len(REDIS_ROOM_CHANNEL.format(room="")):]

    async def start(self):
        if self._listener_task is None or self._listener_task.done():
            self._listener_task = asyncio.create_task(self._listen())
            logger.info("Fan-out listener started")

    async def stop(self):
        if self._listener_task is not None:
            self._listener_task.cancel()
            try:
                await self._listener_task
            except asyncio.CancelledError:
                pass
            self._listener_task = None
            logger.info("Fan-out listener stopped")

    async def subscribe(self, subscriber: Subscriber, room: str):
        subscribers = self.room_subscribers.setdefault(room, {})
        first = not subscribers
        subscribers[subscriber.connection_id] = subscriber
        if first:
            try:
                await self.broker.subscribe(self.channel_name(room))
            except BrokerError as e:
                # Local delivery still works through the publish fallback
                logger.error(f"Could not subscribe to broker for room {room}: {e}", exc_info=True)
        logger.debug(f"Connection {subscriber.connection_id} subscribed to {room} "
                     f"(local subscribers: {len(self.room_subscribers.get(room, {}))})")

    async def unsubscribe(self, subscriber: Subscriber, room: str):
        subscribers = self.room_subscribers.get(room)
        if not subscribers or subscribers.pop(subscriber.connection_id, None) is None:
            return
        logger.debug(f"Connection {subscriber.connection_id} unsubscribed from {room}")
        if not subscribers:
            del self.room_subscribers[room]
            logger.debug(f"No more local subscribers in room {room}, releasing channel")
            try:
                await self.broker.unsubscribe(self.channel_name(room))
            except BrokerError as e:
                logger.error(f"Could not unsubscribe from broker for room {room}: {e}", exc_info=True)

    async def publish(self, room: str, message: Message):
        """Publish to every instance. Calls from this instance reach the broker in call order."""
        async with self._publish_lock:
            try:
                await self.broker.publish(self.channel_name(room), message.model_dump_json())
            except BrokerError as e:
                logger.error(f"Broker publish failed for room {room}, delivering locally only: {e}")
                self.deliver_local(room, message)

    def deliver_local(self, room: str, message: Message) -> int:
        subscribers = list(self.room_subscribers.get(room, {}).values())
        for subscriber in subscribers:
            try:
                subscriber.deliver(message)
            except Exception as e:
                logger.warning(f"Error delivering to connection {subscriber.connection_id} in room {room}: {e}")
        logger.debug(f"Delivered message {message.id} to {len(subscribers)} local connections in room {room}")
        return len(subscribers)

    async def _listen(self):
        async for channel, data in self.broker.listen():
            room = self.room_from_channel(channel)
            try:
                message = Message.model_validate_json(data)
            except ValidationError as e:
                logger.error(f"Error parsing message from broker for room {room}: {e}")
                continue
            if message.room != room:
                logger.warning(f"Dropping message {message.id} for {message.room} received on channel {channel}")
                continue
            self.deliver_local(room, message)
