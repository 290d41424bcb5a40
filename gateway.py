"""Per-connection session handling: admission, joins, sends and disconnect."""
import asyncio
import enum
import uuid
from typing import Dict, List, Optional, Set

from constants import OUTBOUND_QUEUE_SIZE
from errors import AuthenticationError, InvalidRoomError, PersistenceError, TenantIsolationViolation
from fanout import FanoutRouter
from history import HistoryStore
from logging_config import get_logger
from room_keys import belongs_to_tenant, dm_room, general_room, valid_identifier
from schemas.messages import (
    Command, Disconnect, HistoryEvent, JoinDm, JoinGeneral, Message,
    ReceiveMessageEvent, SendMessage, ServerEvent,
)

logger = get_logger(__name__)


class SessionState(enum.Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"


class Session:
    """One client connection bound to a tenant and a principal."""

    def __init__(self, tenant: str, principal: str, connection_id: Optional[str] = None,
                 max_pending: int = OUTBOUND_QUEUE_SIZE):
        self.connection_id = connection_id or str(uuid.uuid4())
        self.tenant = tenant
        self.principal = principal
        self.state = SessionState.CONNECTING
        self.joined: Set[str] = set()
        self.outbound: asyncio.Queue = asyncio.Queue(maxsize=max_pending)
        # Set once the client falls too far behind; the socket layer then closes it
        self.overflowed = asyncio.Event()
        # Live messages held back while a room's history is loading
        self._replaying: Dict[str, List[Message]] = {}

    def __repr__(self):
        return f"<Session {self.connection_id} {self.tenant}/{self.principal} {self.state.value}>"

    @property
    def closed(self) -> bool:
        return self.state is SessionState.CLOSED

    def deliver(self, message: Message):
        if self.closed:
            return
        pending = self._replaying.get(message.room)
        if pending is not None:
            pending.append(message)
            return
        self.send_event(ReceiveMessageEvent(message=message))

    def send_event(self, event: ServerEvent):
        if self.overflowed.is_set():
            return
        try:
            self.outbound.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(f"Outbound queue full for connection {self.connection_id}, dropping slow client")
            self.overflowed.set()

    def begin_replay(self, room: str):
        self._replaying.setdefault(room, [])

    def finish_replay(self, room: str, history: List[Message]):
        """Queue the history snapshot, then the live messages that arrived meanwhile."""
        buffered = self._replaying.pop(room, [])
        if self.closed:
            return
        self.send_event(HistoryEvent(room=room, messages=history))
        seen = {m.id for m in history}
        for message in buffered:
            if message.id not in seen:
                self.send_event(ReceiveMessageEvent(message=message))


class Gateway:
    """Connection gateway of one relay instance."""

    def __init__(self, router: FanoutRouter, history: HistoryStore, max_pending: int = OUTBOUND_QUEUE_SIZE):
        self.router = router
        self.history = history
        self.max_pending = max_pending
        self.sessions: Dict[str, Session] = {}
        self._pending_writes: Set[asyncio.Task] = set()

    def admit(self, tenant: Optional[str], principal: Optional[str]) -> Session:
        if not tenant or not principal:
            raise AuthenticationError("tenant and principal are required")
        if not valid_identifier(tenant) or not valid_identifier(principal):
            raise AuthenticationError("tenant and principal must not contain ':'")
        session = Session(tenant, principal, max_pending=self.max_pending)
        session.state = SessionState.CONNECTED
        self.sessions[session.connection_id] = session
        logger.info(f"User connected: {principal} (tenant: {tenant}, connection: {session.connection_id})")
        return session

    async def dispatch(self, session: Session, command: Command):
        if session.closed:
            logger.debug(f"Ignoring {command.type} on closed connection {session.connection_id}")
            return
        if isinstance(command, JoinGeneral):
            await self.join_general(session)
        elif isinstance(command, JoinDm):
            await self.join_dm(session, command.target)
        elif isinstance(command, SendMessage):
            await self.send_message(session, command.room, command.text)
        elif isinstance(command, Disconnect):
            await self.disconnect(session)
        else:
            raise TypeError(f"unknown command {command!r}")

    async def join_general(self, session: Session):
        room = general_room(session.tenant)
        await self._join(session, room)

    async def join_dm(self, session: Session, target: str):
        if not target:
            logger.debug(f"Ignoring join_dm without target from {session.principal}")
            return
        try:
            room = dm_room(session.tenant, session.principal, target)
        except InvalidRoomError as e:
            logger.warning(f"Invalid dm room for {session.principal} -> {target}: {e}")
            return
        await self._join(session, room)

    async def _join(self, session: Session, room: str):
        # Subscribe before reading history so nothing published meanwhile is lost
        session.begin_replay(room)
        session.joined.add(room)
        await self.router.subscribe(session, room)
        logger.info(f"User {session.principal} joined {room}")

        try:
            history = await self.history.recent_messages(session.tenant, room)
        except PersistenceError as e:
            logger.error(f"Error fetching history for {room}: {e}", exc_info=True)
            history = []

        if session.closed or room not in session.joined:
            session.finish_replay(room, [])
            return
        session.finish_replay(room, history)

    async def send_message(self, session: Session, room: str, text: str):
        try:
            self.check_room(session, room)
        except TenantIsolationViolation as e:
            # Silent to the sender so other tenants' rooms cannot be probed
            logger.warning(str(e))
            return

        message = Message(tenant=session.tenant, room=room, sender=session.principal, text=text)
        self._persist_in_background(message)
        await self.router.publish(room, message)

    def check_room(self, session: Session, room: str):
        if not belongs_to_tenant(room, session.tenant):
            raise TenantIsolationViolation(
                f"User {session.principal} (tenant {session.tenant}) tried to send to unauthorized room {room}"
            )

    def _persist_in_background(self, message: Message):
        task = asyncio.create_task(self._persist(message))
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)

    async def _persist(self, message: Message):
        try:
            await self.history.append(message)
        except PersistenceError as e:
            logger.error(f"Error saving message {message.id} to {message.room}: {e}", exc_info=True)

    async def disconnect(self, session: Session):
        if session.closed:
            return
        session.state = SessionState.CLOSED
        rooms = list(session.joined)
        session.joined.clear()
        for room in rooms:
            await self.router.unsubscribe(session, room)
        self.sessions.pop(session.connection_id, None)
        logger.info(f"User disconnected: {session.principal} (connection: {session.connection_id})")

    async def drain(self):
        """Wait for in-flight history writes, used on shutdown."""
        if self._pending_writes:
            await asyncio.gather(*list(self._pending_writes), return_exceptions=True)
