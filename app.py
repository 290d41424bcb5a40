from contextlib import asynccontextmanager
from typing import Optional
import asyncio

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from backend import RedisBroker, redis_backend
from constants import ALLOWED_ORIGINS, LOG_FILE, LOG_LEVEL, OUTBOUND_FLUSH_TIMEOUT
from errors import AuthenticationError
from fanout import FanoutRouter
from gateway import Gateway, Session
from history import HistoryStore
from logging_config import get_logger, setup_logging
from routers.health import health_router
from schemas.messages import Disconnect, parse_command

# Setup logging
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)

# "Try again later": the client could not keep up with its room traffic
SLOW_CONSUMER_CLOSE_CODE = 1013


@asynccontextmanager
async def redis_lifespan(app: FastAPI):
    """Connect to Redis before serving; an unreachable Redis aborts startup."""
    await redis_backend.connect()
    broker = RedisBroker(redis_backend.pubsub_client)
    router = FanoutRouter(broker)
    await router.start()
    gateway = Gateway(router, HistoryStore(redis_backend.redis_client))
    app.state.backend = redis_backend
    app.state.gateway = gateway
    logger.info("Relay instance ready to accept connections")
    try:
        yield
    finally:
        await gateway.drain()
        await router.stop()
        await broker.close()
        await redis_backend.close()


async def pump_events(websocket: WebSocket, session: Session):
    """Write queued server events to the socket in order."""
    while True:
        event = await session.outbound.get()
        try:
            await websocket.send_text(event.model_dump_json())
        finally:
            session.outbound.task_done()


async def flush_events(writer: asyncio.Task, session: Session, timeout: float = OUTBOUND_FLUSH_TIMEOUT):
    """Wait, up to `timeout`, for the writer to send everything already queued."""
    if writer.done():
        return
    # Let deliveries already handed to the listener land in the queue
    await asyncio.sleep(0)
    try:
        await asyncio.wait_for(session.outbound.join(), timeout)
    except asyncio.TimeoutError:
        logger.warning(f"Dropping {session.outbound.qsize()} unsent events for connection {session.connection_id}")


async def close_on_overflow(websocket: WebSocket, session: Session, gateway: Gateway):
    """Drop a client whose outbound queue overflowed."""
    await session.overflowed.wait()
    logger.warning(f"Closing slow connection {session.connection_id} ({session.principal}, tenant {session.tenant})")
    await gateway.disconnect(session)
    await websocket.close(code=SLOW_CONSUMER_CLOSE_CODE)


async def stop_task(task: asyncio.Task, session: Session):
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception as e:
        logger.debug(f"Task for connection {session.connection_id} ended with: {e}")


async def websocket_endpoint(websocket: WebSocket, tenant: Optional[str] = None, principal: Optional[str] = None):
    """Relay WebSocket endpoint.

    Query parameters:
    - tenant: tenant (project) identifier, required
    - principal: user identifier within the tenant, required
    """
    gateway: Gateway = websocket.app.state.gateway
    try:
        session = gateway.admit(tenant, principal)
    except AuthenticationError as e:
        logger.info(f"Connection rejected: {e} (tenant={tenant!r}, principal={principal!r})")
        await websocket.close(code=1008)
        return

    await websocket.accept()
    writer = asyncio.create_task(pump_events(websocket, session))
    watchdog = asyncio.create_task(close_on_overflow(websocket, session, gateway))
    client_closed = False
    try:
        while not session.closed:
            frame = await websocket.receive()
            if frame["type"] == "websocket.disconnect":
                logger.debug(f"WebSocket disconnected for connection {session.connection_id}")
                break
            data = frame.get("text")
            if data is None:
                logger.warning(f"Ignoring binary frame from connection {session.connection_id}")
                continue
            try:
                command = parse_command(data)
            except ValidationError as e:
                logger.warning(f"Ignoring invalid frame from connection {session.connection_id}: {e.errors()[:1]}")
                continue
            if isinstance(command, Disconnect):
                client_closed = True
                break
            await gateway.dispatch(session, command)
    finally:
        await stop_task(watchdog, session)
        if client_closed:
            await flush_events(writer, session)
        await gateway.disconnect(session)
        await stop_task(writer, session)
        try:
            await websocket.close()
        except Exception as e:
            logger.debug(f"Error closing WebSocket: {e}")


def create_app(lifespan=redis_lifespan) -> FastAPI:
    app = FastAPI(title="Tenant chat relay", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router)
    app.add_api_websocket_route("/ws", websocket_endpoint)
    return app


app = create_app()

logger.info("FastAPI application initialized")
