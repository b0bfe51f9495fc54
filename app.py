from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional
import json
import os

import redis.asyncio as aioredis
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.websockets import WebSocketState
from redis.exceptions import RedisError

from backend import RedisBackend
from backplane import RedisBackplane
from connection import Connection
from constants import DEFAULT_MAX_USERS, DEFAULT_ROOM_EXPIRY_SECONDS, REDIS_URL
from coordinator import BroadcastCoordinator
from logging_config import get_logger, setup_logging
from registry import ConnectionRegistry
from routers.rooms import room_is_expired, rooms_router
from schemas.rooms import HealthResponse

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)

BROKER_READY_TIMEOUT_SECONDS = 5.0


def redis_factory():
    return aioredis.from_url(REDIS_URL, decode_responses=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Each instance holds only its own sockets; Redis pub/sub relays room
    # traffic between instances.
    redis_backend = RedisBackend(redis_factory())
    coordinator = BroadcastCoordinator(ConnectionRegistry(), RedisBackplane(redis_factory))
    app.state.redis_backend = redis_backend
    app.state.coordinator = coordinator

    await coordinator.start()
    if not await coordinator.supervisor.wait_ready(timeout=BROKER_READY_TIMEOUT_SECONDS):
        logger.warning(f"Broker at {REDIS_URL} not reachable yet, serving anyway while the supervisor retries")
    try:
        yield
    finally:
        await coordinator.stop()
        await redis_backend.close()


app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(rooms_router)

logger.info("FastAPI application initialized")


@app.get("/health", response_model=HealthResponse)
async def health():
    return HealthResponse(**await app.state.coordinator.status())


def build_chat_message(data: str, connection: Connection, room_id: str) -> dict:
    """Turn a raw client frame into the payload broadcast to the room."""
    try:
        message = json.loads(data)
    except json.JSONDecodeError:
        message = None
    if not isinstance(message, dict):
        # Plain text (or a bare JSON scalar) becomes a chat message
        message = {"type": "message", "text": data}

    message.setdefault("type", "message")
    message["connection_id"] = connection.connection_id
    message["display_name"] = connection.display_name
    message["room_id"] = room_id
    message.setdefault("timestamp", datetime.now().isoformat())
    return message


def presence_message(event: str, connection: Connection, room_id: str, online_count: int) -> dict:
    return {
        "type": "presence",
        "event": event,
        "connection_id": connection.connection_id,
        "display_name": connection.display_name,
        "room_id": room_id,
        "timestamp": datetime.now().isoformat(),
        "online_count": online_count,
    }


@app.websocket("/rooms/{room_id}/ws")
async def websocket_endpoint(websocket: WebSocket, room_id: str, display_name: Optional[str] = None):
    """Room socket.

    Query parameters:
    - display_name: Optional display name for the user
    """
    backend: RedisBackend = websocket.app.state.redis_backend
    coordinator: BroadcastCoordinator = websocket.app.state.coordinator
    logger.info(f"WebSocket connection attempt for room: {room_id}, display_name: {display_name}")

    room = await backend.get_room(room_id)
    if not room:
        logger.info(f"WebSocket connection rejected: Room {room_id} not found")
        await websocket.close(code=1008, reason="Room not found")
        return
    if room_is_expired(room):
        logger.info(f"WebSocket connection rejected: Room {room_id} expired")
        await backend.delete_room(room_id)
        await websocket.close(code=1008, reason="Room expired")
        return
    max_users = int(room.get("max_users", DEFAULT_MAX_USERS))
    current_count = await backend.count_users_in_room(room_id)
    if current_count >= max_users:
        logger.info(f"WebSocket connection rejected: Room {room_id} is full ({current_count}/{max_users})")
        await websocket.close(code=1008, reason="Room is full")
        return

    await websocket.accept()
    name = display_name.strip() if display_name and display_name.strip() else None
    connection = Connection(websocket, display_name=name)

    try:
        await coordinator.join(room_id, connection)
        await backend.add_user_to_room(room_id, connection.connection_id, {
            "connected_at": connection.connected_at,
            "room_id": room_id,
            "display_name": connection.display_name,
        }, ttl=DEFAULT_ROOM_EXPIRY_SECONDS)

        online_users = await backend.get_online_users(room_id)
        await coordinator.send_to(connection, {
            "type": "system",
            "message": "Connected to room",
            "room_id": room_id,
            "connection_id": connection.connection_id,
            "timestamp": datetime.now().isoformat(),
            "online_users": online_users,
            "online_count": len(online_users),
        })
        await coordinator.broadcast(room_id, presence_message("user_online", connection, room_id, len(online_users)))

        while True:
            data = await websocket.receive_text()
            await coordinator.broadcast(room_id, build_chat_message(data, connection, room_id))
    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected normally for connection {connection.connection_id} in room {room_id}")
    except Exception as e:
        logger.error(f"WebSocket error for connection {connection.connection_id} in room {room_id}: {e}", exc_info=True)
    finally:
        await coordinator.disconnect(connection)
        try:
            await backend.remove_user_from_room(room_id, connection.connection_id)
            online_count = await backend.count_users_in_room(room_id)
            await coordinator.broadcast(room_id, presence_message("user_offline", connection, room_id, online_count))
        except RedisError as e:
            logger.warning(f"Could not record offline presence for {connection.connection_id}: {e}")

        if websocket.client_state == WebSocketState.CONNECTED:
            try:
                await websocket.close()
            except RuntimeError as e:
                logger.debug(f"Error closing WebSocket: {e}")
