from datetime import datetime, timedelta
from typing import Optional
import uuid

from fastapi import APIRouter, Depends, HTTPException, Request, status

from backend import RedisBackend
from constants import DEFAULT_MAX_USERS, DEFAULT_ROOM_EXPIRY_SECONDS
from coordinator import BroadcastCoordinator
from logging_config import get_logger
from schemas.rooms import CreateRoomRequest, CreateRoomResponse, JoinRoomResponse, OnlineUser, RoomDetailsResponse

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])


def get_redis_backend(request: Request) -> RedisBackend:
    return request.app.state.redis_backend


def get_coordinator(request: Request) -> BroadcastCoordinator:
    return request.app.state.coordinator


def build_ws_url(base_url: str, room_id: str) -> str:
    ws_base = str(base_url).rstrip('/').replace("http://", "ws://").replace("https://", "wss://")
    return f"{ws_base}/rooms/{room_id}/ws"


def room_is_expired(room: dict, now: Optional[datetime] = None) -> bool:
    expires_at = room.get("expires_at")
    if not expires_at:
        return False
    try:
        expires_datetime = datetime.fromisoformat(str(expires_at).replace('Z', '+00:00'))
    except ValueError:
        # Unparseable expiry: rely on the key TTL instead
        return False
    if expires_datetime.tzinfo is not None:
        expires_datetime = expires_datetime.replace(tzinfo=None)
    return expires_datetime < (now or datetime.now())


def client_host(request: Request) -> str:
    return request.client.host if request.client else "unknown"


@rooms_router.post("/", response_model=CreateRoomResponse, status_code=status.HTTP_201_CREATED)
async def create_room(room: CreateRoomRequest, request: Request, backend: RedisBackend = Depends(get_redis_backend)):
    logger.info(f"Room creation request from {client_host(request)}, name: {room.name}, max_users: {room.max_users}")
    expiry_seconds = room.expiry_seconds or DEFAULT_ROOM_EXPIRY_SECONDS
    max_users = room.max_users or DEFAULT_MAX_USERS
    room_id = uuid.uuid4().hex
    name = room.name or f"room-{room_id[:8]}"
    created_at = datetime.now()
    expires_at = (created_at + timedelta(seconds=expiry_seconds)).isoformat()

    await backend.create_room(room_id, {
        "name": name,
        "max_users": max_users,
        "created_at": created_at.isoformat(),
        "expires_at": expires_at,
        "owner_ip": client_host(request),
        "owner_name": room.owner_name,
    }, ttl=expiry_seconds)

    logger.info(f"Room {room_id} created: name={name}, expires_at={expires_at}, max_users={max_users}")
    return CreateRoomResponse(
        room_id=room_id,
        ws_url=build_ws_url(request.base_url, room_id),
        expires_at=expires_at,
    )


@rooms_router.post("/{room_id}/join", response_model=JoinRoomResponse)
async def join_room(room_id: str, request: Request, backend: RedisBackend = Depends(get_redis_backend)):
    """Check that room_id can be joined and return its WebSocket URL.

    The connection is only added to the room once the WebSocket is open.
    """
    room = await backend.get_room(room_id)
    if not room:
        logger.warning(f"Join room failed: Room {room_id} not found")
        raise HTTPException(status_code=404, detail="Room not found")

    if room_is_expired(room):
        logger.warning(f"Join room failed: Room {room_id} expired")
        await backend.delete_room(room_id)
        raise HTTPException(status_code=410, detail="Room expired")

    max_users = int(room.get("max_users", DEFAULT_MAX_USERS))
    current_count = await backend.count_users_in_room(room_id)
    if current_count >= max_users:
        logger.warning(f"Join room failed: Room {room_id} is full ({current_count}/{max_users})")
        raise HTTPException(status_code=403, detail="Room is full")

    return JoinRoomResponse(
        ws_url=build_ws_url(request.base_url, room_id),
        expires_at=str(room.get("expires_at", "")),
    )


@rooms_router.get("/{room_id}", response_model=RoomDetailsResponse)
async def get_room_details(
    room_id: str,
    include_users: bool = False,
    backend: RedisBackend = Depends(get_redis_backend),
    coordinator: BroadcastCoordinator = Depends(get_coordinator),
):
    """Room metadata plus online users.

    online_users_count is cluster wide; local_connections counts only the
    sockets held by the instance that served this request.
    """
    room = await backend.get_room(room_id)
    if not room:
        raise HTTPException(status_code=404, detail="Room not found")

    is_expired = room_is_expired(room)
    if is_expired:
        logger.info(f"Room {room_id} is expired, deleting it")
        await backend.delete_room(room_id)

    online_users_count = await backend.count_users_in_room(room_id)
    max_users = int(room.get("max_users", DEFAULT_MAX_USERS))
    online_users = None
    if include_users:
        online_users = [OnlineUser(**user) for user in await backend.get_online_users(room_id)]

    name = room.get("name")
    owner_name = room.get("owner_name")
    return RoomDetailsResponse(
        room_id=room_id,
        name=str(name) if name is not None else None,
        created_at=str(room.get("created_at", "")),
        expires_at=str(room.get("expires_at", "")),
        max_users=max_users,
        online_users_count=online_users_count,
        local_connections=await coordinator.registry.count(room_id),
        online_users=online_users,
        owner_name=str(owner_name) if owner_name is not None else None,
        is_expired=is_expired,
        is_full=online_users_count >= max_users,
    )


@rooms_router.post("/{room_id}/close")
async def close_room(
    room_id: str,
    request: Request,
    backend: RedisBackend = Depends(get_redis_backend),
    coordinator: BroadcastCoordinator = Depends(get_coordinator),
):
    room = await backend.get_room(room_id)
    if not room:
        raise HTTPException(status_code=404, detail="Room not found")

    if room.get("owner_ip") != client_host(request):
        logger.warning(f"Close room failed: {client_host(request)} is not the owner of room {room_id}")
        raise HTTPException(status_code=403, detail="You are not the owner of the room")

    await backend.delete_room(room_id)
    delivered = await coordinator.broadcast(room_id, {
        "type": "system",
        "event": "room_closed",
        "message": "Room has been closed by owner",
        "room_id": room_id,
        "timestamp": datetime.now().isoformat(),
    })
    logger.info(f"Room {room_id} closed by owner {client_host(request)}")
    return {"message": "Room closed successfully", "notified": delivered}
