from pydantic import BaseModel, Field
from typing import Optional

from constants import DEFAULT_MAX_USERS, DEFAULT_ROOM_EXPIRY_SECONDS


class CreateRoomRequest(BaseModel):
    expiry_seconds: Optional[int] = Field(DEFAULT_ROOM_EXPIRY_SECONDS, gt=0)
    max_users: Optional[int] = Field(DEFAULT_MAX_USERS, gt=0)
    name: Optional[str] = None
    owner_name: Optional[str] = None

class CreateRoomResponse(BaseModel):
    room_id: str
    ws_url: str
    expires_at: str

class JoinRoomResponse(BaseModel):
    ws_url: str
    expires_at: str

class OnlineUser(BaseModel):
    connection_id: str
    display_name: str
    connected_at: str

class RoomDetailsResponse(BaseModel):
    room_id: str
    name: Optional[str]
    created_at: str
    expires_at: str
    max_users: int
    online_users_count: int
    local_connections: int
    online_users: Optional[list[OnlineUser]] = None
    owner_name: Optional[str]
    is_expired: bool
    is_full: bool

class HealthResponse(BaseModel):
    instance_id: str
    backplane_state: str
    broker_connected: bool
    subscribed_rooms: list[str]
    local_connections: dict[str, int]
    reconnect_attempts: int
