"""Process-local room membership.

Each instance only knows about the sockets it accepted itself; the broker
relays traffic between instances. Every read and write goes through the
lock so a join/leave never races a fan-out into a half-updated set.
"""
import asyncio
from typing import Dict, List, Optional, Set, Tuple

from connection import Connection
from exceptions import RoomMembershipError
from logging_config import get_logger

logger = get_logger(__name__)


class ConnectionRegistry:
    def __init__(self):
        # Format: {room_id: {connection, ...}}
        self._rooms: Dict[str, Set[Connection]] = {}
        self._lock = asyncio.Lock()

    async def add(self, room_id: str, connection: Connection) -> bool:
        """Add connection to room_id. Returns True if it is the room's first local member."""
        async with self._lock:
            if connection.room_id is not None and connection.room_id != room_id:
                raise RoomMembershipError(connection.connection_id, connection.room_id, room_id)

            members = self._rooms.get(room_id)
            if members is not None and connection in members:
                logger.debug(f"Connection {connection.connection_id} already in room {room_id}")
                return False

            first = members is None
            if first:
                members = self._rooms[room_id] = set()
            members.add(connection)
            connection.room_id = room_id
            logger.debug(f"Added connection {connection.connection_id} to room {room_id} (local connections: {len(members)})")
            return first

    async def remove(self, room_id: str, connection: Connection) -> bool:
        """Remove connection from room_id. Returns True if the room is now empty locally."""
        async with self._lock:
            members = self._rooms.get(room_id)
            if not members or connection not in members:
                return False

            members.discard(connection)
            connection.room_id = None
            logger.debug(f"Removed connection {connection.connection_id} from room {room_id} (local connections: {len(members)})")
            if members:
                return False
            del self._rooms[room_id]
            return True

    async def members(self, room_id: str) -> List[Connection]:
        async with self._lock:
            return list(self._rooms.get(room_id, ()))

    async def snapshot_active_rooms(self) -> List[str]:
        async with self._lock:
            return list(self._rooms)

    async def room_of(self, connection: Connection) -> Optional[str]:
        async with self._lock:
            return connection.room_id

    async def is_active(self, room_id: str) -> bool:
        async with self._lock:
            return room_id in self._rooms

    async def failed_members(self) -> List[Tuple[str, Connection]]:
        async with self._lock:
            return [
                (room_id, conn)
                for room_id, members in self._rooms.items()
                for conn in members
                if conn.send_failed
            ]

    async def count(self, room_id: str) -> int:
        async with self._lock:
            return len(self._rooms.get(room_id, ()))

    async def counts(self) -> Dict[str, int]:
        async with self._lock:
            return {room_id: len(members) for room_id, members in self._rooms.items()}
