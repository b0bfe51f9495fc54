import json
from typing import Optional

from logging_config import get_logger
from redis_keys import REDIS_CONN_KEY, REDIS_META_KEY, REDIS_USERS_KEY

logger = get_logger(__name__)


class RedisBackend:
    """Room metadata and cluster-wide online users, shared by all instances.

    Socket membership itself lives in each instance's ConnectionRegistry;
    this store only backs the HTTP API (room details, capacity checks).
    """

    def __init__(self, redis_client):
        self.redis_client = redis_client

    async def ping(self):
        return await self.redis_client.ping()

    async def close(self):
        await self.redis_client.aclose()

    async def create_room(self, room_id: str, room_data: dict, ttl: int = 600):
        logger.info(f"Creating room {room_id} with TTL {ttl} seconds")
        key = REDIS_META_KEY.format(slug=room_id)
        # Redis hashes hold strings only; None values are skipped
        mapping = {}
        for k, v in room_data.items():
            if v is None:
                continue
            mapping[k] = json.dumps(v) if isinstance(v, (dict, list)) else str(v)
        await self.redis_client.hset(key, mapping=mapping)
        if ttl:
            await self.redis_client.expire(key, ttl)
        return room_id

    async def get_room(self, room_id: str) -> Optional[dict]:
        key = REDIS_META_KEY.format(slug=room_id)
        room_data = await self.redis_client.hgetall(key)
        if not room_data:
            logger.debug(f"Room {room_id} not found in Redis")
            return None
        result = {}
        for k, v in room_data.items():
            try:
                result[k] = json.loads(v)
            except (json.JSONDecodeError, TypeError):
                result[k] = v
        return result

    async def delete_room(self, room_id: str):
        logger.info(f"Deleting room {room_id}")
        await self.redis_client.delete(
            REDIS_META_KEY.format(slug=room_id),
            REDIS_USERS_KEY.format(slug=room_id),
        )
        return True

    async def add_user_to_room(self, room_id: str, connection_id: str, user_data: Optional[dict] = None, ttl: int = 600):
        """Record connection_id as online in room_id, with optional metadata."""
        users_key = REDIS_USERS_KEY.format(slug=room_id)
        await self.redis_client.sadd(users_key, connection_id)
        if ttl:
            await self.redis_client.expire(users_key, ttl)

        if user_data:
            conn_key = REDIS_CONN_KEY.format(connection_id=connection_id)
            await self.redis_client.hset(conn_key, mapping={k: str(v) for k, v in user_data.items()})
            if ttl:
                await self.redis_client.expire(conn_key, ttl)
        logger.debug(f"User {connection_id} recorded online in room {room_id}")
        return True

    async def remove_user_from_room(self, room_id: str, connection_id: str):
        await self.redis_client.srem(REDIS_USERS_KEY.format(slug=room_id), connection_id)
        await self.redis_client.delete(REDIS_CONN_KEY.format(connection_id=connection_id))
        logger.debug(f"User {connection_id} removed from room {room_id}")
        return True

    async def count_users_in_room(self, room_id: str) -> int:
        return await self.redis_client.scard(REDIS_USERS_KEY.format(slug=room_id))

    async def get_online_users(self, room_id: str) -> list:
        users = []
        for conn_id in await self.redis_client.smembers(REDIS_USERS_KEY.format(slug=room_id)):
            conn_data = await self.redis_client.hgetall(REDIS_CONN_KEY.format(connection_id=conn_id))
            if conn_data and "display_name" in conn_data:
                users.append({
                    "connection_id": conn_id,
                    "display_name": conn_data["display_name"],
                    "connected_at": conn_data.get("connected_at", ""),
                })
        return users
