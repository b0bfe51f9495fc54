REDIS_META_KEY = "room:meta:{slug}" # room id - hash of room metadata
REDIS_USERS_KEY = "room:users:{slug}" # room id - set of connection IDs, cluster wide
REDIS_ROOM_CHANNEL = "room:channel:{slug}" # room id - pub/sub channel name
REDIS_CONN_KEY = "conn:{connection_id}" # connection id - connection metadata

ROOM_CHANNEL_PREFIX = REDIS_ROOM_CHANNEL.split("{", 1)[0]


def room_channel(room_id: str) -> str:
    """Pub/sub channel carrying a room's traffic."""
    return REDIS_ROOM_CHANNEL.format(slug=room_id)


def room_from_channel(channel: str):
    """Inverse of room_channel(); None for channels outside the room namespace."""
    if not channel.startswith(ROOM_CHANNEL_PREFIX):
        return None
    room_id = channel[len(ROOM_CHANNEL_PREFIX):]
    return room_id or None


# **Example `room:meta:{id}` hash fields**
# - `name` = display name
# - `created_at` = ISO timestamp
# - `expires_at` = ISO timestamp (TTL on the key mirrors it)
# - `max_users` = integer
# - `owner_name`, `owner_ip`
