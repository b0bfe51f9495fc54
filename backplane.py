"""Redis pub/sub backplane.

Every instance publishes room traffic to `room:channel:{room_id}` and
subscribes to the channels of the rooms it has local members in. The
listener below is the only code path that hands inbound messages to local
sockets, so a message is delivered once per member whether the publisher
lives in this process or another one.

Messages published while the broker connection is down are lost for this
instance; the supervisor reconnects and replays the active room set.
"""
import asyncio
from enum import Enum
from typing import Awaitable, Callable, Iterable, Optional, Set

from pydantic import ValidationError
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from constants import PUBSUB_POLL_TIMEOUT_SECONDS
from exceptions import BackplaneConnectionError, BackplaneUnavailableError
from logging_config import get_logger
from redis_keys import room_channel, room_from_channel
from schemas.messages import RoomMessage

logger = get_logger(__name__)

# Errors that mean the broker session itself is gone
CONNECTION_ERRORS = (RedisConnectionError, RedisTimeoutError, OSError)

MessageHandler = Callable[[str, RoomMessage], Awaitable[None]]


class BackplaneState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SUBSCRIBING = "subscribing"
    LISTENING = "listening"
    STOPPED = "stopped"


class RedisBackplane:
    def __init__(self, redis_factory: Callable, poll_timeout: float = PUBSUB_POLL_TIMEOUT_SECONDS):
        """
        redis_factory: zero-argument callable returning a fresh redis.asyncio.Redis
        client. A new client is built for every broker session.
        """
        self._redis_factory = redis_factory
        self.poll_timeout = poll_timeout
        self._redis = None
        self._pubsub = None
        self._rooms: Set[str] = set()
        self._handler: Optional[MessageHandler] = None
        self._state = BackplaneState.DISCONNECTED
        self._session_lost = False
        # Guards the pub/sub handle and the subscription set
        self._lock = asyncio.Lock()
        # Keeps one instance's publishes in call order
        self._publish_lock = asyncio.Lock()

    @property
    def state(self) -> BackplaneState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._redis is not None and not self._session_lost

    def _set_state(self, state: BackplaneState):
        if state == self._state:
            return
        logger.info(f"Backplane state {self._state.value} -> {state.value}")
        self._state = state

    def _mark_lost(self, error: Exception):
        if not self._session_lost:
            logger.warning(f"Broker connection lost: {error!r}")
        self._session_lost = True

    def set_message_handler(self, handler: MessageHandler):
        self._handler = handler

    def subscribed_rooms(self) -> Set[str]:
        return set(self._rooms)

    async def connect(self):
        if self._state == BackplaneState.STOPPED:
            raise BackplaneConnectionError("Backplane is stopped")

        self._set_state(BackplaneState.CONNECTING)
        client = self._redis_factory()
        try:
            await client.ping()
        except (RedisError, OSError) as e:
            await self._close_quietly(client)
            if self._state != BackplaneState.STOPPED:
                self._set_state(BackplaneState.DISCONNECTED)
            raise BackplaneConnectionError(f"Could not connect to broker: {e}") from e

        async with self._lock:
            self._redis = client
            self._pubsub = client.pubsub(ignore_subscribe_messages=True)
            self._rooms = set()
            self._session_lost = False
        logger.info("Backplane connected to broker")

    async def resubscribe(self, room_ids: Iterable[str]):
        """Subscribe to every room in room_ids after a (re)connect."""
        self._set_state(BackplaneState.SUBSCRIBING)
        async with self._lock:
            if self._pubsub is None:
                raise BackplaneConnectionError("resubscribe() called before connect()")
            # Rooms joined between connect() and now are already in self._rooms
            targets = set(room_ids) | self._rooms
            if targets:
                try:
                    await self._pubsub.subscribe(*[room_channel(room_id) for room_id in targets])
                except CONNECTION_ERRORS as e:
                    self._mark_lost(e)
                    raise BackplaneConnectionError(f"Resubscribe failed: {e}") from e
            self._rooms = targets
        logger.info(f"Backplane subscribed to {len(targets)} active rooms")

    async def subscribe(self, room_id: str):
        async with self._lock:
            if room_id in self._rooms:
                return
            if self._pubsub is None or self._session_lost:
                logger.debug(f"Broker down, subscription to room {room_id} waits for reconnect")
                return
            try:
                await self._pubsub.subscribe(room_channel(room_id))
            except CONNECTION_ERRORS as e:
                self._mark_lost(e)
                return
            self._rooms.add(room_id)
        logger.debug(f"Subscribed to channel {room_channel(room_id)}")

    async def unsubscribe(self, room_id: str):
        async with self._lock:
            if room_id not in self._rooms:
                return
            self._rooms.discard(room_id)
            if self._pubsub is None or self._session_lost:
                return
            try:
                await self._pubsub.unsubscribe(room_channel(room_id))
            except CONNECTION_ERRORS as e:
                self._mark_lost(e)
                return
        logger.debug(f"Unsubscribed from channel {room_channel(room_id)}")

    async def publish(self, room_id: str, message: RoomMessage) -> int:
        """Publish message on the room's channel. Returns the broker's receiver count."""
        channel = room_channel(room_id)
        async with self._publish_lock:
            client = self._redis
            if client is None or self._session_lost:
                raise BackplaneUnavailableError(f"Broker connection is down, dropping message for room {room_id}")
            try:
                receivers = await client.publish(channel, message.to_wire())
            except CONNECTION_ERRORS as e:
                self._mark_lost(e)
                raise BackplaneUnavailableError(f"Publish to {channel} failed: {e}") from e
            except RedisError as e:
                raise BackplaneUnavailableError(f"Publish to {channel} failed: {e}") from e
        logger.debug(f"Published message to room {room_id} channel {channel}, {receivers} subscribers")
        return receivers

    async def listen(self):
        """Read loop for the current broker session.

        Returns when the backplane is stopped; raises BackplaneConnectionError
        when the session is lost.
        """
        if self._pubsub is None:
            raise BackplaneConnectionError("listen() called before connect()")
        self._set_state(BackplaneState.LISTENING)

        while self._state == BackplaneState.LISTENING:
            if self._session_lost:
                raise BackplaneConnectionError("Broker connection lost")
            try:
                if not self._pubsub.subscribed:
                    # Nothing to read; keep probing so an idle session notices a dead broker
                    await self._redis.ping()
                    await asyncio.sleep(self.poll_timeout)
                    continue
                raw = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=self.poll_timeout)
            except CONNECTION_ERRORS as e:
                self._mark_lost(e)
                raise BackplaneConnectionError(f"Broker connection lost: {e}") from e

            if raw is None:
                continue
            await self._dispatch(raw)

        logger.info("Backplane listener stopped")

    async def _dispatch(self, raw: dict):
        if raw.get("type") != "message":
            return

        channel = raw.get("channel")
        if isinstance(channel, bytes):
            channel = channel.decode("utf-8", errors="replace")
        room_id = room_from_channel(channel or "")
        if room_id is None:
            logger.warning(f"Dropping message from unexpected channel {channel!r}")
            return

        try:
            message = RoomMessage.from_wire(raw.get("data"))
        except ValidationError as e:
            logger.error(f"Dropping malformed message on channel {channel}: {e}")
            return
        if message.room_id != room_id:
            logger.error(f"Dropping message for room {message.room_id} received on channel {channel}")
            return

        if self._handler is None:
            logger.warning(f"No message handler registered, dropping message for room {room_id}")
            return
        try:
            await self._handler(room_id, message)
        except Exception as e:
            logger.error(f"Error delivering message for room {room_id}: {e}", exc_info=True)

    async def disconnect(self):
        async with self._lock:
            pubsub, client = self._pubsub, self._redis
            self._pubsub = None
            self._redis = None
            self._rooms = set()
            self._session_lost = False
        if pubsub is not None:
            await self._close_quietly(pubsub)
        if client is not None:
            await self._close_quietly(client)
        if self._state != BackplaneState.STOPPED:
            self._set_state(BackplaneState.DISCONNECTED)

    def stop(self):
        self._set_state(BackplaneState.STOPPED)

    @staticmethod
    async def _close_quietly(resource):
        try:
            await resource.aclose()
        except (RedisError, OSError) as e:
            logger.debug(f"Error closing broker resource: {e!r}")
