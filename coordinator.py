"""Public API of the broadcast core: join, leave, broadcast, start/stop.

broadcast() only ever publishes to the backplane. Local sockets are written
by _deliver_local(), which the backplane listener calls for every inbound
message, including the ones this instance published itself. Writing to
local sockets here as well would deliver twice to every local member.

Fan-out runs per room: _deliver_local() only queues the message for its
room, and a short-lived worker task drains that room's queue in order. A
slow socket in one room then never delays delivery to another.
"""
import asyncio
import json
from typing import Any, Dict, Optional, Set

from backplane import RedisBackplane
from connection import Connection
from constants import INSTANCE_ID, SWEEP_INTERVAL_SECONDS
from exceptions import BackplaneUnavailableError
from logging_config import get_logger
from registry import ConnectionRegistry
from schemas.messages import RoomMessage
from supervisor import Backoff, LifecycleSupervisor

logger = get_logger(__name__)


class BroadcastCoordinator:
    def __init__(self, registry: ConnectionRegistry, backplane: RedisBackplane,
                 instance_id: str = INSTANCE_ID, backoff: Optional[Backoff] = None,
                 sweep_interval: float = SWEEP_INTERVAL_SECONDS):
        self.registry = registry
        self.backplane = backplane
        self.instance_id = instance_id
        self._fanout_queues: Dict[str, asyncio.Queue] = {}
        self._fanout_tasks: Set[asyncio.Task] = set()
        self.backplane.set_message_handler(self._deliver_local)
        self.supervisor = LifecycleSupervisor(
            registry, backplane, prune=self.drop, backoff=backoff, sweep_interval=sweep_interval,
        )

    async def start(self):
        logger.info(f"Starting broadcast coordinator on instance {self.instance_id}")
        await self.supervisor.start()

    async def stop(self):
        logger.info(f"Stopping broadcast coordinator on instance {self.instance_id}")
        await self.supervisor.stop()
        for task in list(self._fanout_tasks):
            task.cancel()
        await asyncio.gather(*self._fanout_tasks, return_exceptions=True)
        self._fanout_queues.clear()

    async def join(self, room_id: str, connection: Connection):
        """Join connection to room_id.

        A connection is in one room at a time. Joining a different room is an
        explicit switch: the connection leaves its current room first (with
        the usual unsubscribe if that room empties), then joins the new one.
        Joining the room it is already in does nothing.
        """
        current = await self.registry.room_of(connection)
        if current is not None and current != room_id:
            logger.info(f"Connection {connection.connection_id} switching from room {current} to room {room_id}")
            await self.leave(current, connection)

        first = await self.registry.add(room_id, connection)
        if first:
            logger.info(f"Room {room_id} became active on this instance, subscribing")
            await self.backplane.subscribe(room_id)
        logger.info(f"Connection {connection.connection_id} joined room {room_id}")

    async def leave(self, room_id: str, connection: Connection) -> bool:
        """Remove connection from room_id. Returns True if the room is now empty on this instance."""
        emptied = await self.registry.remove(room_id, connection)
        if not emptied:
            return False

        logger.info(f"No more local connections in room {room_id}, unsubscribing")
        await self.backplane.unsubscribe(room_id)
        # A join may have re-activated the room while we were unsubscribing
        if await self.registry.is_active(room_id):
            logger.debug(f"Room {room_id} re-activated during leave, subscribing again")
            await self.backplane.subscribe(room_id)
            return False
        return True

    async def disconnect(self, connection: Connection) -> bool:
        """Leave whatever room connection is in. Returns False if it was in none."""
        room_id = await self.registry.room_of(connection)
        if room_id is None:
            return False
        await self.leave(room_id, connection)
        logger.info(f"Connection {connection.connection_id} left room {room_id}")
        return True

    async def drop(self, room_id: str, connection: Connection):
        """Remove a connection whose send failed and close its socket."""
        logger.info(f"Cleaning up disconnected connection {connection.connection_id} from room {room_id}")
        await self.leave(room_id, connection)
        await connection.close()

    async def broadcast(self, room_id: str, payload: Any) -> bool:
        """Publish payload to every member of room_id on every instance.

        Returns False if the broker is unreachable; the message is dropped.
        """
        message = RoomMessage(room_id=room_id, payload=payload, origin=self.instance_id)
        try:
            await self.backplane.publish(room_id, message)
        except BackplaneUnavailableError as e:
            logger.warning(f"Dropped broadcast to room {room_id}: {e}")
            return False
        return True

    async def send_to(self, connection: Connection, payload: Any) -> bool:
        """Send payload to a single local connection, outside of room fan-out."""
        frame = payload if isinstance(payload, str) else json.dumps(payload)
        sent = await connection.send(frame)
        if not sent:
            room_id = await self.registry.room_of(connection)
            if room_id is not None:
                await self.drop(room_id, connection)
            else:
                await connection.close()
        return sent

    async def status(self) -> dict:
        return {
            "instance_id": self.instance_id,
            "backplane_state": self.backplane.state.value,
            "broker_connected": self.backplane.connected,
            "subscribed_rooms": sorted(self.backplane.subscribed_rooms()),
            "local_connections": await self.registry.counts(),
            "reconnect_attempts": self.supervisor.reconnect_attempts,
        }

    async def _deliver_local(self, room_id: str, message: RoomMessage):
        queue = self._fanout_queues.get(room_id)
        if queue is None:
            queue = self._fanout_queues[room_id] = asyncio.Queue()
            task = asyncio.create_task(self._drain_room(room_id, queue), name=f"fanout-{room_id}")
            self._fanout_tasks.add(task)
            task.add_done_callback(self._fanout_tasks.discard)
        queue.put_nowait(message)

    async def _drain_room(self, room_id: str, queue: asyncio.Queue):
        while not queue.empty():
            message = queue.get_nowait()
            try:
                await self._fan_out(room_id, message)
            except Exception as e:
                logger.error(f"Fan-out to room {room_id} failed: {e}", exc_info=True)
        # No await since the empty() check, so no message can be stranded
        if self._fanout_queues.get(room_id) is queue:
            del self._fanout_queues[room_id]

    async def _fan_out(self, room_id: str, message: RoomMessage):
        members = await self.registry.members(room_id)
        if not members:
            logger.debug(f"No local connections in room {room_id}, nothing to deliver")
            return

        frame = message.to_frame()
        results = await asyncio.gather(
            *(self._send_member(room_id, connection, frame) for connection in members),
            return_exceptions=True,
        )

        failed = [connection for connection, ok in zip(members, results) if ok is not True]
        if failed:
            await asyncio.gather(*(self.drop(room_id, connection) for connection in failed))
        logger.debug(f"Delivered message to {len(members) - len(failed)}/{len(members)} connections in room {room_id}")

    @staticmethod
    async def _send_member(room_id: str, connection: Connection, frame: str) -> bool:
        # Left after the member snapshot was taken: no delivery
        if connection.room_id != room_id:
            return True
        return await connection.send(frame)
