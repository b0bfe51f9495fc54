"""Background work that keeps the backplane connected and the registry clean.

Two long-lived tasks per process:

- the backplane task runs connect -> resubscribe -> listen, and on a lost
  session disconnects and retries with exponential backoff. Every new
  session replays the registry's active rooms into fresh subscriptions.
- the sweep task periodically prunes connections whose last send failed
  and reconciles the subscription set with the registry.
"""
import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

from backplane import BackplaneState, RedisBackplane
from connection import Connection
from constants import RECONNECT_BASE_DELAY_SECONDS, RECONNECT_MAX_DELAY_SECONDS, SWEEP_INTERVAL_SECONDS
from exceptions import BackplaneConnectionError
from logging_config import get_logger
from registry import ConnectionRegistry

logger = get_logger(__name__)

PruneCallback = Callable[[str, Connection], Awaitable[object]]


@dataclass
class Backoff:
    """Exponential backoff capped at max_delay: min(base_delay * factor**attempt, max_delay)."""

    base_delay: float = RECONNECT_BASE_DELAY_SECONDS
    max_delay: float = RECONNECT_MAX_DELAY_SECONDS
    factor: float = 2.0
    jitter: float = 0.1  # fraction of the delay added at random

    def delay(self, attempt: int) -> float:
        delay = min(self.base_delay * (self.factor ** attempt), self.max_delay)
        if self.jitter:
            delay += random.uniform(0, delay * self.jitter)
        return min(delay, self.max_delay)


class LifecycleSupervisor:
    def __init__(self, registry: ConnectionRegistry, backplane: RedisBackplane, prune: PruneCallback,
                 backoff: Optional[Backoff] = None, sweep_interval: float = SWEEP_INTERVAL_SECONDS):
        self.registry = registry
        self.backplane = backplane
        self.backoff = backoff or Backoff()
        self.sweep_interval = sweep_interval
        self._prune = prune
        self._stopping = asyncio.Event()
        self._ready = asyncio.Event()
        self._tasks: List[asyncio.Task] = []
        self.sessions = 0
        self.reconnect_attempts = 0

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self):
        if self._tasks:
            return
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._run_backplane(), name="backplane-listener"),
            asyncio.create_task(self._run_sweeper(), name="registry-sweeper"),
        ]
        logger.info("Lifecycle supervisor started")

    async def stop(self):
        self._stopping.set()
        self.backplane.stop()
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.backplane.disconnect()
        self._ready.clear()
        logger.info("Lifecycle supervisor stopped")

    async def wait_ready(self, timeout: Optional[float] = None) -> bool:
        """Wait until a broker session is connected and subscribed."""
        try:
            await asyncio.wait_for(self._ready.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def _sleep(self, delay: float):
        # Returns early when stop() is called
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _run_backplane(self):
        attempt = 0
        while not self._stopping.is_set():
            try:
                await self.backplane.connect()
                rooms = await self.registry.snapshot_active_rooms()
                await self.backplane.resubscribe(rooms)
                # Only a session that got as far as its subscriptions counts as recovered
                attempt = 0
                self.sessions += 1
                self._ready.set()
                await self.backplane.listen()
            except BackplaneConnectionError as e:
                logger.warning(f"Backplane session ended: {e}")
            except Exception as e:
                logger.error(f"Unexpected error in backplane session: {e}", exc_info=True)
            finally:
                self._ready.clear()
                await self.backplane.disconnect()

            if self._stopping.is_set():
                break
            delay = self.backoff.delay(attempt)
            attempt += 1
            self.reconnect_attempts += 1
            logger.info(f"Reconnecting to broker in {delay:.2f}s (attempt {attempt})")
            await self._sleep(delay)

    async def _run_sweeper(self):
        while not self._stopping.is_set():
            await self._sleep(self.sweep_interval)
            if self._stopping.is_set():
                break
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Registry sweep failed: {e}", exc_info=True)

    async def sweep(self) -> int:
        """Prune connections with a failed last send, then reconcile subscriptions."""
        pruned = 0
        for room_id, connection in await self.registry.failed_members():
            logger.info(f"Sweep pruning dead connection {connection.connection_id} from room {room_id}")
            await self._prune(room_id, connection)
            pruned += 1
        await self.reconcile()
        return pruned

    async def reconcile(self):
        if self.backplane.state != BackplaneState.LISTENING or not self.backplane.connected:
            return
        active = set(await self.registry.snapshot_active_rooms())
        subscribed = self.backplane.subscribed_rooms()

        for room_id in active - subscribed:
            logger.info(f"Reconcile: subscribing to active room {room_id}")
            await self.backplane.subscribe(room_id)
        for room_id in subscribed - active:
            if await self.registry.is_active(room_id):
                continue
            logger.info(f"Reconcile: unsubscribing from empty room {room_id}")
            await self.backplane.unsubscribe(room_id)
