"""Shared fixtures: an in-memory broker and coordinators built on top of it.

Each coordinator built by `make_instance` is a simulated server process
with its own registry and backplane, relaying through the shared broker.
Timings are shrunk so reconnects and sweeps happen within a test run.
"""

import pytest
import pytest_asyncio

from backplane import RedisBackplane
from coordinator import BroadcastCoordinator
from fakes import FakeBroker
from registry import ConnectionRegistry
from supervisor import Backoff

FAST_BACKOFF = dict(base_delay=0.01, max_delay=0.05, jitter=0)


@pytest.fixture()
def broker():
    return FakeBroker()


@pytest_asyncio.fixture()
async def make_instance(broker):
    """Factory for started coordinators; all are stopped after the test."""
    instances = []

    async def _make(instance_id="instance-1", sweep_interval=60.0, start=True, backoff=None):
        coordinator = BroadcastCoordinator(
            ConnectionRegistry(),
            RedisBackplane(broker.client, poll_timeout=0.01),
            instance_id=instance_id,
            backoff=backoff or Backoff(**FAST_BACKOFF),
            sweep_interval=sweep_interval,
        )
        instances.append(coordinator)
        if start:
            await coordinator.start()
            assert await coordinator.supervisor.wait_ready(timeout=2.0)
        return coordinator

    yield _make

    for coordinator in instances:
        await coordinator.stop()


@pytest_asyncio.fixture()
async def instance(make_instance):
    return await make_instance()
