"""Tests for the Redis pub/sub backplane, run against the in-memory broker."""

import asyncio

import pytest
import pytest_asyncio

from backplane import BackplaneState, RedisBackplane
from exceptions import BackplaneConnectionError, BackplaneUnavailableError
from fakes import eventually
from redis_keys import room_channel
from schemas.messages import RoomMessage


@pytest_asyncio.fixture()
async def backplane(broker):
    bp = RedisBackplane(broker.client, poll_timeout=0.01)
    received = []

    async def handler(room_id, message):
        received.append((room_id, message))

    bp.set_message_handler(handler)
    bp.received = received
    yield bp
    bp.stop()
    await bp.disconnect()


@pytest_asyncio.fixture()
async def listening(backplane):
    """Connected backplane with its listener running in a task."""
    await backplane.connect()
    await backplane.resubscribe([])
    task = asyncio.create_task(backplane.listen())
    yield backplane
    backplane.stop()
    await asyncio.wait_for(task, timeout=1.0)


def current_pubsub(broker):
    return next(iter(broker._pubsubs))


@pytest.mark.asyncio
async def test_state_transitions_through_connect_and_listen(backplane):
    assert backplane.state == BackplaneState.DISCONNECTED

    await backplane.connect()
    assert backplane.state == BackplaneState.CONNECTING
    assert backplane.connected

    await backplane.resubscribe(["lobby"])
    assert backplane.state == BackplaneState.SUBSCRIBING
    assert backplane.subscribed_rooms() == {"lobby"}

    task = asyncio.create_task(backplane.listen())
    assert await eventually(lambda: backplane.state == BackplaneState.LISTENING)

    backplane.stop()
    await asyncio.wait_for(task, timeout=1.0)
    assert backplane.state == BackplaneState.STOPPED


@pytest.mark.asyncio
async def test_connect_failure_raises_and_stays_disconnected(broker, backplane):
    broker.go_offline()

    with pytest.raises(BackplaneConnectionError):
        await backplane.connect()

    assert backplane.state == BackplaneState.DISCONNECTED
    assert not backplane.connected


@pytest.mark.asyncio
async def test_publish_while_disconnected_is_reported(backplane):
    message = RoomMessage(room_id="lobby", payload="hello")

    with pytest.raises(BackplaneUnavailableError):
        await backplane.publish("lobby", message)


@pytest.mark.asyncio
async def test_subscribe_and_unsubscribe_are_idempotent(broker, backplane):
    await backplane.connect()
    pubsub = current_pubsub(broker)

    await backplane.subscribe("lobby")
    await backplane.subscribe("lobby")
    assert pubsub.subscribe_calls == [(room_channel("lobby"),)]

    await backplane.unsubscribe("lobby")
    await backplane.unsubscribe("lobby")
    await backplane.unsubscribe("never-joined")
    assert pubsub.unsubscribe_calls == [(room_channel("lobby"),)]
    assert backplane.subscribed_rooms() == set()


@pytest.mark.asyncio
async def test_subscribe_while_disconnected_is_deferred(backplane):
    await backplane.subscribe("lobby")

    assert backplane.subscribed_rooms() == set()


@pytest.mark.asyncio
async def test_resubscribe_keeps_rooms_joined_since_connect(broker, backplane):
    await backplane.connect()
    await backplane.subscribe("arena")

    await backplane.resubscribe(["lobby"])

    assert backplane.subscribed_rooms() == {"lobby", "arena"}
    assert broker.subscriber_count(room_channel("arena")) == 1


@pytest.mark.asyncio
async def test_listener_hands_messages_to_handler(broker, listening):
    await listening.subscribe("lobby")

    await listening.publish("lobby", RoomMessage(room_id="lobby", payload={"text": "hi"}))

    assert await eventually(lambda: len(listening.received) == 1)
    room_id, message = listening.received[0]
    assert room_id == "lobby"
    assert message.payload == {"text": "hi"}


@pytest.mark.asyncio
async def test_malformed_messages_are_dropped_without_stopping_listener(broker, listening):
    await listening.subscribe("lobby")
    channel = room_channel("lobby")

    broker.deliver(channel, "{not json")
    broker.deliver(channel, '{"payload": "missing room"}')
    broker.deliver(channel, RoomMessage(room_id="arena", payload="wrong channel").to_wire())
    broker.deliver(channel, RoomMessage(room_id="lobby", payload="ok").to_wire())

    assert await eventually(lambda: len(listening.received) == 1)
    assert listening.received[0][1].payload == "ok"
    assert listening.state == BackplaneState.LISTENING


@pytest.mark.asyncio
async def test_handler_errors_do_not_stop_listener(broker, backplane):
    calls = []

    async def flaky_handler(room_id, message):
        calls.append(message.payload)
        if message.payload == "boom":
            raise ValueError("handler failed")

    backplane.set_message_handler(flaky_handler)
    await backplane.connect()
    await backplane.resubscribe(["lobby"])
    task = asyncio.create_task(backplane.listen())

    await backplane.publish("lobby", RoomMessage(room_id="lobby", payload="boom"))
    await backplane.publish("lobby", RoomMessage(room_id="lobby", payload="after"))

    assert await eventually(lambda: calls == ["boom", "after"])
    assert not task.done()
    backplane.stop()
    await asyncio.wait_for(task, timeout=1.0)


@pytest.mark.asyncio
async def test_listener_raises_on_connection_loss(broker, backplane):
    await backplane.connect()
    await backplane.resubscribe(["lobby"])
    task = asyncio.create_task(backplane.listen())
    await eventually(lambda: backplane.state == BackplaneState.LISTENING)

    broker.drop_connections()

    with pytest.raises(BackplaneConnectionError):
        await asyncio.wait_for(task, timeout=1.0)
    assert not backplane.connected

    await backplane.disconnect()
    assert backplane.state == BackplaneState.DISCONNECTED
    assert backplane.subscribed_rooms() == set()


@pytest.mark.asyncio
async def test_idle_listener_detects_dead_broker(broker, backplane):
    """With no subscriptions the listener still notices a dropped session."""
    await backplane.connect()
    await backplane.resubscribe([])
    task = asyncio.create_task(backplane.listen())

    broker.drop_connections()

    with pytest.raises(BackplaneConnectionError):
        await asyncio.wait_for(task, timeout=1.0)


@pytest.mark.asyncio
async def test_publishes_reach_broker_in_call_order(broker, backplane):
    await backplane.connect()

    await asyncio.gather(*(
        backplane.publish("lobby", RoomMessage(room_id="lobby", payload=i)) for i in range(20)
    ))

    payloads = [RoomMessage.from_wire(data).payload for _, data in broker.published]
    assert payloads == list(range(20))
