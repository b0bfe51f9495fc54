"""Tests for the process-local connection registry."""

import asyncio

import pytest

from connection import Connection
from exceptions import RoomMembershipError
from fakes import FakeSocket
from registry import ConnectionRegistry


def make_connection():
    return Connection(FakeSocket())


@pytest.mark.asyncio
async def test_add_reports_first_member_only():
    registry = ConnectionRegistry()
    c1, c2 = make_connection(), make_connection()

    assert await registry.add("lobby", c1) is True
    assert await registry.add("lobby", c2) is False
    assert set(await registry.members("lobby")) == {c1, c2}
    assert c1.room_id == "lobby"


@pytest.mark.asyncio
async def test_add_same_room_twice_is_noop():
    registry = ConnectionRegistry()
    c1 = make_connection()

    await registry.add("lobby", c1)
    assert await registry.add("lobby", c1) is False
    assert await registry.count("lobby") == 1


@pytest.mark.asyncio
async def test_add_to_second_room_violates_single_membership():
    """A connection already in a room cannot be added to another one."""
    registry = ConnectionRegistry()
    c1 = make_connection()
    await registry.add("lobby", c1)

    with pytest.raises(RoomMembershipError) as exc_info:
        await registry.add("arena", c1)

    assert exc_info.value.current_room == "lobby"
    assert await registry.room_of(c1) == "lobby"
    assert await registry.snapshot_active_rooms() == ["lobby"]


@pytest.mark.asyncio
async def test_remove_reports_room_emptied():
    registry = ConnectionRegistry()
    c1, c2 = make_connection(), make_connection()
    await registry.add("lobby", c1)
    await registry.add("lobby", c2)

    assert await registry.remove("lobby", c1) is False
    assert await registry.remove("lobby", c2) is True
    assert await registry.snapshot_active_rooms() == []
    assert await registry.is_active("lobby") is False
    assert c2.room_id is None


@pytest.mark.asyncio
async def test_remove_non_member_is_false():
    registry = ConnectionRegistry()
    assert await registry.remove("lobby", make_connection()) is False


@pytest.mark.asyncio
async def test_members_returns_snapshot_copy():
    registry = ConnectionRegistry()
    c1 = make_connection()
    await registry.add("lobby", c1)

    members = await registry.members("lobby")
    members.clear()

    assert await registry.members("lobby") == [c1]
    assert await registry.members("nowhere") == []


@pytest.mark.asyncio
async def test_failed_members_lists_only_failed_sends():
    registry = ConnectionRegistry()
    healthy, dead = make_connection(), make_connection()
    await registry.add("lobby", healthy)
    await registry.add("arena", dead)
    dead.send_failed = True

    assert await registry.failed_members() == [("arena", dead)]


@pytest.mark.asyncio
async def test_concurrent_adds_have_exactly_one_first_member():
    registry = ConnectionRegistry()
    connections = [make_connection() for _ in range(50)]

    results = await asyncio.gather(*(registry.add("lobby", c) for c in connections))

    assert results.count(True) == 1
    assert await registry.counts() == {"lobby": 50}
