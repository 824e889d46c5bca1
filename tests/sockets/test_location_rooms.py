import pytest

from passradar.domain.proximity.rooms import (
    JOIN_EVENT,
    LEAVE_EVENT,
    NEARBY_REQUEST_EVENT,
    LocationRoomManager,
)


def _room_traffic(socket_client):
    return [
        (event, (data or {}).get("place_id"))
        for event, data in socket_client.emitted
        if event in (JOIN_EVENT, LEAVE_EVENT)
    ]


@pytest.mark.asyncio
async def test_join_emits_join_then_requests_snapshot(connected_channel, socket_client):
    rooms = LocationRoomManager(connected_channel)

    await rooms.join("place-1")

    assert socket_client.emitted[0] == (JOIN_EVENT, {"token": "token-1", "place_id": "place-1"})
    assert socket_client.emitted[1] == (NEARBY_REQUEST_EVENT, {"token": "token-1"})
    assert rooms.is_joined
    assert rooms.membership.place_id == "place-1"


@pytest.mark.asyncio
async def test_switching_rooms_leaves_before_joining(connected_channel, socket_client):
    rooms = LocationRoomManager(connected_channel)

    await rooms.join("place-1")
    await rooms.join("place-2")

    assert _room_traffic(socket_client) == [
        (JOIN_EVENT, "place-1"),
        (LEAVE_EVENT, "place-1"),
        (JOIN_EVENT, "place-2"),
    ]
    assert rooms.membership.place_id == "place-2"


@pytest.mark.asyncio
async def test_join_same_place_twice_emits_once(connected_channel, socket_client):
    rooms = LocationRoomManager(connected_channel)

    await rooms.join("place-1")
    await rooms.join("place-1")

    assert _room_traffic(socket_client) == [(JOIN_EVENT, "place-1")]


@pytest.mark.asyncio
async def test_join_while_disconnected_is_queued_and_flushed_once(channel, socket_client):
    rooms = LocationRoomManager(channel)

    await rooms.join("place-1")
    assert socket_client.emitted == []
    assert rooms.desired_place_id == "place-1"
    assert not rooms.is_joined

    await channel.connect("token-1")

    assert _room_traffic(socket_client) == [(JOIN_EVENT, "place-1")]
    assert rooms.is_joined
    await channel.disconnect()


@pytest.mark.asyncio
async def test_rejoins_after_reconnect(connected_channel, socket_client):
    rooms = LocationRoomManager(connected_channel)
    await rooms.join("place-1")

    await socket_client.drop()
    assert rooms.membership is None
    await socket_client.open()

    assert _room_traffic(socket_client) == [(JOIN_EVENT, "place-1"), (JOIN_EVENT, "place-1")]
    assert rooms.is_joined


@pytest.mark.asyncio
async def test_leave_for_other_place_is_ignored(connected_channel, socket_client):
    rooms = LocationRoomManager(connected_channel)
    await rooms.join("place-1")

    await rooms.leave("place-9")

    assert rooms.is_joined
    assert _room_traffic(socket_client) == [(JOIN_EVENT, "place-1")]


@pytest.mark.asyncio
async def test_listeners_see_room_changes(connected_channel):
    rooms = LocationRoomManager(connected_channel)
    changes = []
    rooms.add_listener(changes.append)

    await rooms.join("place-1")
    await rooms.join("place-2")
    await rooms.leave()

    assert changes == ["place-1", "place-2", None]


@pytest.mark.asyncio
async def test_close_leaves_and_cleans_up(connected_channel, socket_client):
    rooms = LocationRoomManager(connected_channel)
    await rooms.join("place-1")

    await rooms.close()
    await rooms.close()

    assert _room_traffic(socket_client) == [(JOIN_EVENT, "place-1"), (LEAVE_EVENT, "place-1")]
    assert rooms.membership is None
    with pytest.raises(RuntimeError):
        await rooms.join("place-2")


@pytest.mark.asyncio
async def test_join_requires_place(connected_channel):
    rooms = LocationRoomManager(connected_channel)

    with pytest.raises(ValueError):
        await rooms.join("")
