import asyncio

import pytest

from passradar.client import PassClient
from passradar.domain.errors import AuthError, LocationPermissionError, NetworkError
from passradar.domain.proximity.channel import PresenceChannel
from passradar.domain.social.models import UnlockState


class StaticLocation:
    def __init__(self, position=(48.1, 11.5), error=None):
        self.position = position
        self.error = error
        self.calls = 0

    async def current_position(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.position


@pytest.fixture
def apis(make_api):
    created = []

    def factory(credential):
        api = make_api(credential)
        created.append(api)
        return api

    factory.created = created
    return factory


@pytest.mark.asyncio
async def test_open_radar_assigns_place_and_joins_room(channel, socket_client, apis):
    client = PassClient(channel=channel, api_factory=apis)
    await client.login("token-1", "me")

    session = await client.open_radar(StaticLocation(), poll_interval=10, ping_interval=10)

    api = apis.created[0]
    assert ("assign_location", 48.1, 11.5) in api.calls
    assert session.place_id == "place-1"
    assert socket_client.events("join_location") == [{"token": "token-1", "place_id": "place-1"}]
    assert session.reconciler.active
    assert client.router.handler is session.unlock
    assert channel.consumers == 1
    await client.aclose()


@pytest.mark.asyncio
async def test_close_leaves_room_and_removes_location(channel, socket_client, apis):
    client = PassClient(channel=channel, api_factory=apis)
    await client.login("token-1", "me")
    session = await client.open_radar(StaticLocation(), poll_interval=10, ping_interval=10)

    await session.close()
    await session.close()

    api = apis.created[0]
    assert socket_client.events("leave_location") == [{"token": "token-1", "place_id": "place-1"}]
    assert api.count("remove_location") == 1
    assert client.router.handler is None
    assert channel.consumers == 0
    assert channel.is_connected()
    await client.aclose()


@pytest.mark.asyncio
async def test_remove_location_failure_does_not_block_close(channel, apis):
    client = PassClient(channel=channel, api_factory=apis)
    await client.login("token-1", "me")
    session = await client.open_radar(StaticLocation(), poll_interval=10, ping_interval=10)
    apis.created[0].remove_error = NetworkError("timeout")

    await session.close()

    assert session.closed
    await client.aclose()


@pytest.mark.asyncio
async def test_location_denied_propagates_with_remediation(channel, apis):
    client = PassClient(channel=channel, api_factory=apis)
    await client.login("token-1", "me")

    with pytest.raises(LocationPermissionError) as info:
        await client.open_radar(StaticLocation(error=LocationPermissionError(blocked=True)))

    assert info.value.remediation == "settings"
    assert apis.created[0].count("assign_location") == 0
    assert channel.consumers == 0
    await client.aclose()


@pytest.mark.asyncio
async def test_open_radar_requires_login(channel, apis):
    client = PassClient(channel=channel, api_factory=apis)

    with pytest.raises(AuthError):
        await client.open_radar(StaticLocation())


@pytest.mark.asyncio
async def test_logout_tears_everything_down(channel, socket_client, apis):
    client = PassClient(channel=channel, api_factory=apis)
    await client.login("token-1", "me")
    session = await client.open_radar(StaticLocation(), poll_interval=10, ping_interval=10)

    await client.logout()

    assert session.closed
    assert not channel.is_connected()
    assert socket_client.disconnect_calls == 1
    assert apis.created[0].closed
    assert not client.logged_in
    assert not client.router.initialized


@pytest.mark.asyncio
async def test_login_survives_unreachable_channel_and_polls(make_socket_client, apis, make_user):
    channel = PresenceChannel(
        url="http://testserver",
        client_factory=lambda: make_socket_client(fail_with="Connection refused"),
    )
    client = PassClient(channel=channel, api_factory=apis)
    await client.login("token-1", "me")
    api = apis.created[0]
    api.nearby_users = [make_user("A"), make_user("me")]

    session = await client.open_radar(StaticLocation(), poll_interval=0.02, ping_interval=10)
    await asyncio.sleep(0.05)

    assert [user.id for user in session.users] == ["A"]
    await client.aclose()


@pytest.mark.asyncio
async def test_rejected_channel_credential_fails_login(make_socket_client, apis):
    channel = PresenceChannel(
        url="http://testserver",
        client_factory=lambda: make_socket_client(fail_with="unauthorized"),
    )
    client = PassClient(channel=channel, api_factory=apis)

    with pytest.raises(AuthError):
        await client.login("bad", "me")

    assert not client.logged_in


@pytest.mark.asyncio
async def test_poll_auth_error_closes_radar_session(make_socket_client, apis):
    channel = PresenceChannel(
        url="http://testserver",
        client_factory=lambda: make_socket_client(fail_with="Connection refused"),
    )
    client = PassClient(channel=channel, api_factory=apis)
    await client.login("token-1", "me")
    apis.created[0].nearby_error = AuthError("expired")

    session = await client.open_radar(StaticLocation(), poll_interval=0.02, ping_interval=10)
    await asyncio.sleep(0.1)

    assert session.closed
    assert session.reconciler.fatal_error is not None
    await client.aclose()


@pytest.mark.asyncio
async def test_dropped_channel_falls_back_to_polling_and_unlocks_waiting_pass(channel, socket_client, apis, make_user):
    client = PassClient(channel=channel, api_factory=apis)
    await client.login("token-1", "me")
    session = await client.open_radar(StaticLocation(), poll_interval=0.02, ping_interval=10, unlock_duration=5)
    api = apis.created[0]
    await asyncio.sleep(0.05)
    assert api.count("fetch_nearby") == 0

    pass_session = await session.unlock.send_request("B")
    assert pass_session.state is UnlockState.WAITING
    api.nearby_users = [make_user("B", socials={"instagram": "@bee"})]
    await socket_client.drop()

    for _ in range(50):
        if pass_session.state is UnlockState.UNLOCKED:
            break
        await asyncio.sleep(0.01)

    assert not channel.is_connected()
    assert api.count("fetch_nearby") >= 1
    assert pass_session.state is UnlockState.UNLOCKED
    assert pass_session.visible_socials() == {"instagram": "@bee"}
    assert [user.id for user in session.users] == ["B"]
    await client.aclose()
