import asyncio

import pytest

from passradar.domain.errors import StateConflictError
from passradar.domain.social.notifications import IncomingPrompt, NotificationRouter
from passradar.domain.social.unlock import UnlockSessionManager


class RecordingPresenter:
    def __init__(self):
        self.prompts = []
        self.accepted = []
        self.expired = []

    async def present_request(self, prompt: IncomingPrompt) -> None:
        self.prompts.append(prompt)

    async def present_accepted(self, counterpart) -> None:
        self.accepted.append(counterpart.user_id)

    async def present_expired(self, counterpart) -> None:
        self.expired.append(counterpart.user_id)


class RecordingHandler:
    def __init__(self):
        self.events = []

    async def on_request_received(self, payload):
        self.events.append(("received", payload))

    async def on_request_accepted(self, payload):
        self.events.append(("accepted", payload))

    async def on_friendship_expired(self, payload):
        self.events.append(("expired", payload))


@pytest.mark.asyncio
async def test_initialize_is_idempotent_per_credential(connected_channel, fake_api):
    router = NotificationRouter(connected_channel, fake_api)

    await router.initialize("token-1")
    await router.initialize("token-1")

    assert router.initialized
    assert connected_channel.subscriber_count("friend_request_received") == 1


@pytest.mark.asyncio
async def test_new_credential_rebuilds_subscriptions(connected_channel, fake_api, make_api):
    router = NotificationRouter(connected_channel, fake_api)
    handler = RecordingHandler()
    await router.initialize("token-1")
    router.register(handler)

    await router.initialize("token-2", api=make_api("token-2"))

    assert router.credential == "token-2"
    assert router.handler is None
    assert connected_channel.subscriber_count("friend_request_accepted") == 1


@pytest.mark.asyncio
async def test_events_go_to_registered_handler(connected_channel, socket_client, fake_api):
    presenter = RecordingPresenter()
    router = NotificationRouter(connected_channel, fake_api, background=presenter)
    handler = RecordingHandler()
    await router.initialize("token-1")
    router.register(handler)

    await socket_client.push("friend_request_received", {"requester": {"user_id": "Y"}})
    await socket_client.push("friend_request_accepted", {"user": {"user_id": "B"}})
    await socket_client.push("friendship_expired", {"friend": {"user_id": "B"}})

    assert [name for name, _ in handler.events] == ["received", "accepted", "expired"]
    assert presenter.prompts == []


@pytest.mark.asyncio
async def test_register_replaces_and_clear_falls_back(connected_channel, socket_client, fake_api):
    presenter = RecordingPresenter()
    router = NotificationRouter(connected_channel, fake_api, background=presenter)
    first, second = RecordingHandler(), RecordingHandler()
    await router.initialize("token-1")

    router.register(first)
    router.register(second)
    await socket_client.push("friend_request_accepted", {"user": {"user_id": "B"}})
    router.clear(first)
    assert router.handler is second
    router.clear()
    await socket_client.push("friend_request_accepted", {"user": {"user_id": "C"}})

    assert first.events == []
    assert len(second.events) == 1
    assert presenter.accepted == ["C"]


@pytest.mark.asyncio
async def test_background_prompt_resolves_before_accepting(connected_channel, socket_client, fake_api):
    presenter = RecordingPresenter()
    router = NotificationRouter(connected_channel, fake_api, background=presenter)
    await router.initialize("token-1")
    fake_api.pending = [{"request_id": "r9", "requester": {"user_id": "Y"}}]

    await socket_client.push("friend_request_received", {"requester": {"user_id": "Y", "display_name": "Why"}})
    assert router.unread == 1
    prompt = presenter.prompts[0]
    assert prompt.counterpart.display_name == "Why"

    await prompt.accept()

    assert ("accept_request", "r9") in fake_api.calls
    assert router.unread == 0


@pytest.mark.asyncio
async def test_concurrent_prompt_actions_submit_once(connected_channel, socket_client, fake_api):
    presenter = RecordingPresenter()
    router = NotificationRouter(connected_channel, fake_api, background=presenter)
    await router.initialize("token-1")
    fake_api.pending = [{"request_id": "r9", "requester": {"user_id": "Y"}}]
    fake_api.pending_gate = asyncio.Event()

    await socket_client.push("friend_request_received", {"requester": {"user_id": "Y"}})
    await socket_client.push("friend_request_received", {"requester": {"user_id": "Z"}})
    assert router.unread == 2
    prompt = presenter.prompts[0]

    first = asyncio.create_task(prompt.accept())
    second = asyncio.create_task(prompt.accept())
    await asyncio.sleep(0)
    with pytest.raises(StateConflictError):
        await prompt.reject()
    fake_api.pending_gate.set()
    await asyncio.gather(first, second)

    assert fake_api.count("accept_request") == 1
    assert fake_api.count("reject_request") == 0
    assert router.unread == 1

    await prompt.accept()
    with pytest.raises(StateConflictError):
        await prompt.reject()
    assert fake_api.count("accept_request") == 1
    assert router.unread == 1


@pytest.mark.asyncio
async def test_new_request_from_same_user_can_be_answered_again(connected_channel, socket_client, fake_api):
    presenter = RecordingPresenter()
    router = NotificationRouter(connected_channel, fake_api, background=presenter)
    await router.initialize("token-1")
    fake_api.pending = [{"request_id": "r1", "requester": {"user_id": "Y"}}]

    await socket_client.push("friend_request_received", {"requester": {"user_id": "Y"}})
    await presenter.prompts[0].reject()
    fake_api.pending = [{"request_id": "r2", "requester": {"user_id": "Y"}}]
    await socket_client.push("friend_request_received", {"requester": {"user_id": "Y"}})
    await presenter.prompts[1].accept()

    assert ("reject_request", "r1") in fake_api.calls
    assert ("accept_request", "r2") in fake_api.calls
    assert router.unread == 0


@pytest.mark.asyncio
async def test_unread_counts_every_request(connected_channel, socket_client, fake_api):
    router = NotificationRouter(connected_channel, fake_api, background=RecordingPresenter())
    await router.initialize("token-1")
    router.register(RecordingHandler())

    await socket_client.push("friend_request_received", {"requester": {"user_id": "Y"}})
    await socket_client.push("friend_request_received", {"requester": {"user_id": "Z"}})

    assert router.unread == 2
    assert router.mark_handled() == 1
    assert router.mark_handled() == 0
    assert router.mark_handled() == 0


@pytest.mark.asyncio
async def test_refresh_unread_uses_pending_list(connected_channel, fake_api):
    router = NotificationRouter(connected_channel, fake_api)
    fake_api.pending = [
        {"request_id": "r1", "requester": {"user_id": "Y"}},
        {"request_id": "r2", "requester": {"user_id": "Z"}},
    ]

    assert await router.refresh_unread() == 2


@pytest.mark.asyncio
async def test_teardown_removes_subscriptions_and_handler(connected_channel, socket_client, fake_api):
    presenter = RecordingPresenter()
    router = NotificationRouter(connected_channel, fake_api, background=presenter)
    await router.initialize("token-1")
    router.register(RecordingHandler())

    await router.teardown()
    await socket_client.push("friend_request_received", {"requester": {"user_id": "Y"}})

    assert router.handler is None
    assert router.unread == 0
    assert presenter.prompts == []
    assert connected_channel.subscriber_count("friend_request_received") == 0


@pytest.mark.asyncio
async def test_unlock_manager_as_foreground_handler(connected_channel, socket_client, fake_api):
    router = NotificationRouter(connected_channel, fake_api)
    manager = UnlockSessionManager(fake_api, connected_channel, local_user_id="me", unlock_duration=5)
    await router.initialize("token-1")
    router.register(manager)
    try:
        await socket_client.push("friend_request_accepted", {"user": {"user_id": "B", "socials": {"ig": "@b"}}})

        assert manager.session("B").is_unlocked
    finally:
        await manager.close()
