import asyncio
import inspect
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
import socketio

from passradar.domain.errors import PassError
from passradar.domain.proximity.channel import PresenceChannel
from passradar.domain.proximity.schemas import NearbyResponse
from passradar.domain.social.schemas import PendingRequest, PendingRequestsResponse, SendRequestResponse
from passradar.obs.logging import clear_context
from passradar.settings import settings


class FakeSocketClient:
	"""Stands in for socketio.AsyncClient; tests drive server pushes by hand."""

	def __init__(self, *, fail_with: Optional[str] = None) -> None:
		self.handlers: Dict[str, Any] = {}
		self.emitted: List[tuple] = []
		self.connect_calls: List[dict] = []
		self.disconnect_calls = 0
		self.connected = False
		self.fail_with = fail_with

	def on(self, event: str, handler: Any = None) -> None:
		self.handlers[event] = handler

	async def connect(self, url: str, auth: Optional[dict] = None, wait_timeout: Optional[float] = None) -> None:
		self.connect_calls.append({"url": url, "auth": auth, "wait_timeout": wait_timeout})
		if self.fail_with is not None:
			raise socketio.exceptions.ConnectionError(self.fail_with)
		await self.open()

	async def disconnect(self) -> None:
		self.disconnect_calls += 1
		if self.connected:
			self.connected = False
			await self._call("disconnect", "io client disconnect")

	async def emit(self, event: str, data: Any = None) -> None:
		self.emitted.append((event, data))

	# -- test helpers --------------------------------------------------------------

	async def open(self) -> None:
		self.connected = True
		await self._call("connect")

	async def drop(self, reason: str = "transport close") -> None:
		self.connected = False
		await self._call("disconnect", reason)

	async def push(self, event: str, payload: Any = None) -> None:
		handler = self.handlers.get("*")
		result = handler(event, payload)
		if inspect.isawaitable(result):
			await result

	def events(self, name: str) -> List[Any]:
		return [data for event, data in self.emitted if event == name]

	async def _call(self, event: str, *args: Any) -> None:
		handler = self.handlers.get(event)
		if handler is None:
			return
		result = handler(*args)
		if inspect.isawaitable(result):
			await result


class FakeApi:
	"""In-memory RadarApi double recording every call."""

	def __init__(self, credential: str = "token-1") -> None:
		self.credential = credential
		self.calls: List[tuple] = []
		self.place_id = "place-1"
		self.nearby_users: List[dict] = []
		self.nearby_error: Optional[PassError] = None
		self.send_error: Optional[PassError] = None
		self.send_request_id: Optional[str] = "out-1"
		self.send_gate: Optional[asyncio.Event] = None
		self.pending: List[dict] = []
		self.pending_error: Optional[PassError] = None
		self.pending_gate: Optional[asyncio.Event] = None
		self.action_error: Optional[PassError] = None
		self.remove_error: Optional[PassError] = None
		self.photos: Dict[str, Optional[str]] = {}
		self.closed = False

	def count(self, name: str) -> int:
		return sum(1 for call in self.calls if call[0] == name)

	async def assign_location(self, latitude: float, longitude: float) -> str:
		self.calls.append(("assign_location", latitude, longitude))
		return self.place_id

	async def remove_location(self) -> None:
		self.calls.append(("remove_location",))
		if self.remove_error is not None:
			raise self.remove_error

	async def fetch_nearby(self) -> NearbyResponse:
		self.calls.append(("fetch_nearby",))
		if self.nearby_error is not None:
			raise self.nearby_error
		return NearbyResponse(success=True, users=list(self.nearby_users))

	async def send_request(self, target_user_id: str) -> SendRequestResponse:
		self.calls.append(("send_request", target_user_id))
		if self.send_gate is not None:
			await self.send_gate.wait()
		if self.send_error is not None:
			raise self.send_error
		return SendRequestResponse(request_id=self.send_request_id)

	async def pending_requests(self) -> PendingRequestsResponse:
		self.calls.append(("pending_requests",))
		if self.pending_gate is not None:
			await self.pending_gate.wait()
		if self.pending_error is not None:
			raise self.pending_error
		return PendingRequestsResponse(requests=[PendingRequest.model_validate(item) for item in self.pending])

	async def accept_request(self, request_id: str) -> dict:
		self.calls.append(("accept_request", request_id))
		if self.action_error is not None:
			raise self.action_error
		return {"success": True}

	async def reject_request(self, request_id: str) -> dict:
		self.calls.append(("reject_request", request_id))
		if self.action_error is not None:
			raise self.action_error
		return {"success": True}

	async def user_photo(self, user_id: str) -> Optional[str]:
		self.calls.append(("user_photo", user_id))
		await asyncio.sleep(0)
		return self.photos.get(user_id)

	async def my_photo(self) -> Optional[str]:
		self.calls.append(("my_photo",))
		return self.photos.get("me")

	async def aclose(self) -> None:
		self.closed = True


def user_record(user_id: str, **extra: Any) -> dict:
	record = {"user_id": user_id, "display_name": f"User {user_id}"}
	record.update(extra)
	return record


@pytest.fixture(autouse=True)
def force_test_settings():
	original_poll = settings.poll_interval_seconds
	original_ping = settings.ping_interval_seconds
	settings.poll_interval_seconds = 0.05
	settings.ping_interval_seconds = 0.05
	try:
		yield
	finally:
		settings.poll_interval_seconds = original_poll
		settings.ping_interval_seconds = original_ping
		clear_context()


@pytest.fixture
def socket_client():
	return FakeSocketClient()


@pytest.fixture
def channel(socket_client):
	return PresenceChannel(url="http://testserver", client_factory=lambda: socket_client)


@pytest_asyncio.fixture
async def connected_channel(channel):
	await channel.connect("token-1")
	try:
		yield channel
	finally:
		await channel.disconnect()


@pytest.fixture
def fake_api():
	return FakeApi()


@pytest.fixture
def make_user():
	return user_record


@pytest.fixture
def make_socket_client():
	return FakeSocketClient


@pytest.fixture
def make_api():
	return FakeApi
