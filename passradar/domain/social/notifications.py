"""Route pass notifications to whoever is currently showing them."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

from pydantic import ValidationError

from passradar.domain.errors import PassError, StateConflictError
from passradar.domain.proximity.channel import PresenceChannel
from passradar.domain.social.models import CounterpartSummary
from passradar.domain.social.requests import RequestIdResolver
from passradar.domain.social.schemas import FriendshipExpiredEvent, RequestAcceptedEvent, RequestReceivedEvent
from passradar.domain.social.unlock import (
	FRIENDSHIP_EXPIRED_EVENT,
	REQUEST_ACCEPTED_EVENT,
	REQUEST_RECEIVED_EVENT,
)
from passradar.infra.api import RadarApi
from passradar.infra.tasks import cancel_task
from passradar.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)


class NotificationHandler(Protocol):
	"""Foreground consumer; UnlockSessionManager implements this."""

	async def on_request_received(self, payload: Any) -> Any: ...

	async def on_request_accepted(self, payload: Any) -> Any: ...

	async def on_friendship_expired(self, payload: Any) -> Any: ...


@dataclass(slots=True)
class IncomingPrompt:
	counterpart: CounterpartSummary
	message: Optional[str] = None
	_accept: Optional[Callable[[], Awaitable[None]]] = field(default=None, repr=False)
	_reject: Optional[Callable[[], Awaitable[None]]] = field(default=None, repr=False)

	async def accept(self) -> None:
		if self._accept is not None:
			await self._accept()

	async def reject(self) -> None:
		if self._reject is not None:
			await self._reject()


class BackgroundPresenter(Protocol):
	async def present_request(self, prompt: IncomingPrompt) -> None: ...

	async def present_accepted(self, counterpart: CounterpartSummary) -> None: ...

	async def present_expired(self, counterpart: CounterpartSummary) -> None: ...


class LogPresenter:
	"""Default background presenter: log and leave the request pending."""

	async def present_request(self, prompt: IncomingPrompt) -> None:
		logger.info("pass received from user=%s (no active handler)", prompt.counterpart.user_id)

	async def present_accepted(self, counterpart: CounterpartSummary) -> None:
		logger.info("pass accepted by user=%s (no active handler)", counterpart.user_id)

	async def present_expired(self, counterpart: CounterpartSummary) -> None:
		logger.info("connection with user=%s expired (no active handler)", counterpart.user_id)


class NotificationRouter:
	"""Single-slot router for request, accept and expiry pushes.

	With a registered handler every event goes to it; otherwise the
	background presenter gets the event, incoming requests as an
	:class:`IncomingPrompt` whose actions resolve the request id first.
	"""

	def __init__(
		self,
		channel: PresenceChannel,
		api: Optional[RadarApi] = None,
		*,
		background: Optional[BackgroundPresenter] = None,
	) -> None:
		self._channel = channel
		self._api = api
		self._resolver: Optional[RequestIdResolver] = RequestIdResolver(api) if api is not None else None
		self._background: BackgroundPresenter = background or LogPresenter()
		self._handler: Optional[NotificationHandler] = None
		self._credential: Optional[str] = None
		self._subscribed = False
		self._unread = 0
		self._actions: Dict[str, tuple[str, asyncio.Task]] = {}
		self._handled: Dict[str, str] = {}

	@property
	def credential(self) -> Optional[str]:
		return self._credential

	@property
	def handler(self) -> Optional[NotificationHandler]:
		return self._handler

	@property
	def unread(self) -> int:
		return self._unread

	@property
	def initialized(self) -> bool:
		return self._subscribed

	async def initialize(self, credential: str, *, api: Optional[RadarApi] = None) -> None:
		if self._subscribed and credential == self._credential:
			logger.debug("notification router already initialised")
			return
		if self._subscribed:
			logger.info("notification router credential changed, rebuilding")
			await self.teardown()
		if api is not None:
			self._api = api
			self._resolver = RequestIdResolver(api)
		self._credential = credential
		self._channel.on(REQUEST_RECEIVED_EVENT, self._on_request_received)
		self._channel.on(REQUEST_ACCEPTED_EVENT, self._on_request_accepted)
		self._channel.on(FRIENDSHIP_EXPIRED_EVENT, self._on_friendship_expired)
		self._subscribed = True

	def register(self, handler: NotificationHandler) -> None:
		if self._handler is not None and self._handler is not handler:
			logger.debug("notification handler replaced")
		self._handler = handler

	def clear(self, handler: Optional[NotificationHandler] = None) -> None:
		"""Drop the active handler; with ``handler`` only if it is the active one."""
		if handler is not None and handler is not self._handler:
			return
		self._handler = None

	async def teardown(self) -> None:
		if self._subscribed:
			self._channel.off(REQUEST_RECEIVED_EVENT, self._on_request_received)
			self._channel.off(REQUEST_ACCEPTED_EVENT, self._on_request_accepted)
			self._channel.off(FRIENDSHIP_EXPIRED_EVENT, self._on_friendship_expired)
		self._subscribed = False
		self._handler = None
		self._credential = None
		actions = [task for _, task in self._actions.values()]
		self._actions.clear()
		self._handled.clear()
		for task in actions:
			await cancel_task(task)
		if self._resolver is not None:
			await self._resolver.close()
		self._set_unread(0)

	# -- unread --------------------------------------------------------------------

	async def refresh_unread(self) -> int:
		if self._api is None:
			return self._unread
		pending = await self._api.pending_requests()
		self._set_unread(len(pending.requests))
		return self._unread

	def mark_handled(self) -> int:
		self._set_unread(max(0, self._unread - 1))
		return self._unread

	def _set_unread(self, value: int) -> None:
		self._unread = value
		obs_metrics.NOTIFICATIONS_UNREAD.set(value)

	# -- dispatch ------------------------------------------------------------------

	async def _on_request_received(self, payload: Any) -> None:
		self._set_unread(self._unread + 1)
		handler = self._handler
		if handler is not None:
			obs_metrics.NOTIFICATIONS_ROUTED.labels(event=REQUEST_RECEIVED_EVENT, target="handler").inc()
			await handler.on_request_received(payload)
			return
		try:
			event = RequestReceivedEvent.model_validate(payload or {})
		except ValidationError:
			logger.warning("malformed friend_request_received payload ignored")
			return
		counterpart = CounterpartSummary.from_payload(event.requester)
		if counterpart is None:
			return
		obs_metrics.NOTIFICATIONS_ROUTED.labels(event=REQUEST_RECEIVED_EVENT, target="background").inc()
		if self._resolver is not None:
			self._resolver.forget(counterpart.user_id)
		self._handled.pop(counterpart.user_id, None)
		await self._background.present_request(self._prompt(counterpart, event.message))

	async def _on_request_accepted(self, payload: Any) -> None:
		handler = self._handler
		if handler is not None:
			obs_metrics.NOTIFICATIONS_ROUTED.labels(event=REQUEST_ACCEPTED_EVENT, target="handler").inc()
			await handler.on_request_accepted(payload)
			return
		try:
			event = RequestAcceptedEvent.model_validate(payload or {})
		except ValidationError:
			logger.warning("malformed friend_request_accepted payload ignored")
			return
		counterpart = CounterpartSummary.from_payload(event.user)
		if counterpart is None:
			return
		obs_metrics.NOTIFICATIONS_ROUTED.labels(event=REQUEST_ACCEPTED_EVENT, target="background").inc()
		await self._background.present_accepted(counterpart)

	async def _on_friendship_expired(self, payload: Any) -> None:
		handler = self._handler
		if handler is not None:
			obs_metrics.NOTIFICATIONS_ROUTED.labels(event=FRIENDSHIP_EXPIRED_EVENT, target="handler").inc()
			await handler.on_friendship_expired(payload)
			return
		try:
			event = FriendshipExpiredEvent.model_validate(payload or {})
		except ValidationError:
			logger.warning("malformed friendship_expired payload ignored")
			return
		counterpart = CounterpartSummary.from_payload(event.friend)
		if counterpart is None:
			return
		obs_metrics.NOTIFICATIONS_ROUTED.labels(event=FRIENDSHIP_EXPIRED_EVENT, target="background").inc()
		await self._background.present_expired(counterpart)

	def _prompt(self, counterpart: CounterpartSummary, message: Optional[str]) -> IncomingPrompt:
		cid = counterpart.user_id

		async def _accept() -> None:
			await self._act(cid, "accept")

		async def _reject() -> None:
			await self._act(cid, "reject")

		return IncomingPrompt(counterpart=counterpart, message=message, _accept=_accept, _reject=_reject)

	async def _act(self, counterpart_id: str, action: str) -> None:
		"""Run ``action`` for the counterpart's request at most once.

		A repeat of the running or finished action joins it; the other
		action raises :class:`StateConflictError`.
		"""
		if self._api is None or self._resolver is None:
			raise PassError("not_initialized")
		running = self._actions.get(counterpart_id)
		if running is not None and not running[1].done():
			if running[0] != action:
				raise StateConflictError("action_in_flight")
			await asyncio.shield(running[1])
			return
		handled = self._handled.get(counterpart_id)
		if handled is not None:
			if handled != action:
				raise StateConflictError("already_handled")
			logger.debug("%s already submitted for user=%s", action, counterpart_id)
			return
		task = asyncio.create_task(self._submit(counterpart_id, action), name=f"prompt-{action}:{counterpart_id}")
		self._actions[counterpart_id] = (action, task)
		try:
			await asyncio.shield(task)
		finally:
			if task.done() and self._actions.get(counterpart_id, (None, None))[1] is task:
				self._actions.pop(counterpart_id, None)

	async def _submit(self, counterpart_id: str, action: str) -> None:
		request_id = await self._resolver.resolve(counterpart_id)
		try:
			if action == "accept":
				await self._api.accept_request(request_id)
			else:
				await self._api.reject_request(request_id)
		except PassError:
			obs_metrics.REQUEST_ACTIONS.labels(action=action, result="error").inc()
			raise
		obs_metrics.REQUEST_ACTIONS.labels(action=action, result="ok").inc()
		self._handled[counterpart_id] = action
		self._resolver.forget(counterpart_id)
		self.mark_handled()


__all__ = [
	"NotificationRouter",
	"NotificationHandler",
	"BackgroundPresenter",
	"IncomingPrompt",
	"LogPresenter",
]
