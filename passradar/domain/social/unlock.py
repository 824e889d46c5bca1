"""Pass request and unlock-session state machine.

Sessions move ``locked -> waiting -> unlocked -> expired``; ``rejected`` and
``failed`` are terminal. A session reaches ``unlocked`` through one of:

- the server answering a send with "already friends",
- a pushed ``friend_request_accepted`` for the counterpart,
- the nearby poll showing the counterpart's socials unlocked while waiting,
- the local user accepting the counterpart's incoming request.

Entering ``unlocked`` starts a countdown owned by the manager. When it ends
the socials are discarded and expiry listeners fire so the caller can return
to discovery. An expired session never unlocks again from carried or polled
socials; it needs a fresh accepted request.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import ValidationError

from passradar.domain.errors import (
	AlreadyFriends,
	AlreadySent,
	AuthError,
	PassError,
	ResolutionError,
	StateConflictError,
)
from passradar.domain.proximity.channel import PresenceChannel
from passradar.domain.proximity.models import NearbyUser
from passradar.domain.social.models import (
	ConnectionRequest,
	CounterpartSummary,
	RequestDirection,
	RequestState,
	UnlockSession,
	UnlockState,
)
from passradar.domain.social.requests import RequestIdResolver
from passradar.domain.social.schemas import FriendshipExpiredEvent, RequestAcceptedEvent, RequestReceivedEvent
from passradar.infra.api import RadarApi
from passradar.infra.tasks import cancel_task
from passradar.obs import metrics as obs_metrics
from passradar.settings import settings

logger = logging.getLogger(__name__)

REQUEST_RECEIVED_EVENT = "friend_request_received"
REQUEST_ACCEPTED_EVENT = "friend_request_accepted"
FRIENDSHIP_EXPIRED_EVENT = "friendship_expired"

_UNLOCKABLE = (UnlockState.LOCKED, UnlockState.WAITING)

Target = Union[CounterpartSummary, NearbyUser, str]
SessionListener = Callable[[UnlockSession], None]


class UnlockSessionManager:
	def __init__(
		self,
		api: RadarApi,
		channel: Optional[PresenceChannel] = None,
		*,
		local_user_id: Optional[str],
		resolver: Optional[RequestIdResolver] = None,
		unlock_duration: Optional[float] = None,
		countdown_tick: Optional[float] = None,
	) -> None:
		self._api = api
		self._channel = channel
		self.local_user_id = str(local_user_id) if local_user_id else None
		self._resolver = resolver or RequestIdResolver(api)
		self.unlock_duration = float(unlock_duration or settings.unlock_duration_seconds)
		self.countdown_tick = float(countdown_tick or settings.countdown_tick_seconds)
		self._sessions: Dict[str, UnlockSession] = {}
		self._requests: Dict[str, ConnectionRequest] = {}
		self._countdowns: Dict[str, asyncio.Task] = {}
		self._actions: Dict[str, tuple[str, asyncio.Task]] = {}
		self._listeners: List[SessionListener] = []
		self._expiry_listeners: List[SessionListener] = []
		self._subscribed = False
		self._closed = False

	# -- read side -----------------------------------------------------------------

	def session(self, counterpart_id: str) -> Optional[UnlockSession]:
		return self._sessions.get(counterpart_id)

	def incoming_request(self, counterpart_id: str) -> Optional[ConnectionRequest]:
		return self._requests.get(counterpart_id)

	def pending_incoming(self) -> List[ConnectionRequest]:
		return [req for req in self._requests.values() if req.state is RequestState.PENDING]

	def add_listener(self, listener: SessionListener) -> None:
		if listener not in self._listeners:
			self._listeners.append(listener)

	def on_expired(self, listener: SessionListener) -> None:
		if listener not in self._expiry_listeners:
			self._expiry_listeners.append(listener)

	# -- push wiring ---------------------------------------------------------------

	def subscribe(self) -> None:
		"""Listen to request events straight from the channel.

		Use this only when no NotificationRouter delivers them, otherwise
		events arrive twice.
		"""
		if self._subscribed or self._channel is None:
			return
		self._channel.on(REQUEST_RECEIVED_EVENT, self.on_request_received)
		self._channel.on(REQUEST_ACCEPTED_EVENT, self.on_request_accepted)
		self._channel.on(FRIENDSHIP_EXPIRED_EVENT, self.on_friendship_expired)
		self._subscribed = True

	def unsubscribe(self) -> None:
		if not self._subscribed or self._channel is None:
			return
		self._channel.off(REQUEST_RECEIVED_EVENT, self.on_request_received)
		self._channel.off(REQUEST_ACCEPTED_EVENT, self.on_request_accepted)
		self._channel.off(FRIENDSHIP_EXPIRED_EVENT, self.on_friendship_expired)
		self._subscribed = False

	async def on_request_received(self, payload: Any) -> Optional[ConnectionRequest]:
		try:
			event = RequestReceivedEvent.model_validate(payload or {})
		except ValidationError:
			logger.warning("malformed friend_request_received payload ignored")
			return None
		summary = CounterpartSummary.from_payload(event.requester)
		if summary is None or summary.user_id == self.local_user_id:
			return None
		return self.receive_request(summary)

	async def on_request_accepted(self, payload: Any) -> Optional[UnlockSession]:
		try:
			event = RequestAcceptedEvent.model_validate(payload or {})
		except ValidationError:
			logger.warning("malformed friend_request_accepted payload ignored")
			return None
		summary = CounterpartSummary.from_payload(event.user)
		if summary is None:
			return None
		return await self.handle_remote_accept(summary)

	async def on_friendship_expired(self, payload: Any) -> Optional[UnlockSession]:
		try:
			event = FriendshipExpiredEvent.model_validate(payload or {})
		except ValidationError:
			logger.warning("malformed friendship_expired payload ignored")
			return None
		summary = CounterpartSummary.from_payload(event.friend)
		if summary is None:
			return None
		session = self._sessions.get(summary.user_id)
		if session is None or session.state is not UnlockState.UNLOCKED:
			return session
		self._expire(session, reason="server")
		return session

	# -- outgoing ------------------------------------------------------------------

	def open_session(self, target: Target) -> UnlockSession:
		"""Return the live session for ``target``, creating a locked one if needed.

		A target that already carries unlocked socials unlocks right away,
		unless its previous session expired.
		"""
		summary = self._summary(target)
		session = self._sessions.get(summary.user_id)
		if session is not None and session.state in (UnlockState.WAITING, UnlockState.UNLOCKED, UnlockState.EXPIRED):
			return session
		session = self._new_session(summary)
		if summary.has_unlocked_socials:
			self._enter_unlocked(session, summary.socials)
		return session

	async def send_request(self, target: Target) -> UnlockSession:
		if not self.local_user_id or not self._api.credential:
			raise AuthError("not_authenticated")
		summary = self._summary(target)
		cid = summary.user_id
		session = self._sessions.get(cid)
		if session is not None and session.state in (UnlockState.WAITING, UnlockState.UNLOCKED):
			logger.debug("send_request skipped counterpart=%s state=%s", cid, session.state.value)
			return session
		session = self._new_session(summary)
		session.request = ConnectionRequest(
			counterpart_id=cid,
			counterpart=summary,
			direction=RequestDirection.OUTGOING,
		)
		self._transition(session, UnlockState.WAITING)
		try:
			response = await self._api.send_request(cid)
		except AlreadyFriends:
			logger.info("pass target already connected counterpart=%s", cid)
			carried = summary.socials if summary.has_unlocked_socials else None
			await self._unlock(session, carried)
			return session
		except AlreadySent:
			logger.info("pass already sent counterpart=%s; waiting for response", cid)
			return session
		except AuthError as exc:
			self._abort(session, exc.reason, UnlockState.FAILED)
			raise
		except PassError as exc:
			self._abort(session, exc.reason, UnlockState.LOCKED)
			raise
		if session.request is not None and response.request_id:
			session.request.request_id = response.request_id
		logger.info("pass sent counterpart=%s request=%s", cid, response.request_id)
		return session

	async def handle_remote_accept(self, summary: CounterpartSummary) -> UnlockSession:
		session = self._sessions.get(summary.user_id)
		if session is not None and session.state is UnlockState.UNLOCKED:
			return session
		if session is None or session.state not in _UNLOCKABLE:
			session = self._new_session(summary)
		else:
			session.counterpart = summary
		carried = summary.socials if summary.has_unlocked_socials else None
		await self._unlock(session, carried)
		return session

	def observe_nearby(self, users: tuple[NearbyUser, ...]) -> None:
		"""Reconciler listener: unlock waiting sessions whose socials showed up."""
		for user in users:
			session = self._sessions.get(user.id)
			if session is None or not user.has_unlocked_socials:
				continue
			if session.state is UnlockState.WAITING:
				logger.info("poll found counterpart already unlocked counterpart=%s", user.id)
				self._enter_unlocked(session, user.socials)
			elif session.state is UnlockState.UNLOCKED and not session.socials:
				session.socials = dict(user.socials)
				self._notify(session)

	# -- incoming ------------------------------------------------------------------

	def receive_request(self, summary: CounterpartSummary) -> ConnectionRequest:
		cid = summary.user_id
		request = ConnectionRequest(
			counterpart_id=cid,
			counterpart=summary,
			direction=RequestDirection.INCOMING,
		)
		previous = self._requests.get(cid)
		if previous is not None and previous.state is RequestState.PENDING:
			logger.debug("incoming request replaces pending one counterpart=%s", cid)
		self._requests[cid] = request
		self._resolver.forget(cid)
		self._start_resolution(request)
		logger.info("incoming pass counterpart=%s", cid)
		return request

	def retry_resolution(self, counterpart_id: str) -> Optional[asyncio.Task]:
		request = self._requests.get(counterpart_id)
		if request is None or request.state is not RequestState.PENDING or request.resolved:
			return None
		request.actionable = True
		return self._start_resolution(request)

	def _start_resolution(self, request: ConnectionRequest) -> asyncio.Task:
		task = self._resolver.prefetch(request.counterpart_id)

		def _resolved(finished: asyncio.Task) -> None:
			if self._requests.get(request.counterpart_id) is not request or finished.cancelled():
				return
			exc = finished.exception()
			if exc is None:
				request.request_id = finished.result()
				request.actionable = True
			elif isinstance(exc, ResolutionError):
				request.actionable = False

		task.add_done_callback(_resolved)
		return task

	async def accept(self, counterpart_id: str) -> UnlockSession:
		await self._run_action(counterpart_id, "accept")
		return self._sessions[counterpart_id]

	async def reject(self, counterpart_id: str) -> ConnectionRequest:
		await self._run_action(counterpart_id, "reject")
		return self._requests[counterpart_id]

	async def _run_action(self, counterpart_id: str, action: str) -> None:
		running = self._actions.get(counterpart_id)
		if running is not None and not running[1].done():
			if running[0] != action:
				raise StateConflictError("action_in_flight")
			await asyncio.shield(running[1])
			return
		request = self._requests.get(counterpart_id)
		if request is None or request.state is not RequestState.PENDING:
			raise ResolutionError("no_pending_request")
		if not request.actionable:
			raise ResolutionError("unresolved")
		task = asyncio.create_task(self._perform(request, action), name=f"pass-{action}:{counterpart_id}")
		self._actions[counterpart_id] = (action, task)
		try:
			await asyncio.shield(task)
		finally:
			if task.done() and self._actions.get(counterpart_id, (None, None))[1] is task:
				self._actions.pop(counterpart_id, None)

	async def _perform(self, request: ConnectionRequest, action: str) -> None:
		cid = request.counterpart_id
		try:
			request_id = request.request_id or await self._resolver.resolve(cid)
		except ResolutionError:
			request.actionable = False
			obs_metrics.REQUEST_ACTIONS.labels(action=action, result="unresolved").inc()
			raise
		request.request_id = request_id
		request.actionable = True
		try:
			if action == "accept":
				await self._api.accept_request(request_id)
			else:
				await self._api.reject_request(request_id)
		except PassError as exc:
			obs_metrics.REQUEST_ACTIONS.labels(action=action, result="error").inc()
			logger.warning("%s pass failed counterpart=%s: %s", action, cid, exc.reason)
			raise
		obs_metrics.REQUEST_ACTIONS.labels(action=action, result="ok").inc()
		if action == "reject":
			request.state = RequestState.REJECTED
			session = self._sessions.get(cid)
			if session is None or session.state is not UnlockState.UNLOCKED:
				session = self._new_session(request.counterpart)
				self._transition(session, UnlockState.REJECTED)
			logger.info("pass rejected counterpart=%s", cid)
			return
		request.state = RequestState.ACCEPTED
		session = self._sessions.get(cid)
		if session is None or session.state not in _UNLOCKABLE:
			session = self._new_session(request.counterpart)
		session.request = request
		carried = request.counterpart.socials if request.counterpart.has_unlocked_socials else None
		await self._unlock(session, carried)
		logger.info("pass accepted counterpart=%s", cid)

	# -- transitions ---------------------------------------------------------------

	def _summary(self, target: Target) -> CounterpartSummary:
		if isinstance(target, CounterpartSummary):
			summary = target
		elif isinstance(target, NearbyUser):
			summary = CounterpartSummary.from_nearby(target)
		elif isinstance(target, str) and target:
			summary = CounterpartSummary(user_id=target)
		else:
			raise ValueError("target id is required")
		if not summary.user_id:
			raise ValueError("target id is required")
		return summary

	def _is_current(self, session: UnlockSession) -> bool:
		return self._sessions.get(session.counterpart_id) is session

	def _new_session(self, summary: CounterpartSummary) -> UnlockSession:
		cid = summary.user_id
		self._stop_countdown(cid)
		session = UnlockSession(
			counterpart_id=cid,
			counterpart=summary,
			remaining_seconds=math.ceil(self.unlock_duration),
		)
		self._sessions[cid] = session
		return session

	async def _unlock(self, session: UnlockSession, socials: Optional[Dict[str, str]]) -> None:
		if socials is None:
			try:
				socials = await self._fetch_socials(session.counterpart_id)
			except AuthError as exc:
				self._abort(session, exc.reason, UnlockState.FAILED)
				raise
			except Exception:
				self._abort(session, "socials_unavailable", UnlockState.LOCKED)
				raise
		if not self._is_current(session) or session.state not in _UNLOCKABLE:
			return
		self._enter_unlocked(session, socials)

	def _abort(self, session: UnlockSession, reason: str, state: UnlockState) -> None:
		"""Settle a session that cannot unlock so a later send starts over."""
		if not self._is_current(session) or session.state not in _UNLOCKABLE:
			return
		session.error = reason
		self._transition(session, state)

	async def _fetch_socials(self, counterpart_id: str) -> Dict[str, str]:
		try:
			response = await self._api.fetch_nearby()
		except AuthError:
			raise
		except PassError as exc:
			logger.warning("socials refresh failed counterpart=%s: %s", counterpart_id, exc.reason)
			return {}
		for raw in response.users:
			summary = CounterpartSummary.from_payload(raw)
			if summary is not None and summary.user_id == counterpart_id and summary.has_unlocked_socials:
				return dict(summary.socials)
		return {}

	def _enter_unlocked(self, session: UnlockSession, socials: Dict[str, str]) -> None:
		session.socials = dict(socials)
		session.error = None
		session.unlocked_at = time.time()
		session.remaining_seconds = math.ceil(self.unlock_duration)
		if session.request is not None:
			session.request.state = RequestState.ACCEPTED
		self._transition(session, UnlockState.UNLOCKED)
		self._start_countdown(session)

	def _start_countdown(self, session: UnlockSession) -> None:
		cid = session.counterpart_id
		self._stop_countdown(cid)
		self._countdowns[cid] = asyncio.create_task(self._countdown(session), name=f"unlock-countdown:{cid}")

	def _stop_countdown(self, counterpart_id: str) -> None:
		task = self._countdowns.pop(counterpart_id, None)
		if task is not None and not task.done() and task is not asyncio.current_task():
			task.cancel()

	async def _countdown(self, session: UnlockSession) -> None:
		loop = asyncio.get_running_loop()
		deadline = loop.time() + self.unlock_duration
		while True:
			remaining = deadline - loop.time()
			if remaining <= 0:
				break
			await asyncio.sleep(min(self.countdown_tick, remaining))
			session.remaining_seconds = max(0, math.ceil(deadline - loop.time()))
		if self._countdowns.get(session.counterpart_id) is asyncio.current_task():
			self._countdowns.pop(session.counterpart_id, None)
		if self._is_current(session) and session.state is UnlockState.UNLOCKED:
			self._expire(session, reason="timer")

	def _expire(self, session: UnlockSession, *, reason: str) -> None:
		self._stop_countdown(session.counterpart_id)
		session.socials = {}
		session.remaining_seconds = 0
		if session.request is not None:
			session.request.state = RequestState.EXPIRED
		self._transition(session, UnlockState.EXPIRED)
		logger.info("unlock expired counterpart=%s reason=%s", session.counterpart_id, reason)
		for listener in list(self._expiry_listeners):
			try:
				listener(session)
			except Exception:
				logger.exception("unlock expiry listener failed")

	def _transition(self, session: UnlockSession, state: UnlockState) -> None:
		if session.state is state:
			return
		session.state = state
		obs_metrics.unlock_transition(state.value)
		self._notify(session)

	def _notify(self, session: UnlockSession) -> None:
		for listener in list(self._listeners):
			try:
				listener(session)
			except Exception:
				logger.exception("unlock session listener failed")

	# -- teardown ------------------------------------------------------------------

	async def close(self) -> None:
		if self._closed:
			return
		self._closed = True
		self.unsubscribe()
		countdowns = list(self._countdowns.values())
		self._countdowns.clear()
		actions = [task for _, task in self._actions.values()]
		self._actions.clear()
		for task in countdowns + actions:
			await cancel_task(task)
		await self._resolver.close()
		self._listeners.clear()
		self._expiry_listeners.clear()


__all__ = [
	"UnlockSessionManager",
	"REQUEST_RECEIVED_EVENT",
	"REQUEST_ACCEPTED_EVENT",
	"FRIENDSHIP_EXPIRED_EVENT",
]
