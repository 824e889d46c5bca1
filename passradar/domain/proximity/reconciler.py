"""Single source of truth for the nearby-user set.

Three writers feed the set: full snapshots pushed by the server
(``nearby_users``), incremental enter/leave deltas (``location_update``) and
the HTTP poll fallback. Every writer builds a complete new tuple and hands it
to :meth:`PresenceReconciler._commit`, which swaps it in one step on the event
loop, so readers never observe a partial replace and the latest completed
write wins.

Polling only runs while push is inactive, meaning the channel is
disconnected or the room is not joined on the current connection. The poll
loop re-checks that condition on every tick, so polling resumes within one
interval of a disconnect and stops within one interval of a reconnect.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, List, Optional, Tuple

from pydantic import ValidationError

from passradar.domain.errors import AuthError, PassError
from passradar.domain.proximity.channel import CONNECT, DISCONNECT, PresenceChannel
from passradar.domain.proximity.models import NearbyUser, build_nearby_user, build_nearby_users
from passradar.domain.proximity.rooms import LocationRoomManager
from passradar.domain.proximity.schemas import LocationUpdateEvent, NearbySnapshotEvent
from passradar.infra.api import RadarApi
from passradar.infra.tasks import PeriodicTask, StopPeriodic
from passradar.obs import metrics as obs_metrics
from passradar.settings import settings

logger = logging.getLogger(__name__)

NEARBY_USERS_EVENT = "nearby_users"
LOCATION_UPDATE_EVENT = "location_update"
PING_EVENT = "ping"

NearbySet = Tuple[NearbyUser, ...]
ChangeListener = Callable[[NearbySet], None]
AuthErrorListener = Callable[[AuthError], None]


class PresenceReconciler:
    def __init__(
        self,
        channel: PresenceChannel,
        rooms: LocationRoomManager,
        api: RadarApi,
        *,
        local_user_id: Optional[str],
        poll_interval: Optional[float] = None,
        ping_interval: Optional[float] = None,
    ) -> None:
        self._channel = channel
        self._rooms = rooms
        self._api = api
        self.local_user_id = str(local_user_id) if local_user_id else None
        self.poll_interval = poll_interval or settings.poll_interval_seconds
        self._users: NearbySet = ()
        self._version = 0
        self._active = False
        self._fatal: Optional[AuthError] = None
        self._change_listeners: List[ChangeListener] = []
        self._auth_listeners: List[AuthErrorListener] = []
        self._poll = PeriodicTask("presence-poll", self._poll_once, interval=lambda: self.poll_interval)
        self._ping = PeriodicTask(
            "presence-ping",
            self._ping_once,
            interval=ping_interval or settings.ping_interval_seconds,
        )
        self.poll_fetches = 0

    # -- read side -----------------------------------------------------------------

    @property
    def users(self) -> NearbySet:
        return self._users

    @property
    def version(self) -> int:
        return self._version

    @property
    def active(self) -> bool:
        return self._active

    @property
    def fatal_error(self) -> Optional[AuthError]:
        return self._fatal

    @property
    def push_active(self) -> bool:
        return self._channel.is_connected() and self._rooms.is_joined

    def get(self, user_id: str) -> Optional[NearbyUser]:
        for user in self._users:
            if user.id == user_id:
                return user
        return None

    def add_listener(self, listener: ChangeListener) -> None:
        if listener not in self._change_listeners:
            self._change_listeners.append(listener)

    def remove_listener(self, listener: ChangeListener) -> None:
        if listener in self._change_listeners:
            self._change_listeners.remove(listener)

    def on_auth_error(self, listener: AuthErrorListener) -> None:
        if listener not in self._auth_listeners:
            self._auth_listeners.append(listener)

    # -- lifecycle -----------------------------------------------------------------

    async def start(self) -> None:
        if self._active:
            return
        self._active = True
        self._fatal = None
        self._channel.on(NEARBY_USERS_EVENT, self._on_snapshot)
        self._channel.on(LOCATION_UPDATE_EVENT, self._on_incremental)
        self._channel.on(CONNECT, self._on_connect)
        self._channel.on(DISCONNECT, self._on_disconnect)
        self._rooms.add_listener(self._on_room_change)
        self._poll.start()
        if self._channel.is_connected():
            self._ping.start()
        logger.info("presence reconciler started push_active=%s", self.push_active)

    async def stop(self, *, leave_room: bool = True) -> None:
        """Stop timers, drop subscriptions, leave the room and clear the set.

        The channel connection itself stays up for other consumers.
        """
        if not self._active:
            return
        self._active = False
        try:
            await self._poll.stop()
            await self._ping.stop()
        finally:
            self._channel.off(NEARBY_USERS_EVENT, self._on_snapshot)
            self._channel.off(LOCATION_UPDATE_EVENT, self._on_incremental)
            self._channel.off(CONNECT, self._on_connect)
            self._channel.off(DISCONNECT, self._on_disconnect)
            self._rooms.remove_listener(self._on_room_change)
            if leave_room:
                try:
                    await self._rooms.leave()
                except Exception:
                    logger.warning("room leave during reconciler stop failed", exc_info=True)
            self._commit((), source="stop")
        logger.info("presence reconciler stopped")

    # -- writers -------------------------------------------------------------------

    def _accepts_place(self, place_id: Optional[str]) -> bool:
        if not self._active:
            return False
        current = self._rooms.desired_place_id
        if current is None:
            return False
        return place_id is None or place_id == current

    def _on_snapshot(self, payload: Any) -> None:
        try:
            event = NearbySnapshotEvent.model_validate(payload or {})
        except ValidationError:
            logger.warning("malformed nearby_users payload ignored")
            obs_metrics.PRESENCE_UPDATES.labels(source="snapshot", result="invalid").inc()
            return
        if not self._accepts_place(event.place_id):
            logger.debug("stale nearby_users ignored place=%s", event.place_id)
            obs_metrics.PRESENCE_UPDATES.labels(source="snapshot", result="stale").inc()
            return
        self._commit(build_nearby_users(event.users, exclude_id=self.local_user_id), source="snapshot")

    def _on_incremental(self, payload: Any) -> None:
        try:
            event = LocationUpdateEvent.model_validate(payload or {})
        except ValidationError:
            logger.warning("malformed location_update payload ignored")
            obs_metrics.PRESENCE_UPDATES.labels(source="incremental", result="invalid").inc()
            return
        if not self._accepts_place(event.place_id):
            obs_metrics.PRESENCE_UPDATES.labels(source="incremental", result="stale").inc()
            return
        user = build_nearby_user(event.user)
        kind = event.kind
        if user is None or kind is None or user.id == self.local_user_id:
            obs_metrics.PRESENCE_UPDATES.labels(source="incremental", result="ignored").inc()
            return
        if kind == "left":
            if self.get(user.id) is None:
                return
            self._commit(tuple(u for u in self._users if u.id != user.id), source="incremental")
            return
        if self.get(user.id) is not None:
            updated = tuple(user if u.id == user.id else u for u in self._users)
        else:
            updated = self._users + (user,)
        self._commit(updated, source="incremental")

    async def _poll_once(self) -> None:
        if not self._active or self._fatal is not None:
            raise StopPeriodic()
        if self.push_active:
            return
        place_id = self._rooms.desired_place_id
        if place_id is None:
            return
        self.poll_fetches += 1
        try:
            response = await self._api.fetch_nearby()
        except AuthError as exc:
            obs_metrics.POLL_FETCHES.labels(result="auth_error").inc()
            logger.warning("nearby poll rejected credential; stopping poll")
            self._fatal = exc
            self._notify_auth(exc)
            raise StopPeriodic() from exc
        except PassError as exc:
            obs_metrics.POLL_FETCHES.labels(result="error").inc()
            logger.warning("nearby poll failed: %s", exc.reason)
            return
        obs_metrics.POLL_FETCHES.labels(result="ok").inc()
        if not self._active or self._rooms.desired_place_id != place_id:
            obs_metrics.PRESENCE_UPDATES.labels(source="poll", result="stale").inc()
            return
        if not response.success:
            return
        self._commit(build_nearby_users(response.users, exclude_id=self.local_user_id), source="poll")

    def _commit(self, users: NearbySet, *, source: str) -> None:
        self._users = tuple(users)
        self._version += 1
        obs_metrics.PRESENCE_UPDATES.labels(source=source, result="applied").inc()
        obs_metrics.PRESENCE_NEARBY.set(len(self._users))
        snapshot = self._users
        for listener in list(self._change_listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("nearby change listener failed")

    # -- channel / room callbacks --------------------------------------------------

    def _on_room_change(self, place_id: Optional[str]) -> None:
        if self._users:
            self._commit((), source="room")

    async def _on_connect(self, _payload: Any = None) -> None:
        if self._active:
            self._ping.start()

    async def _on_disconnect(self, _reason: Any = None) -> None:
        await self._ping.stop()

    async def _ping_once(self) -> None:
        if self._channel.is_connected():
            await self._channel.emit(PING_EVENT)

    def _notify_auth(self, exc: AuthError) -> None:
        for listener in list(self._auth_listeners):
            try:
                listener(exc)
            except Exception:
                logger.exception("auth error listener failed")


__all__ = ["PresenceReconciler", "NEARBY_USERS_EVENT", "LOCATION_UPDATE_EVENT", "PING_EVENT"]
