"""Composition root: one PassClient per login, one RadarSession per open radar."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional, Protocol, Set, Tuple

from passradar.domain.errors import AuthError, NetworkError, PassError
from passradar.domain.proximity.channel import PresenceChannel
from passradar.domain.proximity.models import NearbyUser
from passradar.domain.proximity.photos import PhotoResolver
from passradar.domain.proximity.reconciler import PresenceReconciler
from passradar.domain.proximity.rooms import LocationRoomManager
from passradar.domain.social.notifications import BackgroundPresenter, NotificationRouter
from passradar.domain.social.unlock import UnlockSessionManager
from passradar.infra.api import RadarApi
from passradar.obs.logging import bind_context, clear_context

logger = logging.getLogger(__name__)

ApiFactory = Callable[[str], RadarApi]


class LocationSource(Protocol):
    """Opaque position provider. Raises LocationPermissionError when denied."""

    async def current_position(self) -> Tuple[float, float]: ...


class RadarSession:
    """Everything alive while the radar view is open.

    Opening assigns a place from the current position, joins its room and
    starts reconciliation; closing undoes it in reverse and removes the
    server-side location on a best-effort basis.
    """

    def __init__(
        self,
        channel: PresenceChannel,
        api: RadarApi,
        *,
        local_user_id: str,
        location: LocationSource,
        router: Optional[NotificationRouter] = None,
        poll_interval: Optional[float] = None,
        ping_interval: Optional[float] = None,
        unlock_duration: Optional[float] = None,
        countdown_tick: Optional[float] = None,
    ) -> None:
        self._channel = channel
        self._api = api
        self._router = router
        self._location = location
        self.local_user_id = local_user_id
        self.rooms = LocationRoomManager(channel)
        self.reconciler = PresenceReconciler(
            channel,
            self.rooms,
            api,
            local_user_id=local_user_id,
            poll_interval=poll_interval,
            ping_interval=ping_interval,
        )
        self.unlock = UnlockSessionManager(
            api,
            channel,
            local_user_id=local_user_id,
            unlock_duration=unlock_duration,
            countdown_tick=countdown_tick,
        )
        self.photos = PhotoResolver(api)
        self.place_id: Optional[str] = None
        self._acquired = False
        self._opened = False
        self._closed = False
        self._close_task: Optional[asyncio.Task] = None

    @property
    def users(self) -> Tuple[NearbyUser, ...]:
        return self.reconciler.users

    @property
    def closed(self) -> bool:
        return self._closed

    async def open(self) -> "RadarSession":
        if self._opened:
            return self
        if self._closed:
            raise PassError("session_closed")
        self._opened = True
        self._channel.acquire()
        self._acquired = True
        try:
            latitude, longitude = await self._location.current_position()
            self.place_id = await self._api.assign_location(latitude, longitude)
            bind_context(place_id=self.place_id)
            self.rooms.add_listener(self._on_room_change)
            await self.rooms.join(self.place_id)
            self.reconciler.add_listener(self.unlock.observe_nearby)
            self.reconciler.on_auth_error(self._on_auth_error)
            await self.reconciler.start()
            if self._router is not None:
                self._router.register(self.unlock)
            else:
                self.unlock.subscribe()
        except BaseException:
            await self.close(remove_location=self.place_id is not None)
            raise
        logger.info("radar session opened place=%s", self.place_id)
        return self

    async def close(self, *, remove_location: bool = True) -> None:
        if self._closed:
            return
        self._closed = True
        if self._router is not None:
            self._router.clear(self.unlock)
        try:
            await self.reconciler.stop(leave_room=True)
            await self.rooms.close()
            await self.unlock.close()
            self.photos.clear()
            if remove_location and self.place_id is not None:
                try:
                    await self._api.remove_location()
                except PassError as exc:
                    logger.warning("location removal failed: %s", exc.reason)
        finally:
            if self._acquired:
                self._channel.release()
                self._acquired = False
        logger.info("radar session closed place=%s", self.place_id)

    async def refresh_photos(self) -> None:
        await self.photos.fetch_missing(user.id for user in self.reconciler.users)

    def _on_room_change(self, _place_id: Optional[str]) -> None:
        self.photos.clear()

    def _on_auth_error(self, exc: AuthError) -> None:
        logger.warning("credential rejected; closing radar session")
        if self._close_task is None:
            self._close_task = asyncio.create_task(self.close(), name="radar-session-close")


class PassClient:
    """Process-level lifecycle: login wires notifications, logout tears down everything."""

    def __init__(
        self,
        *,
        channel: Optional[PresenceChannel] = None,
        api_factory: Optional[ApiFactory] = None,
        background: Optional[BackgroundPresenter] = None,
    ) -> None:
        self.channel = channel or PresenceChannel()
        self._api_factory = api_factory or RadarApi
        self.router = NotificationRouter(self.channel, background=background)
        self.api: Optional[RadarApi] = None
        self.user_id: Optional[str] = None
        self._sessions: Set[RadarSession] = set()

    async def __aenter__(self) -> "PassClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    @property
    def logged_in(self) -> bool:
        return self.api is not None

    async def login(self, credential: str, user_id: str) -> None:
        if not credential or not user_id:
            raise AuthError("missing_credential")
        if self.api is not None and self.api.credential == credential and self.user_id == user_id:
            return
        if self.api is not None:
            await self.logout()
        self.api = self._api_factory(credential)
        self.user_id = str(user_id)
        bind_context(user_id=self.user_id)
        try:
            await self.channel.connect(credential)
        except NetworkError as exc:
            # radar sessions fall back to polling until the channel comes back
            logger.warning("presence channel unavailable at login: %s", exc.reason)
        except AuthError:
            await self.logout()
            raise
        await self.router.initialize(credential, api=self.api)

    async def open_radar(self, location: LocationSource, **options) -> RadarSession:
        if self.api is None or self.user_id is None:
            raise AuthError("not_authenticated")
        session = RadarSession(
            self.channel,
            self.api,
            local_user_id=self.user_id,
            location=location,
            router=self.router,
            **options,
        )
        self._sessions.add(session)
        try:
            await session.open()
        except BaseException:
            self._sessions.discard(session)
            raise
        return session

    async def logout(self) -> None:
        sessions = list(self._sessions)
        self._sessions.clear()
        for session in sessions:
            try:
                await session.close()
            except Exception:
                logger.warning("radar session close failed during logout", exc_info=True)
        await self.router.teardown()
        await self.channel.disconnect()
        api, self.api = self.api, None
        self.user_id = None
        if api is not None:
            await api.aclose()
        clear_context()

    async def aclose(self) -> None:
        await self.logout()


__all__ = ["PassClient", "RadarSession", "LocationSource"]
