"""Join/leave bookkeeping for the location-scoped presence room."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Optional

from passradar.domain.proximity.channel import CONNECT, DISCONNECT, PresenceChannel
from passradar.domain.proximity.models import PresenceRoomMembership
from passradar.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

JOIN_EVENT = "join_location"
LEAVE_EVENT = "leave_location"
NEARBY_REQUEST_EVENT = "get_nearby_users"

MembershipListener = Callable[[Optional[str]], None]


class LocationRoomManager:
    """Keeps at most one room membership in sync with the push channel.

    ``desired_place_id`` is what the caller asked for; ``membership`` is what
    has actually been emitted on the current connection. Intents made while
    disconnected are flushed once when the channel next connects.
    """

    def __init__(self, channel: PresenceChannel) -> None:
        self._channel = channel
        self._desired: Optional[str] = None
        self._membership: Optional[PresenceRoomMembership] = None
        self._listeners: List[MembershipListener] = []
        self._flushed_for_connection = False
        self._closed = False
        self._sync_lock = asyncio.Lock()
        channel.on(CONNECT, self._on_connect)
        channel.on(DISCONNECT, self._on_disconnect)

    @property
    def desired_place_id(self) -> Optional[str]:
        return self._desired

    @property
    def membership(self) -> Optional[PresenceRoomMembership]:
        return self._membership

    @property
    def is_joined(self) -> bool:
        return (
            self._membership is not None
            and self._membership.place_id == self._desired
            and self._channel.is_connected()
        )

    def add_listener(self, listener: MembershipListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: MembershipListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def join(self, place_id: str) -> None:
        if self._closed:
            raise RuntimeError("room manager is closed")
        if not place_id:
            raise ValueError("place_id is required")
        place_id = str(place_id)
        changed = place_id != self._desired
        self._desired = place_id
        if changed:
            self._notify(place_id)
        if self._channel.is_connected():
            await self._sync()
        else:
            logger.debug("room join queued place=%s (channel disconnected)", place_id)

    async def leave(self, place_id: Optional[str] = None) -> None:
        """Drop the current room intent. Emission failures are logged only."""
        if place_id is not None and str(place_id) != self._desired:
            return
        had_intent = self._desired is not None
        self._desired = None
        if had_intent:
            self._notify(None)
        if self._channel.is_connected():
            await self._sync()
        else:
            # server drops membership with the connection
            self._membership = None

    async def close(self) -> None:
        """Room exit: best-effort leave, then local cleanup regardless."""
        if self._closed:
            return
        try:
            await self.leave()
        except Exception:
            logger.warning("room leave on close failed", exc_info=True)
        finally:
            self._membership = None
            self._desired = None
            self._channel.off(CONNECT, self._on_connect)
            self._channel.off(DISCONNECT, self._on_disconnect)
            self._listeners.clear()
            self._closed = True

    async def _sync(self) -> None:
        async with self._sync_lock:
            while True:
                current = self._membership.place_id if self._membership else None
                target = self._desired
                if current == target:
                    return
                token = self._channel.credential
                if current is not None:
                    self._membership = None
                    sent = await self._channel.emit(LEAVE_EVENT, {"token": token, "place_id": current})
                    obs_metrics.ROOM_TRANSITIONS.labels(action="leave").inc()
                    if not sent:
                        logger.info("room leave not delivered place=%s", current)
                if target is not None:
                    sent = await self._channel.emit(JOIN_EVENT, {"token": token, "place_id": target})
                    if not sent:
                        logger.info("room join not delivered place=%s; will retry on connect", target)
                        return
                    self._membership = PresenceRoomMembership(place_id=target)
                    obs_metrics.ROOM_TRANSITIONS.labels(action="join").inc()
                    logger.info("joined location room place=%s", target)
                    await self._channel.emit(NEARBY_REQUEST_EVENT, {"token": token})
                if self._desired == target:
                    return

    async def _on_connect(self, _payload: object = None) -> None:
        if self._flushed_for_connection:
            return
        self._flushed_for_connection = True
        if self._desired is not None or self._membership is not None:
            await self._sync()

    async def _on_disconnect(self, _reason: object = None) -> None:
        self._flushed_for_connection = False
        if self._membership is not None:
            logger.info("room membership dropped with connection place=%s", self._membership.place_id)
        self._membership = None

    def _notify(self, place_id: Optional[str]) -> None:
        for listener in list(self._listeners):
            try:
                listener(place_id)
            except Exception:
                logger.exception("room membership listener failed")


__all__ = ["LocationRoomManager", "JOIN_EVENT", "LEAVE_EVENT", "NEARBY_REQUEST_EVENT"]
