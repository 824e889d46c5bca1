"""Socket.IO push channel shared by the presence and notification components."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import socketio

from passradar.domain.errors import AuthError, NetworkError
from passradar.infra.tasks import cancel_task
from passradar.obs import metrics as obs_metrics
from passradar.settings import settings

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Union[None, Awaitable[None]]]

CONNECT = "connect"
DISCONNECT = "disconnect"
CONNECT_ERROR = "connect_error"
LIFECYCLE_EVENTS = (CONNECT, DISCONNECT, CONNECT_ERROR)

_AUTH_REJECTION_HINTS = ("unauthorized", "invalid token", "token expired", "forbidden", "401")


@dataclass(frozen=True)
class ChannelHandle:
    url: str
    opened_at: float


def _default_client_factory() -> socketio.AsyncClient:
    return socketio.AsyncClient(
        reconnection=True,
        reconnection_attempts=settings.reconnection_attempts,
        reconnection_delay=settings.reconnection_delay,
        reconnection_delay_max=settings.reconnection_delay_max,
        logger=False,
        engineio_logger=False,
    )


class PresenceChannel:
    """One bidirectional event connection with local fan-out.

    Subscribers register with :meth:`on`/:meth:`off` against this object, not
    the Socket.IO client, so subscriptions survive reconnects and credential
    switches. The underlying client is created once per credential; repeated
    :meth:`connect` calls with the same credential return the existing handle.

    Socket.IO reconnects an established connection on its own. A first
    connect that fails on the transport is retried here with the same
    bounded backoff, so push can come up later in the session.
    """

    def __init__(
        self,
        *,
        url: Optional[str] = None,
        client_factory: Optional[Callable[[], Any]] = None,
        reconnection_attempts: Optional[int] = None,
        reconnection_delay: Optional[float] = None,
        reconnection_delay_max: Optional[float] = None,
    ) -> None:
        self.url = url or settings.effective_socket_url
        self._client_factory = client_factory or _default_client_factory
        self.reconnection_attempts = (
            settings.reconnection_attempts if reconnection_attempts is None else reconnection_attempts
        )
        self.reconnection_delay = reconnection_delay or settings.reconnection_delay
        self.reconnection_delay_max = reconnection_delay_max or settings.reconnection_delay_max
        self._client: Any = None
        self._credential: Optional[str] = None
        self._handle: Optional[ChannelHandle] = None
        self._handlers: Dict[str, List[Handler]] = {}
        self._connected = False
        self._consumers = 0
        self._lock = asyncio.Lock()
        self._connect_error_logged = False
        self._retry_task: Optional[asyncio.Task] = None

    # -- lifecycle -----------------------------------------------------------------

    @property
    def credential(self) -> Optional[str]:
        return self._credential

    @property
    def consumers(self) -> int:
        return self._consumers

    def is_connected(self) -> bool:
        return self._connected

    async def connect(self, credential: str) -> ChannelHandle:
        if not credential:
            raise AuthError("missing_credential")
        async with self._lock:
            if self._client is not None and self._credential == credential and self._handle is not None:
                logger.debug("presence channel already initialised")
                return self._handle
            await cancel_task(self._retry_task)
            self._retry_task = None
            if self._client is not None:
                logger.info("presence channel credential changed, reconnecting")
                await self._close_client()
            try:
                return await self._open(credential)
            except NetworkError:
                if self.reconnection_attempts > 0:
                    self._retry_task = asyncio.create_task(
                        self._retry_connect(credential), name="presence-channel-retry"
                    )
                raise

    async def _open(self, credential: str) -> ChannelHandle:
        client = self._client_factory()
        self._bind(client)
        # connect handlers may emit (room flush), so the client is visible first
        self._client = client
        self._credential = credential
        try:
            await client.connect(
                self.url,
                auth={"token": credential},
                wait_timeout=settings.socket_connect_timeout,
            )
        except socketio.exceptions.ConnectionError as exc:
            self._client = None
            self._credential = None
            self._connected = False
            obs_metrics.channel_state(False)
            message = str(exc).lower()
            if any(hint in message for hint in _AUTH_REJECTION_HINTS):
                raise AuthError("channel_rejected") from exc
            raise NetworkError("channel_connect_failed") from exc
        self._handle = ChannelHandle(url=self.url, opened_at=time.time())
        return self._handle

    async def _retry_connect(self, credential: str) -> None:
        delay = self.reconnection_delay
        for attempt in range(1, self.reconnection_attempts + 1):
            await asyncio.sleep(delay)
            async with self._lock:
                if self._handle is not None:
                    return
                try:
                    await self._open(credential)
                except AuthError:
                    logger.warning("presence channel rejected credential on retry; giving up")
                    return
                except NetworkError:
                    logger.info("presence channel connect retry %d/%d failed", attempt, self.reconnection_attempts)
                else:
                    logger.info("presence channel connected after %d retries", attempt)
                    return
            delay = min(delay * 2, self.reconnection_delay_max)
        logger.warning("presence channel retries exhausted; staying on polling")

    async def disconnect(self) -> None:
        """Tear down the connection and drop every subscription. Safe to repeat."""
        async with self._lock:
            await cancel_task(self._retry_task)
            self._retry_task = None
            self._handlers.clear()
            await self._close_client()
            self._consumers = 0

    async def _close_client(self) -> None:
        client = self._client
        self._client = None
        self._credential = None
        self._handle = None
        if client is None:
            return
        try:
            await client.disconnect()
        except Exception:
            logger.debug("presence channel disconnect failed", exc_info=True)
        if self._connected:
            self._connected = False
            obs_metrics.channel_state(False)
        logger.info("presence channel closed")

    def acquire(self) -> "PresenceChannel":
        self._consumers += 1
        return self

    def release(self) -> None:
        """Drop one consumer reference. Never closes the connection."""
        self._consumers = max(0, self._consumers - 1)

    # -- subscriptions -------------------------------------------------------------

    def on(self, event: str, handler: Handler) -> None:
        handlers = self._handlers.setdefault(event, [])
        if handler not in handlers:
            handlers.append(handler)

    def off(self, event: str, handler: Optional[Handler] = None) -> None:
        handlers = self._handlers.get(event)
        if not handlers:
            return
        if handler is None:
            self._handlers.pop(event, None)
            return
        try:
            handlers.remove(handler)
        except ValueError:
            return
        if not handlers:
            self._handlers.pop(event, None)

    def subscriber_count(self, event: str) -> int:
        return len(self._handlers.get(event, ()))

    async def emit(self, event: str, payload: Optional[dict] = None) -> bool:
        """Fire-and-forget emit. Returns False when nothing was sent."""
        client = self._client
        if client is None or not self._connected:
            logger.debug("presence channel emit dropped event=%s (disconnected)", event)
            obs_metrics.CHANNEL_EVENTS_OUT.labels(event=event, result="dropped").inc()
            return False
        try:
            if payload is None:
                await client.emit(event)
            else:
                await client.emit(event, payload)
        except Exception:
            logger.warning("presence channel emit failed event=%s", event, exc_info=True)
            obs_metrics.CHANNEL_EVENTS_OUT.labels(event=event, result="error").inc()
            return False
        obs_metrics.CHANNEL_EVENTS_OUT.labels(event=event, result="sent").inc()
        return True

    async def dispatch(self, event: str, payload: Any = None) -> None:
        """Deliver ``payload`` to every local subscriber of ``event`` in order."""
        obs_metrics.channel_event(event)
        for handler in list(self._handlers.get(event, ())):
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("presence channel handler failed event=%s", event)

    # -- socket.io wiring ----------------------------------------------------------

    def _bind(self, client: Any) -> None:
        async def _on_connect(*_args: Any) -> None:
            await self._handle_connect()

        async def _on_disconnect(*args: Any) -> None:
            await self._handle_disconnect(args[0] if args else None)

        async def _on_connect_error(*args: Any) -> None:
            await self._handle_connect_error(args[0] if args else None)

        async def _on_any(event: str, *args: Any) -> None:
            if event in LIFECYCLE_EVENTS:
                return
            await self.dispatch(event, args[0] if args else None)

        client.on(CONNECT, _on_connect)
        client.on(DISCONNECT, _on_disconnect)
        client.on(CONNECT_ERROR, _on_connect_error)
        client.on("*", _on_any)

    async def _handle_connect(self) -> None:
        self._connected = True
        self._connect_error_logged = False
        obs_metrics.channel_state(True)
        obs_metrics.CHANNEL_LIFECYCLE.labels(event=CONNECT).inc()
        logger.info("presence channel connected url=%s", self.url)
        await self.dispatch(CONNECT, None)

    async def _handle_disconnect(self, reason: Any) -> None:
        self._connected = False
        obs_metrics.channel_state(False)
        obs_metrics.CHANNEL_LIFECYCLE.labels(event=DISCONNECT).inc()
        logger.warning("presence channel disconnected reason=%s", reason)
        await self.dispatch(DISCONNECT, reason)

    async def _handle_connect_error(self, data: Any) -> None:
        obs_metrics.CHANNEL_LIFECYCLE.labels(event=CONNECT_ERROR).inc()
        if not self._connect_error_logged:
            logger.warning("presence channel connect error: %s; falling back to polling", data)
            self._connect_error_logged = True
        await self.dispatch(CONNECT_ERROR, data)


__all__ = ["PresenceChannel", "ChannelHandle", "CONNECT", "DISCONNECT", "CONNECT_ERROR"]
