"""HTTP client for the radar REST endpoints."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Optional, Tuple, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from passradar.domain.errors import (
    AlreadyFriends,
    AlreadySent,
    AuthError,
    NetworkError,
    RequestFailed,
    StateConflictError,
)
from passradar.domain.proximity.schemas import AssignLocationResponse, NearbyResponse, PhotoResponse
from passradar.domain.social.schemas import PendingRequestsResponse, SendRequestResponse
from passradar.obs import metrics as obs_metrics
from passradar.settings import settings

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

ASSIGN_LOCATION_PATH = "/assign_location"
REMOVE_LOCATION_PATH = "/remove_user_location"
NEARBY_PATH = "/view_nearby_people"
SEND_REQUEST_PATH = "/friend_requests/send"
ACCEPT_REQUEST_PATH = "/friend_requests/accept/{request_id}"
REJECT_REQUEST_PATH = "/friend_requests/reject/{request_id}"
PENDING_REQUESTS_PATH = "/friend_requests/pending"
USER_PHOTO_PATH = "/api/users/{user_id}/profile-photo"
MY_PHOTO_PATH = "/api/me/profile-photo"


def _error_text(data: Dict[str, Any], status_code: int) -> str:
    message = data.get("error") or data.get("message") or data.get("detail")
    if isinstance(message, str) and message.strip():
        return message.strip()
    return f"Request failed with status {status_code}"


def parse_response(operation: str, model: Type[ModelT], data: Dict[str, Any]) -> ModelT:
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        logger.warning("unexpected %s response shape: %d errors", operation, exc.error_count())
        raise RequestFailed("invalid_response") from exc


def raise_for_response(status_code: int, data: Dict[str, Any]) -> None:
    """Map a non-2xx response onto the client error taxonomy."""
    if status_code < 400:
        return
    text = _error_text(data, status_code)
    if status_code == 401:
        raise AuthError(text)
    lowered = text.lower()
    if "already friends" in lowered:
        raise AlreadyFriends(text)
    if "already sent" in lowered:
        raise AlreadySent(text)
    if status_code == 409:
        raise StateConflictError(text)
    if status_code >= 500:
        raise NetworkError(text)
    raise RequestFailed(text, status_code=status_code)


class RadarApi:
    """Thin async wrapper over the REST operations the radar consumes.

    Every call is attempted once; failures surface to the caller so the user
    can retry manually.
    """

    def __init__(
        self,
        credential: str,
        *,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not credential:
            raise AuthError("missing_credential")
        self.credential = credential
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.api_base_url,
            timeout=timeout if timeout is not None else settings.request_timeout,
            transport=transport,
            headers={
                "Authorization": f"Bearer {credential}",
                "Content-Type": "application/json",
            },
        )

    async def __aenter__(self) -> "RadarApi":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        passthrough: Iterable[int] = (),
    ) -> Tuple[int, Dict[str, Any]]:
        try:
            with obs_metrics.HTTP_LATENCY.labels(operation=operation).time():
                response = await self._client.request(method, path, json=json)
        except httpx.TimeoutException as exc:
            raise NetworkError("timeout") from exc
        except httpx.TransportError as exc:
            raise NetworkError(str(exc) or "transport_error") from exc
        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {"data": data}
        if response.status_code in passthrough:
            return response.status_code, data
        raise_for_response(response.status_code, data)
        return response.status_code, data

    async def assign_location(self, latitude: float, longitude: float) -> str:
        _, data = await self._request(
            "assign_location",
            "POST",
            ASSIGN_LOCATION_PATH,
            json={"latitude": latitude, "longitude": longitude},
        )
        return parse_response("assign_location", AssignLocationResponse, data).place_id

    async def remove_location(self) -> None:
        await self._request("remove_location", "DELETE", REMOVE_LOCATION_PATH)

    async def fetch_nearby(self) -> NearbyResponse:
        _, data = await self._request("fetch_nearby", "GET", NEARBY_PATH)
        return parse_response("fetch_nearby", NearbyResponse, data)

    async def send_request(self, target_user_id: str) -> SendRequestResponse:
        _, data = await self._request(
            "send_request",
            "POST",
            SEND_REQUEST_PATH,
            json={"target_user_id": target_user_id},
        )
        return parse_response("send_request", SendRequestResponse, data)

    async def accept_request(self, request_id: str) -> Dict[str, Any]:
        _, data = await self._request(
            "accept_request", "POST", ACCEPT_REQUEST_PATH.format(request_id=request_id)
        )
        return data

    async def reject_request(self, request_id: str) -> Dict[str, Any]:
        _, data = await self._request(
            "reject_request", "POST", REJECT_REQUEST_PATH.format(request_id=request_id)
        )
        return data

    async def pending_requests(self) -> PendingRequestsResponse:
        _, data = await self._request("pending_requests", "GET", PENDING_REQUESTS_PATH)
        return parse_response("pending_requests", PendingRequestsResponse, data)

    async def user_photo(self, user_id: str) -> Optional[str]:
        return await self._photo("user_photo", USER_PHOTO_PATH.format(user_id=user_id))

    async def my_photo(self) -> Optional[str]:
        return await self._photo("my_photo", MY_PHOTO_PATH)

    async def _photo(self, operation: str, path: str) -> Optional[str]:
        status, data = await self._request(operation, "GET", path, passthrough=(403, 404))
        if status in (403, 404):
            return None
        return parse_response(operation, PhotoResponse, data).profile_photo_url


__all__ = ["RadarApi", "parse_response", "raise_for_response"]
