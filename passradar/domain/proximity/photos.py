"""Lazy photo URL lookups for users shown on the radar."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Iterable, Optional, Set

from passradar.domain.errors import AuthError, PassError
from passradar.infra.api import RadarApi

logger = logging.getLogger(__name__)


class PhotoResolver:
    """Fetch and cache profile photo URLs, one request per user at a time.

    ``None`` is cached for users without a photo. The cache is scoped to a
    room; call :meth:`clear` when the room changes.
    """

    def __init__(self, api: RadarApi) -> None:
        self._api = api
        self._urls: Dict[str, Optional[str]] = {}
        self._in_flight: Set[str] = set()
        self._self_url: Optional[str] = None
        self._generation = 0

    def get(self, user_id: str) -> Optional[str]:
        return self._urls.get(user_id)

    def known(self, user_id: str) -> bool:
        return user_id in self._urls

    def clear(self) -> None:
        self._urls.clear()
        self._in_flight.clear()
        self._generation += 1

    async def fetch_missing(self, user_ids: Iterable[str]) -> Dict[str, Optional[str]]:
        """Fetch photos for ids not cached and not already being fetched."""
        pending = [uid for uid in dict.fromkeys(user_ids) if uid and uid not in self._urls and uid not in self._in_flight]
        if not pending:
            return {}
        self._in_flight.update(pending)
        generation = self._generation
        results = await asyncio.gather(*(self._fetch_one(uid) for uid in pending), return_exceptions=True)
        fetched: Dict[str, Optional[str]] = {}
        for uid, result in zip(pending, results):
            self._in_flight.discard(uid)
            if isinstance(result, AuthError):
                raise result
            if isinstance(result, BaseException):
                logger.warning("nearby photo fetch failed user=%s: %s", uid, result)
                continue
            if generation != self._generation:
                continue
            self._urls[uid] = result
            fetched[uid] = result
        return fetched

    async def _fetch_one(self, user_id: str) -> Optional[str]:
        return await self._api.user_photo(user_id)

    async def self_photo(self, *, refresh: bool = False) -> Optional[str]:
        if self._self_url is not None and not refresh:
            return self._self_url
        try:
            self._self_url = await self._api.my_photo()
        except AuthError:
            raise
        except PassError:
            logger.warning("own profile photo fetch failed", exc_info=True)
            return None
        return self._self_url


__all__ = ["PhotoResolver"]
