"""Resolve incoming pass requests to server request ids."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict

from passradar.domain.errors import AuthError, PassError, ResolutionError
from passradar.infra.api import RadarApi
from passradar.infra.tasks import cancel_task
from passradar.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)


class RequestIdResolver:
	"""Look up request ids in the pending list, keyed by requester id.

	At most one lookup per counterpart is in flight; concurrent callers share
	it. Successful lookups are cached, failures are not so a later call
	retries. The pending list is assumed to hold at most one request per
	counterpart; when it holds more, the first match wins.
	"""

	def __init__(self, api: RadarApi) -> None:
		self._api = api
		self._cache: Dict[str, str] = {}
		self._in_flight: Dict[str, asyncio.Task] = {}

	def forget(self, counterpart_id: str) -> None:
		self._cache.pop(counterpart_id, None)

	def prefetch(self, counterpart_id: str) -> asyncio.Task:
		"""Start a lookup in the background (or return the running one)."""
		task = self._in_flight.get(counterpart_id)
		if task is not None and not task.done():
			return task
		task = asyncio.create_task(self._lookup(counterpart_id), name=f"resolve-request:{counterpart_id}")
		self._in_flight[counterpart_id] = task

		def _done(finished: asyncio.Task, key: str = counterpart_id) -> None:
			if self._in_flight.get(key) is finished:
				self._in_flight.pop(key, None)
			if not finished.cancelled() and finished.exception() is not None:
				logger.debug("request id lookup failed counterpart=%s", key)

		task.add_done_callback(_done)
		return task

	async def resolve(self, counterpart_id: str) -> str:
		cached = self._cache.get(counterpart_id)
		if cached is not None:
			return cached
		task = self.prefetch(counterpart_id)
		return await asyncio.shield(task)

	async def _lookup(self, counterpart_id: str) -> str:
		try:
			pending = await self._api.pending_requests()
		except AuthError:
			obs_metrics.REQUEST_RESOLUTIONS.labels(result="auth_error").inc()
			raise
		except PassError as exc:
			obs_metrics.REQUEST_RESOLUTIONS.labels(result="error").inc()
			logger.warning("failed to resolve request id counterpart=%s: %s", counterpart_id, exc.reason)
			raise ResolutionError("lookup_failed") from exc
		for item in pending.requests:
			if item.requester_id == counterpart_id and item.request_id:
				self._cache[counterpart_id] = item.request_id
				obs_metrics.REQUEST_RESOLUTIONS.labels(result="ok").inc()
				return item.request_id
		obs_metrics.REQUEST_RESOLUTIONS.labels(result="missing").inc()
		raise ResolutionError("no_pending_request")

	async def close(self) -> None:
		tasks = list(self._in_flight.values())
		self._in_flight.clear()
		for task in tasks:
			await cancel_task(task)


__all__ = ["RequestIdResolver"]
