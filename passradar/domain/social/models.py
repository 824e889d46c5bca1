"""Domain models for pass requests and unlock sessions."""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from pydantic import ValidationError

from passradar.domain.proximity.models import DEFAULT_DISPLAY_NAME, NearbyUser
from passradar.domain.proximity.schemas import UserRecord
from passradar.settings import settings


class RequestDirection(str, Enum):
	OUTGOING = "outgoing"
	INCOMING = "incoming"


class RequestState(str, Enum):
	"""Lifecycle of a single pass request."""

	PENDING = "pending"
	ACCEPTED = "accepted"
	REJECTED = "rejected"
	EXPIRED = "expired"


class UnlockState(str, Enum):
	"""Unlock session states; REJECTED and FAILED are terminal."""

	LOCKED = "locked"
	WAITING = "waiting"
	UNLOCKED = "unlocked"
	EXPIRED = "expired"
	REJECTED = "rejected"
	FAILED = "failed"


def _default_remaining_seconds() -> int:
	return math.ceil(settings.unlock_duration_seconds)


@dataclass(slots=True)
class CounterpartSummary:
	"""What the client knows about the other side of a request."""

	user_id: str
	display_name: str = DEFAULT_DISPLAY_NAME
	vibe: Optional[str] = None
	gender: Optional[str] = None
	photo_ref: Optional[str] = None
	socials: Dict[str, str] = field(default_factory=dict)
	socials_locked: bool = False

	@property
	def has_unlocked_socials(self) -> bool:
		return bool(self.socials) and not self.socials_locked

	@classmethod
	def from_payload(cls, payload: Mapping[str, Any] | None) -> Optional["CounterpartSummary"]:
		if not isinstance(payload, Mapping):
			return None
		try:
			record = UserRecord.model_validate(dict(payload))
		except ValidationError:
			return None
		if not record.user_id:
			return None
		return cls(
			user_id=record.user_id,
			display_name=record.display_name or DEFAULT_DISPLAY_NAME,
			vibe=record.vibe,
			gender=record.gender,
			photo_ref=record.profile_photo_key,
			socials=dict(record.socials),
			socials_locked=record.socials_locked,
		)

	@classmethod
	def from_nearby(cls, user: NearbyUser) -> "CounterpartSummary":
		return cls(
			user_id=user.id,
			display_name=user.display_name,
			vibe=user.vibe_text,
			gender=user.gender,
			photo_ref=user.photo_ref,
			socials=dict(user.socials),
			socials_locked=user.socials_locked,
		)


@dataclass(slots=True)
class ConnectionRequest:
	counterpart_id: str
	counterpart: CounterpartSummary
	direction: RequestDirection
	request_id: Optional[str] = None
	state: RequestState = RequestState.PENDING
	created_at: float = field(default_factory=time.time)
	# false after a failed id resolution, until the next retry
	actionable: bool = True

	@property
	def resolved(self) -> bool:
		return self.request_id is not None


@dataclass(slots=True)
class UnlockSession:
	counterpart_id: str
	counterpart: Optional[CounterpartSummary] = None
	socials: Dict[str, str] = field(default_factory=dict)
	state: UnlockState = UnlockState.LOCKED
	remaining_seconds: int = field(default_factory=_default_remaining_seconds)
	unlocked_at: Optional[float] = None
	error: Optional[str] = None
	request: Optional[ConnectionRequest] = None

	@property
	def is_unlocked(self) -> bool:
		return self.state is UnlockState.UNLOCKED

	def visible_socials(self) -> Dict[str, str]:
		"""Socials are only readable while unlocked."""
		return dict(self.socials) if self.is_unlocked else {}
