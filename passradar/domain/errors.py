"""Error taxonomy shared by the presence and unlock components."""

from __future__ import annotations


class PassError(Exception):
	"""Base class for radar client errors."""

	reason: str = "unknown"

	def __init__(self, reason: str | None = None) -> None:
		super().__init__(reason or self.reason)
		if reason:
			self.reason = reason


class AuthError(PassError):
	"""Missing, expired or rejected credential. Fatal to the session."""

	reason = "unauthorized"


class LocationPermissionError(PassError):
	"""Location access denied or blocked."""

	reason = "location_denied"

	def __init__(self, reason: str | None = None, *, blocked: bool = False) -> None:
		super().__init__(reason)
		self.blocked = blocked

	@property
	def remediation(self) -> str:
		return "settings" if self.blocked else "retry"


class NetworkError(PassError):
	"""Transient transport failure."""

	reason = "network"


class RequestFailed(PassError):
	"""Server rejected the call for a reason outside the other categories."""

	reason = "request_failed"

	def __init__(self, reason: str | None = None, *, status_code: int | None = None) -> None:
		super().__init__(reason)
		self.status_code = status_code


class StateConflictError(PassError):
	"""Benign conflict mapped to a state transition rather than a failure."""

	reason = "conflict"


class AlreadyFriends(StateConflictError):
	reason = "already_friends"


class AlreadySent(StateConflictError):
	reason = "already_sent"


class ResolutionError(PassError):
	"""Incoming request could not be mapped to a server request id."""

	reason = "unresolved"


__all__ = [
	"PassError",
	"AuthError",
	"LocationPermissionError",
	"NetworkError",
	"RequestFailed",
	"StateConflictError",
	"AlreadyFriends",
	"AlreadySent",
	"ResolutionError",
]
