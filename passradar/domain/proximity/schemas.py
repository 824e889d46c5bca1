"""Pydantic schemas for proximity payloads (REST and push)."""

from __future__ import annotations

from typing import Any, Dict, Literal, Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator


def _coerce_socials(value: Any) -> Dict[str, str]:
	if not isinstance(value, dict):
		return {}
	return {str(key): str(handle) for key, handle in value.items() if handle not in (None, "")}


class UserRecord(BaseModel):
	"""Raw user record as sent by the server in nearby lists and push events."""

	user_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("user_id", "id"))
	display_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("display_name", "name"))
	vibe: Optional[str] = None
	gender: Optional[str] = None
	profile_photo_key: Optional[str] = Field(
		default=None, validation_alias=AliasChoices("profile_photo_key", "profilePhoto")
	)
	socials: Dict[str, str] = Field(default_factory=dict)
	socials_locked: bool = False

	@field_validator("user_id", mode="before")
	def _stringify_id(cls, value: Any) -> Optional[str]:
		if value in (None, ""):
			return None
		return str(value)

	@field_validator("socials", mode="before")
	def _normalise_socials(cls, value: Any) -> Dict[str, str]:
		return _coerce_socials(value)

	@field_validator("socials_locked", mode="before")
	def _locked_default(cls, value: Any) -> bool:
		return bool(value)


class AssignLocationResponse(BaseModel):
	place_id: str

	@field_validator("place_id", mode="before")
	def _stringify(cls, value: Any) -> str:
		return str(value)


class NearbyResponse(BaseModel):
	success: bool = True
	users: list[dict] = Field(default_factory=list)


class NearbySnapshotEvent(BaseModel):
	"""`nearby_users` push payload."""

	place_id: Optional[str] = None
	users: list[dict] = Field(default_factory=list)

	@field_validator("place_id", mode="before")
	def _stringify(cls, value: Any) -> Optional[str]:
		return None if value in (None, "") else str(value)


class LocationUpdateEvent(BaseModel):
	"""`location_update` push payload carrying one enter/leave delta."""

	place_id: Optional[str] = None
	user: Optional[dict] = None
	event_type: Optional[str] = Field(default=None, validation_alias=AliasChoices("event_type", "event"))

	@field_validator("place_id", mode="before")
	def _stringify(cls, value: Any) -> Optional[str]:
		return None if value in (None, "") else str(value)

	@property
	def kind(self) -> Optional[Literal["entered", "left"]]:
		tag = (self.event_type or "").lower()
		if tag in ("entered", "user_entered"):
			return "entered"
		if tag in ("left", "user_left"):
			return "left"
		return None


class PhotoResponse(BaseModel):
	profile_photo_url: Optional[str] = None
