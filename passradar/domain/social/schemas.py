"""Pydantic schemas for pass requests and friendship payloads."""

from __future__ import annotations

from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator, model_validator


def _optional_str(value: Any) -> Optional[str]:
	if value in (None, ""):
		return None
	return str(value)


class SendRequestResponse(BaseModel):
	success: bool = True
	request_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("request_id", "id"))

	@model_validator(mode="before")
	@classmethod
	def _unwrap_nested(cls, data: Any) -> Any:
		if isinstance(data, dict) and "request_id" not in data and isinstance(data.get("request"), dict):
			nested = data["request"]
			return {**data, "request_id": nested.get("request_id") or nested.get("id")}
		return data

	@field_validator("request_id", mode="before")
	def _stringify(cls, value: Any) -> Optional[str]:
		return _optional_str(value)


class PendingRequest(BaseModel):
	request_id: Optional[str] = None
	requester: dict = Field(default_factory=dict)
	created_at: Optional[str] = None

	@field_validator("request_id", "created_at", mode="before")
	def _stringify(cls, value: Any) -> Optional[str]:
		return _optional_str(value)

	@property
	def requester_id(self) -> Optional[str]:
		return _optional_str(self.requester.get("user_id") or self.requester.get("id"))


class PendingRequestsResponse(BaseModel):
	success: bool = True
	requests: list[PendingRequest] = Field(default_factory=list)


class RequestReceivedEvent(BaseModel):
	"""`friend_request_received` push payload."""

	requester: dict = Field(default_factory=dict)
	message: Optional[str] = None

	@model_validator(mode="before")
	@classmethod
	def _flat_requester(cls, data: Any) -> Any:
		# older servers send the requester fields at the top level
		if isinstance(data, dict) and not isinstance(data.get("requester"), dict) and data.get("user_id"):
			return {"requester": dict(data), "message": data.get("message")}
		return data


class RequestAcceptedEvent(BaseModel):
	"""`friend_request_accepted` push payload."""

	user: dict = Field(default_factory=dict)
	message: Optional[str] = None


class FriendshipExpiredEvent(BaseModel):
	"""`friendship_expired` push payload."""

	friend: dict = Field(default_factory=dict)
	message: Optional[str] = None
