"""Domain models used by the presence components."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from pydantic import ValidationError

from passradar.domain.proximity.schemas import UserRecord

DEFAULT_VIBE = "nearby"
DEFAULT_DISPLAY_NAME = "User"

_INT32_MASK = 0xFFFFFFFF
_INT32_SIGN = 0x80000000


def _int32(value: int) -> int:
    value &= _INT32_MASK
    if value & _INT32_SIGN:
        value -= _INT32_MASK + 1
    return value


def placement_hash(user_id: str) -> int:
    """Rolling hash over UTF-16 code units: ``h = unit + ((int32(h) << 5) - h)``.

    The shift wraps to signed 32 bits but the subtraction and addition do
    not, so the result can leave the int32 range for long ids. This keeps
    positions identical to the ones the mobile client draws.
    """
    data = user_id.encode("utf-16-le", "surrogatepass")
    h = 0
    for i in range(0, len(data), 2):
        unit = data[i] | (data[i + 1] << 8)
        h = unit + (_int32(_int32(h) << 5) - h)
    return h


def place(user_id: str) -> Tuple[int, float]:
    """Map a user id to a stable radar position.

    The angle is ``|h| mod 360`` degrees and the distance is
    ``0.25 + (|h| mod 50) / 100``, so every id renders in the same spot for
    the whole session and distances stay within ``[0.25, 0.74]``.
    """
    magnitude = abs(placement_hash(user_id))
    angle = magnitude % 360
    distance = round(0.25 + (magnitude % 50) / 100, 2)
    return angle, distance


@dataclass(frozen=True, slots=True)
class NearbyUser:
    id: str
    display_name: str
    vibe_text: str
    angle: int
    distance: float
    gender: Optional[str] = None
    photo_ref: Optional[str] = None
    socials: Mapping[str, str] = field(default_factory=dict)
    socials_locked: bool = False

    @property
    def has_unlocked_socials(self) -> bool:
        return bool(self.socials) and not self.socials_locked


def build_nearby_user(record: Mapping[str, Any] | UserRecord | None) -> Optional[NearbyUser]:
    """Build a placed user from a raw server record, or None if it has no id."""
    if record is None:
        return None
    if not isinstance(record, UserRecord):
        if not isinstance(record, Mapping):
            return None
        try:
            record = UserRecord.model_validate(dict(record))
        except ValidationError:
            return None
    if not record.user_id:
        return None
    angle, distance = place(record.user_id)
    return NearbyUser(
        id=record.user_id,
        display_name=record.display_name or DEFAULT_DISPLAY_NAME,
        vibe_text=record.vibe or DEFAULT_VIBE,
        gender=record.gender,
        photo_ref=record.profile_photo_key,
        socials=dict(record.socials),
        socials_locked=record.socials_locked,
        angle=angle,
        distance=distance,
    )


def build_nearby_users(records: Iterable[Any], *, exclude_id: Optional[str]) -> Tuple[NearbyUser, ...]:
    """Map a full user list, dropping the local user and collapsing duplicate ids.

    A later record for an id replaces the earlier one in place.
    """
    by_id: Dict[str, NearbyUser] = {}
    for raw in records:
        user = build_nearby_user(raw)
        if user is None or user.id == exclude_id:
            continue
        by_id[user.id] = user
    return tuple(by_id.values())


@dataclass(slots=True)
class PresenceRoomMembership:
    place_id: str
    joined_at: float = field(default_factory=time.time)
