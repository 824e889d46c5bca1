"""Proximity domain exports."""

from .models import NearbyUser, PresenceRoomMembership, build_nearby_user, place  # noqa: F401
