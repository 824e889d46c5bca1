"""Proximity presence and unlock-session client for Pass."""

__version__ = "0.1.0"
