"""Social domain exports."""

from .models import (  # noqa: F401
	ConnectionRequest,
	CounterpartSummary,
	RequestDirection,
	RequestState,
	UnlockSession,
	UnlockState,
)
