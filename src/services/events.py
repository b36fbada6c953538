"""Discrete transition events delivered to the presentation layer."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, List, Literal, Optional

from pydantic import BaseModel, Field

from src.core.exceptions import ErrorKind


logger = logging.getLogger(__name__)


class TransitionEvent(BaseModel):
    """One state change for an account's provisioning or cancellation flow."""

    account_id: str
    operation: Literal["provisioning", "cancellation"]
    type: Literal["phase_changed", "error_set"]
    phase: str
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


Listener = Callable[[TransitionEvent], None]


class EventBus:
    """Fan transition events out to registered listeners."""

    def __init__(self) -> None:
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener`` and return a callable that unregisters it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def emit(self, event: TransitionEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                # Listener faults never propagate into the emitting flow.
                logger.exception("Transition listener failed for %s", event.type)
