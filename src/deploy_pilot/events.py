# events.py
# Progress channel: one-way, in-process pub/sub for progress events.
#
# Producers (tool loop, providers, state machine, recovery agent) publish;
# consumers (the terminal renderer, tests) subscribe. Nothing here knows
# about any UI.

import logging
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field

LOGGER = logging.getLogger(__name__)

EventType = Literal["tool_use", "thinking", "pre_flight", "build", "deploy", "status", "error"]


class ProgressEvent(BaseModel):
    type: EventType
    message: str
    details: dict[str, Any] | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


Subscriber = Callable[[ProgressEvent], None]


class ProgressChannel:
    """
    Fan-out of ProgressEvent objects to registered subscribers.

    Published events are also kept in `history` so a caller can inspect
    what happened after the fact.
    """

    def __init__(self, keep_history: bool = True) -> None:
        self._subscribers: list[Subscriber] = []
        self._keep_history = keep_history
        self.history: list[ProgressEvent] = []

    def subscribe(self, fn: Subscriber) -> None:
        if fn not in self._subscribers:
            self._subscribers.append(fn)

    def unsubscribe(self, fn: Subscriber) -> None:
        if fn in self._subscribers:
            self._subscribers.remove(fn)

    def publish(self, event: ProgressEvent) -> None:
        if self._keep_history:
            self.history.append(event)
        for fn in list(self._subscribers):
            try:
                fn(event)
            except Exception:
                # subscriber failures are logged, never propagated
                LOGGER.exception("progress_subscriber_failed", extra={"event_type": event.type})

    def emit(self, type: EventType, message: str, **details: Any) -> ProgressEvent:
        """Build and publish an event in one call."""
        event = ProgressEvent(type=type, message=message, details=details or None)
        self.publish(event)
        return event

    def of_type(self, type: EventType) -> list[ProgressEvent]:
        return [event for event in self.history if event.type == type]
