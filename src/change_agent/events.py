from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Literal

from pydantic import BaseModel, Field

from .models import utc_now

logger = logging.getLogger(__name__)

EventType = Literal[
    "run.started",
    "run.step",
    "run.phase_changed",
    "run.persisted",
    "run.finished",
]

EventLevel = Literal["debug", "info", "warn", "error"]


class EventError(BaseModel):
    code: str
    message: str
    kind: str | None = None


class EventEnvelope(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    ts: datetime = Field(default_factory=utc_now)
    type: EventType
    source: str = "controller"
    level: EventLevel = "info"
    run_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    error: EventError | None = None


Subscriber = Callable[[EventEnvelope], None]


class EventBus:
    """Synchronous fan-out of run events to observers.

    Subscribers render or audit; they never steer control flow. A subscriber
    that raises is logged and the remaining subscribers still receive the event.
    """

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def emit(self, envelope: EventEnvelope) -> None:
        for callback in list(self._subscribers):
            try:
                callback(envelope)
            except Exception:
                logger.exception("event subscriber failed for %s (%s)", envelope.type, envelope.run_id)


def build_event(
    event_type: EventType,
    run_id: str,
    payload: dict[str, Any] | None = None,
    *,
    level: EventLevel = "info",
    source: str = "controller",
    error: EventError | None = None,
) -> EventEnvelope:
    return EventEnvelope(
        type=event_type,
        run_id=run_id,
        payload=payload or {},
        level=level,
        source=source,
        error=error,
    )


def logging_subscriber(envelope: EventEnvelope) -> None:
    """Bridge events onto the operator log at DEBUG."""
    logger.debug("event %s run=%s payload=%s", envelope.type, envelope.run_id, envelope.payload)
