"""Publishes document progress, status, error and completion events.

Subscribers are plain callables; a transport (websocket, pub/sub) can be
attached by subscribing a function that forwards the event.
"""
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from utils.logger import setup_logger

logger = setup_logger(__name__)

EventType = Literal["progress", "status", "error", "complete"]


class ProgressEvent(BaseModel):
    """One event about one document."""
    type: EventType
    document_id: str
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


Subscriber = Callable[[ProgressEvent], None]


class ProgressEmitter:
    """Fan-out of pipeline events to subscribers."""

    def __init__(self):
        self._subscribers: List[Subscriber] = []
        self.history: Optional[List[ProgressEvent]] = None

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a subscriber. Returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def record(self) -> List[ProgressEvent]:
        """Start keeping every published event in ``history``."""
        self.history = []
        return self.history

    def _publish(self, event: ProgressEvent) -> None:
        if self.history is not None:
            self.history.append(event)

        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                # A broken subscriber must not fail the stage
                logger.exception(f"Progress subscriber failed for {event.type} event")

    def progress(self, document_id: str, percent: int, step: str) -> None:
        self._publish(ProgressEvent(
            type="progress",
            document_id=document_id,
            data={"progress_percent": percent, "current_step": step},
        ))

    def status(self, document_id: str, status: str, **extra: Any) -> None:
        self._publish(ProgressEvent(type="status", document_id=document_id, data={"status": status, **extra}))

    def error(self, document_id: str, message: str) -> None:
        self._publish(ProgressEvent(type="error", document_id=document_id, data={"error_message": message}))

    def complete(self, document_id: str, **data: Any) -> None:
        self._publish(ProgressEvent(type="complete", document_id=document_id, data=data))
