"""Typed publish/subscribe bus for job lifecycle events."""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Tuple, Union

from convert_engine.models.job import ConversionJob, ConversionProgress

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    """Closed set of events published by the orchestrator."""
    JOB_STARTED = "job-started"
    JOB_PROGRESS = "job-progress"
    JOB_COMPLETED = "job-completed"
    JOB_FAILED = "job-failed"
    JOB_CANCELLED = "job-cancelled"
    QUEUE_UPDATED = "queue-updated"


@dataclass(frozen=True)
class JobEvent:
    """Payload for started/completed/failed/cancelled."""
    job: ConversionJob

    def to_dict(self) -> Dict[str, Any]:
        return {"job_id": self.job.id, "job": self.job.to_dict()}


@dataclass(frozen=True)
class ProgressEvent:
    job_id: str
    progress: ConversionProgress

    def to_dict(self) -> Dict[str, Any]:
        return {"job_id": self.job_id, "progress": self.progress.to_dict()}


@dataclass(frozen=True)
class QueueEvent:
    """Full job list snapshot."""
    jobs: Tuple[ConversionJob, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {"jobs": [job.to_dict() for job in self.jobs]}


EventPayload = Union[JobEvent, ProgressEvent, QueueEvent]
EventHandler = Callable[[EventPayload], None]
GlobalHandler = Callable[[EventKind, EventPayload], None]


class EventBus:
    """Synchronous fan-out in subscription order.

    A handler that raises is logged and skipped; the remaining handlers
    still receive the event and the publisher never sees the exception.
    """

    def __init__(self):
        self._handlers: Dict[EventKind, List[EventHandler]] = {kind: [] for kind in EventKind}
        self._global_handlers: List[GlobalHandler] = []

    def subscribe(self, kind: EventKind, handler: EventHandler) -> Callable[[], None]:
        """Register a handler for one event kind. Returns an unsubscribe callable."""
        kind = EventKind(kind)
        self._handlers[kind].append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers[kind]:
                self._handlers[kind].remove(handler)

        return unsubscribe

    def subscribe_all(self, handler: GlobalHandler) -> Callable[[], None]:
        """Register a handler for every event kind."""
        self._global_handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._global_handlers:
                self._global_handlers.remove(handler)

        return unsubscribe

    def publish(self, kind: EventKind, payload: EventPayload) -> None:
        # Iterate over copies so handlers may unsubscribe while being called
        for handler in list(self._handlers[kind]):
            try:
                handler(payload)
            except Exception as e:
                logger.exception("Listener error on %s: %s", kind.value, e)

        for handler in list(self._global_handlers):
            try:
                handler(kind, payload)
            except Exception as e:
                logger.exception("Global listener error on %s: %s", kind.value, e)

    def subscriber_count(self, kind: EventKind) -> int:
        return len(self._handlers[EventKind(kind)]) + len(self._global_handlers)

    def clear(self) -> None:
        """Release every subscription."""
        for handlers in self._handlers.values():
            handlers.clear()
        self._global_handlers.clear()
