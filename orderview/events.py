"""
In-process event bus for read-model lifecycle events.

Decouples the write-event hook and the refresh coordinator from their
consumers (cache invalidation, operator monitoring).

Usage:
    from orderview.events import events, ReadModelEvent

    @events.on(ReadModelEvent.PROJECTION_REFRESHED)
    async def handle_refreshed(data: dict):
        print(f"{data['projection']} is now generation {data['generation']}")

    await events.emit(ReadModelEvent.ENTITY_MUTATED, {"table": "orders", "record_id": 500})
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Coroutine, Dict, List, Optional

from orderview.observability import get_logger, get_correlation_id

logger = get_logger(__name__)

EventHandler = Callable[[Dict[str, Any]], Coroutine[Any, Any, None]]


class ReadModelEvent(Enum):
    """Events emitted by the read model."""

    # Write side
    ENTITY_MUTATED = "entity.mutated"

    # Refresh lifecycle
    REFRESH_STARTED = "projection.refresh_started"
    PROJECTION_REFRESHED = "projection.refreshed"
    REFRESH_FAILED = "projection.refresh_failed"
    REFRESH_COALESCED = "projection.refresh_coalesced"

    # Read side
    FALLBACK_SERVED = "read.fallback_served"

    # Cache
    CACHE_INVALIDATED = "cache.invalidated"


@dataclass
class EventMetadata:
    """Metadata attached to every event."""

    event_id: str = field(default_factory=lambda: f"{datetime.now().timestamp():.6f}")
    timestamp: datetime = field(default_factory=datetime.now)
    correlation_id: Optional[str] = field(default_factory=get_correlation_id)
    source: str = "orderview"


@dataclass
class Event:
    """Wrapper for event data with metadata."""

    type: ReadModelEvent
    data: Dict[str, Any]
    metadata: EventMetadata = field(default_factory=EventMetadata)

    def to_dict(self) -> Dict[str, Any]:
        """Convert event to dictionary for logging/serialization."""
        return {
            "event_type": self.type.value,
            "data": self.data,
            "metadata": {
                "event_id": self.metadata.event_id,
                "timestamp": self.metadata.timestamp.isoformat(),
                "correlation_id": self.metadata.correlation_id,
                "source": self.metadata.source,
            },
        }


class EventBus:
    """
    Simple async event bus for publish/subscribe.

    Handlers run concurrently; one failing handler is logged and does not
    affect the others or the emitter.
    """

    def __init__(self, max_history: int = 100):
        self._handlers: Dict[ReadModelEvent, List[EventHandler]] = {}
        self._wildcard_handlers: List[EventHandler] = []
        self._history: List[Event] = []
        self._max_history = max_history

    def on(
        self, event_type: Optional[ReadModelEvent] = None
    ) -> Callable[[EventHandler], EventHandler]:
        """Decorator to register a handler (None subscribes to all events)."""

        def decorator(handler: EventHandler) -> EventHandler:
            self.subscribe(event_type, handler)
            return handler

        return decorator

    def subscribe(
        self, event_type: Optional[ReadModelEvent], handler: EventHandler
    ) -> None:
        """Programmatically subscribe to an event."""
        if event_type is None:
            self._wildcard_handlers.append(handler)
            logger.debug(f"Registered wildcard handler: {handler.__name__}")
        else:
            self._handlers.setdefault(event_type, []).append(handler)
            logger.debug(f"Registered handler {handler.__name__} for {event_type.value}")

    def unsubscribe(
        self, event_type: Optional[ReadModelEvent], handler: EventHandler
    ) -> bool:
        """Unsubscribe a handler. Returns True if it was registered."""
        handlers = self._wildcard_handlers if event_type is None else self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    async def emit(
        self,
        event_type: ReadModelEvent,
        data: Optional[Dict[str, Any]] = None,
        source: str = "orderview",
    ) -> Event:
        """Emit an event to all subscribed handlers and wait for them."""
        event = Event(
            type=event_type,
            data=data or {},
            metadata=EventMetadata(source=source),
        )

        self._history.append(event)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]

        handlers = list(self._handlers.get(event_type, []))
        handlers.extend(self._wildcard_handlers)

        if not handlers:
            return event

        results = await asyncio.gather(
            *[handler(event.data) for handler in handlers],
            return_exceptions=True,
        )

        for handler, result in zip(handlers, results):
            if isinstance(result, Exception):
                logger.error(
                    f"Handler {handler.__name__} failed for {event_type.value}: {result}",
                    extra={"event": event.to_dict()},
                )

        return event

    def get_history(
        self, event_type: Optional[ReadModelEvent] = None, limit: int = 20
    ) -> List[Dict[str, Any]]:
        """Get recent event history, newest last."""
        history = self._history
        if event_type:
            history = [e for e in history if e.type == event_type]
        return [e.to_dict() for e in history[-limit:]]

    def clear_handlers(self) -> None:
        """Remove all handlers (useful for testing)."""
        self._handlers.clear()
        self._wildcard_handlers.clear()

    def clear_history(self) -> None:
        """Clear event history."""
        self._history.clear()


# Global event bus instance
events = EventBus()
