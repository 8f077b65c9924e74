"""
Custody Registry Notifications

Typed notifications emitted by the registry, a synchronous in-process event
bus, and an append-only store of recorded notifications.

    ┌──────────────────────────────────────────────────────────────────┐
    │  RegistryService ──publish──▶ EventBus ──▶ subscribed handlers    │
    │                                  │                                │
    │                                  └──▶ EventStore (per stream)     │
    │                                                                   │
    │  Streams: "product-<id>" for product notifications,               │
    │           "participants" for authorization notifications          │
    └──────────────────────────────────────────────────────────────────┘

Ordering: publish() runs every handler before it returns, and the registry
publishes while it still holds the product's lock, so handlers observe the
notifications of one product in the order the state changes happened.
Cross-product ordering is not guaranteed.

Usage:

    registry = RegistryService(admin="0xadmin")

    @registry.subscribe(ProductTransferred)
    def on_transfer(event: ProductTransferred):
        print(f"product {event.product_id} now held by {event.new_owner}")
"""

from __future__ import annotations

import threading
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Type

from custody.canonical import digest as canonical_digest
from custody.observability import RegistryLayer, get_logger

logger = get_logger("bus", RegistryLayer.EVENTS)

PARTICIPANTS_STREAM = "participants"


def product_stream(product_id: int) -> str:
    return f"product-{product_id}"


# ════════════════════════════════════════════════════════════════════════════
# EVENT BASE
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class Event:
    """
    Base class for registry notifications.

    Notifications are facts about a committed state change. Each carries a
    unique id and emission timestamp in addition to its payload.
    """

    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    event_timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    correlation_id: Optional[str] = None

    @property
    def event_type(self) -> str:
        return self.__class__.__name__

    @property
    def stream_id(self) -> str:
        return "registry"

    def payload(self) -> Dict[str, Any]:
        """Event fields without the envelope metadata."""
        data = asdict(self)
        for key in ("event_id", "event_timestamp", "correlation_id"):
            data.pop(key, None)
        return data

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["event_type"] = self.event_type
        return data

    def digest(self) -> str:
        """Deterministic digest of the event content."""
        return canonical_digest(self.to_dict())


@dataclass
class ProductRegistered(Event):
    """A product was created; ``manufacturer`` is its first owner."""
    product_id: int = 0
    name: str = ""
    manufacturer: str = ""

    @property
    def stream_id(self) -> str:
        return product_stream(self.product_id)


@dataclass
class ProductTransferred(Event):
    """Custody of a product moved from ``previous_owner`` to ``new_owner``."""
    product_id: int = 0
    previous_owner: str = ""
    new_owner: str = ""

    @property
    def stream_id(self) -> str:
        return product_stream(self.product_id)


@dataclass
class SupplyChainStepAdded(Event):
    """A step was appended to a product's history."""
    product_id: int = 0
    actor: str = ""
    action: str = ""

    @property
    def stream_id(self) -> str:
        return product_stream(self.product_id)


@dataclass
class ParticipantAuthorized(Event):
    """The admin authorized a participant with a role."""
    participant: str = ""
    role: str = ""

    @property
    def stream_id(self) -> str:
        return PARTICIPANTS_STREAM


# ════════════════════════════════════════════════════════════════════════════
# EVENT BUS
# ════════════════════════════════════════════════════════════════════════════


EventHandler = Callable[[Event], None]


@dataclass
class EventHandlerRegistration:
    """Registration for an event handler."""
    handler: EventHandler
    event_types: Set[Type[Event]]
    priority: int = 0
    filter_func: Optional[Callable[[Event], bool]] = None


class EventHandlerError(Exception):
    """A handler raised while processing a notification."""

    def __init__(self, event: Event, handler: EventHandler, cause: Exception):
        self.event = event
        self.handler = handler
        self.cause = cause
        name = getattr(handler, "__name__", repr(handler))
        super().__init__(f"Handler {name} failed for {event.event_type}: {cause}")


class EventBus:
    """
    Synchronous pub/sub for registry notifications.

    Handlers run in priority order (higher first) on the publishing thread.
    A failing handler is counted, logged and reported to ``on_error``; it
    never affects other handlers or the publisher.
    """

    def __init__(self, on_error: Optional[Callable[[EventHandlerError], None]] = None):
        self._handlers: List[EventHandlerRegistration] = []
        self._lock = threading.RLock()
        self._on_error = on_error
        self._published_count = 0
        self._handled_count = 0
        self._error_count = 0

    def subscribe(
        self,
        *event_types: Type[Event],
        priority: int = 0,
        filter_func: Optional[Callable[[Event], bool]] = None,
    ) -> Callable[[EventHandler], EventHandler]:
        """
        Decorator to subscribe a handler to event types.

        With no event types the handler receives every notification.
        """
        def decorator(handler: EventHandler) -> EventHandler:
            registration = EventHandlerRegistration(
                handler=handler,
                event_types=set(event_types) if event_types else {Event},
                priority=priority,
                filter_func=filter_func,
            )
            with self._lock:
                self._handlers.append(registration)
                self._handlers.sort(key=lambda r: -r.priority)
            return handler
        return decorator

    def unsubscribe(self, handler: EventHandler) -> bool:
        with self._lock:
            original_len = len(self._handlers)
            self._handlers = [r for r in self._handlers if r.handler != handler]
            return len(self._handlers) < original_len

    def publish(self, event: Event) -> None:
        """Deliver ``event`` to every matching handler before returning."""
        with self._lock:
            self._published_count += 1
            handlers_to_call = [
                registration for registration in self._handlers
                if any(isinstance(event, t) for t in registration.event_types)
                and (registration.filter_func is None or registration.filter_func(event))
            ]

        for registration in handlers_to_call:
            self._call_handler(registration.handler, event)

    def _call_handler(self, handler: EventHandler, event: Event) -> None:
        try:
            handler(event)
            with self._lock:
                self._handled_count += 1
        except Exception as e:
            with self._lock:
                self._error_count += 1
            error = EventHandlerError(event, handler, e)
            logger.warning(
                "event handler failed",
                operation="publish",
                error_code="EventHandlerError",
                event_type=event.event_type,
                cause=str(e),
            )
            if self._on_error:
                self._on_error(error)

    @property
    def metrics(self) -> Dict[str, int]:
        with self._lock:
            return {
                "published_count": self._published_count,
                "handled_count": self._handled_count,
                "error_count": self._error_count,
                "handler_count": len(self._handlers),
            }


# ════════════════════════════════════════════════════════════════════════════
# EVENT STORE
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class EventRecord:
    """A recorded notification."""
    sequence_number: int
    event: Event
    stream_id: str
    version: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence_number": self.sequence_number,
            "event": self.event.to_dict(),
            "stream_id": self.stream_id,
            "version": self.version,
        }


class EventStore:
    """
    Append-only notification log organized into streams.

    ``max_events`` bounds memory: once exceeded, the oldest records are
    dropped from the global log and from their streams. Sequence numbers and
    stream versions keep counting, so they are never reused.
    """

    def __init__(self, max_events: Optional[int] = None):
        self._events: Deque[EventRecord] = deque()
        self._streams: Dict[str, Deque[EventRecord]] = {}
        self._stream_versions: Dict[str, int] = {}
        self._sequence_number = 0
        self._max_events = max_events
        self._lock = threading.RLock()

    def append(self, event: Event) -> EventRecord:
        with self._lock:
            stream_id = event.stream_id
            version = self._stream_versions.get(stream_id, 0) + 1
            self._stream_versions[stream_id] = version
            self._sequence_number += 1
            record = EventRecord(
                sequence_number=self._sequence_number,
                event=event,
                stream_id=stream_id,
                version=version,
            )
            self._events.append(record)
            self._streams.setdefault(stream_id, deque()).append(record)

            if self._max_events is not None:
                while len(self._events) > self._max_events:
                    dropped = self._events.popleft()
                    self._streams[dropped.stream_id].popleft()
            return record

    def read_stream(self, stream_id: str) -> List[Event]:
        with self._lock:
            return [r.event for r in self._streams.get(stream_id, ())]

    def read_all(self, from_position: int = 0, max_count: int = 1000) -> List[EventRecord]:
        """Records with ``sequence_number > from_position``, oldest first."""
        with self._lock:
            out = [r for r in self._events if r.sequence_number > from_position]
            return out[:max_count]

    def get_stream_version(self, stream_id: str) -> int:
        with self._lock:
            return self._stream_versions.get(stream_id, 0)

    def get_stream_ids(self) -> List[str]:
        with self._lock:
            return list(self._streams.keys())

    @property
    def total_events(self) -> int:
        with self._lock:
            return len(self._events)

    @property
    def current_position(self) -> int:
        with self._lock:
            return self._sequence_number


__all__ = [
    "Event",
    "ProductRegistered",
    "ProductTransferred",
    "SupplyChainStepAdded",
    "ParticipantAuthorized",
    "EventHandler",
    "EventHandlerRegistration",
    "EventHandlerError",
    "EventBus",
    "EventRecord",
    "EventStore",
    "PARTICIPANTS_STREAM",
    "product_stream",
]
