"""
Migration Ledger Event Infrastructure

Typed domain events and an in-process event bus. The ledger publishes an
event for every recorded migration, for the migration that reaches the
migrate cap, and for the closure of the migration window.

Design Principles
─────────────────

    Immutable Events: Events are facts about what happened. They are
    published after the ledger state has changed and never alter it.

    Isolation: A failing handler is counted and reported to the bus's
    ``on_error`` callback; it never fails the ledger operation that
    published the event.

Usage
─────

    bus = EventBus()

    @bus.subscribe(TokensMigrated)
    def on_migrated(event: TokensMigrated):
        print(f"{event.migrant} migrated {event.amount}")

    ledger = MigrationLedger(..., event_bus=bus)

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import json
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Type


# ════════════════════════════════════════════════════════════════════════════
# EVENT BASE
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class Event:
    """
    Base class for all ledger events.

    Each event has a unique ID, a wall-clock timestamp and optional metadata.
    """

    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    event_timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    correlation_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def event_type(self) -> str:
        """Get the event type name."""
        return self.__class__.__name__

    def to_dict(self) -> Dict[str, Any]:
        """Serialize event to dictionary."""
        data = asdict(self)
        data["event_type"] = self.event_type
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str, sort_keys=True)


# ════════════════════════════════════════════════════════════════════════════
# DOMAIN EVENTS
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class TokensMigrated(Event):
    """Emitted when a migrant's balance is exchanged."""
    ledger: str = ""
    migrant: str = ""
    amount: int = 0
    credit: int = 0
    tax: int = 0
    total_migrated: int = 0
    migrant_count: int = 0
    block_time: int = 0


@dataclass
class MigrateCapReached(Event):
    """Emitted by the migration that first reaches the migrate cap."""
    ledger: str = ""
    total_migrated: int = 0
    migrate_cap: int = 0
    new_time_cap: int = 0
    block_time: int = 0


@dataclass
class MigrationEnded(Event):
    """Emitted when the migration window closes."""
    ledger: str = ""
    reason: str = ""
    actor: str = ""
    total_migrated: int = 0
    migrant_count: int = 0
    block_time: int = 0


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
    """Error during event handling."""
    def __init__(self, event: Event, handler: EventHandler, cause: Exception):
        self.event = event
        self.handler = handler
        self.cause = cause
        name = getattr(handler, "__name__", repr(handler))
        super().__init__(f"Handler {name} failed for {event.event_type}: {cause}")


class EventBus:
    """
    Synchronous in-memory event bus.

    Handlers run in priority order (higher first) on the publishing thread.

    Example:
        bus = EventBus()

        @bus.subscribe(MigrateCapReached, priority=10)
        def handle_cap(event):
            ...

        bus.publish(MigrateCapReached(total_migrated=200_000))
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

        With no event types the handler receives every event.
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
        """Unsubscribe a handler."""
        with self._lock:
            original_len = len(self._handlers)
            self._handlers = [r for r in self._handlers if r.handler != handler]
            return len(self._handlers) < original_len

    def publish(self, event: Event) -> None:
        """Publish an event to all matching subscribers."""
        with self._lock:
            self._published_count += 1
            handlers_to_call = [
                registration for registration in self._handlers
                if any(isinstance(event, t) for t in registration.event_types)
                and (registration.filter_func is None or registration.filter_func(event))
            ]

        # Call handlers outside the lock
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
            if self._on_error:
                self._on_error(EventHandlerError(event, handler, e))

    @property
    def metrics(self) -> Dict[str, int]:
        """Get event bus metrics."""
        with self._lock:
            return {
                "published_count": self._published_count,
                "handled_count": self._handled_count,
                "error_count": self._error_count,
                "handler_count": len(self._handlers),
            }
