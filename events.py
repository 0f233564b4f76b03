# Engine Event Router
# File: events.py

"""
Lifecycle notifications (missions started/completed/cancelled, commands applied,
ticks). Subscribers are a best-effort side channel: a failing handler is logged
and never breaks the state transition that published the event.
"""

import uuid
import threading
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List
import logging

logger = logging.getLogger(__name__)

class EventPriority(int, Enum):
    CRITICAL = 1
    HIGH = 2
    MEDIUM = 3
    LOW = 4
    INFO = 5

@dataclass
class Event:
    type: str
    source: str
    data: Dict[str, Any]
    priority: EventPriority = EventPriority.MEDIUM
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=datetime.now)
    processed: bool = False

class EventRouter:
    """Synchronous publish/subscribe with wildcard topics ('*', 'mission.*')"""

    def __init__(self, history_size: int = 1000):
        self.subscribers: Dict[str, List[Callable[[Event], None]]] = defaultdict(list)
        self.event_history = deque(maxlen=history_size)
        self.error_handlers: List[Callable[[Exception], None]] = []
        self._lock = threading.Lock()

    def subscribe(self, event_type: str, handler: Callable[[Event], None]):
        """Subscribe to an event type or a 'prefix.*' pattern"""
        with self._lock:
            self.subscribers[event_type].append(handler)
        logger.debug(f"Subscribed to {event_type}")

    def add_error_handler(self, handler: Callable[[Exception], None]):
        """Called with every exception raised by a subscriber"""
        with self._lock:
            self.error_handlers.append(handler)

    def publish(self, event: Event):
        with self._lock:
            self.event_history.append(event)
            handlers = list(self._handlers_for(event.type))

        for handler in handlers:
            try:
                handler(event)
                event.processed = True
            except Exception as e:
                logger.error(f"Handler error for {event.type}: {e}")
                self._handle_error(e)

    def emit(self, event_type: str, source: str,
             priority: EventPriority = EventPriority.MEDIUM, **data):
        """Shorthand for publish(Event(...))"""
        self.publish(Event(type=event_type, source=source, data=data, priority=priority))

    def recent(self, limit: int = 50) -> List[Event]:
        with self._lock:
            return list(self.event_history)[-limit:]

    def _handlers_for(self, event_type: str):
        for pattern, handlers in self.subscribers.items():
            if pattern == '*' or pattern == event_type:
                yield from handlers
            elif pattern.endswith('.*') and event_type.startswith(pattern[:-1]):
                yield from handlers

    def _handle_error(self, error: Exception):
        for handler in list(self.error_handlers):
            try:
                handler(error)
            except Exception as e:
                logger.error(f"Error handler failed: {e}")
