"""
Change notifications for the DID registry.

One event per committed mutation:

* ``created``            : a new identifier was registered
* ``deleted``            : a record and its key set were removed
* ``controller_changed`` : control passed to a new identity

Publishing and delivery are split.  The registry publishes while it holds
the identifier lock, which fixes the sequence number and appends to the
bounded history (HTTP polling, WebSocket catch-up).  It calls ``deliver``
after releasing that lock; observers then run in sequence order and in
registration order, with no registry lock held, so an observer may call
back into the registry.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger("didregistry.events")

DEFAULT_HISTORY = 10_000


class EventType(Enum):
    CREATED = "created"
    DELETED = "deleted"
    CONTROLLER_CHANGED = "controller_changed"


@dataclass(frozen=True)
class Event:
    """A single committed state transition."""
    sequence: int
    event_type: EventType
    identifier: str
    new_controller: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        d = {
            "sequence": self.sequence,
            "type": self.event_type.value,
            "identifier": self.identifier,
            "timestamp": self.timestamp,
        }
        if self.event_type is EventType.CONTROLLER_CHANGED:
            d["new_controller"] = self.new_controller
        return d


Observer = Callable[[Event], None]


class NotificationStream:
    """Ordered, in-process broadcast of registry events."""

    def __init__(self, history_size: int = DEFAULT_HISTORY):
        self._observers: dict[int, Observer] = {}
        self._next_token = 1
        self._sequence = 0
        self._history: deque[Event] = deque(maxlen=max(history_size, 0) or None)
        self._pending: deque[Event] = deque()
        self._lock = threading.Lock()
        # Held only while observers run; never waited on.
        self._turnstile = threading.Lock()

    # ── observers ────────────────────────────────────────────────

    def subscribe(self, observer: Observer) -> int:
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._observers[token] = observer
            return token

    def unsubscribe(self, token: int) -> bool:
        with self._lock:
            return self._observers.pop(token, None) is not None

    @property
    def observer_count(self) -> int:
        return len(self._observers)

    # ── publish (called under the identifier lock) ───────────────

    def created(self, identifier: str) -> Event:
        return self._publish(EventType.CREATED, identifier)

    def deleted(self, identifier: str) -> Event:
        return self._publish(EventType.DELETED, identifier)

    def controller_changed(self, identifier: str, new_controller: str) -> Event:
        return self._publish(EventType.CONTROLLER_CHANGED, identifier, new_controller)

    def _publish(self, event_type: EventType, identifier: str,
                 new_controller: Optional[str] = None) -> Event:
        with self._lock:
            self._sequence += 1
            event = Event(
                sequence=self._sequence,
                event_type=event_type,
                identifier=identifier,
                new_controller=new_controller,
            )
            self._history.append(event)
            self._pending.append(event)
        logger.debug(f"Event #{event.sequence} {event_type.value} {identifier}")
        return event

    # ── delivery (called with no identifier lock held) ───────────

    def deliver(self) -> None:
        """Run observers over every pending event, in sequence order.

        If another thread is already delivering, or this thread is inside
        an observer, the active delivery loop picks the events up instead.
        """
        while True:
            if not self._turnstile.acquire(blocking=False):
                return
            try:
                self._drain()
            finally:
                self._turnstile.release()
            # Something published between the last pop and the release.
            with self._lock:
                if not self._pending:
                    return

    def _drain(self) -> None:
        while True:
            with self._lock:
                if not self._pending:
                    return
                event = self._pending.popleft()
                observers = list(self._observers.items())
            for token, observer in observers:
                try:
                    observer(event)
                except Exception:
                    logger.exception(
                        f"Observer {token} failed on {event.event_type.value} "
                        f"for {event.identifier}"
                    )

    @property
    def pending(self) -> int:
        return len(self._pending)

    # ── history ──────────────────────────────────────────────────

    @property
    def last_sequence(self) -> int:
        return self._sequence

    def history(self, since: int = 0) -> list[Event]:
        """Events with ``sequence > since`` still held in the buffer."""
        with self._lock:
            return [e for e in self._history if e.sequence > since]
