"""In-process publish/subscribe for engine events.

Each subscription owns a FIFO queue. Handler subscriptions get a
dedicated dispatcher thread that delivers events one at a time in
publish order; subscriptions without a handler are pull queues that a
long-lived observer (a rolling update, a readiness wait) drains itself.

Ordering:
    Publishing is serialized by the bus lock, so every subscriber sees
    events in the same global order. Components publish container events
    while holding that container's lock, which makes per-container order
    match transition order.
"""

from __future__ import annotations

import itertools
import logging
import queue
import threading
from collections import deque
from dataclasses import replace
from typing import Callable, Iterable, Optional

from container_engine.domain.entities.events import Event, EventType

logger = logging.getLogger(__name__)

EventHandler = Callable[[Event], None]
EventPredicate = Callable[[Event], bool]

_STOP = object()


class Subscription:
    """A subscriber's queue of events."""

    def __init__(
        self,
        bus: EventBus,
        handler: Optional[EventHandler],
        types: Optional[frozenset[EventType]],
        predicate: Optional[EventPredicate],
        name: str,
    ) -> None:
        self._bus = bus
        self._handler = handler
        self._types = types
        self._predicate = predicate
        self.name = name
        self._queue: queue.Queue = queue.Queue()
        self._pending = 0
        self._idle = threading.Condition()
        self._closed = False
        self._thread: threading.Thread | None = None
        if handler is not None:
            self._thread = threading.Thread(target=self._dispatch, name=f"events-{name}", daemon=True)
            self._thread.start()

    @property
    def closed(self) -> bool:
        return self._closed

    def matches(self, event: Event) -> bool:
        if self._types is not None and event.type not in self._types:
            return False
        if self._predicate is not None and not self._predicate(event):
            return False
        return True

    def _offer(self, event: Event) -> None:
        with self._idle:
            self._pending += 1
        self._queue.put(event)

    def _done(self) -> None:
        with self._idle:
            self._pending -= 1
            if self._pending == 0:
                self._idle.notify_all()

    def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        """Take the next event from a pull subscription.

        Args:
            timeout: Seconds to wait; None waits forever.

        Returns:
            The event, or None on timeout or close.
        """
        if self._handler is not None:
            raise RuntimeError("get() is only available on pull subscriptions")
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _STOP:
            return None
        self._done()
        return item

    def drain(self) -> list[Event]:
        """Take every queued event without waiting."""
        events = []
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return events
            if item is _STOP:
                return events
            self._done()
            events.append(item)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait until every offered event has been handled.

        Returns:
            True if idle, False on timeout.
        """
        with self._idle:
            return self._idle.wait_for(lambda: self._pending == 0, timeout=timeout)

    def close(self) -> None:
        """Unsubscribe. A running handler finishes its current event."""
        if self._closed:
            return
        self._closed = True
        self._bus._remove(self)
        self._queue.put(_STOP)
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=5.0)

    def _dispatch(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            try:
                self._handler(item)
            except Exception:
                logger.exception(f"Event handler {self.name} failed on {item.type.value}")
            finally:
                self._done()


class EventBus:
    """Typed event bus with per-subscriber queues.

    Example:
        bus = EventBus()
        sub = bus.subscribe(on_exit, types=[EventType.CONTAINER_EXITED])
        bus.publish(Event(EventType.CONTAINER_EXITED, ResourceKind.CONTAINER, cid))
        sub.close()
    """

    def __init__(self, history_size: int = 1000) -> None:
        """Initialize the event bus.

        Args:
            history_size: Number of recent events retained for inspection.
        """
        self._lock = threading.Lock()
        self._subscriptions: list[Subscription] = []
        self._sequence = itertools.count(1)
        self._history: deque[Event] = deque(maxlen=history_size)
        self._closed = False
        self._names = itertools.count(1)

    def subscribe(
        self,
        handler: Optional[EventHandler] = None,
        types: Optional[Iterable[EventType]] = None,
        predicate: Optional[EventPredicate] = None,
        name: Optional[str] = None,
    ) -> Subscription:
        """Subscribe to events.

        Args:
            handler: Called for each event on a dispatcher thread. Without
                a handler the subscription is a pull queue.
            types: Event types of interest; None means all.
            predicate: Extra filter evaluated at publish time.
            name: Subscriber name used for the thread and logs.

        Returns:
            The subscription.
        """
        with self._lock:
            if self._closed:
                raise RuntimeError("Event bus is closed")
            subscription = Subscription(
                self,
                handler,
                frozenset(types) if types is not None else None,
                predicate,
                name or f"sub-{next(self._names)}",
            )
            self._subscriptions.append(subscription)
        return subscription

    def publish(self, event: Event) -> Event:
        """Publish an event to every matching subscription.

        Args:
            event: Event to publish.

        Returns:
            The event with its sequence number assigned.
        """
        with self._lock:
            if self._closed:
                logger.debug(f"Dropping {event.type.value} published after close")
                return event
            event = replace(event, sequence=next(self._sequence))
            self._history.append(event)
            for subscription in self._subscriptions:
                try:
                    matched = subscription.matches(event)
                except Exception:
                    logger.exception(f"Event predicate of {subscription.name} failed")
                    continue
                if matched:
                    subscription._offer(event)
        return event

    def history(self, types: Optional[Iterable[EventType]] = None) -> list[Event]:
        """Recent events, oldest first."""
        wanted = frozenset(types) if types is not None else None
        with self._lock:
            return [e for e in self._history if wanted is None or e.type in wanted]

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait until every handler subscription has drained its queue."""
        with self._lock:
            subscriptions = [s for s in self._subscriptions if s._handler is not None]
        return all(s.wait_idle(timeout) for s in subscriptions)

    def close(self) -> None:
        """Close every subscription and reject further subscribers."""
        with self._lock:
            self._closed = True
            subscriptions = list(self._subscriptions)
        for subscription in subscriptions:
            subscription.close()

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)
