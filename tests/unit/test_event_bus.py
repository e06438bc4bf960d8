"""Unit tests for the event bus."""

import threading

import pytest

from container_engine.domain.entities import Event, EventType, ResourceKind
from container_engine.domain.services import EventBus


def container_event(event_type: EventType, subject: str = "c1", **attrs) -> Event:
    return Event(event_type, ResourceKind.CONTAINER, subject, attrs)


@pytest.mark.unit
class TestPublish:
    """Tests for publishing and sequencing."""

    def test_sequence_strictly_increases(self, bus: EventBus):
        """Test that the bus assigns increasing sequence numbers."""
        first = bus.publish(container_event(EventType.CONTAINER_CREATED))
        second = bus.publish(container_event(EventType.CONTAINER_STARTED))
        assert first.sequence == 1
        assert second.sequence == 2

    def test_history_filtered_by_type(self, bus: EventBus):
        bus.publish(container_event(EventType.CONTAINER_CREATED))
        bus.publish(container_event(EventType.CONTAINER_STARTED))
        bus.publish(container_event(EventType.CONTAINER_EXITED, exit_code=0))

        started = bus.history([EventType.CONTAINER_STARTED])
        assert [e.type for e in started] == [EventType.CONTAINER_STARTED]
        assert len(bus.history()) == 3

    def test_history_is_bounded(self):
        bus = EventBus(history_size=2)
        for _ in range(5):
            bus.publish(container_event(EventType.CONTAINER_HEALTH))
        assert [e.sequence for e in bus.history()] == [4, 5]
        bus.close()

    def test_publish_after_close_is_dropped(self):
        """Test that publishing on a closed bus is a no-op."""
        bus = EventBus()
        bus.close()
        event = bus.publish(container_event(EventType.CONTAINER_CREATED))
        assert event.sequence == 0
        assert bus.history() == []

    def test_subscribe_after_close_rejected(self):
        bus = EventBus()
        bus.close()
        with pytest.raises(RuntimeError):
            bus.subscribe()


@pytest.mark.unit
class TestPullSubscriptions:
    """Tests for subscriptions without a handler."""

    def test_get_in_publish_order(self, bus: EventBus):
        sub = bus.subscribe()
        bus.publish(container_event(EventType.CONTAINER_CREATED))
        bus.publish(container_event(EventType.CONTAINER_STARTED))

        assert sub.get(timeout=1).type == EventType.CONTAINER_CREATED
        assert sub.get(timeout=1).type == EventType.CONTAINER_STARTED
        assert sub.get(timeout=0.01) is None

    def test_type_filter(self, bus: EventBus):
        """Test that a subscription only receives the types it asked for."""
        sub = bus.subscribe(types=[EventType.CONTAINER_EXITED])
        bus.publish(container_event(EventType.CONTAINER_STARTED))
        bus.publish(container_event(EventType.CONTAINER_EXITED, exit_code=1))

        events = sub.drain()
        assert len(events) == 1
        assert events[0].get("exit_code") == 1

    def test_predicate_filter(self, bus: EventBus):
        sub = bus.subscribe(predicate=lambda e: e.subject_id == "c2")
        bus.publish(container_event(EventType.CONTAINER_STARTED, "c1"))
        bus.publish(container_event(EventType.CONTAINER_STARTED, "c2"))
        assert [e.subject_id for e in sub.drain()] == ["c2"]

    def test_failing_predicate_skips_subscriber(self, bus: EventBus):
        """Test that a broken predicate does not break publishing."""
        broken = bus.subscribe(predicate=lambda e: e.attributes["missing"])
        healthy = bus.subscribe()
        bus.publish(container_event(EventType.CONTAINER_CREATED))
        assert broken.drain() == []
        assert len(healthy.drain()) == 1

    def test_get_on_handler_subscription_rejected(self, bus: EventBus):
        sub = bus.subscribe(lambda e: None)
        with pytest.raises(RuntimeError):
            sub.get(timeout=0)

    def test_close_unblocks_get(self, bus: EventBus):
        sub = bus.subscribe()
        results = []
        waiter = threading.Thread(target=lambda: results.append(sub.get(timeout=5)))
        waiter.start()
        sub.close()
        waiter.join(timeout=2)
        assert results == [None]
        assert sub.closed

    def test_closed_subscription_receives_nothing(self, bus: EventBus):
        sub = bus.subscribe()
        sub.close()
        bus.publish(container_event(EventType.CONTAINER_CREATED))
        assert sub.drain() == []


@pytest.mark.unit
class TestHandlerSubscriptions:
    """Tests for subscriptions with a dispatcher thread."""

    def test_handler_receives_events_in_order(self, bus: EventBus):
        """Test that every subscriber sees the global publish order."""
        seen_a: list[int] = []
        seen_b: list[int] = []
        bus.subscribe(lambda e: seen_a.append(e.sequence))
        bus.subscribe(lambda e: seen_b.append(e.sequence))

        for _ in range(20):
            bus.publish(container_event(EventType.CONTAINER_HEALTH))

        assert bus.wait_idle(timeout=2)
        assert seen_a == list(range(1, 21))
        assert seen_b == seen_a

    def test_handler_error_does_not_stop_dispatch(self, bus: EventBus):
        seen = []

        def handler(event: Event) -> None:
            if event.sequence == 1:
                raise ValueError("boom")
            seen.append(event.sequence)

        sub = bus.subscribe(handler)
        bus.publish(container_event(EventType.CONTAINER_CREATED))
        bus.publish(container_event(EventType.CONTAINER_STARTED))
        assert sub.wait_idle(timeout=2)
        assert seen == [2]

    def test_slow_handler_does_not_block_publisher(self, bus: EventBus):
        """Test that publishing returns while a handler is still busy."""
        release = threading.Event()
        bus.subscribe(lambda e: release.wait(5))

        bus.publish(container_event(EventType.CONTAINER_CREATED))
        bus.publish(container_event(EventType.CONTAINER_STARTED))
        assert not bus.wait_idle(timeout=0.05)

        release.set()
        assert bus.wait_idle(timeout=2)
