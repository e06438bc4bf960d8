"""Unit tests for the timer service and keyed locks."""

import threading
import time

import pytest

from container_engine.domain.services import KeyedLocks, TimerService


@pytest.mark.unit
class TestTimerService:
    """Tests for TimerService."""

    def test_fires_in_deadline_order(self, timers: TimerService):
        """Test that callbacks run earliest deadline first."""
        fired: list[str] = []
        done = threading.Event()
        timers.call_later(0.06, lambda: (fired.append("late"), done.set()))
        timers.call_later(0.02, fired.append, "early")
        timers.call_later(0.04, fired.append, "middle")

        assert done.wait(timeout=2)
        assert fired == ["early", "middle", "late"]

    def test_cancel_prevents_firing(self, timers: TimerService):
        fired = threading.Event()
        handle = timers.call_later(0.05, fired.set)
        assert handle.pending
        assert handle.cancel()
        assert not handle.pending
        assert not fired.wait(timeout=0.15)

    def test_cancel_after_fire(self, timers: TimerService):
        fired = threading.Event()
        handle = timers.call_later(0, fired.set)
        assert fired.wait(timeout=2)
        time.sleep(0.01)
        assert handle.cancel() is False

    def test_failing_callback_keeps_thread_alive(self, timers: TimerService):
        """Test that a raising callback does not kill the timer thread."""
        fired = threading.Event()
        timers.call_later(0, lambda: 1 / 0)
        timers.call_later(0.01, fired.set)
        assert fired.wait(timeout=2)

    def test_pending_count(self, timers: TimerService):
        handle = timers.call_later(10, lambda: None)
        timers.call_later(10, lambda: None)
        assert timers.pending_count() == 2
        handle.cancel()
        assert timers.pending_count() == 1

    def test_call_later_requires_running(self):
        service = TimerService()
        with pytest.raises(RuntimeError):
            service.call_later(1, lambda: None)

    def test_stop_drops_pending(self):
        """Test that stopping discards timers that have not fired."""
        service = TimerService()
        service.start()
        fired = threading.Event()
        handle = service.call_later(0.05, fired.set)
        service.stop()
        assert not service.running
        assert not handle.pending
        assert not fired.wait(timeout=0.15)

    def test_injected_clock(self):
        """Test that deadlines are computed from the injected clock."""
        now = [100.0]
        service = TimerService(clock=lambda: now[0])
        service.start()
        try:
            handle = service.call_later(5, lambda: None)
            assert handle.deadline == 105.0
            assert service.now() == 100.0
        finally:
            service.stop()


@pytest.mark.unit
class TestKeyedLocks:
    """Tests for KeyedLocks."""

    def test_same_key_same_lock(self, locks: KeyedLocks):
        assert locks.get("a") is locks.get("a")
        assert locks.get("a") is not locks.get("b")

    def test_hold_is_reentrant(self, locks: KeyedLocks):
        with locks.hold("a"):
            with locks.hold("a"):
                pass

    def test_hold_excludes_other_threads(self, locks: KeyedLocks):
        """Test that a held key blocks other threads."""
        acquired = []
        with locks.hold("a"):
            t = threading.Thread(target=lambda: acquired.append(locks.get("a").acquire(timeout=0.05)))
            t.start()
            t.join()
        assert acquired == [False]

    def test_discard(self, locks: KeyedLocks):
        locks.get("a")
        assert len(locks) == 1
        locks.discard("a")
        assert len(locks) == 0
