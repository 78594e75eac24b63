"""
multirpc - Quota Tracker Tests

Verifies:
- 90% safety margin on every window
- Fixed windows that roll by whole lengths (no drift)
- Atomic check-and-increment under concurrency
- Per-method credit costs
"""

import asyncio
import threading

import pytest

from multirpc.core.clock import ManualClock
from multirpc.core.errors import ProviderNotFoundError
from multirpc.core.models import QuotaPeriod
from multirpc.routing.quota import QuotaTracker, QuotaWindow

from conftest import make_provider


@pytest.fixture
def tracker(manual_clock):
    return QuotaTracker(manual_clock)


# ============================================================
# Safety margin
# ============================================================

class TestSafetyMargin:
    """A provider is eligible only while usage < limit * 0.9."""

    def test_minute_limit_60_allows_54(self, tracker):
        """54 requests fit under a 60/min ceiling, the 55th does not."""
        tracker.register(make_provider("A", requests_per_minute=60))

        accepted = sum(1 for _ in range(60) if tracker.try_acquire("A"))

        assert accepted == 54
        assert tracker.can_accept("A") is False

    def test_every_window_is_checked(self, tracker):
        """The tightest window decides eligibility."""
        tracker.register(make_provider("A", requests_per_minute=1000, requests_per_day=10))

        accepted = sum(1 for _ in range(20) if tracker.try_acquire("A"))

        assert accepted == 9

    def test_can_accept_does_not_count(self, tracker):
        """Checking eligibility never consumes quota."""
        tracker.register(make_provider("A"))

        for _ in range(10):
            assert tracker.can_accept("A") is True

        assert tracker.usage("A").total_requests == 0

    def test_record_usage_increments_all_windows(self, tracker):
        """One request counts once in minute, day and month windows."""
        tracker.register(make_provider("A"))

        tracker.record_usage("A")
        tracker.record_usage("A")
        usage = tracker.usage("A")

        assert usage.count(QuotaPeriod.MINUTE) == 2
        assert usage.count(QuotaPeriod.DAY) == 2
        assert usage.count(QuotaPeriod.MONTH) == 2
        assert usage.total_requests == 2

    def test_utilization_percent(self, tracker):
        """Utilization is reported against the raw ceiling."""
        tracker.register(make_provider("A", requests_per_minute=50))

        for _ in range(10):
            tracker.try_acquire("A")

        assert tracker.usage("A").utilization(QuotaPeriod.MINUTE) == pytest.approx(20.0)

    def test_unknown_provider_raises(self, tracker):
        """Unregistered names are a configuration error."""
        with pytest.raises(ProviderNotFoundError):
            tracker.can_accept("missing")


# ============================================================
# Window rollover
# ============================================================

class TestWindowRollover:
    """Fixed windows reset on schedule without drift."""

    def test_minute_window_resets_after_60s(self, tracker, manual_clock):
        """An exhausted minute window accepts again once it rolls."""
        tracker.register(make_provider("A", requests_per_minute=10))
        while tracker.try_acquire("A"):
            pass
        assert tracker.can_accept("A") is False

        manual_clock.advance(60)

        assert tracker.can_accept("A") is True
        assert tracker.usage("A").count(QuotaPeriod.MINUTE) == 0

    def test_day_window_keeps_counting_across_minutes(self, tracker, manual_clock):
        """Only the elapsed window resets."""
        tracker.register(make_provider("A"))
        for _ in range(5):
            tracker.try_acquire("A")

        manual_clock.advance(61)
        usage = tracker.usage("A")

        assert usage.count(QuotaPeriod.MINUTE) == 0
        assert usage.count(QuotaPeriod.DAY) == 5
        assert usage.count(QuotaPeriod.MONTH) == 5

    def test_reset_at_advances_by_whole_lengths(self, tracker, manual_clock):
        """
        A check at t0+61 moves reset_at to t0+120, not t0+121; a check
        at t0+185 moves it to t0+240.
        """
        start = manual_clock.time()
        tracker.register(make_provider("A"))

        manual_clock.advance(61)
        assert tracker.usage("A").windows[QuotaPeriod.MINUTE].reset_at == start + 120

        manual_clock.advance(124)  # t0 + 185
        assert tracker.usage("A").windows[QuotaPeriod.MINUTE].reset_at == start + 240

    def test_rollover_is_idempotent(self, tracker, manual_clock):
        """Checking twice in the same instant resets at most once."""
        tracker.register(make_provider("A"))
        manual_clock.advance(60)

        tracker.try_acquire("A")
        tracker.can_accept("A")
        tracker.can_accept("A")

        assert tracker.usage("A").count(QuotaPeriod.MINUTE) == 1

    def test_window_roll_unit(self):
        """QuotaWindow.roll only resets once the boundary is reached."""
        window = QuotaWindow(period=QuotaPeriod.MINUTE, limit=10, reset_at=1060.0, count=7)

        assert window.roll(1059.9) is False
        assert window.count == 7

        assert window.roll(1060.0) is True
        assert window.count == 0
        assert window.reset_at == 1120.0


# ============================================================
# Credit costs
# ============================================================

class TestMethodCosts:
    """Heavy methods consume several credits per call."""

    def test_weighted_calls_fill_the_window(self, tracker):
        """With 90 usable credits, 50 + 40 fit and nothing else does."""
        tracker.register(make_provider("A", requests_per_minute=100))

        assert tracker.try_acquire("A", cost=50) is True
        assert tracker.try_acquire("A", cost=50) is False
        assert tracker.try_acquire("A", cost=40) is True
        assert tracker.try_acquire("A") is False

        usage = tracker.usage("A")
        assert usage.count(QuotaPeriod.MINUTE) == 90
        assert usage.total_requests == 2
        assert usage.total_credits == 90

    def test_refused_call_consumes_nothing(self, tracker):
        tracker.register(make_provider("A", requests_per_minute=10))

        assert tracker.try_acquire("A", cost=20) is False

        usage = tracker.usage("A")
        assert usage.count(QuotaPeriod.DAY) == 0
        assert usage.total_credits == 0

    def test_can_accept_with_cost(self, tracker):
        tracker.register(make_provider("A", requests_per_minute=100))
        tracker.record_usage("A", cost=80)

        assert tracker.can_accept("A") is True
        assert tracker.can_accept("A", cost=10) is True
        assert tracker.can_accept("A", cost=11) is False

    def test_cost_lookup_order(self, manual_clock):
        """Provider costs win over tracker-wide costs; unknown methods cost 1."""
        tracker = QuotaTracker(manual_clock, method_costs={"getSignaturesForAddress": 50, "getBalance": 2})
        tracker.register(make_provider("A", method_costs={"getBalance": 5}))
        tracker.register(make_provider("B"))

        assert tracker.cost_of("A", "getBalance") == 5
        assert tracker.cost_of("B", "getBalance") == 2
        assert tracker.cost_of("A", "getSignaturesForAddress") == 50
        assert tracker.cost_of("A", "getSlot") == 1
        assert tracker.cost_of("A", None) == 1

    def test_usage_reports_credits(self, tracker):
        tracker.register(make_provider("A"))
        tracker.try_acquire("A", cost=3)

        data = tracker.usage("A").to_dict()

        assert data["total_requests"] == 1
        assert data["total_credits"] == 3
        assert data["windows"]["month"]["count"] == 3


# ============================================================
# Concurrency
# ============================================================

class TestAtomicAcquire:
    """Concurrent callers never jointly exceed the effective ceiling."""

    def test_threads_never_exceed_ceiling(self):
        """50 threads racing for a 10/min provider get exactly 9 slots."""
        tracker = QuotaTracker(ManualClock())
        tracker.register(make_provider("A", requests_per_minute=10))
        results = []
        barrier = threading.Barrier(50)

        def worker():
            barrier.wait()
            results.append(tracker.try_acquire("A"))

        threads = [threading.Thread(target=worker) for _ in range(50)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 9
        assert tracker.usage("A").count(QuotaPeriod.MINUTE) == 9

    @pytest.mark.asyncio
    async def test_tasks_never_exceed_ceiling(self):
        """Concurrent asyncio tasks see the same bound."""
        tracker = QuotaTracker(ManualClock())
        tracker.register(make_provider("A", requests_per_minute=20))

        async def attempt():
            await asyncio.sleep(0)
            return tracker.try_acquire("A")

        results = await asyncio.gather(*(attempt() for _ in range(100)))

        assert sum(results) == 18
