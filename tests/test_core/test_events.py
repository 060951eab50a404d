"""Tests for the event bus and progress bands."""

import asyncio

from pwrsync.core.events import (
    APPLY_BAND,
    CHAIN_BAND,
    DOWNLOAD_BAND,
    RUNTIME_BAND,
    ErrorEvent,
    EventBus,
    ProgressBand,
    ProgressEvent,
    ProgressReporter,
    StateChangedEvent,
)
from pwrsync.core.types import UpdateState


class TestEventBus:
    """Test event delivery."""

    def test_listener_receives_events(self):
        """Test listeners get every event in order."""
        bus = EventBus()
        received = []
        bus.add_listener(received.append)

        bus.progress("download", 10, "key")
        bus.error("install", "failed", "detail")
        bus.state_changed(UpdateState.DONE)

        assert received == [
            ProgressEvent("download", 10, "key"),
            ErrorEvent("install", "failed", "detail"),
            StateChangedEvent(UpdateState.DONE),
        ]

    def test_remove_listener(self):
        """Test removed listeners get nothing."""
        bus = EventBus()
        received = []
        bus.add_listener(received.append)
        bus.remove_listener(received.append)

        bus.progress("download", 10, "key")

        assert received == []

    def test_queue_drops_progress_when_full(self):
        """Test progress is lossy under backpressure."""

        async def run():
            bus = EventBus(queue_size=2)
            queue = bus.subscribe()
            bus.progress("download", 1, "a")
            bus.progress("download", 2, "b")
            bus.progress("download", 3, "c")
            return [queue.get_nowait() for _ in range(queue.qsize())]

        events = asyncio.run(run())
        assert [event.percent for event in events] == [1, 2]

    def test_queue_keeps_errors_when_full(self):
        """Test errors and state changes evict the oldest event."""

        async def run():
            bus = EventBus(queue_size=2)
            queue = bus.subscribe()
            bus.progress("download", 1, "a")
            bus.progress("download", 2, "b")
            bus.error("install", "failed")
            bus.state_changed(UpdateState.ERROR)
            return [queue.get_nowait() for _ in range(queue.qsize())]

        events = asyncio.run(run())
        assert events == [ErrorEvent("install", "failed"), StateChangedEvent(UpdateState.ERROR)]

    def test_unsubscribe(self):
        """Test unsubscribed queues stop receiving."""

        async def run():
            bus = EventBus()
            queue = bus.subscribe()
            bus.unsubscribe(queue)
            bus.progress("download", 1, "a")
            return queue.qsize()

        assert asyncio.run(run()) == 0


class TestProgressBand:
    """Test percentage band mapping."""

    def test_phase_bands_cover_range(self):
        """Test the fixed bands are contiguous."""
        assert DOWNLOAD_BAND.end == APPLY_BAND.start
        assert APPLY_BAND.end == RUNTIME_BAND.start
        assert RUNTIME_BAND.end == 100
        assert (CHAIN_BAND.start, CHAIN_BAND.end) == (DOWNLOAD_BAND.start, APPLY_BAND.end)

    def test_map(self):
        """Test fractions map into the band and clamp."""
        band = ProgressBand(5, 65)
        assert band.map(0.0) == 5
        assert band.map(0.5) == 35
        assert band.map(1.0) == 65
        assert band.map(2.0) == 65
        assert band.map(-1.0) == 5

    def test_split(self):
        """Test equal sub-bands are consecutive."""
        band = ProgressBand(0, 100)
        parts = [band.split(i, 4) for i in range(4)]
        assert parts[0] == ProgressBand(0, 25)
        assert parts[-1] == ProgressBand(75, 100)
        assert all(a.end == b.start for a, b in zip(parts, parts[1:]))

    def test_divide(self):
        """Test cutting a band at a fraction."""
        first, second = ProgressBand(10, 20).divide(0.5)
        assert first == ProgressBand(10, 15)
        assert second == ProgressBand(15, 20)


class TestProgressReporter:
    """Test monotonic progress."""

    def test_never_moves_backwards(self):
        """Test lower percentages are clamped to the last one."""
        bus = EventBus()
        received = []
        bus.add_listener(received.append)
        reporter = ProgressReporter(bus)

        for percent in (5, 30, 20, 40, 150):
            reporter.report("download", percent, "key")

        assert [event.percent for event in received] == [5, 30, 30, 40, 100]
        assert reporter.last_percent == 100
