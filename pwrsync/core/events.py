"""Progress, error and state events published to UI subscribers.

Components publish onto an :class:`EventBus`; the UI (or a test) subscribes
either with a bounded asyncio queue or a plain listener callback. Progress
events are lossy under backpressure, errors and state changes are not.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass

import structlog

from pwrsync.core.types import UpdateState

logger = structlog.get_logger()


@dataclass(frozen=True)
class ProgressEvent:
    """Overall progress of an update run."""

    stage: str
    percent: int
    message_key: str
    downloaded_bytes: int = 0
    total_bytes: int = 0


@dataclass(frozen=True)
class ErrorEvent:
    """A failure the UI should show."""

    type: str
    message: str
    technical_detail: str = ""


@dataclass(frozen=True)
class StateChangedEvent:
    """Orchestrator state transition.

    ``exit_code`` is set on terminal states only: 0 for done, 1 for error and
    130 for cancelled.
    """

    state: UpdateState
    exit_code: int | None = None


Event = ProgressEvent | ErrorEvent | StateChangedEvent
Listener = Callable[[Event], None]


class EventBus:
    """Fan-out channel for update events.

    Args:
        queue_size: Capacity of each subscriber queue
    """

    def __init__(self, queue_size: int = 256) -> None:
        self.queue_size = queue_size
        self._queues: list[asyncio.Queue[Event]] = []
        self._listeners: list[Listener] = []

    def subscribe(self) -> asyncio.Queue[Event]:
        """Create a subscriber queue receiving every future event."""
        queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=self.queue_size)
        self._queues.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[Event]) -> None:
        """Stop delivering events to a queue."""
        if queue in self._queues:
            self._queues.remove(queue)

    def add_listener(self, listener: Listener) -> None:
        """Register a synchronous listener."""
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        """Unregister a synchronous listener."""
        if listener in self._listeners:
            self._listeners.remove(listener)

    def publish(self, event: Event) -> None:
        """Deliver an event to all subscribers."""
        for queue in self._queues:
            self._offer(queue, event)
        for listener in list(self._listeners):
            listener(event)

    def _offer(self, queue: asyncio.Queue[Event], event: Event) -> None:
        if not queue.full():
            queue.put_nowait(event)
            return

        if isinstance(event, ProgressEvent):
            # Progress is superseded by the next report; drop it
            return

        # Make room for errors and state changes by evicting the oldest event
        try:
            queue.get_nowait()
        except asyncio.QueueEmpty:
            pass
        queue.put_nowait(event)
        logger.debug("event_queue_overflow", dropped="oldest")

    def progress(
        self,
        stage: str,
        percent: int,
        message_key: str,
        downloaded_bytes: int = 0,
        total_bytes: int = 0,
    ) -> None:
        """Publish a progress event."""
        self.publish(ProgressEvent(stage, percent, message_key, downloaded_bytes, total_bytes))

    def error(self, type: str, message: str, technical_detail: str = "") -> None:
        """Publish an error event."""
        self.publish(ErrorEvent(type, message, technical_detail))

    def state_changed(self, state: UpdateState, exit_code: int | None = None) -> None:
        """Publish a state change."""
        self.publish(StateChangedEvent(state, exit_code))


@dataclass(frozen=True)
class ProgressBand:
    """Slice of the overall 0-100 range owned by one phase."""

    start: int
    end: int

    def map(self, fraction: float) -> int:
        """Map a 0.0-1.0 sub-progress into this band."""
        fraction = min(max(fraction, 0.0), 1.0)
        return self.start + int((self.end - self.start) * fraction)

    def split(self, index: int, count: int) -> ProgressBand:
        """Get the index-th of count equal sub-bands."""
        if count <= 0:
            return self
        width = (self.end - self.start) / count
        return ProgressBand(
            self.start + int(width * index),
            self.start + int(width * (index + 1)),
        )

    def divide(self, fraction: float) -> tuple[ProgressBand, ProgressBand]:
        """Cut into two consecutive bands at a fraction of the width."""
        middle = self.map(fraction)
        return ProgressBand(self.start, middle), ProgressBand(middle, self.end)


DOWNLOAD_BAND = ProgressBand(5, 65)
APPLY_BAND = ProgressBand(65, 85)
# Download and apply bands combined, sliced per diff-chain step
CHAIN_BAND = ProgressBand(DOWNLOAD_BAND.start, APPLY_BAND.end)
RUNTIME_BAND = ProgressBand(85, 100)


class ProgressReporter:
    """Publishes overall progress that never moves backwards within a run."""

    def __init__(self, bus: EventBus) -> None:
        self.bus = bus
        self._last = 0

    @property
    def last_percent(self) -> int:
        """Highest percentage published so far."""
        return self._last

    def report(
        self,
        stage: str,
        percent: int,
        message_key: str,
        downloaded_bytes: int = 0,
        total_bytes: int = 0,
    ) -> None:
        """Publish progress, clamped to be monotonic."""
        percent = max(self._last, min(percent, 100))
        self._last = percent
        self.bus.progress(stage, percent, message_key, downloaded_bytes, total_bytes)
