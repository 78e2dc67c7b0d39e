"""
Defines the events emitted to observers and the bus that delivers them.

Observers never receive callbacks from the core. They subscribe and read
events from their own queue at their own pace.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, List, Optional, Tuple, Union

from .jobs import DownloadJob, JobState


@dataclass(frozen=True)
class QueueEntry:
    id: str
    url: str
    format: str
    state: JobState


@dataclass(frozen=True)
class QueueSnapshot:
    """All non-terminal jobs, oldest first."""
    jobs: Tuple[QueueEntry, ...] = field(default_factory=tuple)

    @classmethod
    def from_jobs(cls, jobs: List[DownloadJob]) -> 'QueueSnapshot':
        return cls(tuple(QueueEntry(job.job_id, job.url, job.format, job.state)
                         for job in jobs if not job.state.is_terminal))


@dataclass(frozen=True)
class JobStateChanged:
    id: str
    state: JobState
    output_path: Optional[str] = None
    exit_code: Optional[int] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class JobProgress:
    id: str
    percent: float
    speed: Optional[str] = None
    eta: Optional[str] = None


@dataclass(frozen=True)
class JobLog:
    id: str
    line: str
    is_error: bool = False


Event = Union[QueueSnapshot, JobStateChanged, JobProgress, JobLog]


class Subscription:
    """An observer's private event queue. Iterate it with `async for`."""

    def __init__(self, bus: 'EventBus', maxsize: int = 0):
        self._bus = bus
        self.queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=maxsize)

    def __aiter__(self) -> AsyncIterator[Event]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Event]:
        while True:
            yield await self.queue.get()

    async def get(self) -> Event:
        return await self.queue.get()

    def get_nowait(self) -> Event:
        return self.queue.get_nowait()

    def drain(self) -> List[Event]:
        """Returns every event currently buffered without waiting."""
        events = []
        while not self.queue.empty():
            events.append(self.queue.get_nowait())
        return events

    def close(self):
        self._bus.unsubscribe(self)


class EventBus:
    """Fans events out to every subscriber. Emitting never blocks."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._subscribers: List[Subscription] = []

    def subscribe(self, maxsize: int = 0) -> Subscription:
        subscription = Subscription(self, maxsize)
        self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription):
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)

    def emit(self, event: Event):
        for subscription in list(self._subscribers):
            try:
                subscription.queue.put_nowait(event)
            except asyncio.QueueFull:
                # A slow observer loses events rather than stalling the queue.
                self.logger.warning(f"Dropping {type(event).__name__} for a full subscriber queue")
