"""In-process status feed for job lifecycle events.

Each subscriber owns an unbounded asyncio.Queue. publish() enqueues to every
subscriber synchronously, so a subscriber observes events in the order they
were published and never misses one published after it subscribed.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime

from dispatcher.jobs.schemas import SessionStatus


@dataclass(frozen=True)
class JobStatusEvent:
    session_key: str
    job_name: str
    status: SessionStatus
    message: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


class StatusFeed:
    """Fan-out of JobStatusEvent to any number of subscribers."""

    def __init__(self) -> None:
        self._subscribers: list[asyncio.Queue[JobStatusEvent]] = []

    def subscribe(self) -> asyncio.Queue[JobStatusEvent]:
        queue: asyncio.Queue[JobStatusEvent] = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[JobStatusEvent]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def publish(self, event: JobStatusEvent) -> None:
        for queue in self._subscribers:
            queue.put_nowait(event)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
