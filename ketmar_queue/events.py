"""Queue event listeners.

RQ has no broker-side event stream, so each listener polls its queue's
registries and reports jobs that newly finished, failed or stalled since the
previous poll.
"""

import asyncio
import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from rq.job import Job
from rq.serializers import JSONSerializer

from .broker import BrokerQueue
from .models import failed_reason

logger = logging.getLogger(__name__)

COMPLETED = "completed"
FAILED = "failed"
STALLED = "stalled"
EVENT_TYPES = (COMPLETED, FAILED, STALLED)


@dataclass
class QueueEvent:
    """One job state transition seen by a listener."""
    event: str
    queue_name: str
    job_id: str
    details: Dict[str, Any] = field(default_factory=dict)


class QueueEvents:
    """Polling event listener bound to one queue."""

    def __init__(self, queue: BrokerQueue, poll_interval: float = 5.0):
        self.queue = queue
        self.poll_interval = poll_interval
        self._handlers: Dict[str, List[Callable]] = defaultdict(list)
        self._seen: Dict[str, Set[str]] = {COMPLETED: set(), FAILED: set()}
        self._primed = False
        self._task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def on(self, event: str, handler: Callable) -> None:
        """Register a handler called with the ``QueueEvent``; may be async."""
        if event not in EVENT_TYPES:
            raise ValueError(f"Unknown queue event: {event}")
        self._handlers[event].append(handler)

    def poll(self) -> List[QueueEvent]:
        """Collect events since the previous poll. Blocking."""
        events: List[QueueEvent] = []
        completed: Set[str] = set()
        failed: Set[str] = set()

        for lane in self.queue.lanes.values():
            started = lane.started_job_registry
            # Expired entries must be read before anything triggers registry cleanup
            expired = started.get_expired_job_ids()
            events.extend(QueueEvent(STALLED, self.queue.name, job_id) for job_id in expired)
            if expired:
                started.cleanup()
            completed.update(lane.finished_job_registry.get_job_ids())
            failed.update(lane.failed_job_registry.get_job_ids())

        if not self._primed:
            # History from before the listener started is not reported
            self._seen = {COMPLETED: completed, FAILED: failed}
            self._primed = True
            return events

        for job_id in sorted(completed - self._seen[COMPLETED]):
            events.append(QueueEvent(COMPLETED, self.queue.name, job_id))

        new_failed = sorted(failed - self._seen[FAILED])
        if new_failed:
            jobs = Job.fetch_many(new_failed, connection=self.queue.connection, serializer=JSONSerializer)
            for job_id, job in zip(new_failed, jobs):
                reason = failed_reason(job) if job is not None else None
                events.append(QueueEvent(FAILED, self.queue.name, job_id, {'failed_reason': reason}))

        self._seen = {COMPLETED: completed, FAILED: failed}
        return events

    async def dispatch(self, events: List[QueueEvent]) -> None:
        """Deliver events to their handlers; handler errors are logged."""
        for event in events:
            for handler in self._handlers.get(event.event, []):
                try:
                    result = handler(event)
                    if inspect.isawaitable(result):
                        await result
                except Exception as e:
                    logger.error(f"Error in {event.event} handler for {self.queue.name}: {e}")

    async def check(self) -> List[QueueEvent]:
        """Poll off the event loop and dispatch."""
        loop = asyncio.get_running_loop()
        events = await loop.run_in_executor(None, self.poll)
        await self.dispatch(events)
        return events

    def start(self) -> None:
        """Start the polling task on the running loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._poll_loop(), name=f"events-{self.queue.name}")

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await self.check()
            except Exception as e:
                logger.error(f"Error polling events for {self.queue.name}: {e}")
            await asyncio.sleep(self.poll_interval)

    async def close(self) -> None:
        """Stop polling."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
