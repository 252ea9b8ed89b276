"""Queue management system for KETMAR Market."""

import asyncio
import functools
import logging
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from redis import Redis
from redis.exceptions import WatchError

from .broker import BrokerQueue
from .config import DEFAULT_JOB_OPTIONS, QUEUES, JobPriority, QueueName, is_queue_enabled
from .connection import ConnectionProvider, get_connection_provider
from .events import COMPLETED, FAILED, STALLED, QueueEvent, QueueEvents
from .models import (
    AiTaskJob, AiTaskType, AnalyticsJob, DispatchResult, LifecycleAction, LifecycleJob,
    NotificationJob, SearchAlertJob, failed_job_record, job_record, utc_now,
)
from .scheduler import RepeatableJob, RepeatableJobRegistry, as_utc, parse_cron
from .settings import FallbackPolicy, QueueSettings, get_settings
from .workers.base import get_registered_worker

logger = logging.getLogger(__name__)

PROMOTE_LOCK_KEY = "ketmar-queue:promote-lock"
PROMOTE_LOCK_TTL_MS = 10000

Payload = Union[Dict[str, Any], NotificationJob, AnalyticsJob, AiTaskJob, LifecycleJob, SearchAlertJob]


class ManagerState(Enum):
    """Queue manager lifecycle."""
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    INITIALIZED = "initialized"
    SHUTDOWN = "shutdown"


def _payload(data: Payload) -> Dict[str, Any]:
    return data.to_dict() if hasattr(data, "to_dict") else dict(data)


class QueueManager:
    """Central queue management system.

    Owns one ``BrokerQueue`` and one ``QueueEvents`` listener per registered
    queue. Every public add operation returns a ``DispatchResult`` and never
    raises: when a queue is unavailable the job goes through the fallback
    policy instead.
    """

    def __init__(
        self,
        settings: Optional[QueueSettings] = None,
        provider: Optional[ConnectionProvider] = None,
        fallback_policy: Optional[FallbackPolicy] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings or get_settings()
        self.provider = provider or get_connection_provider()
        self.fallback_policy = FallbackPolicy(fallback_policy or self.settings.queue_fallback_policy)
        self.clock = clock
        self.connection: Optional[Redis] = None
        self.state = ManagerState.UNINITIALIZED
        self._queues: Dict[str, BrokerQueue] = {}
        self._events: Dict[str, QueueEvents] = {}
        self._repeatables: Optional[RepeatableJobRegistry] = None
        self._init_lock = asyncio.Lock()

    @property
    def initialized(self) -> bool:
        return self.state == ManagerState.INITIALIZED

    @property
    def queues(self) -> Dict[str, BrokerQueue]:
        return dict(self._queues)

    @property
    def listeners(self) -> Dict[str, QueueEvents]:
        return dict(self._events)

    async def _run(self, func: Callable, *args, **kwargs) -> Any:
        """Run a blocking broker call in the default executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))

    async def initialize(self, connection: Optional[Redis] = None, listen: bool = True) -> bool:
        """Create queues and, unless ``listen`` is False, their event listeners.

        Returns False instead of raising.
        """
        async with self._init_lock:
            if self.state == ManagerState.INITIALIZED:
                return True
            if self.state == ManagerState.SHUTDOWN:
                logger.warning("Queue manager was shut down and cannot be re-initialized")
                return False
            if connection is None and not is_queue_enabled(self.settings):
                logger.info("Queue system disabled (no REDIS_URL) - using fallback mode")
                return False

            self.state = ManagerState.INITIALIZING
            try:
                if connection is None:
                    connection = await self._run(self.provider.get_connection)
                if connection is None:
                    logger.warning("Redis connection not available - using fallback mode")
                    self.state = ManagerState.UNINITIALIZED
                    return False

                queues: Dict[str, BrokerQueue] = {}
                events: Dict[str, QueueEvents] = {}
                for name in QUEUES.values():
                    queue = BrokerQueue(
                        name, connection, DEFAULT_JOB_OPTIONS, job_timeout=self.settings.queue_job_timeout
                    )
                    listener = QueueEvents(queue, poll_interval=self.settings.queue_events_poll_interval)
                    self._wire_events(listener)
                    queues[name] = queue
                    events[name] = listener

                self.connection = connection
                self._queues = queues
                self._events = events
                self._repeatables = RepeatableJobRegistry(connection)
                if listen:
                    for listener in events.values():
                        listener.start()

                self.state = ManagerState.INITIALIZED
                logger.info(f"Queue manager initialized with {len(queues)} queues")
                return True

            except Exception as e:
                logger.error(f"Failed to initialize queue manager: {e}")
                await self._discard()
                self.state = ManagerState.UNINITIALIZED
                return False

    def _wire_events(self, listener: QueueEvents) -> None:
        name = listener.queue.name

        def on_completed(event: QueueEvent) -> None:
            logger.debug(f"[{name}] Job {event.job_id} completed")

        def on_failed(event: QueueEvent) -> None:
            logger.error(f"[{name}] Job {event.job_id} failed: {event.details.get('failed_reason')}")

        def on_stalled(event: QueueEvent) -> None:
            logger.warning(f"[{name}] Job {event.job_id} stalled")

        listener.on(COMPLETED, on_completed)
        listener.on(FAILED, on_failed)
        listener.on(STALLED, on_stalled)

    async def _discard(self) -> None:
        for listener in self._events.values():
            await listener.close()
        for queue in self._queues.values():
            queue.close()
        self._events.clear()
        self._queues.clear()
        self._repeatables = None
        self.connection = None

    def get_queue(self, name: str) -> Optional[BrokerQueue]:
        """Get a queue by name, None when unknown or not initialized."""
        return self._queues.get(name)

    async def _add_job(self, queue_name: str, job_name: str, data: Payload, **options: Any) -> DispatchResult:
        """Submit a job, falling back instead of raising."""
        queue = self.get_queue(queue_name)
        if queue is None:
            return await self._fallback(queue_name, job_name, data, "Queue not available")

        try:
            payload = _payload(data)
            job_options = queue.default_options.merge(**options)
            job_id = await self._run(queue.add, job_name, payload, job_options)
            return DispatchResult.accepted(job_id)
        except Exception as e:
            logger.error(f"Failed to add job {job_name} to {queue_name}: {e}")
            return await self._fallback(queue_name, job_name, data, str(e))

    async def _fallback(self, queue_name: str, job_name: str, data: Payload, reason: str) -> DispatchResult:
        """Apply the fallback policy to a job that could not be queued."""
        result = DispatchResult.fallback_result(reason)

        if self.fallback_policy == FallbackPolicy.INLINE:
            worker = get_registered_worker(queue_name)
            if worker is not None:
                try:
                    await worker.process(job_name, _payload(data))
                    logger.info(f"[Fallback] Ran {job_name} inline for {queue_name}")
                except Exception as e:
                    logger.error(f"[Fallback] Inline {job_name} for {queue_name} failed: {e}")
                return result

        logger.warning(f"[Fallback] Queue {queue_name} unavailable, dropped {job_name}: {reason}")
        return result

    async def add_notification(
        self, notification: Payload, priority: JobPriority = JobPriority.HIGH, **options: Any
    ) -> DispatchResult:
        """Queue a Telegram notification."""
        return await self._add_job(QueueName.NOTIFICATIONS, "send-notification", notification,
                                   priority=priority, **options)

    async def add_analytics_event(
        self, event: Payload, priority: JobPriority = JobPriority.LOW, **options: Any
    ) -> DispatchResult:
        """Queue an analytics event."""
        return await self._add_job(QueueName.ANALYTICS, "track-event", event, priority=priority, **options)

    async def add_ai_task(
        self,
        task_type: Union[AiTaskType, str],
        data: Payload,
        priority: JobPriority = JobPriority.NORMAL,
        **options: Any
    ) -> DispatchResult:
        """Queue an AI task; the job is named after the task type."""
        job_name = getattr(task_type, "value", task_type)
        return await self._add_job(QueueName.AI_TASKS, job_name, data, priority=priority, **options)

    async def add_lifecycle_task(
        self,
        action: Union[LifecycleAction, str],
        data: Payload,
        priority: JobPriority = JobPriority.NORMAL,
        **options: Any
    ) -> DispatchResult:
        """Queue an ad lifecycle task; the job is named after the action."""
        job_name = getattr(action, "value", action)
        return await self._add_job(QueueName.LIFECYCLE, job_name, data, priority=priority, **options)

    async def add_search_alert(
        self, alert: Payload, priority: JobPriority = JobPriority.HIGH, **options: Any
    ) -> DispatchResult:
        """Queue a search alert job."""
        return await self._add_job(QueueName.SEARCH_ALERTS, "process-alert", alert, priority=priority, **options)

    async def schedule_job(
        self, queue_name: str, job_name: str, data: Payload, delay_ms: int, **options: Any
    ) -> DispatchResult:
        """Queue a job to run after ``delay_ms`` (negative delays run now)."""
        return await self._add_job(queue_name, job_name, data, delay_ms=max(0, int(delay_ms)), **options)

    async def add_repeatable_job(
        self,
        queue_name: str,
        job_name: str,
        data: Payload,
        pattern: str,
        **options: Any
    ) -> Optional[RepeatableJob]:
        """Register a cron schedule for a job.

        Args:
            queue_name: Target queue
            job_name: Job name used for every occurrence
            data: Job payload
            pattern: Five-field crontab expression, evaluated in UTC
            **options: Job option overrides (JSON-serializable)

        Returns:
            The stored schedule, or None when the queue is unavailable or the
            pattern is invalid
        """
        if self.get_queue(queue_name) is None or self._repeatables is None:
            logger.warning(f"Cannot add repeatable job {job_name}: queue {queue_name} not available")
            return None

        try:
            parse_cron(pattern)
            job = RepeatableJob(
                queue_name=queue_name,
                job_name=job_name,
                pattern=pattern,
                data=_payload(data),
                options={key: int(value) if isinstance(value, JobPriority) else value
                         for key, value in options.items()},
            )
            job = await self._run(self._repeatables.add, job, self.clock())
            logger.info(f"Added repeatable job {job_name} to {queue_name} ({pattern})")
            return job
        except Exception as e:
            logger.error(f"Failed to add repeatable job {job_name} to {queue_name}: {e}")
            return None

    async def remove_repeatable_job(self, key: str) -> bool:
        """Remove a cron schedule by key."""
        if self._repeatables is None:
            return False
        removed = await self._run(self._repeatables.remove, key)
        if removed:
            logger.info(f"Removed repeatable job {key}")
        return removed

    async def get_repeatable_jobs(self) -> List[RepeatableJob]:
        """All registered cron schedules."""
        if self._repeatables is None:
            return []
        return await self._run(self._repeatables.all)

    async def process_repeatable_jobs(self, now: Optional[datetime] = None) -> int:
        """Enqueue every cron occurrence due since the previous pass.

        Returns:
            Number of occurrences this process enqueued
        """
        if self._repeatables is None:
            return 0

        now = as_utc(now or self.clock())
        fired = 0
        for job in await self._run(self._repeatables.all):
            since = as_utc(datetime.fromisoformat(job.last_checked)) if job.last_checked else now
            for fire_time in job.fire_times(since, now):
                if not await self._run(self._repeatables.claim, job, fire_time):
                    continue
                result = await self._add_job(job.queue_name, job.job_name, job.data, **job.options)
                if result.queued:
                    fired += 1
                    logger.info(f"Fired repeatable job {job.key} for {fire_time.isoformat()}")
            job.last_checked = now.isoformat()
            await self._run(self._repeatables.save, job)
        return fired

    def _promote_all(self) -> int:
        token = uuid.uuid4().hex
        if not self.connection.set(PROMOTE_LOCK_KEY, token, nx=True, px=PROMOTE_LOCK_TTL_MS):
            return 0
        try:
            return sum(queue.promote_due_jobs() for queue in self._queues.values())
        finally:
            self._release_promote_lock(token)

    def _release_promote_lock(self, token: str) -> None:
        """Delete the promotion lock only while it still holds ``token``."""
        with self.connection.pipeline() as pipe:
            try:
                pipe.watch(PROMOTE_LOCK_KEY)
                if pipe.get(PROMOTE_LOCK_KEY) not in (token, token.encode()):
                    logger.warning("Promotion lock expired before release, left to its new holder")
                    return
                pipe.multi()
                pipe.delete(PROMOTE_LOCK_KEY)
                pipe.execute()
            except WatchError:
                # Taken over between the check and the delete
                logger.warning("Promotion lock changed hands during release")

    async def promote_scheduled_jobs(self) -> int:
        """Move due delayed and backoff jobs into their lanes."""
        if not self.initialized:
            return 0
        return await self._run(self._promote_all)

    async def get_stats(self) -> Dict[str, Dict[str, Any]]:
        """Counts per queue; a failing queue reports ``{'error': ...}``."""
        stats: Dict[str, Dict[str, Any]] = {}
        for name, queue in self._queues.items():
            try:
                stats[name] = await self._run(queue.get_counts)
            except Exception as e:
                logger.error(f"Error getting stats for queue {name}: {e}")
                stats[name] = {'error': str(e)}
        return stats

    async def get_failed_jobs(self, queue_name: str, start: int = 0, end: int = 10) -> List[Dict[str, Any]]:
        """Failed job records of a queue, ``end`` inclusive."""
        queue = self.get_queue(queue_name)
        if queue is None:
            return []
        try:
            jobs = await self._run(queue.get_failed_jobs, start, end)
            return [failed_job_record(job) for job in jobs]
        except Exception as e:
            logger.error(f"Error getting failed jobs for {queue_name}: {e}")
            return []

    async def get_waiting_jobs(self, queue_name: str, start: int = 0, end: int = 10) -> List[Dict[str, Any]]:
        """Waiting job records in dispatch order, ``end`` inclusive."""
        queue = self.get_queue(queue_name)
        if queue is None:
            return []
        try:
            jobs = await self._run(queue.get_waiting_jobs, start, end)
            return [job_record(job) for job in jobs]
        except Exception as e:
            logger.error(f"Error getting waiting jobs for {queue_name}: {e}")
            return []

    async def get_job_status(self, queue_name: str, job_id: str) -> Optional[str]:
        """Current RQ status of a job, None when unknown."""
        queue = self.get_queue(queue_name)
        if queue is None:
            return None
        try:
            job = await self._run(queue.fetch_job, job_id)
            if job is None:
                return None
            status = await self._run(job.get_status)
            return getattr(status, "value", status)
        except Exception as e:
            logger.error(f"Error getting status of job {job_id}: {e}")
            return None

    async def retry_job(self, queue_name: str, job_id: str) -> bool:
        """Re-enqueue a failed job."""
        queue = self.get_queue(queue_name)
        if queue is None:
            return False
        try:
            return await self._run(queue.retry, job_id)
        except Exception as e:
            logger.error(f"Failed to retry job {job_id} in {queue_name}: {e}")
            return False

    async def pause_queue(self, queue_name: str) -> bool:
        """Stop workers taking new jobs from a queue. Jobs keep being accepted."""
        queue = self.get_queue(queue_name)
        if queue is None:
            return False
        try:
            await self._run(queue.pause)
            logger.info(f"Paused queue {queue_name}")
            return True
        except Exception as e:
            logger.error(f"Failed to pause queue {queue_name}: {e}")
            return False

    async def resume_queue(self, queue_name: str) -> bool:
        """Let workers take jobs from a paused queue again."""
        queue = self.get_queue(queue_name)
        if queue is None:
            return False
        try:
            await self._run(queue.resume)
            logger.info(f"Resumed queue {queue_name}")
            return True
        except Exception as e:
            logger.error(f"Failed to resume queue {queue_name}: {e}")
            return False

    async def is_queue_paused(self, queue_name: str) -> bool:
        queue = self.get_queue(queue_name)
        if queue is None:
            return False
        return await self._run(queue.is_paused)

    async def shutdown(self) -> None:
        """Close listeners, then queues. Safe to call repeatedly."""
        if self.state == ManagerState.SHUTDOWN:
            return
        async with self._init_lock:
            try:
                await self._discard()
            except Exception as e:
                logger.error(f"Error during queue manager shutdown: {e}")
            finally:
                self.state = ManagerState.SHUTDOWN
        logger.info("Queue manager shut down")


# Global queue manager instance
queue_manager = QueueManager()


def get_queue_manager() -> QueueManager:
    """Get global queue manager instance."""
    return queue_manager
