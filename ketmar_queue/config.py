"""Queue registry: queue names, priorities, default job options and worker tuning."""

import math
from dataclasses import dataclass, replace
from enum import IntEnum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

from .settings import QueueSettings, get_settings


class JobPriority(IntEnum):
    """Job priority levels. Lower value is served first."""
    URGENT = 1
    HIGH = 2
    NORMAL = 3
    LOW = 4

    @property
    def lane_suffix(self) -> str:
        return self.name.lower()


class QueueName:
    """Broker names of the KETMAR queues."""
    NOTIFICATIONS = "ketmar-notifications"
    ANALYTICS = "ketmar-analytics"
    AI_TASKS = "ketmar-ai-tasks"
    LIFECYCLE = "ketmar-lifecycle"
    SEARCH_ALERTS = "ketmar-search-alerts"


QUEUES: Mapping[str, str] = MappingProxyType({
    key: value for key, value in vars(QueueName).items() if key.isupper()
})


@dataclass(frozen=True)
class Backoff:
    """Retry backoff. Exponential doubles ``delay_ms`` per retry."""
    type: str = "exponential"
    delay_ms: int = 2000

    def intervals(self, retries: int) -> List[int]:
        """Whole seconds to wait before each of ``retries`` retries."""
        base = self.delay_ms / 1000
        if self.type == "fixed":
            return [math.ceil(base)] * retries
        return [math.ceil(base * 2 ** attempt) for attempt in range(retries)]


@dataclass(frozen=True)
class Retention:
    """How long (seconds) and how many finished jobs to keep."""
    age: Optional[int] = None
    count: Optional[int] = None


@dataclass(frozen=True)
class JobOptions:
    """Options applied to one submitted job."""
    priority: JobPriority = JobPriority.NORMAL
    delay_ms: int = 0
    attempts: int = 3
    backoff: Backoff = Backoff()
    remove_on_complete: Retention = Retention(age=3600, count=100)
    remove_on_fail: Retention = Retention(age=86400)
    job_id: Optional[str] = None
    timeout: Optional[int] = None

    def merge(self, **overrides: Any) -> "JobOptions":
        """Return a copy with every non-None override applied."""
        changes = {key: value for key, value in overrides.items() if value is not None}
        if "priority" in changes:
            changes["priority"] = JobPriority(changes["priority"])
        if "delay_ms" in changes:
            changes["delay_ms"] = max(0, int(changes["delay_ms"]))
        return replace(self, **changes)


DEFAULT_JOB_OPTIONS = JobOptions()


@dataclass(frozen=True)
class RateLimit:
    """At most ``max_jobs`` per ``duration_ms`` window."""
    max_jobs: int
    duration_ms: int


@dataclass(frozen=True)
class WorkerOptions:
    """Tuning for the worker that consumes one queue."""
    concurrency: int
    drain_delay_ms: int
    limiter: Optional[RateLimit] = None

    @property
    def drain_delay(self) -> float:
        return self.drain_delay_ms / 1000


WORKER_OPTIONS: Mapping[str, WorkerOptions] = MappingProxyType({
    QueueName.NOTIFICATIONS: WorkerOptions(
        concurrency=5,
        drain_delay_ms=5000,
        limiter=RateLimit(max_jobs=25, duration_ms=1000),  # Telegram: ~30 msg/sec
    ),
    QueueName.ANALYTICS: WorkerOptions(concurrency=20, drain_delay_ms=10000),
    QueueName.AI_TASKS: WorkerOptions(concurrency=3, drain_delay_ms=15000),
    QueueName.LIFECYCLE: WorkerOptions(concurrency=10, drain_delay_ms=30000),
    QueueName.SEARCH_ALERTS: WorkerOptions(concurrency=10, drain_delay_ms=10000),
})


def get_lane_name(queue_name: str, priority: JobPriority) -> str:
    """Get the RQ queue name backing one priority of a queue."""
    return f"{queue_name}-{JobPriority(priority).lane_suffix}"


def get_worker_options(queue_name: str) -> WorkerOptions:
    """Get worker tuning for a queue."""
    try:
        return WORKER_OPTIONS[queue_name]
    except KeyError:
        raise ValueError(f"Unknown queue: {queue_name}") from None


def is_queue_enabled(settings: Optional[QueueSettings] = None) -> bool:
    """Check whether a broker URL is configured."""
    return bool((settings or get_settings()).broker_url)


def describe_queues() -> Dict[str, Dict[str, Any]]:
    """Registry summary used by the ops CLI and the config admin view."""
    summary: Dict[str, Dict[str, Any]] = {}
    for key, name in QUEUES.items():
        options = WORKER_OPTIONS[name]
        summary[key] = {
            'name': name,
            'concurrency': options.concurrency,
            'drain_delay_ms': options.drain_delay_ms,
            'limiter': (
                {'max': options.limiter.max_jobs, 'duration_ms': options.limiter.duration_ms}
                if options.limiter else None
            ),
        }
    return summary
