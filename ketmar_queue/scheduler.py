"""Repeatable (cron) jobs and the periodic scheduler tick.

Repeatable job definitions live in a Redis hash so every process sees the same
schedules. Each cron occurrence is claimed with ``SET NX`` before it is
enqueued, so an occurrence fires once no matter how many processes tick.
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from redis import Redis

if TYPE_CHECKING:
    from .manager import QueueManager

logger = logging.getLogger(__name__)

REPEATABLE_KEY = "ketmar-queue:repeatable"
CLAIM_KEY_PREFIX = "ketmar-queue:repeatable-claim:"
CLAIM_TTL = 7 * 24 * 3600  # seconds


def as_utc(moment: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def parse_cron(pattern: str) -> CronTrigger:
    """Build a UTC cron trigger. Raises ``ValueError`` for a bad pattern."""
    return CronTrigger.from_crontab(pattern, timezone=timezone.utc)


@dataclass
class RepeatableJob:
    """A declarative cron schedule for one job."""
    queue_name: str
    job_name: str
    pattern: str
    data: Dict[str, Any] = field(default_factory=dict)
    options: Dict[str, Any] = field(default_factory=dict)
    last_checked: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.queue_name}:{self.job_name}:{self.pattern}"

    def fire_times(self, since: datetime, until: datetime) -> List[datetime]:
        """Occurrences strictly after ``since`` and not after ``until``."""
        trigger = parse_cron(self.pattern)
        since, until = as_utc(since), as_utc(until)
        times = []
        fire = trigger.get_next_fire_time(None, since + timedelta(microseconds=1))
        while fire is not None and fire <= until:
            times.append(fire)
            fire = trigger.get_next_fire_time(None, fire + timedelta(microseconds=1))
        return times

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RepeatableJob":
        return cls(**data)


class RepeatableJobRegistry:
    """Redis-backed store of repeatable jobs."""

    def __init__(self, connection: Redis):
        self.connection = connection

    def add(self, job: RepeatableJob, registered_at: datetime) -> RepeatableJob:
        """Store a schedule. Re-registering keeps the previous check time."""
        existing = self.get(job.key)
        job.last_checked = (
            existing.last_checked if existing and existing.last_checked
            else as_utc(registered_at).isoformat()
        )
        self.save(job)
        return job

    def save(self, job: RepeatableJob) -> None:
        self.connection.hset(REPEATABLE_KEY, job.key, json.dumps(job.to_dict()))

    def get(self, key: str) -> Optional[RepeatableJob]:
        raw = self.connection.hget(REPEATABLE_KEY, key)
        return RepeatableJob.from_dict(json.loads(raw)) if raw else None

    def remove(self, key: str) -> bool:
        return bool(self.connection.hdel(REPEATABLE_KEY, key))

    def all(self) -> List[RepeatableJob]:
        raw_jobs = self.connection.hgetall(REPEATABLE_KEY)
        return [RepeatableJob.from_dict(json.loads(raw)) for raw in raw_jobs.values()]

    def claim(self, job: RepeatableJob, fire_time: datetime) -> bool:
        """Claim one occurrence. Only the first caller gets True."""
        claim_key = f"{CLAIM_KEY_PREFIX}{job.key}:{int(fire_time.timestamp())}"
        return bool(self.connection.set(claim_key, 1, nx=True, ex=CLAIM_TTL))


class JobScheduler:
    """APScheduler interval job that promotes delayed jobs and fires cron schedules."""

    JOB_ID = "ketmar-queue-tick"

    def __init__(self, manager: "QueueManager", interval: float = 1.0):
        self.manager = manager
        self.interval = interval
        self._scheduler: Optional[AsyncIOScheduler] = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        """Start ticking on the running event loop."""
        if self.running:
            logger.warning("Job scheduler already running")
            return

        self._scheduler = AsyncIOScheduler(timezone=timezone.utc)
        self._scheduler.add_job(
            func=self.tick,
            trigger="interval",
            seconds=self.interval,
            id=self.JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info(f"Started job scheduler with {self.interval}s interval")

    async def tick(self) -> None:
        """One scheduling pass."""
        try:
            await self.manager.promote_scheduled_jobs()
            await self.manager.process_repeatable_jobs()
        except Exception as e:
            logger.error(f"Error in scheduler tick: {e}")

    def shutdown(self) -> None:
        """Stop ticking. Safe to call repeatedly."""
        if self.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Stopped job scheduler")
        self._scheduler = None
