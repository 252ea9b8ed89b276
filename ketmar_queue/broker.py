"""Named broker queues built from one RQ queue per priority lane."""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from redis import Redis
from rq import Queue, Retry
from rq.exceptions import InvalidJobOperationError, NoSuchJobError
from rq.job import Job
from rq.registry import FailedJobRegistry
from rq.serializers import JSONSerializer

from .config import DEFAULT_JOB_OPTIONS, JobOptions, JobPriority, get_lane_name

logger = logging.getLogger(__name__)

# Dotted path RQ imports in the worker process
JOB_FUNCTION = "ketmar_queue.workers.base.execute_job"
PAUSE_KEY_PREFIX = "ketmar-queue:paused:"


class BrokerQueue:
    """One named queue.

    Each priority maps to its own RQ queue ("lane"); workers listen on the
    lanes in ascending priority order so URGENT jobs are always taken first.
    """

    def __init__(
        self,
        name: str,
        connection: Redis,
        default_options: JobOptions = DEFAULT_JOB_OPTIONS,
        job_timeout: int = 300,
    ):
        self.name = name
        self.connection = connection
        self.default_options = default_options
        self.lanes: Dict[JobPriority, Queue] = {
            priority: Queue(
                name=get_lane_name(name, priority),
                connection=connection,
                serializer=JSONSerializer,
                default_timeout=job_timeout,
            )
            for priority in sorted(JobPriority)
        }
        self.closed = False

    @property
    def lane_names(self) -> List[str]:
        return [lane.name for lane in self.lanes.values()]

    def ordered_lanes(self) -> List[Queue]:
        """Lanes in dispatch order, URGENT first."""
        return [self.lanes[priority] for priority in sorted(JobPriority)]

    def add(self, job_name: str, data: Dict[str, Any], options: Optional[JobOptions] = None) -> str:
        """Submit a job and return its id. Raises on broker or serialization errors."""
        if self.closed:
            raise RuntimeError(f"Queue {self.name} is closed")

        options = options or self.default_options
        priority = JobPriority(options.priority)
        lane = self.lanes[priority]
        retries = max(options.attempts - 1, 0)

        enqueue_kwargs = dict(
            args=(job_name, data),
            job_id=options.job_id,
            job_timeout=options.timeout,
            result_ttl=options.remove_on_complete.age,
            failure_ttl=options.remove_on_fail.age,
            retry=Retry(max=retries, interval=options.backoff.intervals(retries)) if retries else None,
            description=f"{self.name}:{job_name}",
            meta={
                'queue': self.name,
                'job_name': job_name,
                'priority': int(priority),
                'attempts': options.attempts,
                'attempts_made': 0,
            },
        )

        if options.delay_ms > 0:
            job = lane.enqueue_in(timedelta(milliseconds=options.delay_ms), JOB_FUNCTION, **enqueue_kwargs)
        else:
            job = lane.enqueue(JOB_FUNCTION, **enqueue_kwargs)

        logger.debug(f"Enqueued job {job.id} to {lane.name}: {job_name}")
        return job.id

    def get_counts(self) -> Dict[str, int]:
        """Job counts summed over all lanes."""
        counts = {'waiting': 0, 'active': 0, 'completed': 0, 'failed': 0, 'delayed': 0}
        for lane in self.lanes.values():
            counts['waiting'] += lane.count
            counts['active'] += lane.started_job_registry.count
            counts['completed'] += lane.finished_job_registry.count
            counts['failed'] += lane.failed_job_registry.count
            counts['delayed'] += lane.scheduled_job_registry.count
        return counts

    def _fetch_many(self, job_ids: List[str]) -> List[Job]:
        jobs = Job.fetch_many(job_ids, connection=self.connection, serializer=JSONSerializer)
        return [job for job in jobs if job is not None]

    def get_failed_jobs(self, start: int = 0, end: int = 10) -> List[Job]:
        """Failed jobs, ``end`` inclusive."""
        job_ids: List[str] = []
        for lane in self.ordered_lanes():
            job_ids.extend(lane.failed_job_registry.get_job_ids())
        return self._fetch_many(job_ids[start:end + 1])

    def get_waiting_jobs(self, start: int = 0, end: int = 10) -> List[Job]:
        """Waiting jobs in the order workers will take them, ``end`` inclusive."""
        job_ids: List[str] = []
        for lane in self.ordered_lanes():
            job_ids.extend(lane.get_job_ids())
        return self._fetch_many(job_ids[start:end + 1])

    def fetch_job(self, job_id: str) -> Optional[Job]:
        """Fetch a job that belongs to this queue."""
        try:
            job = Job.fetch(job_id, connection=self.connection, serializer=JSONSerializer)
        except NoSuchJobError:
            return None
        return job if job.origin in self.lane_names else None

    def retry(self, job_id: str) -> bool:
        """Move a failed job back to its lane."""
        job = self.fetch_job(job_id)
        if job is None:
            return False

        registry = FailedJobRegistry(job.origin, connection=self.connection, serializer=JSONSerializer)
        try:
            registry.requeue(job_id)
        except (InvalidJobOperationError, NoSuchJobError) as e:
            logger.warning(f"Cannot retry job {job_id} in {self.name}: {e}")
            return False

        logger.info(f"Requeued failed job {job_id} in {self.name}")
        return True

    def promote_due_jobs(self) -> int:
        """Move delayed jobs whose time has come into their lanes."""
        promoted = 0
        for lane in self.ordered_lanes():
            registry = lane.scheduled_job_registry
            for job_id in registry.get_jobs_to_schedule():
                job = lane.fetch_job(job_id)
                registry.remove(job_id)
                if job is not None:
                    lane.enqueue_job(job)
                    promoted += 1
        if promoted:
            logger.debug(f"Promoted {promoted} delayed jobs in {self.name}")
        return promoted

    def prune_completed(self, keep: Optional[int] = None) -> int:
        """Delete completed jobs beyond the newest ``keep``."""
        keep = self.default_options.remove_on_complete.count if keep is None else keep
        if keep is None:
            return 0

        entries = []
        for lane in self.lanes.values():
            registry = lane.finished_job_registry
            for job_id, score in self.connection.zrange(registry.key, 0, -1, withscores=True):
                if isinstance(job_id, bytes):
                    job_id = job_id.decode()
                entries.append((score, job_id, registry))

        excess = len(entries) - keep
        if excess <= 0:
            return 0

        entries.sort(key=lambda entry: entry[0])
        for _, job_id, registry in entries[:excess]:
            registry.remove(job_id, delete_job=True)
        logger.debug(f"Pruned {excess} completed jobs from {self.name}")
        return excess

    @property
    def pause_key(self) -> str:
        return f"{PAUSE_KEY_PREFIX}{self.name}"

    def pause(self) -> None:
        self.connection.set(self.pause_key, 1)

    def resume(self) -> None:
        self.connection.delete(self.pause_key)

    def is_paused(self) -> bool:
        return bool(self.connection.exists(self.pause_key))

    def close(self) -> None:
        self.closed = True
