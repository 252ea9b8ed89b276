"""Base worker: RQ slots, per-job bookkeeping and the job entry point."""

import asyncio
import functools
import json
import logging
import threading
import time
import uuid
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Protocol

from redis import Redis
from rq import SimpleWorker, get_current_job
from rq.job import Job
from rq.serializers import JSONSerializer
from rq.timeouts import TimerDeathPenalty

from ..broker import BrokerQueue
from ..config import RateLimit, WorkerOptions, get_worker_options, is_queue_enabled
from ..connection import ConnectionProvider, get_connection_provider
from ..settings import QueueSettings, get_settings

logger = logging.getLogger(__name__)

SKIPPED_NO_SERVICE = {'skipped': True, 'reason': 'Service not available'}

# queue name -> worker consuming it in this process
_workers: Dict[str, "BaseWorker"] = {}
_workers_lock = threading.Lock()


def register_worker(worker: "BaseWorker") -> None:
    with _workers_lock:
        _workers[worker.queue_name] = worker


def unregister_worker(worker: "BaseWorker") -> None:
    with _workers_lock:
        if _workers.get(worker.queue_name) is worker:
            del _workers[worker.queue_name]


def get_registered_worker(queue_name: Optional[str]) -> Optional["BaseWorker"]:
    """Worker handling ``queue_name`` in this process, if any."""
    with _workers_lock:
        return _workers.get(queue_name)


def execute_job(job_name: str, data: Dict[str, Any]) -> Any:
    """Entry point RQ runs for every job submitted by the queue manager."""
    job = get_current_job()
    queue_name = job.meta.get('queue') if job else None
    worker = get_registered_worker(queue_name)
    if worker is None:
        raise RuntimeError(f"No worker registered for queue {queue_name}")
    return worker.run_job(job, job_name, data)


def json_safe(value: Any) -> Any:
    """Coerce a handler result into something RQ's JSON serializer accepts."""
    return json.loads(json.dumps(value, default=str))


class Notifier(Protocol):
    """Delivers a text message to a Telegram user."""

    async def notify(self, target_id: str, message: str, kind: str) -> None:
        ...


class CallbackNotifier:
    """Adapts an async ``callback(target_id, message, kind)`` to ``Notifier``."""

    def __init__(self, callback: Callable[[str, str, str], Awaitable[Any]]):
        self.callback = callback

    async def notify(self, target_id: str, message: str, kind: str) -> None:
        await self.callback(target_id, message, kind)


class RateLimiter:
    """Sliding window limiter shared by every slot of one worker."""

    def __init__(self, limit: RateLimit, clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        self.max_jobs = limit.max_jobs
        self.window = limit.duration_ms / 1000
        self._clock = clock
        self._sleep = sleep
        self._started: Deque[float] = deque()
        self._lock = threading.Lock()

    def acquire(self) -> None:
        """Block until a job may start."""
        while True:
            with self._lock:
                now = self._clock()
                while self._started and now - self._started[0] >= self.window:
                    self._started.popleft()
                if len(self._started) < self.max_jobs:
                    self._started.append(now)
                    return
                wait = self.window - (now - self._started[0])
            self._sleep(wait)


class SlotWorker(SimpleWorker):
    """RQ worker that runs jobs in the calling thread, off the main thread.

    Lanes are polled without blocking and ``accepting()`` is asked before
    every dequeue, so a pause or a stop takes effect within one poll interval
    instead of after the next job.
    """

    death_penalty_class = TimerDeathPenalty

    def __init__(self, *args, accepting: Optional[Callable[[], bool]] = None,
                 poll_interval: float = 0.2, **kwargs):
        super().__init__(*args, **kwargs)
        self.accepting = accepting or (lambda: True)
        self.poll_interval = poll_interval
        self._wakeup = threading.Event()

    def _install_signal_handlers(self):
        # Signals belong to the process entry point
        pass

    def stop(self) -> None:
        """Leave ``work()`` after the current job. Safe from any thread."""
        self._stop_requested = True
        self._wakeup.set()

    def _try_dequeue(self):
        if self._stop_requested or not self.accepting():
            return None
        return super().dequeue_job_and_maintain_ttl(None)

    def dequeue_job_and_maintain_ttl(self, timeout, max_idle_time=None):
        if timeout is None:
            # Burst mode
            return self._try_dequeue()

        idle_since = time.monotonic()
        while not self._stop_requested:
            result = self._try_dequeue()
            if result is not None:
                return result
            if max_idle_time is not None and time.monotonic() - idle_since >= max_idle_time:
                break
            self._wakeup.wait(self.poll_interval)
        return None


class BaseWorker:
    """Base class for queue workers.

    A worker owns ``concurrency`` slots. Each slot is an RQ ``SlotWorker``
    that listens on the queue's priority lanes in order and runs in a thread
    of the worker's own pool; coroutine handlers are run back on the event
    loop that started the worker.
    """

    def __init__(
        self,
        queue_name: str,
        provider: Optional[ConnectionProvider] = None,
        settings: Optional[QueueSettings] = None,
        options: Optional[WorkerOptions] = None,
    ):
        self.queue_name = queue_name
        self.settings = settings or get_settings()
        self.provider = provider or get_connection_provider()
        self.options = options or get_worker_options(queue_name)
        self.notifier: Optional[Notifier] = None
        self.is_running = False
        self.processed_count = 0
        self.failed_count = 0
        self._paused = False
        self._stats_lock = threading.Lock()
        self._limiter = RateLimiter(self.options.limiter) if self.options.limiter else None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connection: Optional[Redis] = None
        self._queue: Optional[BrokerQueue] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._slots: List[asyncio.Task] = []
        self._rq_workers: List[SlotWorker] = []
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def name(self) -> str:
        return self.__class__.__name__

    async def process(self, job_name: str, data: Dict[str, Any]) -> Any:
        """Handle one job. Subclasses route the payload to a collaborator."""
        raise NotImplementedError

    async def on_job_failed(self, job_name: str, data: Dict[str, Any], error: Exception) -> None:
        """Hook called after a failed attempt, before RQ schedules the retry."""

    def set_notifier(self, notifier: Optional[Notifier]) -> None:
        self.notifier = notifier

    async def _notify(self, target_id: Optional[str], message: str, kind: str) -> None:
        """Send a notification; delivery errors are logged, not raised."""
        if not target_id or not message or self.notifier is None:
            return
        try:
            await self.notifier.notify(str(target_id), message, kind)
        except Exception as e:
            logger.error(f"[{self.name}] Failed to notify {target_id}: {e}")

    async def deliver_notifications(self, result: Any, kind: str) -> Any:
        """Send ``notify`` entries of a collaborator result and strip them."""
        if not isinstance(result, dict):
            return result
        result = dict(result)
        for entry in result.pop('notify', None) or []:
            await self._notify(entry.get('target'), entry.get('message'), kind)
        return result

    async def _get_connection(self) -> Optional[Redis]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.provider.get_connection)

    def attach(self, connection: Redis) -> None:
        """Bind to a connection and become this process's handler for the queue."""
        self._loop = asyncio.get_running_loop()
        self._connection = connection
        self._queue = BrokerQueue(self.queue_name, connection, job_timeout=self.settings.queue_job_timeout)
        register_worker(self)

    def _new_rq_worker(self) -> SlotWorker:
        return SlotWorker(
            self._queue.ordered_lanes(),
            connection=self._connection,
            serializer=JSONSerializer,
            name=f"{self.queue_name}.{uuid.uuid4().hex}",
            accepting=self._accepting,
        )

    def _accepting(self) -> bool:
        """Whether a slot may take a new job right now."""
        queue = self._queue
        if queue is None or self._paused:
            return False
        return not queue.is_paused()

    async def start(self) -> bool:
        """Start the worker slots. Returns False when queues are unavailable."""
        if self.is_running:
            return True
        if not is_queue_enabled(self.settings):
            logger.info(f"[{self.name}] Queue disabled, worker not started")
            return False

        connection = await self._get_connection()
        if connection is None:
            logger.warning(f"[{self.name}] Redis not available, worker not started")
            return False

        self.attach(connection)
        concurrency = self.options.concurrency
        self._executor = ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix=self.queue_name)
        self._stop_event = asyncio.Event()
        self._rq_workers = [self._new_rq_worker() for _ in range(concurrency)]
        self._slots = [
            asyncio.create_task(self._run_slot(slot, rq_worker), name=f"{self.queue_name}-slot-{slot}")
            for slot, rq_worker in enumerate(self._rq_workers)
        ]
        self.is_running = True
        logger.info(f"[{self.name}] Started with concurrency {concurrency}")
        return True

    async def _wait_for_stop(self, timeout: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout)
        except asyncio.TimeoutError:
            pass

    async def _run_slot(self, slot: int, rq_worker: SlotWorker) -> None:
        """Run one slot until the worker stops."""
        loop = asyncio.get_running_loop()
        idle_time = max(1, int(self.options.drain_delay))

        while not self._stop_event.is_set():
            try:
                await loop.run_in_executor(
                    self._executor,
                    functools.partial(
                        rq_worker.work,
                        max_jobs=self.settings.queue_worker_max_jobs,
                        max_idle_time=idle_time,
                        logging_level=self.settings.log_level,
                    ),
                )
                if slot == 0 and not self._stop_event.is_set():
                    await loop.run_in_executor(self._executor, self._queue.prune_completed)

            except Exception as e:
                logger.error(f"[{self.name}] Slot {slot} error: {e}")
                await self._wait_for_stop(5)

        logger.debug(f"[{self.name}] Slot {slot} stopped")

    async def drain(self) -> int:
        """Process every job currently waiting, then return how many ran."""
        if self._queue is None:
            connection = await self._get_connection()
            if connection is None:
                return 0
            self.attach(connection)

        before = self.processed_count
        rq_worker = self._new_rq_worker()
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None, functools.partial(rq_worker.work, burst=True, logging_level=self.settings.log_level)
        )
        return self.processed_count - before

    def run_job(self, job: Optional[Job], job_name: str, data: Dict[str, Any]) -> Any:
        """Execute one job in the calling (worker) thread."""
        if self._limiter is not None:
            self._limiter.acquire()

        job_id = job.id if job is not None else "-"
        if job is not None:
            job.meta['attempts_made'] = int(job.meta.get('attempts_made', 0)) + 1
            job.save_meta()

        started = time.monotonic()
        logger.info(f"[{self.name}] Processing job {job_id}: {job_name}")
        try:
            result = self._call(self.process(job_name, data))
        except Exception as e:
            self._record(failed=True)
            logger.error(f"[{self.name}] Job {job_id} failed: {e}")
            try:
                self._call(self.on_job_failed(job_name, data, e))
            except Exception as hook_error:
                logger.error(f"[{self.name}] Failure hook error for job {job_id}: {hook_error}")
            raise

        self._record(failed=False)
        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.info(f"[{self.name}] Job {job_id} completed in {elapsed_ms}ms")
        return json_safe(result)

    def _call(self, coro: Awaitable[Any]) -> Any:
        """Run a coroutine from a worker thread on the worker's event loop."""
        if self._loop is None or not self._loop.is_running():
            return asyncio.run(coro)
        return asyncio.run_coroutine_threadsafe(coro, self._loop).result()

    def _record(self, failed: bool) -> None:
        with self._stats_lock:
            self.processed_count += 1
            if failed:
                self.failed_count += 1

    def pause(self) -> None:
        """Stop this worker's slots taking new jobs."""
        self._paused = True
        logger.info(f"[{self.name}] Paused")

    def resume(self) -> None:
        self._paused = False
        logger.info(f"[{self.name}] Resumed")

    async def shutdown(self) -> None:
        """Stop slots and wait for in-flight jobs. Safe to call repeatedly."""
        if self._queue is None and not self.is_running:
            unregister_worker(self)
            return

        logger.info(f"[{self.name}] Shutting down...")
        if self._stop_event is not None:
            self._stop_event.set()
        for rq_worker in self._rq_workers:
            rq_worker.stop()

        pending = set()
        if self._slots:
            # Each slot leaves work() once its current job is done
            _, pending = await asyncio.wait(self._slots, timeout=self.settings.queue_job_timeout + 5)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning(f"[{self.name}] {len(pending)} slots did not stop in time")

        if self._executor is not None:
            # Pool threads are idle once every slot task has returned
            self._executor.shutdown(wait=not pending)

        unregister_worker(self)
        self._slots = []
        self._rq_workers = []
        self._executor = None
        self._stop_event = None
        self._queue = None
        self._connection = None
        self.is_running = False
        logger.info(f"[{self.name}] Shut down")

    def get_stats(self) -> Dict[str, Any]:
        """Worker counters."""
        processed = self.processed_count
        success_rate = (
            f"{(processed - self.failed_count) / processed * 100:.2f}%" if processed > 0 else "N/A"
        )
        return {
            'queue_name': self.queue_name,
            'is_running': self.is_running,
            'processed_count': processed,
            'failed_count': self.failed_count,
            'success_rate': success_rate,
        }
