"""Analytics worker: buffers tracked events and writes them in batches."""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from ..config import QueueName
from ..models import AnalyticsJob, utc_now
from .base import SKIPPED_NO_SERVICE, BaseWorker

logger = logging.getLogger(__name__)

BATCH_SIZE = 50
FLUSH_INTERVAL = 30  # seconds


class AnalyticsSink(Protocol):
    """Persists analytics events."""

    async def save(self, event: Dict[str, Any]) -> Any:
        ...

    async def save_many(self, events: List[Dict[str, Any]]) -> int:
        ...


class AnalyticsWorker(BaseWorker):
    """Collects analytics events; ``immediate`` events bypass the buffer."""

    def __init__(self, sink: Optional[AnalyticsSink] = None, batch_size: int = BATCH_SIZE,
                 flush_interval: float = FLUSH_INTERVAL, **kwargs):
        super().__init__(QueueName.ANALYTICS, **kwargs)
        self.sink = sink
        self.batch_size = batch_size
        self.flush_interval = flush_interval
        self.buffer: List[Dict[str, Any]] = []
        self._flush_task: Optional[asyncio.Task] = None

    def set_sink(self, sink: Optional[AnalyticsSink]) -> None:
        self.sink = sink

    async def start(self) -> bool:
        started = await super().start()
        if started and self._flush_task is None:
            self._flush_task = asyncio.create_task(self._flush_loop(), name="analytics-flush")
        return started

    async def _flush_loop(self) -> None:
        while True:
            await asyncio.sleep(self.flush_interval)
            try:
                await self.flush()
            except Exception as e:
                logger.error(f"[{self.name}] Periodic flush failed: {e}")

    async def process(self, job_name: str, data: Dict[str, Any]) -> Any:
        job = AnalyticsJob.from_dict(data)
        if self.sink is None:
            logger.warning(f"[{self.name}] Analytics sink not registered")
            return dict(SKIPPED_NO_SERVICE)

        event = {
            'action': job.action,
            'actor_id': job.actor_id,
            'metadata': job.metadata,
            'occurred_at': datetime.fromisoformat(job.occurred_at),
            'processed_at': utc_now(),
        }

        if job.immediate:
            saved = await self.sink.save(event)
            return {'saved': True, 'event_id': saved}

        self.buffer.append(event)
        if len(self.buffer) >= self.batch_size:
            try:
                await self.flush()
            except Exception as e:
                logger.warning(f"[{self.name}] Keeping {len(self.buffer)} events buffered: {e}")

        return {'buffered': True, 'buffer_size': len(self.buffer)}

    async def flush(self) -> int:
        """Write the buffer out. A failed write puts the events back."""
        if not self.buffer or self.sink is None:
            return 0

        batch, self.buffer = self.buffer, []
        try:
            flushed = await self.sink.save_many(batch)
        except Exception as e:
            logger.error(f"[{self.name}] Batch flush failed: {e}")
            self.buffer = batch + self.buffer
            raise

        logger.info(f"[{self.name}] Flushed {len(batch)} events")
        return flushed if isinstance(flushed, int) else len(batch)

    async def shutdown(self) -> None:
        if self._flush_task is not None:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None

        try:
            await self.flush()
        except Exception as e:
            logger.error(f"[{self.name}] Final flush failed, {len(self.buffer)} events lost: {e}")
        await super().shutdown()

    def get_stats(self) -> Dict[str, Any]:
        stats = super().get_stats()
        stats.update({'buffer_size': len(self.buffer), 'batch_size': self.batch_size})
        return stats


# Global analytics worker instance
analytics_worker = AnalyticsWorker()
