"""Queue system start-up, shutdown and health."""

import logging
from typing import Any, Dict, Mapping, Optional

from aiogram import Bot

from .config import is_queue_enabled
from .connection import ConnectionProvider
from .manager import QueueManager, get_queue_manager
from .scheduler import JobScheduler
from .settings import FallbackPolicy
from .workers import (
    AdLifecycleService, AiTaskWorker, AnalyticsSink, AnalyticsWorker, BaseWorker, LifecycleWorker,
    Notifier, NotificationWorker, SearchAlertService, SearchAlertWorker, ai_task_worker,
    analytics_worker, lifecycle_worker, notification_worker, register_worker, search_alert_worker,
)

logger = logging.getLogger(__name__)


class QueueRuntime:
    """Owns the manager, the workers and the scheduler of one process."""

    def __init__(
        self,
        manager: Optional[QueueManager] = None,
        workers: Optional[Mapping[str, BaseWorker]] = None,
        scheduler: Optional[JobScheduler] = None,
    ):
        self.manager = manager or get_queue_manager()
        self.workers: Dict[str, BaseWorker] = dict(workers) if workers is not None else {
            'notifications': notification_worker,
            'analytics': analytics_worker,
            'ai_tasks': ai_task_worker,
            'lifecycle': lifecycle_worker,
            'search_alerts': search_alert_worker,
        }
        self.scheduler = scheduler or JobScheduler(
            self.manager, interval=self.manager.settings.queue_scheduler_interval
        )

    @property
    def provider(self) -> ConnectionProvider:
        return self.manager.provider

    def _inject(
        self,
        telegram_bot: Optional[Bot],
        notifier: Optional[Notifier],
        ai_services: Optional[Mapping[str, Any]],
        analytics_sink: Optional[AnalyticsSink],
        lifecycle_service: Optional[AdLifecycleService],
        search_alert_service: Optional[SearchAlertService],
    ) -> None:
        for worker in self.workers.values():
            if notifier is not None:
                worker.set_notifier(notifier)
            if telegram_bot is not None and isinstance(worker, NotificationWorker):
                worker.set_bot(telegram_bot)
            if ai_services and isinstance(worker, AiTaskWorker):
                worker.register_services(ai_services)
            if analytics_sink is not None and isinstance(worker, AnalyticsWorker):
                worker.set_sink(analytics_sink)
            if lifecycle_service is not None and isinstance(worker, LifecycleWorker):
                worker.set_service(lifecycle_service)
            if search_alert_service is not None and isinstance(worker, SearchAlertWorker):
                worker.set_service(search_alert_service)

    def _register_inline_workers(self) -> None:
        """Make workers reachable by the inline fallback without starting them."""
        if self.manager.fallback_policy != FallbackPolicy.INLINE:
            return
        for worker in self.workers.values():
            register_worker(worker)

    async def initialize(
        self,
        telegram_bot: Optional[Bot] = None,
        notifier: Optional[Notifier] = None,
        ai_services: Optional[Mapping[str, Any]] = None,
        analytics_sink: Optional[AnalyticsSink] = None,
        lifecycle_service: Optional[AdLifecycleService] = None,
        search_alert_service: Optional[SearchAlertService] = None,
        enable_workers: bool = True,
        enable_scheduler: Optional[bool] = None,
    ) -> Dict[str, Any]:
        """Bring the queue system up. Never raises."""
        try:
            self._inject(telegram_bot, notifier, ai_services, analytics_sink,
                         lifecycle_service, search_alert_service)

            if not is_queue_enabled(self.manager.settings):
                logger.info("Queue system disabled (no REDIS_URL) - running in fallback mode")
                self._register_inline_workers()
                return {'initialized': False, 'fallback': True}

            if not await self.manager.initialize():
                logger.warning("Queue manager failed to initialize - running in fallback mode")
                self._register_inline_workers()
                return {'initialized': False, 'fallback': True}

            workers_started = 0
            if enable_workers:
                for name, worker in self.workers.items():
                    if await worker.start():
                        workers_started += 1
                    else:
                        logger.warning(f"Worker {name} did not start")

            start_scheduler = enable_workers if enable_scheduler is None else enable_scheduler
            if start_scheduler:
                self.scheduler.start()

            logger.info(f"Queue system initialized, {workers_started} workers started")
            return {'initialized': True, 'workers_started': workers_started}

        except Exception as e:
            logger.error(f"Failed to initialize queue system: {e}")
            return {'initialized': False, 'error': str(e)}

    async def shutdown(self) -> None:
        """Stop the scheduler, then workers, then the manager, then the connection."""
        logger.info("Shutting down queue system...")
        try:
            self.scheduler.shutdown()
            for name, worker in self.workers.items():
                try:
                    await worker.shutdown()
                except Exception as e:
                    logger.error(f"Error shutting down worker {name}: {e}")
            await self.manager.shutdown()
        finally:
            self.provider.close_connection()
        logger.info("Queue system shut down")

    async def health(self) -> Dict[str, Any]:
        """Health summary. Never raises."""
        if not is_queue_enabled(self.manager.settings):
            return {'status': 'disabled', 'mode': 'fallback'}

        try:
            return {
                'status': 'healthy' if self.manager.initialized else 'degraded',
                'queues': await self.manager.get_stats(),
                'workers': {name: worker.get_stats() for name, worker in self.workers.items()},
            }
        except Exception as e:
            logger.error(f"Error getting queue health: {e}")
            return {'status': 'error', 'error': str(e)}


# Global runtime for the default manager and workers
queue_runtime = QueueRuntime()


async def initialize_queues(**options: Any) -> Dict[str, Any]:
    """Initialize the process-wide queue system. See ``QueueRuntime.initialize``."""
    return await queue_runtime.initialize(**options)


async def shutdown_queues() -> None:
    await queue_runtime.shutdown()


async def get_queue_health() -> Dict[str, Any]:
    return await queue_runtime.health()
