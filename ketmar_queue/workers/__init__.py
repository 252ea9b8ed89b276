"""Queue workers: one per KETMAR queue."""

from .base import (
    BaseWorker, CallbackNotifier, Notifier, RateLimiter, SlotWorker, execute_job,
    get_registered_worker, register_worker, unregister_worker,
)
from .notifications import NotificationWorker, notification_worker
from .analytics import AnalyticsSink, AnalyticsWorker, analytics_worker
from .ai_tasks import AiTaskWorker, ai_task_worker
from .lifecycle import AdLifecycleService, LifecycleWorker, lifecycle_worker
from .search_alerts import SearchAlertService, SearchAlertWorker, search_alert_worker

__all__ = [
    'BaseWorker', 'CallbackNotifier', 'Notifier', 'RateLimiter', 'SlotWorker', 'execute_job',
    'get_registered_worker', 'register_worker', 'unregister_worker',
    'NotificationWorker', 'notification_worker',
    'AnalyticsSink', 'AnalyticsWorker', 'analytics_worker',
    'AiTaskWorker', 'ai_task_worker',
    'AdLifecycleService', 'LifecycleWorker', 'lifecycle_worker',
    'SearchAlertService', 'SearchAlertWorker', 'search_alert_worker',
]
