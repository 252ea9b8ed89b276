"""Queue layer for KETMAR Market.

Background jobs for the marketplace, built on Redis Queue (RQ), so that
Telegram notifications, analytics ingestion, AI tasks, ad lifecycle
transitions and search-alert matching never block a request.

Components:
- settings: Environment configuration
- connection: Shared Redis connection with bounded retries
- config: Queue names, priorities, job defaults and worker tuning
- manager: Queue management with graceful fallback when Redis is absent
- producer: The API application code calls to emit jobs
- scheduler: Delayed-job promotion and cron (repeatable) jobs
- workers: One worker per queue
- bootstrap: Start-up, shutdown and health

Key Features:
- Priority lanes (urgent, high, normal, low) per queue
- Retries with exponential backoff, failed-job listing and manual retry
- Pause/resume, stats and health for operations
- Never raises on enqueue: unavailable queues return a fallback result
"""

from .config import QUEUES, WORKER_OPTIONS, JobOptions, JobPriority, QueueName, is_queue_enabled
from .connection import ConnectionProvider, get_connection_provider
from .manager import QueueManager, get_queue_manager
from .models import DispatchResult
from .producer import EventProducer, event_producer
from .bootstrap import QueueRuntime, get_queue_health, initialize_queues, shutdown_queues
from .settings import FallbackPolicy, QueueSettings, get_settings

__all__ = [
    'QUEUES',
    'WORKER_OPTIONS',
    'JobOptions',
    'JobPriority',
    'QueueName',
    'is_queue_enabled',
    'ConnectionProvider',
    'get_connection_provider',
    'QueueManager',
    'get_queue_manager',
    'DispatchResult',
    'EventProducer',
    'event_producer',
    'QueueRuntime',
    'initialize_queues',
    'shutdown_queues',
    'get_queue_health',
    'FallbackPolicy',
    'QueueSettings',
    'get_settings',
]
