"""Event producer: the API application code uses to emit queue jobs.

Callers never see queue names or broker details. Every method returns the
manager's ``DispatchResult`` and none raises when queues are unavailable.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from .config import JobPriority, QueueName, is_queue_enabled
from .manager import QueueManager, get_queue_manager
from .models import (
    AiTaskJob, AiTaskType, AnalyticsJob, DispatchResult, LifecycleAction, LifecycleJob,
    NotificationJob, NotificationType, SearchAlertJob, SearchAlertType, utc_now,
)
from .scheduler import RepeatableJob, as_utc

logger = logging.getLogger(__name__)

Moment = Union[datetime, str, int, float]


def to_datetime(moment: Moment) -> datetime:
    """Accept a datetime, an ISO-8601 string or epoch milliseconds."""
    if isinstance(moment, datetime):
        return as_utc(moment)
    if isinstance(moment, (int, float)):
        return datetime.fromtimestamp(moment / 1000, tz=timezone.utc)
    return as_utc(datetime.fromisoformat(moment))


class EventProducer:
    """Unified API for sending events to queues."""

    def __init__(self, manager: Optional[QueueManager] = None, clock: Callable[[], datetime] = utc_now):
        self.manager = manager or get_queue_manager()
        self.clock = clock

    def _now_iso(self) -> str:
        return as_utc(self.clock()).isoformat()

    # Notifications

    async def send_notification(
        self,
        target_telegram_id: str,
        text: str,
        urgent: bool = False,
        buttons: Optional[List[List[Dict[str, Any]]]] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> DispatchResult:
        """Send a Telegram text message."""
        payload: Dict[str, Any] = {'text': text}
        if buttons:
            payload['buttons'] = buttons
        job = NotificationJob(NotificationType.MESSAGE, payload, str(target_telegram_id), options or {})
        priority = JobPriority.URGENT if urgent else JobPriority.HIGH
        return await self.manager.add_notification(job, priority=priority)

    async def send_photo_notification(
        self,
        target_telegram_id: str,
        photo: str,
        caption: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> DispatchResult:
        """Send a photo with an optional caption."""
        job = NotificationJob(
            NotificationType.PHOTO, {'photo': photo, 'caption': caption}, str(target_telegram_id), options or {}
        )
        return await self.manager.add_notification(job)

    async def send_interactive_notification(
        self,
        target_telegram_id: str,
        text: str,
        keyboard: List[List[Dict[str, Any]]],
        options: Optional[Dict[str, Any]] = None,
    ) -> DispatchResult:
        """Send a message with an inline keyboard."""
        job = NotificationJob(
            NotificationType.CALLBACK, {'text': text, 'keyboard': keyboard}, str(target_telegram_id), options or {}
        )
        return await self.manager.add_notification(job)

    async def send_batch_notifications(
        self, messages: List[Dict[str, Any]], options: Optional[Dict[str, Any]] = None
    ) -> DispatchResult:
        """Send several messages in one job.

        Args:
            messages: ``{'chatId', 'text', 'options'?}`` dicts
            options: Batch options, e.g. ``batchDelay`` in milliseconds
        """
        job = NotificationJob(NotificationType.BATCH, {'messages': messages}, options=options or {})
        return await self.manager.add_notification(job, priority=JobPriority.NORMAL)

    # Analytics

    async def track_event(
        self, action: str, actor_id: Optional[str], metadata: Optional[Dict[str, Any]] = None
    ) -> DispatchResult:
        """Track an analytics event; ``occurredAt`` is the call time."""
        event = AnalyticsJob(action, actor_id, self._now_iso(), metadata or {})
        return await self.manager.add_analytics_event(event)

    async def track_event_immediate(
        self, action: str, actor_id: Optional[str], metadata: Optional[Dict[str, Any]] = None
    ) -> DispatchResult:
        """Track an analytics event that skips the worker's batch buffer."""
        event = AnalyticsJob(action, actor_id, self._now_iso(), metadata or {}, immediate=True)
        return await self.manager.add_analytics_event(event)

    # AI tasks

    async def request_recommendations(self, user_id: str, lat: float, lng: float,
                                      radius_km: float) -> DispatchResult:
        task = AiTaskJob(
            AiTaskType.GENERATE_RECOMMENDATIONS,
            user_id,
            {'userId': user_id, 'lat': lat, 'lng': lng, 'radiusKm': radius_km},
        )
        return await self.manager.add_ai_task(task.task_type, task)

    async def request_price_analysis(self, ad_id: str) -> DispatchResult:
        task = AiTaskJob(AiTaskType.ANALYZE_PRICING, ad_id)
        return await self.manager.add_ai_task(task.task_type, task)

    async def request_seller_twin_update(self, seller_id: str) -> DispatchResult:
        task = AiTaskJob(AiTaskType.UPDATE_SELLER_TWIN, seller_id)
        return await self.manager.add_ai_task(task.task_type, task)

    async def request_content_generation(self, content_type: str, content_input: Any) -> DispatchResult:
        """Generate a title, description or tags from ``content_input``."""
        task = AiTaskJob(AiTaskType.GENERATE_CONTENT, None, {'contentType': content_type, 'input': content_input})
        return await self.manager.add_ai_task(task.task_type, task)

    async def request_ad_moderation(self, ad_id: str) -> DispatchResult:
        task = AiTaskJob(AiTaskType.MODERATE_AD, ad_id)
        return await self.manager.add_ai_task(task.task_type, task)

    async def track_user_activity(self, user_id: str, activity_type: str, data: Any) -> DispatchResult:
        task = AiTaskJob(
            AiTaskType.PROCESS_USER_ACTIVITY, user_id, {'activityType': activity_type, 'data': data}
        )
        return await self.manager.add_ai_task(task.task_type, task, priority=JobPriority.LOW)

    # Ad lifecycle

    async def schedule_expiration_check(self, ad_id: str, check_at: Moment) -> DispatchResult:
        """Check an ad's expiration at ``check_at``; past times run now."""
        delay_ms = int((to_datetime(check_at) - as_utc(self.clock())).total_seconds() * 1000)
        job = LifecycleJob(LifecycleAction.CHECK_EXPIRATION, ad_id)
        return await self.manager.schedule_job(
            QueueName.LIFECYCLE, job.action.value, job, max(delay_ms, 0)
        )

    async def expire_ad(self, ad_id: str) -> DispatchResult:
        job = LifecycleJob(LifecycleAction.EXPIRE_AD, ad_id)
        return await self.manager.add_lifecycle_task(job.action, job)

    async def republish_ad(self, ad_id: str, ttl_days: int = 30) -> DispatchResult:
        job = LifecycleJob(LifecycleAction.REPUBLISH_AD, ad_id, {'ttlDays': ttl_days})
        return await self.manager.add_lifecycle_task(job.action, job)

    async def send_seller_reminder(self, ad_id: str, reminder_type: str, message: str) -> DispatchResult:
        job = LifecycleJob(LifecycleAction.SEND_REMINDER, ad_id, {'type': reminder_type, 'message': message})
        return await self.manager.add_lifecycle_task(job.action, job)

    async def extend_ad(self, ad_id: str, additional_days: int = 14) -> DispatchResult:
        job = LifecycleJob(LifecycleAction.EXTEND_AD, ad_id, {'additionalDays': additional_days})
        return await self.manager.add_lifecycle_task(job.action, job)

    async def schedule_cleanup(self, older_than_days: int = 90) -> DispatchResult:
        """Archive ads expired more than ``older_than_days`` ago."""
        job = LifecycleJob(LifecycleAction.CLEANUP_EXPIRED, None, {'olderThanDays': older_than_days})
        return await self.manager.add_lifecycle_task(job.action, job, priority=JobPriority.LOW)

    async def schedule_daily_cleanup(self, pattern: str = "0 3 * * *",
                                     older_than_days: int = 90) -> Optional[RepeatableJob]:
        """Register the recurring expired-ads cleanup."""
        job = LifecycleJob(LifecycleAction.CLEANUP_EXPIRED, None, {'olderThanDays': older_than_days})
        return await self.manager.add_repeatable_job(
            QueueName.LIFECYCLE, job.action.value, job, pattern, priority=JobPriority.LOW
        )

    # Search alerts

    async def check_new_ad_for_alerts(self, ad_id: str) -> DispatchResult:
        return await self.manager.add_search_alert(SearchAlertJob(SearchAlertType.NEW_AD_CHECK, {'adId': ad_id}))

    async def notify_alert_match(self, alert_id: str, ad_id: str) -> DispatchResult:
        alert = SearchAlertJob(SearchAlertType.USER_ALERT_MATCH, {'alertId': alert_id, 'adId': ad_id})
        return await self.manager.add_search_alert(alert)

    async def scan_all_alerts(self, limit: int = 1000) -> DispatchResult:
        alert = SearchAlertJob(SearchAlertType.BULK_SCAN, {'limit': limit})
        return await self.manager.add_search_alert(alert, priority=JobPriority.LOW)

    async def cleanup_old_alerts(self, older_than_days: int = 30) -> DispatchResult:
        alert = SearchAlertJob(SearchAlertType.CLEANUP, {'olderThanDays': older_than_days})
        return await self.manager.add_search_alert(alert, priority=JobPriority.LOW)

    def is_available(self) -> bool:
        """Whether queues are configured for this process."""
        return is_queue_enabled(self.manager.settings)


# Global event producer instance
event_producer = EventProducer()
