"""Ad lifecycle worker: expiration, republishing, reminders and cleanup."""

import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

from ..config import QueueName
from ..models import LifecycleAction, LifecycleJob
from .base import SKIPPED_NO_SERVICE, BaseWorker

logger = logging.getLogger(__name__)

NOTIFY_KIND = "lifecycle"


class AdLifecycleService(Protocol):
    """Ad state transitions.

    Each method returns a result dict. An optional ``notify`` list of
    ``{'target': telegram_id, 'message': text}`` entries is sent to sellers
    by the worker.
    """

    async def check_expiration(self, ad_id: str, data: Dict[str, Any]) -> Dict[str, Any]: ...

    async def expire_ad(self, ad_id: str, data: Dict[str, Any]) -> Dict[str, Any]: ...

    async def republish_ad(self, ad_id: str, data: Dict[str, Any]) -> Dict[str, Any]: ...

    async def send_reminder(self, ad_id: str, data: Dict[str, Any]) -> Dict[str, Any]: ...

    async def cleanup_expired(self, data: Dict[str, Any]) -> Dict[str, Any]: ...

    async def extend_ad(self, ad_id: str, data: Dict[str, Any]) -> Dict[str, Any]: ...


class LifecycleWorker(BaseWorker):
    """Applies lifecycle actions through an injected ``AdLifecycleService``."""

    def __init__(self, service: Optional[AdLifecycleService] = None, **kwargs):
        super().__init__(QueueName.LIFECYCLE, **kwargs)
        self.service = service

    def set_service(self, service: Optional[AdLifecycleService]) -> None:
        self.service = service

    @property
    def handlers(self) -> Dict[LifecycleAction, Callable[[LifecycleJob], Awaitable[Dict[str, Any]]]]:
        service = self.service
        return {
            LifecycleAction.CHECK_EXPIRATION: lambda job: service.check_expiration(job.ad_id, job.data),
            LifecycleAction.EXPIRE_AD: lambda job: service.expire_ad(job.ad_id, job.data),
            LifecycleAction.REPUBLISH_AD: lambda job: service.republish_ad(
                job.ad_id, {'ttlDays': 30, **job.data}),
            LifecycleAction.SEND_REMINDER: lambda job: service.send_reminder(job.ad_id, job.data),
            LifecycleAction.CLEANUP_EXPIRED: lambda job: service.cleanup_expired(
                {'olderThanDays': 90, 'limit': 100, **job.data}),
            LifecycleAction.EXTEND_AD: lambda job: service.extend_ad(
                job.ad_id, {'additionalDays': 14, **job.data}),
        }

    async def process(self, job_name: str, data: Dict[str, Any]) -> Any:
        job = LifecycleJob.from_dict(data)
        if self.service is None:
            logger.warning(f"[{self.name}] Lifecycle service not registered, skipping {job.action.value}")
            return dict(SKIPPED_NO_SERVICE)

        result = await self.handlers[job.action](job)
        return await self.deliver_notifications(result, NOTIFY_KIND)


# Global lifecycle worker instance
lifecycle_worker = LifecycleWorker()
