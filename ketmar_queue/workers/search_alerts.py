"""Search alert worker: matches new ads against buyers' saved searches."""

import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

from ..config import QueueName
from ..models import SearchAlertJob, SearchAlertType
from .base import SKIPPED_NO_SERVICE, BaseWorker

logger = logging.getLogger(__name__)

NOTIFY_KIND = "search-alert"


class SearchAlertService(Protocol):
    """Saved-search matching. Results may carry a ``notify`` list like lifecycle results."""

    async def check_new_ad(self, data: Dict[str, Any]) -> Dict[str, Any]: ...

    async def notify_match(self, data: Dict[str, Any]) -> Dict[str, Any]: ...

    async def bulk_scan(self, data: Dict[str, Any]) -> Dict[str, Any]: ...

    async def cleanup(self, data: Dict[str, Any]) -> Dict[str, Any]: ...


class SearchAlertWorker(BaseWorker):
    """Runs search alert jobs through an injected ``SearchAlertService``."""

    def __init__(self, service: Optional[SearchAlertService] = None, **kwargs):
        super().__init__(QueueName.SEARCH_ALERTS, **kwargs)
        self.service = service

    def set_service(self, service: Optional[SearchAlertService]) -> None:
        self.service = service

    @property
    def handlers(self) -> Dict[SearchAlertType, Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]]:
        service = self.service
        return {
            SearchAlertType.NEW_AD_CHECK: lambda data: service.check_new_ad(data),
            SearchAlertType.USER_ALERT_MATCH: lambda data: service.notify_match(data),
            SearchAlertType.BULK_SCAN: lambda data: service.bulk_scan({'limit': 1000, **data}),
            SearchAlertType.CLEANUP: lambda data: service.cleanup({'olderThanDays': 30, **data}),
        }

    async def process(self, job_name: str, data: Dict[str, Any]) -> Any:
        alert = SearchAlertJob.from_dict(data)
        if self.service is None:
            logger.warning(f"[{self.name}] Search alert service not registered, skipping {alert.type.value}")
            return dict(SKIPPED_NO_SERVICE)

        result = await self.handlers[alert.type](alert.data)
        return await self.deliver_notifications(result, NOTIFY_KIND)


# Global search alert worker instance
search_alert_worker = SearchAlertWorker()
