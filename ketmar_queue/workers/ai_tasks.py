"""AI task worker.

Routes each task type to a service from an injected registry. A missing
service is not an error: the job completes as skipped.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple

from ..config import QueueName
from ..models import AiTaskJob, AiTaskType
from .base import SKIPPED_NO_SERVICE, BaseWorker

logger = logging.getLogger(__name__)

RECOMMENDATION_ENGINE = "RecommendationEngine"
PRICE_ENGINE = "DynamicPriceEngine"
SELLER_TWIN_ENGINE = "SellerTwinEngine"
DIGITAL_TWIN_SERVICE = "DigitalTwinService"
AI_GATEWAY = "AiGateway"
MODERATION_SERVICE = "ModerationService"

CONTENT_GENERATORS = {
    'title': 'generate_title',
    'description': 'generate_description',
    'tags': 'generate_tags',
}

Handler = Callable[[Any, AiTaskJob], Awaitable[Any]]


class AiTaskWorker(BaseWorker):
    """Runs AI tasks with low concurrency."""

    def __init__(self, services: Optional[Mapping[str, Any]] = None, **kwargs):
        super().__init__(QueueName.AI_TASKS, **kwargs)
        self.services: Dict[str, Any] = dict(services or {})

    def register_services(self, services: Mapping[str, Any]) -> None:
        """Add or replace services by name."""
        self.services.update(services)
        logger.info(f"[{self.name}] Registered services: {', '.join(sorted(services))}")

    @property
    def handlers(self) -> Dict[AiTaskType, Tuple[str, Handler]]:
        return {
            AiTaskType.GENERATE_RECOMMENDATIONS: (RECOMMENDATION_ENGINE, self._generate_recommendations),
            AiTaskType.ANALYZE_PRICING: (PRICE_ENGINE, self._analyze_pricing),
            AiTaskType.UPDATE_SELLER_TWIN: (SELLER_TWIN_ENGINE, self._update_seller_twin),
            AiTaskType.PROCESS_USER_ACTIVITY: (DIGITAL_TWIN_SERVICE, self._process_user_activity),
            AiTaskType.GENERATE_CONTENT: (AI_GATEWAY, self._generate_content),
            AiTaskType.MODERATE_AD: (MODERATION_SERVICE, self._moderate_ad),
        }

    async def process(self, job_name: str, data: Dict[str, Any]) -> Any:
        task = AiTaskJob.from_dict(data)
        service_name, handler = self.handlers[task.task_type]

        service = self.services.get(service_name)
        if service is None:
            logger.warning(f"[{self.name}] {service_name} not registered, skipping {task.task_type.value}")
            return dict(SKIPPED_NO_SERVICE)

        return await handler(service, task)

    async def _generate_recommendations(self, service: Any, task: AiTaskJob) -> Dict[str, Any]:
        context = task.context
        feed = await service.get_for_you_feed(
            context.get('userId'), context.get('lat'), context.get('lng'), context.get('radiusKm'), limit=20
        )
        items = feed.get('items') if isinstance(feed, dict) else None
        return {'user_id': task.entity_ref, 'recommendations': len(items or []), 'cached': False}

    async def _analyze_pricing(self, service: Any, task: AiTaskJob) -> Dict[str, Any]:
        analysis = await service.analyze_price(task.entity_ref)
        return {
            'ad_id': task.entity_ref,
            'recommendation': analysis.get('recommendation'),
            'confidence': analysis.get('confidence'),
        }

    async def _update_seller_twin(self, service: Any, task: AiTaskJob) -> Dict[str, Any]:
        twin = await service.get_full_overview(task.entity_ref)
        return {
            'seller_id': task.entity_ref,
            'issues_count': len(twin.get('issues') or []),
            'recommendations_count': len(twin.get('recommendations') or []),
        }

    async def _process_user_activity(self, service: Any, task: AiTaskJob) -> Dict[str, Any]:
        activity_type = task.context.get('activityType')
        await service.track_activity(task.entity_ref, activity_type, task.context.get('data'))
        return {'user_id': task.entity_ref, 'activity_type': activity_type, 'processed': True}

    async def _generate_content(self, service: Any, task: AiTaskJob) -> Dict[str, Any]:
        content_type = task.context.get('contentType')
        method = CONTENT_GENERATORS.get(content_type)
        if method is None:
            raise ValueError(f"Unknown content type: {content_type}")
        result = await getattr(service, method)(task.context.get('input'))
        return {'content_type': content_type, 'result': result}

    async def _moderate_ad(self, service: Any, task: AiTaskJob) -> Dict[str, Any]:
        result = await service.moderate_ad(task.entity_ref)
        return {'ad_id': task.entity_ref, 'risk_score': result.get('risk_score'), 'flags': result.get('flags')}


# Global AI task worker instance
ai_task_worker = AiTaskWorker()
