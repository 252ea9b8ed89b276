"""Queue data models: dispatch results, job payloads and job records.

Payload dataclasses carry an enum tag and convert to and from the JSON wire
shape stored in the broker (camelCase keys). ``from_dict`` raises
``ValueError`` for an unknown tag so a worker fails the job loudly.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from rq.job import Job


@dataclass
class DispatchResult:
    """Outcome of submitting one job.

    ``queued=False`` means the job was already handled by the fallback path
    and the caller must not retry it.
    """
    job_id: Optional[str]
    queued: bool
    fallback: bool = False
    reason: Optional[str] = None

    @classmethod
    def accepted(cls, job_id: str) -> "DispatchResult":
        return cls(job_id=job_id, queued=True)

    @classmethod
    def fallback_result(cls, reason: str) -> "DispatchResult":
        return cls(job_id=None, queued=False, fallback=True, reason=reason)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            'jobId': self.job_id,
            'queued': self.queued,
            'fallback': self.fallback,
        }
        if self.reason:
            result['reason'] = self.reason
        return result


class NotificationType(str, Enum):
    """Kinds of Telegram notification."""
    MESSAGE = "message"
    PHOTO = "photo"
    CALLBACK = "callback"
    BATCH = "batch"


class AiTaskType(str, Enum):
    """AI task kinds. The value doubles as the job name."""
    GENERATE_RECOMMENDATIONS = "generate-recommendations"
    ANALYZE_PRICING = "analyze-pricing"
    UPDATE_SELLER_TWIN = "update-seller-twin"
    PROCESS_USER_ACTIVITY = "process-user-activity"
    GENERATE_CONTENT = "generate-content"
    MODERATE_AD = "moderate-ad"


class LifecycleAction(str, Enum):
    """Ad lifecycle actions. The value doubles as the job name."""
    CHECK_EXPIRATION = "check-expiration"
    EXPIRE_AD = "expire-ad"
    REPUBLISH_AD = "republish-ad"
    SEND_REMINDER = "send-reminder"
    CLEANUP_EXPIRED = "cleanup-expired"
    EXTEND_AD = "extend-ad"


class SearchAlertType(str, Enum):
    """Saved-search alert job kinds."""
    NEW_AD_CHECK = "new-ad-check"
    USER_ALERT_MATCH = "user-alert-match"
    BULK_SCAN = "bulk-scan"
    CLEANUP = "cleanup"


@dataclass
class NotificationJob:
    """Telegram notification job."""
    type: NotificationType
    payload: Dict[str, Any]
    target_telegram_id: Optional[str] = None
    options: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {'type': NotificationType(self.type).value, 'payload': self.payload}
        if self.target_telegram_id is not None:
            data['targetTelegramId'] = self.target_telegram_id
        if self.options:
            data['options'] = self.options
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NotificationJob":
        return cls(
            type=NotificationType(data.get('type')),
            payload=data.get('payload') or {},
            target_telegram_id=data.get('targetTelegramId'),
            options=data.get('options') or {},
        )


@dataclass
class AnalyticsJob:
    """Analytics event. ``occurred_at`` is an ISO-8601 UTC timestamp."""
    action: str
    actor_id: Optional[str]
    occurred_at: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    immediate: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            'action': self.action,
            'actorId': self.actor_id,
            'metadata': self.metadata,
            'occurredAt': self.occurred_at,
        }
        if self.immediate:
            data['immediate'] = True
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalyticsJob":
        if not data.get('action'):
            raise ValueError("Analytics event without action")
        return cls(
            action=data['action'],
            actor_id=data.get('actorId'),
            occurred_at=data.get('occurredAt') or utc_now().isoformat(),
            metadata=data.get('metadata') or {},
            immediate=bool(data.get('immediate', False)),
        )


@dataclass
class AiTaskJob:
    """AI task job."""
    task_type: AiTaskType
    entity_ref: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'taskType': AiTaskType(self.task_type).value,
            'entityRef': self.entity_ref,
            'context': self.context,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AiTaskJob":
        return cls(
            task_type=AiTaskType(data.get('taskType')),
            entity_ref=data.get('entityRef'),
            context=data.get('context') or {},
        )


@dataclass
class LifecycleJob:
    """Ad lifecycle job."""
    action: LifecycleAction
    ad_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {'action': LifecycleAction(self.action).value, 'adId': self.ad_id, 'data': self.data}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LifecycleJob":
        return cls(
            action=LifecycleAction(data.get('action')),
            ad_id=data.get('adId'),
            data=data.get('data') or {},
        )


@dataclass
class SearchAlertJob:
    """Search alert job."""
    type: SearchAlertType
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {'type': SearchAlertType(self.type).value, 'data': self.data}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SearchAlertJob":
        return cls(type=SearchAlertType(data.get('type')), data=data.get('data') or {})


def utc_now() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def failed_reason(job: Job) -> Optional[str]:
    """Last line of the job's latest traceback, i.e. the exception message."""
    result = job.latest_result()
    exc_string = result.exc_string if result is not None else None
    if not exc_string:
        return None
    lines = [line for line in exc_string.strip().splitlines() if line.strip()]
    return lines[-1] if lines else None


def _job_args(job: Job) -> List[Any]:
    args = list(job.args or [])
    return args + [None] * (2 - len(args))


def job_record(job: Job) -> Dict[str, Any]:
    """Serializable view of a job for admin listings."""
    job_name, data = _job_args(job)[:2]
    created = job.enqueued_at or job.created_at
    return {
        'id': job.id,
        'name': job.meta.get('job_name', job_name),
        'data': data,
        'priority': job.meta.get('priority'),
        'status': getattr(job.get_status(refresh=False), 'value', None),
        'attempts_made': job.meta.get('attempts_made', 0),
        'timestamp': created.isoformat() if created else None,
    }


def failed_job_record(job: Job) -> Dict[str, Any]:
    """Failed-job view: ``{id, name, data, failed_reason, attempts_made, timestamp}``."""
    record = job_record(job)
    return {
        'id': record['id'],
        'name': record['name'],
        'data': record['data'],
        'failed_reason': failed_reason(job),
        'attempts_made': record['attempts_made'],
        'timestamp': record['timestamp'],
    }
