"""Pytest configuration and fixtures for queue layer tests."""

from datetime import datetime, timezone
from typing import Any, Dict, List

import fakeredis
import pytest
import pytest_asyncio

from ketmar_queue.config import QueueName, WorkerOptions
from ketmar_queue.connection import ConnectionProvider
from ketmar_queue.manager import QueueManager
from ketmar_queue.settings import QueueSettings
from ketmar_queue.workers.base import BaseWorker

FIXED_NOW = datetime(2031, 1, 1, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def settings() -> QueueSettings:
    """Settings with a broker configured; the broker itself is fake."""
    return QueueSettings(
        _env_file=None,
        redis_url="redis://localhost:6379/0",
        upstash_redis_url=None,
        queue_events_poll_interval=60,
        log_level="WARNING",
    )


@pytest.fixture
def disabled_settings() -> QueueSettings:
    """Settings without any broker URL."""
    return QueueSettings(_env_file=None, redis_url=None, upstash_redis_url=None)


@pytest.fixture
def fake_redis():
    """Binary fake Redis on its own server, so tests never share keys."""
    client = fakeredis.FakeRedis(server=fakeredis.FakeServer())
    yield client
    client.flushall()


@pytest.fixture
def provider(settings, fake_redis) -> ConnectionProvider:
    return ConnectionProvider(settings, client_factory=lambda url, **kwargs: fake_redis)


@pytest.fixture
def disabled_provider(disabled_settings) -> ConnectionProvider:
    return ConnectionProvider(disabled_settings)


@pytest_asyncio.fixture
async def manager(settings, provider):
    """Initialized queue manager on fake Redis."""
    queue_manager = QueueManager(settings, provider, clock=lambda: FIXED_NOW)
    assert await queue_manager.initialize()
    yield queue_manager
    await queue_manager.shutdown()


@pytest_asyncio.fixture
async def disabled_manager(disabled_settings, disabled_provider):
    queue_manager = QueueManager(disabled_settings, disabled_provider)
    yield queue_manager
    await queue_manager.shutdown()


class RecordingWorker(BaseWorker):
    """Worker that records the payloads it processes and can be told to fail."""

    def __init__(self, queue_name: str = QueueName.SEARCH_ALERTS, fail: bool = False, **kwargs):
        kwargs.setdefault('options', WorkerOptions(concurrency=1, drain_delay_ms=1000))
        super().__init__(queue_name, **kwargs)
        self.fail = fail
        self.seen: List[Dict[str, Any]] = []

    async def process(self, job_name: str, data: Dict[str, Any]) -> Any:
        self.seen.append(data)
        if self.fail:
            raise ValueError("boom")
        return {'ok': True, 'job_name': job_name}


@pytest_asyncio.fixture
async def recording_worker(settings, provider):
    worker = RecordingWorker(provider=provider, settings=settings)
    yield worker
    await worker.shutdown()


@pytest_asyncio.fixture
async def failing_worker(settings, provider):
    worker = RecordingWorker(provider=provider, settings=settings, fail=True)
    yield worker
    await worker.shutdown()
