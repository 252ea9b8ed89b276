"""Tests for queue workers."""

import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Dict
from unittest.mock import AsyncMock, MagicMock

import pytest
from aiogram.enums import ParseMode

from ketmar_queue.config import Backoff, JobPriority, QueueName, RateLimit, WorkerOptions
from ketmar_queue.events import COMPLETED, FAILED, QueueEvent, QueueEvents
from ketmar_queue.models import (
    AiTaskType, LifecycleAction, NotificationType, SearchAlertJob, SearchAlertType, failed_reason,
)
from ketmar_queue.workers import (
    AiTaskWorker, AnalyticsWorker, CallbackNotifier, LifecycleWorker, NotificationWorker, RateLimiter,
    SearchAlertWorker, execute_job, get_registered_worker,
)
from ketmar_queue.workers.ai_tasks import PRICE_ENGINE

from conftest import RecordingWorker


def alert(ad_id: str) -> SearchAlertJob:
    return SearchAlertJob(SearchAlertType.NEW_AD_CHECK, {'adId': ad_id})


def ad_ids(worker: RecordingWorker):
    return [data['data']['adId'] for data in worker.seen]


async def wait_until(predicate, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        assert time.monotonic() < deadline, "condition not met in time"
        await asyncio.sleep(0.02)


class SlowWorker(RecordingWorker):
    """Holds every job briefly and tracks how many run at once."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.active = 0
        self.max_active = 0

    async def process(self, job_name: str, data: Dict[str, Any]) -> Any:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(0.2)
            return await super().process(job_name, data)
        finally:
            self.active -= 1


class TestBaseWorker:
    """Job execution through RQ on fake Redis."""

    @pytest.mark.asyncio
    async def test_urgent_jobs_run_before_low(self, manager, recording_worker):
        await manager.add_search_alert(alert("low"), priority=JobPriority.LOW)
        await manager.add_search_alert(alert("normal"), priority=JobPriority.NORMAL)
        await manager.add_search_alert(alert("urgent"), priority=JobPriority.URGENT)

        assert await recording_worker.drain() == 3
        assert [data['data']['adId'] for data in recording_worker.seen] == ["urgent", "normal", "low"]

        stats = recording_worker.get_stats()
        assert stats['processed_count'] == 3
        assert stats['failed_count'] == 0
        assert stats['success_rate'] == "100.00%"

    @pytest.mark.asyncio
    async def test_completed_job_keeps_result(self, manager, recording_worker):
        result = await manager.add_search_alert(alert("ad-1"))
        await recording_worker.drain()

        assert await manager.get_job_status(QueueName.SEARCH_ALERTS, result.job_id) == "finished"
        stats = await manager.get_stats()
        assert stats[QueueName.SEARCH_ALERTS]['completed'] == 1
        assert stats[QueueName.SEARCH_ALERTS]['waiting'] == 0

    @pytest.mark.asyncio
    async def test_failed_job_can_be_retried(self, manager, failing_worker):
        # No backoff delay, so burst mode runs every attempt
        result = await manager.add_search_alert(alert("ad-1"), backoff=Backoff(delay_ms=0))
        assert await failing_worker.drain() == 3

        failed = await manager.get_failed_jobs(QueueName.SEARCH_ALERTS)
        assert [job['id'] for job in failed] == [result.job_id]
        assert failed[0]['name'] == "process-alert"
        assert failed[0]['attempts_made'] == 3
        assert failed[0]['failed_reason'] == "ValueError: boom"
        assert failing_worker.get_stats()['success_rate'] == "0.00%"

        assert await manager.retry_job(QueueName.SEARCH_ALERTS, result.job_id)
        assert await manager.get_job_status(QueueName.SEARCH_ALERTS, result.job_id) == "queued"
        assert await manager.get_failed_jobs(QueueName.SEARCH_ALERTS) == []

    @pytest.mark.asyncio
    async def test_failed_attempt_is_scheduled_with_backoff(self, manager, failing_worker):
        result = await manager.add_search_alert(alert("ad-1"))
        await failing_worker.drain()

        stats = await manager.get_stats()
        assert stats[QueueName.SEARCH_ALERTS]['delayed'] == 1
        assert stats[QueueName.SEARCH_ALERTS]['failed'] == 0
        assert await manager.get_job_status(QueueName.SEARCH_ALERTS, result.job_id) == "scheduled"

    @pytest.mark.asyncio
    async def test_retry_unknown_job(self, manager):
        assert not await manager.retry_job(QueueName.SEARCH_ALERTS, "missing")

    @pytest.mark.asyncio
    async def test_attach_registers_worker(self, recording_worker, fake_redis):
        recording_worker.attach(fake_redis)
        assert get_registered_worker(QueueName.SEARCH_ALERTS) is recording_worker

        await recording_worker.shutdown()
        assert get_registered_worker(QueueName.SEARCH_ALERTS) is None

    def test_failed_reason_reads_latest_result(self):
        job = MagicMock(spec=["latest_result"])
        job.latest_result.return_value = MagicMock(
            exc_string="Traceback (most recent call last):\n  ...\nValueError: boom\n"
        )
        assert failed_reason(job) == "ValueError: boom"

        job.latest_result.return_value = None
        assert failed_reason(job) is None

    def test_execute_job_without_worker(self):
        with pytest.raises(RuntimeError):
            execute_job("process-alert", {})

    @pytest.mark.asyncio
    async def test_start_runs_configured_slots(self, settings, provider):
        worker = RecordingWorker(
            provider=provider, settings=settings, options=WorkerOptions(concurrency=2, drain_delay_ms=1000)
        )
        try:
            assert await worker.start()
            assert await worker.start()
            assert len(worker._slots) == 2
            # One pool thread per slot bounds the jobs running at once
            assert worker._executor._max_workers == 2
            assert worker.get_stats()['is_running']
        finally:
            await worker.shutdown()

        assert not worker.is_running
        await worker.shutdown()

    @pytest.mark.asyncio
    async def test_running_worker_honours_pause(self, manager, recording_worker):
        assert await recording_worker.start()
        await manager.add_search_alert(alert("before-pause"))
        await wait_until(lambda: len(recording_worker.seen) == 1)

        assert await manager.pause_queue(QueueName.SEARCH_ALERTS)
        # Let any slot finish the poll it was in when the flag went up
        await asyncio.sleep(0.3)
        paused_job = await manager.add_search_alert(alert("after-pause"))
        await asyncio.sleep(0.6)

        assert ad_ids(recording_worker) == ["before-pause"]
        waiting = await manager.get_waiting_jobs(QueueName.SEARCH_ALERTS)
        assert [job['id'] for job in waiting] == [paused_job.job_id]

        assert await manager.resume_queue(QueueName.SEARCH_ALERTS)
        await wait_until(lambda: len(recording_worker.seen) == 2)
        assert ad_ids(recording_worker) == ["before-pause", "after-pause"]

    @pytest.mark.asyncio
    async def test_shutdown_stops_taking_jobs(self, manager, settings, provider):
        worker = RecordingWorker(
            provider=provider, settings=settings, options=WorkerOptions(concurrency=2, drain_delay_ms=1000)
        )
        assert await worker.start()
        await manager.add_search_alert(alert("first"))
        await wait_until(lambda: len(worker.seen) == 1)

        async def feed():
            for index in range(20):
                await manager.add_search_alert(alert(f"late-{index}"))
                await asyncio.sleep(0.05)

        feeder = asyncio.create_task(feed())
        await asyncio.sleep(0.2)

        started = time.monotonic()
        await worker.shutdown()
        elapsed = time.monotonic() - started
        processed = len(worker.seen)
        await feeder

        assert elapsed < 2
        assert not worker.is_running
        assert len(worker.seen) == processed
        waiting = await manager.get_waiting_jobs(QueueName.SEARCH_ALERTS, 0, 100)
        assert len(waiting) == 21 - processed

    @pytest.mark.asyncio
    async def test_active_jobs_bounded_by_concurrency(self, manager, settings, provider):
        worker = SlowWorker(
            provider=provider, settings=settings, options=WorkerOptions(concurrency=3, drain_delay_ms=1000)
        )
        for index in range(9):
            await manager.add_search_alert(alert(f"ad-{index}"))

        try:
            assert await worker.start()
            await wait_until(lambda: len(worker.seen) == 9)
        finally:
            await worker.shutdown()

        assert 2 <= worker.max_active <= 3
        assert sorted(ad_ids(worker)) == sorted(f"ad-{index}" for index in range(9))

    @pytest.mark.asyncio
    async def test_disabled_worker_does_not_start(self, disabled_settings, disabled_provider):
        worker = RecordingWorker(provider=disabled_provider, settings=disabled_settings)
        assert not await worker.start()
        assert worker.get_stats()['success_rate'] == "N/A"


class TestQueueEvents:
    """Polling listeners report new registry entries."""

    @pytest.mark.asyncio
    async def test_completed_event(self, manager, recording_worker):
        listener = QueueEvents(manager.get_queue(QueueName.SEARCH_ALERTS))
        assert listener.poll() == []

        result = await manager.add_search_alert(alert("ad-1"))
        await recording_worker.drain()

        events = listener.poll()
        assert [(event.event, event.job_id) for event in events] == [(COMPLETED, result.job_id)]
        # Already reported
        assert listener.poll() == []

    @pytest.mark.asyncio
    async def test_failed_event_carries_reason(self, manager, failing_worker):
        listener = QueueEvents(manager.get_queue(QueueName.SEARCH_ALERTS))
        listener.poll()

        await manager.add_search_alert(alert("ad-1"), attempts=1)
        await failing_worker.drain()

        events = listener.poll()
        assert [event.event for event in events] == [FAILED]
        assert "boom" in events[0].details['failed_reason']

    @pytest.mark.asyncio
    async def test_dispatch_isolates_handler_errors(self, manager):
        listener = QueueEvents(manager.get_queue(QueueName.SEARCH_ALERTS))
        seen = []

        def broken(event):
            raise RuntimeError("handler bug")

        async def record(event):
            seen.append(event.job_id)

        listener.on(COMPLETED, broken)
        listener.on(COMPLETED, record)

        await listener.dispatch([QueueEvent(COMPLETED, QueueName.SEARCH_ALERTS, "job-1")])
        assert seen == ["job-1"]

    def test_unknown_event(self):
        listener = QueueEvents(MagicMock())
        with pytest.raises(ValueError):
            listener.on("progress", print)


class TestRateLimiter:

    def test_waits_for_window(self):
        now = [0.0]
        sleeps = []

        def sleep(seconds):
            sleeps.append(seconds)
            now[0] += seconds

        limiter = RateLimiter(RateLimit(max_jobs=2, duration_ms=1000), clock=lambda: now[0], sleep=sleep)
        limiter.acquire()
        limiter.acquire()
        assert sleeps == []

        limiter.acquire()
        assert sleeps == [1.0]

    def test_notification_worker_is_rate_limited(self):
        worker = NotificationWorker()
        assert worker._limiter is not None
        assert worker._limiter.max_jobs == 25
        assert AnalyticsWorker()._limiter is None


class TestNotificationWorker:

    @pytest.fixture
    def bot(self):
        bot = MagicMock()
        bot.send_message = AsyncMock(return_value=MagicMock(message_id=42))
        bot.send_photo = AsyncMock(return_value=MagicMock(message_id=43))
        return bot

    def test_handles_every_type(self):
        assert set(NotificationWorker().handlers) == set(NotificationType)

    @pytest.mark.asyncio
    async def test_sends_message_with_buttons(self, bot):
        worker = NotificationWorker(bot=bot)
        result = await worker.process("send-notification", {
            'type': "message",
            'payload': {'text': "Новое объявление", 'buttons': [[{'text': "Open", 'url': "https://t.me/ketmar"}]]},
            'targetTelegramId': "123",
        })

        assert result == {'message_id': 42, 'chat_id': "123"}
        kwargs = bot.send_message.call_args.kwargs
        assert kwargs['chat_id'] == "123"
        assert kwargs['parse_mode'] == ParseMode.HTML
        assert kwargs['reply_markup'].inline_keyboard[0][0].text == "Open"
        assert worker.get_stats()['sent_today'] == 1

    @pytest.mark.asyncio
    async def test_sends_photo(self, bot):
        worker = NotificationWorker(bot=bot)
        await worker.process("send-notification", {
            'type': "photo", 'payload': {'photo': "file-id", 'caption': "Bike"}, 'targetTelegramId': "5",
        })
        bot.send_photo.assert_awaited_once()
        assert bot.send_photo.call_args.kwargs['caption'] == "Bike"

    @pytest.mark.asyncio
    async def test_batch_continues_after_failure(self, bot):
        bot.send_message.side_effect = [RuntimeError("Forbidden: bot was blocked by the user"),
                                        MagicMock(message_id=7)]
        worker = NotificationWorker(bot=bot)
        result = await worker.process("send-notification", {
            'type': "batch",
            'payload': {'messages': [{'chatId': "1", 'text': "a"}, {'chatId': "2", 'text': "b"}]},
            'options': {'batchDelay': 0},
        })

        assert result['processed'] == 2
        assert [entry['success'] for entry in result['results']] == [False, True]

    @pytest.mark.asyncio
    async def test_requires_bot(self):
        with pytest.raises(RuntimeError):
            await NotificationWorker().process("send-notification", {
                'type': "message", 'payload': {'text': "hi"}, 'targetTelegramId': "1",
            })

    @pytest.mark.asyncio
    async def test_requires_target(self, bot):
        with pytest.raises(ValueError):
            await NotificationWorker(bot=bot).process("send-notification", {
                'type': "message", 'payload': {'text': "hi"},
            })

    @pytest.mark.asyncio
    async def test_unknown_type_fails(self, bot):
        with pytest.raises(ValueError):
            await NotificationWorker(bot=bot).process("send-notification", {
                'type': "sms", 'payload': {}, 'targetTelegramId': "1",
            })


class TestAnalyticsWorker:

    @staticmethod
    def event(action: str = "ad_view", immediate: bool = False):
        data = {'action': action, 'actorId': "u1", 'occurredAt': "2031-01-01T00:00:00+00:00", 'metadata': {}}
        if immediate:
            data['immediate'] = True
        return data

    @pytest.mark.asyncio
    async def test_buffers_and_flushes_at_batch_size(self):
        sink = AsyncMock()
        sink.save_many.return_value = 2
        worker = AnalyticsWorker(sink=sink, batch_size=2)

        assert await worker.process("track-event", self.event()) == {'buffered': True, 'buffer_size': 1}
        await worker.process("track-event", self.event("ad_click"))

        sink.save_many.assert_awaited_once()
        saved = sink.save_many.call_args.args[0]
        assert [event['action'] for event in saved] == ["ad_view", "ad_click"]
        assert saved[0]['occurred_at'] == datetime(2031, 1, 1, tzinfo=timezone.utc)
        assert worker.buffer == []

    @pytest.mark.asyncio
    async def test_failed_flush_keeps_events(self):
        sink = AsyncMock()
        sink.save_many.side_effect = RuntimeError("db down")
        worker = AnalyticsWorker(sink=sink, batch_size=10)
        await worker.process("track-event", self.event())

        with pytest.raises(RuntimeError):
            await worker.flush()
        assert len(worker.buffer) == 1
        assert worker.get_stats()['buffer_size'] == 1

    @pytest.mark.asyncio
    async def test_immediate_event_bypasses_buffer(self):
        sink = AsyncMock()
        sink.save.return_value = "evt-1"
        worker = AnalyticsWorker(sink=sink)

        result = await worker.process("track-event", self.event(immediate=True))
        assert result == {'saved': True, 'event_id': "evt-1"}
        assert worker.buffer == []

    @pytest.mark.asyncio
    async def test_shutdown_flushes(self):
        sink = AsyncMock()
        worker = AnalyticsWorker(sink=sink, batch_size=10)
        await worker.process("track-event", self.event())

        await worker.shutdown()
        sink.save_many.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_skips_without_sink(self):
        result = await AnalyticsWorker().process("track-event", self.event())
        assert result['skipped'] is True


class TestAiTaskWorker:

    def test_handles_every_type(self):
        assert set(AiTaskWorker().handlers) == set(AiTaskType)

    @pytest.mark.asyncio
    async def test_skips_without_service(self):
        result = await AiTaskWorker().process("analyze-pricing", {'taskType': "analyze-pricing", 'entityRef': "ad-1"})
        assert result == {'skipped': True, 'reason': "Service not available"}

    @pytest.mark.asyncio
    async def test_price_analysis(self):
        engine = AsyncMock()
        engine.analyze_price.return_value = {'recommendation': "lower", 'confidence': 0.8}
        worker = AiTaskWorker(services={PRICE_ENGINE: engine})

        result = await worker.process("analyze-pricing", {'taskType': "analyze-pricing", 'entityRef': "ad-1"})
        engine.analyze_price.assert_awaited_once_with("ad-1")
        assert result == {'ad_id': "ad-1", 'recommendation': "lower", 'confidence': 0.8}

    @pytest.mark.asyncio
    async def test_content_generation(self):
        gateway = AsyncMock()
        gateway.generate_title.return_value = "Велосипед Stels"
        worker = AiTaskWorker()
        worker.register_services({'AiGateway': gateway})

        result = await worker.process("generate-content", {
            'taskType': "generate-content", 'context': {'contentType': "title", 'input': {'category': "bikes"}},
        })
        gateway.generate_title.assert_awaited_once_with({'category': "bikes"})
        assert result == {'content_type': "title", 'result': "Велосипед Stels"}

    @pytest.mark.asyncio
    async def test_unknown_content_type_fails(self):
        worker = AiTaskWorker(services={'AiGateway': AsyncMock()})
        with pytest.raises(ValueError):
            await worker.process("generate-content", {
                'taskType': "generate-content", 'context': {'contentType': "poem"},
            })


class TestLifecycleWorker:

    def test_handles_every_action(self):
        assert set(LifecycleWorker().handlers) == set(LifecycleAction)

    @pytest.mark.asyncio
    async def test_delivers_seller_notifications(self):
        service = AsyncMock()
        service.expire_ad.return_value = {
            'expired': True, 'notify': [{'target': "42", 'message': "Your ad expired"}],
        }
        notifier = AsyncMock()
        worker = LifecycleWorker(service=service)
        worker.set_notifier(notifier)

        result = await worker.process("expire-ad", {'action': "expire-ad", 'adId': "ad-1", 'data': {}})

        assert result == {'expired': True}
        notifier.notify.assert_awaited_once_with("42", "Your ad expired", "lifecycle")

    @pytest.mark.asyncio
    async def test_notification_errors_do_not_fail_job(self):
        service = AsyncMock()
        service.send_reminder.return_value = {'sent': True, 'notify': [{'target': "42", 'message': "Reminder"}]}
        notifier = CallbackNotifier(AsyncMock(side_effect=RuntimeError("telegram down")))
        worker = LifecycleWorker(service=service)
        worker.set_notifier(notifier)

        result = await worker.process("send-reminder", {'action': "send-reminder", 'adId': "ad-1", 'data': {}})
        assert result == {'sent': True}

    @pytest.mark.asyncio
    async def test_defaults_are_applied(self):
        service = AsyncMock()
        service.republish_ad.return_value = {}
        service.cleanup_expired.return_value = {}
        service.extend_ad.return_value = {}
        worker = LifecycleWorker(service=service)

        await worker.process("republish-ad", {'action': "republish-ad", 'adId': "ad-1"})
        await worker.process("cleanup-expired", {'action': "cleanup-expired", 'data': {'olderThanDays': 30}})
        await worker.process("extend-ad", {'action': "extend-ad", 'adId': "ad-1"})

        service.republish_ad.assert_awaited_once_with("ad-1", {'ttlDays': 30})
        service.cleanup_expired.assert_awaited_once_with({'olderThanDays': 30, 'limit': 100})
        service.extend_ad.assert_awaited_once_with("ad-1", {'additionalDays': 14})

    @pytest.mark.asyncio
    async def test_skips_without_service(self):
        result = await LifecycleWorker().process("expire-ad", {'action': "expire-ad", 'adId': "ad-1"})
        assert result['skipped'] is True


class TestSearchAlertWorker:

    def test_handles_every_type(self):
        assert set(SearchAlertWorker().handlers) == set(SearchAlertType)

    @pytest.mark.asyncio
    async def test_bulk_scan_default_limit(self):
        service = AsyncMock()
        service.bulk_scan.return_value = {'scanned': 10}
        worker = SearchAlertWorker(service=service)

        result = await worker.process("process-alert", {'type': "bulk-scan", 'data': {}})
        service.bulk_scan.assert_awaited_once_with({'limit': 1000})
        assert result == {'scanned': 10}

    @pytest.mark.asyncio
    async def test_match_notifies_buyer(self):
        service = AsyncMock()
        service.notify_match.return_value = {'matched': True, 'notify': [{'target': "9", 'message': "New bike"}]}
        notifier = AsyncMock()
        worker = SearchAlertWorker(service=service)
        worker.set_notifier(notifier)

        await worker.process("process-alert", {'type': "user-alert-match", 'data': {'alertId': "a1", 'adId': "ad-1"}})
        notifier.notify.assert_awaited_once_with("9", "New bike", "search-alert")
