"""Telegram notification worker.

Sends messages, photos, inline-keyboard messages and batches through an
aiogram ``Bot``. Rate limited to 25 messages per second by the queue's
worker options.
"""

import asyncio
import logging
from datetime import date
from typing import Any, Dict, List, Optional

from aiogram import Bot
from aiogram.enums import ParseMode
from aiogram.exceptions import TelegramForbiddenError
from aiogram.types import InlineKeyboardButton, InlineKeyboardMarkup, LinkPreviewOptions

from ..config import QueueName
from ..models import NotificationJob, NotificationType
from .base import BaseWorker

logger = logging.getLogger(__name__)

DEFAULT_BATCH_DELAY_MS = 50


def build_keyboard(rows: List[List[Dict[str, Any]]]) -> InlineKeyboardMarkup:
    """Inline keyboard from rows of button dicts (``text`` plus ``url`` or ``callback_data``)."""
    return InlineKeyboardMarkup(
        inline_keyboard=[[InlineKeyboardButton(**button) for button in row] for row in rows]
    )


class NotificationWorker(BaseWorker):
    """Delivers queued Telegram notifications."""

    def __init__(self, bot: Optional[Bot] = None, **kwargs):
        super().__init__(QueueName.NOTIFICATIONS, **kwargs)
        self.bot = bot
        self.sent_today = 0
        self._counter_date = date.today()

    def set_bot(self, bot: Optional[Bot]) -> None:
        self.bot = bot

    async def process(self, job_name: str, data: Dict[str, Any]) -> Any:
        notification = NotificationJob.from_dict(data)

        if self.bot is None:
            raise RuntimeError("Telegram bot not initialized")
        if notification.type != NotificationType.BATCH and not notification.target_telegram_id:
            raise ValueError("Missing targetTelegramId")

        self._reset_daily_counter()
        handler = self.handlers[notification.type]
        return await handler(notification)

    @property
    def handlers(self):
        return {
            NotificationType.MESSAGE: self._send_message,
            NotificationType.PHOTO: self._send_photo,
            NotificationType.CALLBACK: self._send_with_keyboard,
            NotificationType.BATCH: self._send_batch,
        }

    async def _deliver_text(self, chat_id: str, text: str, buttons: Optional[List] = None,
                            options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            'parse_mode': ParseMode.HTML,
            'link_preview_options': LinkPreviewOptions(is_disabled=True),
        }
        if buttons:
            kwargs['reply_markup'] = build_keyboard(buttons)
        kwargs.update(options or {})

        message = await self.bot.send_message(chat_id=chat_id, text=text, **kwargs)
        self.sent_today += 1
        return {'message_id': message.message_id, 'chat_id': chat_id}

    async def _send_message(self, notification: NotificationJob) -> Dict[str, Any]:
        payload = notification.payload
        text = payload if isinstance(payload, str) else payload.get('text')
        buttons = payload.get('buttons') if isinstance(payload, dict) else None
        return await self._deliver_text(notification.target_telegram_id, text, buttons, notification.options)

    async def _send_photo(self, notification: NotificationJob) -> Dict[str, Any]:
        payload = notification.payload
        message = await self.bot.send_photo(
            chat_id=notification.target_telegram_id,
            photo=payload['photo'],
            caption=payload.get('caption'),
            parse_mode=ParseMode.HTML,
            **notification.options,
        )
        self.sent_today += 1
        return {'message_id': message.message_id, 'chat_id': notification.target_telegram_id}

    async def _send_with_keyboard(self, notification: NotificationJob) -> Dict[str, Any]:
        payload = notification.payload
        return await self._deliver_text(
            notification.target_telegram_id, payload['text'], payload.get('keyboard'), notification.options
        )

    async def _send_batch(self, notification: NotificationJob) -> Dict[str, Any]:
        """Send each message in turn; one failure does not stop the batch."""
        options = dict(notification.options)
        delay = options.pop('batchDelay', DEFAULT_BATCH_DELAY_MS) / 1000
        results = []

        for message in notification.payload.get('messages', []):
            chat_id = message.get('chatId')
            try:
                result = await self._deliver_text(chat_id, message.get('text'), options=message.get('options'))
                results.append({'success': True, **result})
            except Exception as e:
                results.append({'success': False, 'chat_id': chat_id, 'error': str(e)})

            if delay > 0:
                await asyncio.sleep(delay)

        return {'processed': len(results), 'results': results}

    def _reset_daily_counter(self) -> None:
        today = date.today()
        if today != self._counter_date:
            self.sent_today = 0
            self._counter_date = today

    async def on_job_failed(self, job_name: str, data: Dict[str, Any], error: Exception) -> None:
        message = str(error).lower()
        if isinstance(error, TelegramForbiddenError) or 'blocked' in message or 'deactivated' in message:
            logger.info(f"[{self.name}] User {data.get('targetTelegramId')} blocked or deactivated the bot")

    def get_stats(self) -> Dict[str, Any]:
        stats = super().get_stats()
        stats['sent_today'] = self.sent_today
        return stats


# Global notification worker instance
notification_worker = NotificationWorker()
