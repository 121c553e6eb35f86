"""
Telegram Notifier — async Telegram alerts for tracked transaction events.

Notifications run as background tasks so listeners never block the tracker.
Call `drain()` before the event loop shuts down or pending alerts are lost.
"""
import asyncio

import aiohttp
from loguru import logger


class TelegramNotifier:

    def __init__(self, token: str, chat_id: str):
        self.token = token
        self.chat_id = chat_id
        self._tasks: set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return bool(self.token and self.chat_id)

    async def _send(self, text: str):
        if not self.enabled:
            return
        url = f'https://api.telegram.org/bot{self.token}/sendMessage'
        payload = {'chat_id': self.chat_id, 'text': text, 'parse_mode': 'HTML'}
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(url, json=payload, timeout=aiohttp.ClientTimeout(total=5)) as resp:
                    if resp.status != 200:
                        logger.warning(f'[TG] Failed: {resp.status}')
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f'[TG] Error: {e}')

    async def notify_mined(self, unit: str, step):
        text = (
            f'✅ <b>{unit}</b>\n'
            f'{step.label} mined in block <code>{step.block_number}</code>\n'
            f'<code>{step.tx_hash}</code>'
        )
        await self._send(text)

    async def notify_error(self, unit: str, step, reason: str):
        label = step.label if step is not None else 'before submission'
        text = (
            f'❌ <b>{unit} failed</b>\n'
            f'{label}: {reason}'
        )
        await self._send(text)

    # ── Background Delivery ───────────────────────────────────────────
    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f'[TG] Notification failed: {task.exception()}')

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self):
        """Wait for every notification started so far (and any they start)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def listener(self, unit: str) -> dict:
        """Tracker handlers firing notifications as background tasks."""
        return {
            'mined': lambda step: self._spawn(self.notify_mined(unit, step)),
            'error': lambda step, reason: self._spawn(self.notify_error(unit, step, reason)),
        }
