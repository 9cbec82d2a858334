"""
StatusTicker - анимация статуса, пока идет долгая операция

Фоновая задача, привязанная к одной задаче скачивания; отменяется при выходе
из контекста на любом пути (успех, ошибка, отмена).
"""
import asyncio
import logging
from typing import List, Optional

logger = logging.getLogger(__name__)


class StatusTicker:
    def __init__(self, relay, handle, frames: List[str], interval: float = 3.0):
        self.relay = relay
        self.handle = handle
        self.frames = frames
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    async def _run(self):
        index = 0
        while True:
            await asyncio.sleep(self.interval)
            await self.relay.update_status(self.handle, self.frames[index % len(self.frames)])
            index += 1

    def start(self):
        if self.handle is None or not self.frames or self._task is not None:
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self):
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug(f"[queue] Анимация статуса завершилась с ошибкой: {e}")

    async def __aenter__(self):
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()
        return False
