"""
DownloadManager - очередь одиночных скачиваний
Прием заявок, очередь FIFO, конвейер извлечение -> скачивание -> отправка -> списание
"""
import asyncio
import logging
import math
import os
import time
from collections import deque
from typing import Deque, Dict, Optional, Set

from src.bot import messages
from src.config import COOLDOWN_SECONDS, EXTRACTION_TIMEOUT, MAX_CONCURRENT_DOWNLOADS
from src.errors import DownloadError, ExtractionTimeoutError, LedgerPersistenceError, RelayError
from src.models.download_job import DownloadJob, JobState
from src.models.download_response import DownloadResponse
from src.models.extraction_result import ExtractionResult
from src.downloader.status_ticker import StatusTicker
from src.services.base import sanitize_title
from src.utils.utils import get_origin

logger = logging.getLogger(__name__)


async def extract_media(link_processor, extractor, url: str, timeout: float) -> ExtractionResult:
    """
    Получить прямую ссылку на видео

    Обертки разворачиваются, прямые ссылки на файл идут без извлечения,
    остальное - через экстрактор с ограничением по времени.

    Raises:
        ExtractionTimeoutError: экстрактор не уложился в timeout
        DownloadError: ошибки экстрактора
    """
    link = await link_processor.prepare(url)
    if link.is_direct:
        title = sanitize_title(os.path.splitext(link.filename or '')[0])
        logger.info(f"[queue] Прямая ссылка, извлечение не нужно: {link.url}")
        return ExtractionResult(title=title, media_url=link.url, source_url=url, extractor='direct')

    try:
        return await asyncio.wait_for(extractor.extract_video_info(link.url), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise ExtractionTimeoutError(f"Извлечение не уложилось в {timeout}s: {link.url}") from e


class DownloadManager:
    """
    Координатор одиночных скачиваний

    Ответственность:
    - Проверка ссылки, квоты и паузы между скачиваниями до постановки в очередь
    - Очередь FIFO с ограничением одновременных задач
    - Конвейер задачи и статусы для пользователя
    - Списание квоты только после доставки (файлом или ссылкой)

    НЕ делает:
    - Не знает, как извлекать видео (это делает экстрактор)
    - Не работает с Telegram напрямую (только через relay)
    """

    def __init__(
        self,
        extractor,
        fetcher,
        relay,
        ledger,
        link_processor,
        max_concurrent: int = MAX_CONCURRENT_DOWNLOADS,
        extraction_timeout: float = EXTRACTION_TIMEOUT,
        cooldown_seconds: float = COOLDOWN_SECONDS,
        status_interval: float = 3.0,
        clock=time.monotonic,
    ):
        """
        Args:
            extractor: Экстрактор, выбранный при старте
            fetcher: MediaFetcher
            relay: Канал доставки (BaseRelay)
            ledger: QuotaLedger
            link_processor: LinkProcessingService
            max_concurrent: Сколько задач выполняется одновременно
            extraction_timeout: Ограничение на извлечение в секундах
            cooldown_seconds: Пауза между скачиваниями одного пользователя
            status_interval: Период анимации статуса
            clock: Источник монотонного времени (для тестов)
        """
        self.extractor = extractor
        self.fetcher = fetcher
        self.relay = relay
        self.ledger = ledger
        self.link_processor = link_processor
        self.max_concurrent = max(1, max_concurrent)
        self.extraction_timeout = extraction_timeout
        self.cooldown_seconds = cooldown_seconds
        self.status_interval = status_interval
        self._clock = clock

        self._queue: Deque[DownloadJob] = deque()
        self._cooldowns: Dict[str, float] = {}
        self._active = 0
        self._processing = False
        self._tasks: Set[asyncio.Task] = set()
        self._background: Set[asyncio.Task] = set()
        self._idle = asyncio.Event()
        self._idle.set()

    # ========== Прием заявок ==========

    def _cooldown_left(self, user_id: str) -> int:
        now = self._clock()
        # Истекшие записи не копятся
        for uid in [uid for uid, ts in self._cooldowns.items() if now - ts >= self.cooldown_seconds]:
            del self._cooldowns[uid]
        last = self._cooldowns.get(user_id)
        if last is None:
            return 0
        return max(1, math.ceil(self.cooldown_seconds - (now - last)))

    async def request_download(self, user_id, chat_ref, url: str) -> DownloadResponse:
        """
        Принять заявку на скачивание одной ссылки

        Алгоритм:
        1. Проверяет квоту (до любой работы по извлечению)
        2. Проверяет, что ссылка поддерживается
        3. Проверяет паузу между скачиваниями
        4. Отправляет статус с позицией и ставит задачу в очередь

        Returns:
            DownloadResponse со статусом QUEUED | INSUFFICIENT_QUOTA | UNSUPPORTED | COOLDOWN
        """
        uid = str(user_id)
        cost = self.ledger.download_cost

        if not await self.ledger.has_sufficient(uid, cost):
            balance = await self.ledger.get_balance(uid)
            logger.info(f"[queue] Недостаточно квоты: user={uid}, баланс={balance}")
            return DownloadResponse(status='INSUFFICIENT_QUOTA', balance=balance, required=cost)

        if not self.link_processor.is_supported_url(url):
            return DownloadResponse(status='UNSUPPORTED')

        retry_after = self._cooldown_left(uid)
        if retry_after:
            return DownloadResponse(status='COOLDOWN', retry_after=retry_after)
        self._cooldowns[uid] = self._clock()

        position = len(self._queue) + self._active + 1
        text = messages.queue_position(position) if position > 1 else messages.STATUS_SEARCHING
        handle = await self.relay.send_status(chat_ref, text)

        job = DownloadJob(user_id=uid, chat_ref=chat_ref, url=url, status_handle=handle)
        self._queue.append(job)
        self._idle.clear()
        logger.info(f"[queue] Задача {job.job_id} добавлена: user={uid}, позиция={position}, url={url}")

        self._drain()
        return DownloadResponse(status='QUEUED', job_id=job.job_id, position=position)

    # ========== Очередь ==========

    def _drain(self):
        """Запустить задачи из очереди, пока есть свободные места"""
        if self._processing:
            return
        self._processing = True
        try:
            started = False
            while self._queue and self._active < self.max_concurrent:
                job = self._queue.popleft()
                self._active += 1
                task = asyncio.create_task(self._run_job(job))
                self._tasks.add(task)
                task.add_done_callback(self._on_job_done)
                started = True
            if started and self._queue:
                self._spawn_background(self._update_queue_positions())
        finally:
            self._processing = False

    def _on_job_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        self._active -= 1
        if not task.cancelled() and task.exception() is not None:
            logger.error("[queue] Задача завершилась с необработанной ошибкой", exc_info=task.exception())
        self._drain()
        if not self._queue and self._active == 0:
            self._idle.set()

    def _spawn_background(self, coro):
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _update_queue_positions(self):
        """Обновить позиции ожидающих (best effort)"""
        for index, job in enumerate(list(self._queue)):
            position = self._active + index + 1
            try:
                await self.relay.update_status(job.status_handle, messages.queue_position(position))
            except Exception as e:
                logger.warning(f"[queue] Не удалось обновить позицию задачи {job.job_id}: {e}")

    # ========== Конвейер задачи ==========

    async def _run_job(self, job: DownloadJob):
        """
        Выполнить задачу: извлечение -> скачивание -> отправка -> списание

        Ошибки задачи не выходят наружу: пользователь получает шаблон сообщения.
        """
        handle = job.status_handle
        file_path: Optional[str] = None
        logger.info(f"[queue] ▶️ Старт задачи {job.job_id}: {job.url}")
        try:
            job.state = JobState.EXTRACTING
            await self.relay.update_status(handle, messages.STATUS_SEARCHING)
            async with self._ticker(handle):
                result = await extract_media(self.link_processor, self.extractor, job.url, self.extraction_timeout)
            job.media_url = result.media_url
            logger.info(f"[queue] Найдено видео для {job.job_id}: {result.media_url[:100]}")

            job.state = JobState.FETCHING
            await self.relay.update_status(handle, messages.STATUS_DOWNLOADING)
            file_path = self.fetcher.make_path()
            try:
                fetched = await self.fetcher.fetch(
                    result.media_url, file_path, referer=get_origin(job.url) + '/'
                )
            except Exception as e:
                logger.warning(f"[queue] Скачивание {job.job_id} не удалось ({e}), отправляю ссылку")
                await self._deliver_link(job, result)
                return

            job.state = JobState.RELAYING
            await self.relay.update_status(handle, messages.uploading(fetched.size))
            try:
                await self.relay.deliver_file(job.chat_ref, fetched.path, messages.file_caption(result.title, fetched.size))
            except RelayError as e:
                logger.warning(f"[queue] Файл {job.job_id} не отправлен ({e}), отправляю ссылку")
                await self.relay.update_status(handle, messages.STATUS_LINK_FALLBACK)
                await self._deliver_link(job, result, fetched.size)
                return

            await self._settle(job)
        except DownloadError as e:
            job.state = JobState.FAILED
            job.error = e.reason
            logger.warning(f"[queue] ❌ Задача {job.job_id} не выполнена ({e.reason}): {e}")
            await self.relay.update_status(handle, messages.error_text(e.reason), with_retry=True)
        except Exception as e:
            job.state = JobState.FAILED
            job.error = 'generic'
            logger.error(f"[queue] ❌ Неожиданная ошибка в задаче {job.job_id}: {e}", exc_info=True)
            await self.relay.update_status(handle, messages.error_text('generic'), with_retry=True)
        finally:
            self.fetcher.remove(file_path)

    def _ticker(self, handle) -> StatusTicker:
        return StatusTicker(self.relay, handle, messages.EXTRACTING_FRAMES, self.status_interval)

    async def _deliver_link(self, job: DownloadJob, result: ExtractionResult, size: int = 0):
        """
        Отправить прямую ссылку вместо файла; ссылка - тоже доставка, квота списывается

        Raises:
            RelayError: если и ссылку отправить не удалось
        """
        await self.relay.deliver_link(job.chat_ref, result.media_url, messages.link_caption(result.title, size))
        await self._settle(job)

    async def _settle(self, job: DownloadJob):
        """Списать квоту после доставки и показать баланс"""
        cost = self.ledger.download_cost
        try:
            job.charged = await self.ledger.debit(job.user_id, cost, f"Скачивание видео: {job.url}")
        except LedgerPersistenceError as e:
            logger.error(f"[queue] Не удалось списать квоту за {job.job_id}: {e}", exc_info=True)
            job.charged = False
        if not job.charged:
            logger.warning(f"[queue] Видео доставлено без списания: {job.job_id}, user={job.user_id}")
        job.state = JobState.SETTLED

        balance = await self.ledger.get_balance(job.user_id)
        await self.relay.update_status(job.status_handle, messages.download_settled(balance, cost if job.charged else 0))
        logger.info(f"[queue] ✅ Задача {job.job_id} завершена, user={job.user_id}, баланс={balance}")

    # ========== Состояние ==========

    def get_queue_status(self) -> dict:
        return {
            'queue_length': len(self._queue),
            'active': self._active,
            'max_concurrent': self.max_concurrent,
        }

    async def wait_until_idle(self):
        """Дождаться, пока очередь опустеет и все задачи завершатся"""
        await self._idle.wait()
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def close(self):
        """Отменить выполняющиеся задачи (при остановке бота)"""
        self._queue.clear()
        tasks = list(self._tasks) + list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
