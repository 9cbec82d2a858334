"""
BatchManager - пакетная загрузка нескольких ссылок

Фаза 1: извлечение и скачивание параллельными порциями, с повторами.
Фаза 2: отправка скачанных файлов по одному.
Квота списывается один раз за каждое доставленное видео, после фазы 2.
"""
import asyncio
import logging
import uuid
from typing import Dict, List, Optional, Set, Tuple

from src.bot import messages
from src.config import (
    BATCH_MAX_RETRIES,
    BATCH_POOL_SIZE_BROWSER,
    BATCH_POOL_SIZE_LIGHT,
    BATCH_RETRY_PAUSE,
    BATCH_TTL_SECONDS,
    EXTRACTION_TIMEOUT,
)
from src.downloader.download_manager import extract_media
from src.errors import DownloadError, LedgerPersistenceError, RelayError
from src.models.batch import Batch, BatchConfirmStatus, BatchItem, BatchProposal, BatchReport
from src.utils.utils import get_origin

logger = logging.getLogger(__name__)


class BatchManager:
    """
    Координатор пакетных загрузок

    Предложение пакета живет BATCH_TTL_SECONDS, пока пользователь не подтвердит.
    Проверка квоты при подтверждении мягкая: квота не резервируется,
    списание идет поштучно после доставки и никогда не уводит баланс в минус.
    """

    def __init__(
        self,
        extractor,
        fetcher,
        relay,
        ledger,
        link_processor,
        ttl_seconds: float = BATCH_TTL_SECONDS,
        max_retries: int = BATCH_MAX_RETRIES,
        retry_pause: float = BATCH_RETRY_PAUSE,
        extraction_timeout: float = EXTRACTION_TIMEOUT,
        pool_size: Optional[int] = None,
        delivery_retry_pause: float = 1.0,
    ):
        """
        Args:
            extractor: Экстрактор, выбранный при старте
            fetcher: MediaFetcher
            relay: Канал доставки (BaseRelay)
            ledger: QuotaLedger
            link_processor: LinkProcessingService
            ttl_seconds: Сколько живет неподтвержденное предложение
            max_retries: Сколько повторов на одну ссылку
            retry_pause: Пауза между порциями, если есть повторы
            extraction_timeout: Ограничение на извлечение одной ссылки
            pool_size: Размер порции (по умолчанию зависит от экстрактора)
            delivery_retry_pause: Пауза перед повторной отправкой файла
        """
        self.extractor = extractor
        self.fetcher = fetcher
        self.relay = relay
        self.ledger = ledger
        self.link_processor = link_processor
        self.ttl_seconds = ttl_seconds
        self.max_retries = max_retries
        self.retry_pause = retry_pause
        self.extraction_timeout = extraction_timeout
        if pool_size is None:
            pool_size = BATCH_POOL_SIZE_BROWSER if getattr(extractor, 'heavy', False) else BATCH_POOL_SIZE_LIGHT
        self.pool_size = max(1, pool_size)
        self.delivery_retry_pause = delivery_retry_pause

        self._pending: Dict[str, Batch] = {}
        self._expiry_handles: Dict[str, asyncio.TimerHandle] = {}
        self._running: Set[asyncio.Task] = set()

    # ========== Предложение и подтверждение ==========

    async def propose(self, user_id, urls: List[str]) -> BatchProposal:
        """
        Зарегистрировать пакет и посчитать стоимость

        Returns:
            BatchProposal (affordable=False, если квоты не хватает на все ссылки)
        """
        uid = str(user_id)
        batch = Batch(batch_id=uuid.uuid4().hex[:12], user_id=uid, urls=list(urls))
        total_cost = len(batch.urls) * self.ledger.download_cost
        balance = await self.ledger.get_balance(uid)
        proposal = BatchProposal(batch=batch, total_cost=total_cost, balance=balance)

        if proposal.affordable:
            self._pending[batch.batch_id] = batch
            loop = asyncio.get_running_loop()
            self._expiry_handles[batch.batch_id] = loop.call_later(self.ttl_seconds, self._expire, batch.batch_id)
            logger.info(f"[batch] Пакет {batch.batch_id} предложен: user={uid}, ссылок={len(batch.urls)}")
        return proposal

    def _expire(self, batch_id: str):
        self._expiry_handles.pop(batch_id, None)
        if self._pending.pop(batch_id, None) is not None:
            logger.info(f"[batch] Пакет {batch_id} истек без подтверждения")

    def _take(self, batch_id: str) -> Optional[Batch]:
        handle = self._expiry_handles.pop(batch_id, None)
        if handle is not None:
            handle.cancel()
        return self._pending.pop(batch_id, None)

    def cancel(self, batch_id: str, user_id) -> bool:
        """Отменить неподтвержденный пакет (только владелец)"""
        batch = self._pending.get(batch_id)
        if batch is None or batch.user_id != str(user_id):
            return False
        self._take(batch_id)
        logger.info(f"[batch] Пакет {batch_id} отменен пользователем")
        return True

    async def confirm(self, batch_id: str, user_id, chat_ref) -> Tuple[str, Optional[asyncio.Task]]:
        """
        Подтвердить пакет и запустить его в фоне

        Returns:
            (BatchConfirmStatus, задача выполнения или None)
        """
        batch = self._pending.get(batch_id)
        if batch is None:
            return BatchConfirmStatus.EXPIRED, None
        if batch.user_id != str(user_id):
            return BatchConfirmStatus.FORBIDDEN, None

        total_cost = len(batch.urls) * self.ledger.download_cost
        if not await self.ledger.has_sufficient(batch.user_id, total_cost):
            self._take(batch_id)
            return BatchConfirmStatus.INSUFFICIENT_QUOTA, None

        self._take(batch_id)
        task = asyncio.create_task(self._run_safe(batch, chat_ref))
        self._running.add(task)
        task.add_done_callback(self._running.discard)
        return BatchConfirmStatus.STARTED, task

    async def _run_safe(self, batch: Batch, chat_ref) -> Optional[BatchReport]:
        try:
            return await self.run(batch, chat_ref)
        except Exception as e:
            logger.error(f"[batch] ❌ Пакет {batch.batch_id} упал: {e}", exc_info=True)
            try:
                await self.relay.send_message(chat_ref, messages.error_text('generic'))
            except Exception as send_error:
                logger.warning(f"[batch] Не удалось сообщить об ошибке пакета: {send_error}")
            return None

    # ========== Выполнение ==========

    async def _acquire(self, item: BatchItem):
        """Одна попытка: извлечь и скачать ссылку"""
        item.attempts += 1
        item.result = await extract_media(self.link_processor, self.extractor, item.url, self.extraction_timeout)
        path = self.fetcher.make_path()
        try:
            fetched = await self.fetcher.fetch(item.result.media_url, path, referer=get_origin(item.url) + '/')
        except BaseException:
            self.fetcher.remove(path)
            raise
        item.file_path = fetched.path
        item.file_size = fetched.size

    async def run(self, batch: Batch, chat_ref) -> BatchReport:
        """
        Выполнить подтвержденный пакет

        Args:
            batch: Пакет
            chat_ref: Куда отправлять видео и статусы

        Returns:
            BatchReport с итогами
        """
        total = len(batch.urls)
        cost = self.ledger.download_cost
        report = BatchReport(total=total)
        logger.info(f"[batch] ▶️ Старт пакета {batch.batch_id}: {total} ссылок, порция={self.pool_size}")

        handle = await self.relay.send_status(chat_ref, messages.batch_started(total))

        pending: List[BatchItem] = [BatchItem(url=url, index=i) for i, url in enumerate(batch.urls)]
        fetched: List[BatchItem] = []
        failed: List[BatchItem] = []

        try:
            # Фаза 1: извлечение и скачивание
            while pending:
                chunk, pending = pending[:self.pool_size], pending[self.pool_size:]
                outcomes = await asyncio.gather(
                    *(self._acquire(item) for item in chunk), return_exceptions=True
                )
                retry_scheduled = False
                for item, outcome in zip(chunk, outcomes):
                    if not isinstance(outcome, BaseException):
                        fetched.append(item)
                        continue
                    if isinstance(outcome, asyncio.CancelledError):
                        raise outcome
                    reason = outcome.reason if isinstance(outcome, DownloadError) else 'generic'
                    retryable = outcome.retryable if isinstance(outcome, DownloadError) else True
                    if not isinstance(outcome, DownloadError):
                        logger.error(f"[batch] Неожиданная ошибка для {item.url}: {outcome}", exc_info=outcome)
                    if retryable and item.retries < self.max_retries:
                        item.retries += 1
                        pending.append(item)
                        retry_scheduled = True
                        logger.info(f"[batch] Повтор {item.retries}/{self.max_retries} для {item.url} ({reason})")
                    else:
                        item.error = reason
                        failed.append(item)
                        logger.warning(f"[batch] ❌ {item.url}: {reason} (попыток: {item.attempts})")

                await self.relay.update_status(
                    handle, messages.batch_progress(len(fetched), len(failed), len(pending), total)
                )
                if pending and retry_scheduled:
                    await asyncio.sleep(self.retry_pause)

            # Фаза 2: отправка по одному, в порядке завершения фазы 1
            sent: List[BatchItem] = []
            for item in fetched:
                await self.relay.update_status(handle, messages.batch_delivering(len(sent), len(fetched)))
                try:
                    await self._deliver(item, chat_ref)
                    item.delivered = True
                    sent.append(item)
                except RelayError as e:
                    item.error = e.reason
                    failed.append(item)
                    logger.warning(f"[batch] Не удалось доставить {item.url}: {e}")
                finally:
                    self.fetcher.remove(item.file_path)
                    item.file_path = None
        finally:
            for item in fetched:
                self.fetcher.remove(item.file_path)

        # Списание: ровно одно за каждое доставленное видео
        for item in sent:
            try:
                charged = await self.ledger.debit(batch.user_id, cost, f"Пакетная загрузка: {item.url}")
            except LedgerPersistenceError as e:
                logger.error(f"[batch] Не удалось списать квоту за {item.url}: {e}", exc_info=True)
                charged = False
            if charged:
                report.quota_spent += cost
            else:
                logger.warning(f"[batch] Видео доставлено без списания: {item.url}, user={batch.user_id}")

        report.succeeded = len(sent)
        report.failed = [(item.url, item.error or 'generic') for item in sorted(failed, key=lambda i: i.index)]
        report.quota_saved = len(report.failed) * cost

        balance = await self.ledger.get_balance(batch.user_id)
        summary = messages.batch_summary(report, balance)
        if not await self.relay.update_status(handle, summary):
            await self.relay.send_message(chat_ref, summary)

        logger.info(
            f"[batch] ✅ Пакет {batch.batch_id} завершен: успешно={report.succeeded}/{total}, "
            f"списано={report.quota_spent}"
        )
        return report

    async def _deliver(self, item: BatchItem, chat_ref):
        """
        Отправить файл (с одним повтором), затем ссылку

        Raises:
            RelayError: если не удалось ни то, ни другое
        """
        caption = messages.file_caption(item.result.title, item.file_size)
        for attempt in range(2):
            try:
                await self.relay.deliver_file(chat_ref, item.file_path, caption)
                return
            except RelayError as e:
                logger.warning(f"[batch] Отправка файла {item.url} не удалась (попытка {attempt + 1}): {e}")
                if attempt == 0:
                    await asyncio.sleep(self.delivery_retry_pause)

        await self.relay.deliver_link(
            chat_ref, item.result.media_url, messages.link_caption(item.result.title, item.file_size)
        )

    async def close(self):
        for handle in self._expiry_handles.values():
            handle.cancel()
        self._expiry_handles.clear()
        self._pending.clear()
        tasks = list(self._running)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
