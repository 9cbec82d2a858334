"""
Тестовые заглушки: Redis в памяти, relay с журналом событий, экстрактор и fetcher
"""
import asyncio
import os
from typing import Dict, List, Optional

from src.bot.relay import BaseRelay, StatusHandle
from src.downloader.media_fetcher import FetchResult, MediaFetcher
from src.errors import FetchStalledError, LedgerPersistenceError, RelayError
from src.models.extraction_result import ExtractionResult
from src.services.base import BaseExtractor


class FakeDatabase:
    """Database в памяти с тем же интерфейсом, что и redis_db.Database"""

    def __init__(self):
        self.accounts: Dict[str, dict] = {}
        self.transactions: List[dict] = []  # новые в начале
        self.orders: Dict[str, dict] = {}
        self.settled: set = set()
        self.fail_writes = False
        self.save_calls = 0

    async def get_account(self, user_id):
        await asyncio.sleep(0)
        data = self.accounts.get(str(user_id))
        return dict(data) if data else None

    async def load_accounts(self):
        return {uid: dict(data) for uid, data in self.accounts.items()}

    async def save_account(self, user_id, data, transaction=None, history_limit=1000):
        # Переключение задач посреди записи, как у настоящего Redis
        await asyncio.sleep(0)
        if self.fail_writes:
            raise LedgerPersistenceError("redis недоступен")
        self.save_calls += 1
        self.accounts[str(user_id)] = dict(data)
        if transaction is not None:
            self.transactions.insert(0, dict(transaction))
            del self.transactions[history_limit:]

    async def load_transactions(self, limit=1000):
        return [dict(t) for t in self.transactions[:limit]]

    async def save_order(self, order_id, data):
        self.orders[order_id] = dict(data)

    async def get_order(self, order_id):
        data = self.orders.get(order_id)
        return dict(data) if data else None

    async def update_order(self, order_id, data):
        self.orders[order_id] = dict(data)

    async def claim_order_settlement(self, order_id):
        if order_id in self.settled:
            return False
        self.settled.add(order_id)
        return True

    async def release_order_settlement(self, order_id):
        self.settled.discard(order_id)

    async def close(self):
        pass


class FakeRelay(BaseRelay):
    """Relay, записывающий все события в self.events"""

    def __init__(self, fail_files: int = 0, fail_links: bool = False, fail_update_texts=()):
        self.events: List[tuple] = []
        self.fail_files = fail_files
        self.fail_links = fail_links
        self.fail_update_texts = set(fail_update_texts)
        self._next_message_id = 1

    async def send_message(self, target, text, reply_markup=None):
        self.events.append(('message', target, text))

    async def send_status(self, target, text):
        handle = StatusHandle(chat_id=target, message_id=self._next_message_id)
        self._next_message_id += 1
        self.events.append(('status', handle, text))
        return handle

    async def update_status(self, handle, text, with_retry=False):
        if text in self.fail_update_texts:
            raise RelayError("message to edit not found")
        self.events.append(('update', handle, text))
        return handle is not None

    async def deliver_file(self, target, path, caption):
        assert os.path.exists(path), f"файл должен существовать при отправке: {path}"
        if self.fail_files:
            self.fail_files -= 1
            self.events.append(('file_failed', target, path))
            raise RelayError("Request Entity Too Large")
        self.events.append(('file', target, path))

    async def deliver_link(self, target, url, caption):
        if self.fail_links:
            raise RelayError("chat not found")
        self.events.append(('link', target, url))

    def of_kind(self, kind: str) -> List[tuple]:
        return [event for event in self.events if event[0] == kind]


class FakeExtractor(BaseExtractor):
    """
    Экстрактор по таблице: url -> ExtractionResult | исключение | список исходов по попыткам
    """

    name = 'fake'

    def __init__(self, outcomes: Dict[str, object], heavy: bool = False, delay: float = 0):
        super().__init__()
        self.outcomes = outcomes
        self.heavy = heavy
        self.delay = delay
        self.calls: List[str] = []

    async def init(self) -> bool:
        return True

    async def extract_video_info(self, url: str) -> ExtractionResult:
        self.calls.append(url)
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcomes[url]
        if isinstance(outcome, list):
            outcome = outcome.pop(0) if len(outcome) > 1 else outcome[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def media(url: str, title: str = 'video') -> ExtractionResult:
    return ExtractionResult(title=title, media_url=url, source_url=url, extractor='fake')


class FakeFetcher(MediaFetcher):
    """
    Fetcher без сети: media_url -> размер файла или исключение.
    Для 'partial' пишет часть файла и падает посреди передачи.
    """

    def __init__(self, download_dir: str, outcomes: Optional[Dict[str, object]] = None):
        super().__init__(download_dir=download_dir)
        self.outcomes = outcomes or {}
        self.calls: List[tuple] = []
        self.partial_paths: List[str] = []

    async def fetch(self, url, dest_path, referer=None, on_progress=None):
        self.calls.append((url, dest_path, referer))
        await asyncio.sleep(0)
        outcome = self.outcomes.get(url, 1024)
        if outcome == 'partial':
            with open(dest_path, 'wb') as f:
                f.write(b'\0' * 100)
            self.partial_paths.append(dest_path)
            raise FetchStalledError("соединение оборвалось посреди передачи")
        if isinstance(outcome, BaseException):
            raise outcome
        with open(dest_path, 'wb') as f:
            f.write(b'\0' * outcome)
        return FetchResult(path=dest_path, size=outcome)
