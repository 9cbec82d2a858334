"""
Тесты для DownloadManager (очередь одиночных скачиваний)
"""
import asyncio
import os
import tempfile
import unittest

from fakes import FakeDatabase, FakeExtractor, FakeFetcher, FakeRelay, media
from src.bot import messages
from src.downloader.download_manager import DownloadManager
from src.errors import ContentRemovedError, NoMediaFoundError
from src.services.link_processing_service import LinkProcessingService
from src.services.quota_ledger import QuotaLedger

URL = 'https://dood.la/e/abc123'
MEDIA = 'https://x.cloudatacdn.com/u/abc~?token=t'


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class DownloadManagerTestCase(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.db = FakeDatabase()
        self.ledger = QuotaLedger(self.db, download_cost=15, free_quota=50, daily_bonus=50)
        self.relay = FakeRelay()
        self.clock = FakeClock()
        self.extractor = FakeExtractor({URL: media(MEDIA, 'clip')})
        self.fetcher = FakeFetcher(self.tmp.name)

    def tearDown(self):
        self.tmp.cleanup()

    def make_manager(self, **kwargs) -> DownloadManager:
        params = dict(
            max_concurrent=1,
            extraction_timeout=5,
            cooldown_seconds=30,
            status_interval=60,
            clock=self.clock,
        )
        params.update(kwargs)
        return DownloadManager(
            self.extractor, self.fetcher, self.relay, self.ledger, LinkProcessingService(), **params
        )

    def updates_for(self, handle):
        return [event[2] for event in self.relay.of_kind('update') if event[1] == handle]

    def leftover_files(self):
        return os.listdir(self.tmp.name)


class TestRequestDownload(DownloadManagerTestCase):
    """Проверки до постановки в очередь"""

    async def test_insufficient_quota_rejected_before_queueing(self):
        self.db.accounts['7'] = {'balance': 10, 'totalDownloads': 0, 'totalCredited': 10}
        manager = self.make_manager()

        response = await manager.request_download(7, 'chat', URL)

        self.assertTrue(response.is_insufficient_quota())
        self.assertEqual(response.balance, 10)
        self.assertEqual(response.required, 15)
        self.assertEqual(self.extractor.calls, [])
        self.assertEqual(self.relay.events, [])
        self.assertEqual(manager.get_queue_status()['queue_length'], 0)
        self.assertEqual(await self.ledger.get_balance(7), 10)

    async def test_unsupported_url(self):
        manager = self.make_manager()
        response = await manager.request_download(1, 'chat', 'https://example.com/watch')
        self.assertTrue(response.is_unsupported())
        self.assertEqual(self.relay.events, [])

    async def test_cooldown(self):
        manager = self.make_manager()
        first = await manager.request_download(1, 'chat', URL)
        self.assertTrue(first.is_queued())
        await manager.wait_until_idle()

        self.clock.now += 10
        second = await manager.request_download(1, 'chat', URL)
        self.assertTrue(second.is_cooldown())
        self.assertEqual(second.retry_after, 20)

        # Отклоненная заявка не продлевает паузу
        self.clock.now += 21
        third = await manager.request_download(1, 'chat', URL)
        self.assertTrue(third.is_queued())
        await manager.wait_until_idle()
        self.assertEqual(await self.ledger.get_balance(1), 20)

    async def test_cooldown_is_per_user(self):
        manager = self.make_manager()
        self.assertTrue((await manager.request_download(1, 'chat1', URL)).is_queued())
        self.assertTrue((await manager.request_download(2, 'chat2', URL)).is_queued())
        await manager.wait_until_idle()


class TestPipeline(DownloadManagerTestCase):
    """Конвейер задачи и списание"""

    async def test_success_debits_once(self):
        manager = self.make_manager()
        response = await manager.request_download(1, 'chat', URL)
        self.assertEqual(response.position, 1)
        await manager.wait_until_idle()

        account = await self.ledger.get_account(1)
        self.assertEqual(account.balance, 35)
        self.assertEqual(account.total_downloads, 1)
        self.assertEqual([t['amount'] for t in self.db.transactions], [-15])
        self.assertEqual(len(self.relay.of_kind('file')), 1)
        self.assertEqual(self.relay.of_kind('link'), [])

        handle = self.relay.of_kind('status')[0][1]
        self.assertEqual(self.relay.of_kind('status')[0][2], messages.STATUS_SEARCHING)
        self.assertEqual(self.updates_for(handle)[-1], messages.download_settled(35, 15))
        self.assertEqual(self.fetcher.calls[0][0], MEDIA)
        self.assertEqual(self.fetcher.calls[0][2], 'https://dood.la/')
        self.assertEqual(self.leftover_files(), [])

    async def test_fetch_failure_sends_link_and_removes_partial_file(self):
        self.fetcher.outcomes[MEDIA] = 'partial'
        manager = self.make_manager()
        await manager.request_download(1, 'chat', URL)
        await manager.wait_until_idle()

        self.assertEqual(self.relay.of_kind('link'), [('link', 'chat', MEDIA)])
        self.assertEqual(self.relay.of_kind('file'), [])
        self.assertEqual(await self.ledger.get_balance(1), 35)
        self.assertEqual(len(self.db.transactions), 1)
        self.assertEqual(len(self.fetcher.partial_paths), 1)
        self.assertFalse(os.path.exists(self.fetcher.partial_paths[0]))
        self.assertEqual(self.leftover_files(), [])

    async def test_relay_failure_falls_back_to_link(self):
        self.relay.fail_files = 1
        manager = self.make_manager()
        await manager.request_download(1, 'chat', URL)
        await manager.wait_until_idle()

        self.assertEqual(len(self.relay.of_kind('file_failed')), 1)
        self.assertEqual(len(self.relay.of_kind('link')), 1)
        handle = self.relay.of_kind('status')[0][1]
        self.assertIn(messages.STATUS_LINK_FALLBACK, self.updates_for(handle))
        self.assertEqual(await self.ledger.get_balance(1), 35)
        self.assertEqual(self.leftover_files(), [])

    async def test_nothing_delivered_nothing_charged(self):
        self.relay.fail_files = 1
        self.relay.fail_links = True
        manager = self.make_manager()
        await manager.request_download(1, 'chat', URL)
        await manager.wait_until_idle()

        handle = self.relay.of_kind('status')[0][1]
        self.assertEqual(self.updates_for(handle)[-1], messages.error_text('relay_failed'))
        self.assertEqual(await self.ledger.get_balance(1), 50)
        self.assertEqual(self.db.transactions, [])

    async def test_no_media_found_is_not_charged(self):
        self.extractor.outcomes[URL] = NoMediaFoundError("пусто")
        manager = self.make_manager()
        await manager.request_download(1, 'chat', URL)
        await manager.wait_until_idle()

        handle = self.relay.of_kind('status')[0][1]
        self.assertEqual(self.updates_for(handle)[-1], messages.error_text('no_media_found'))
        self.assertEqual(self.fetcher.calls, [])
        self.assertEqual(await self.ledger.get_balance(1), 50)

    async def test_removed_video(self):
        self.extractor.outcomes[URL] = ContentRemovedError("удалено")
        manager = self.make_manager()
        await manager.request_download(1, 'chat', URL)
        await manager.wait_until_idle()
        handle = self.relay.of_kind('status')[0][1]
        self.assertEqual(self.updates_for(handle)[-1], messages.error_text('content_removed'))

    async def test_extraction_timeout(self):
        self.extractor.delay = 1
        manager = self.make_manager(extraction_timeout=0.05)
        await manager.request_download(1, 'chat', URL)
        await manager.wait_until_idle()

        handle = self.relay.of_kind('status')[0][1]
        self.assertEqual(self.updates_for(handle)[-1], messages.error_text('extraction_timeout'))
        self.assertEqual(await self.ledger.get_balance(1), 50)

    async def test_unexpected_error_shows_generic_message(self):
        self.extractor.outcomes[URL] = RuntimeError("boom")
        manager = self.make_manager()
        await manager.request_download(1, 'chat', URL)
        await manager.wait_until_idle()
        handle = self.relay.of_kind('status')[0][1]
        self.assertEqual(self.updates_for(handle)[-1], messages.error_text('generic'))

    async def test_direct_link_skips_extraction(self):
        direct = 'https://dood.la/files/my_clip.mp4'
        manager = self.make_manager()
        await manager.request_download(1, 'chat', direct)
        await manager.wait_until_idle()

        self.assertEqual(self.extractor.calls, [])
        self.assertEqual(self.fetcher.calls[0][0], direct)
        self.assertEqual(await self.ledger.get_balance(1), 35)

    async def test_debit_persistence_failure_still_delivers(self):
        await self.ledger.get_balance(1)
        self.db.fail_writes = True
        manager = self.make_manager()
        await manager.request_download(1, 'chat', URL)
        await manager.wait_until_idle()

        self.assertEqual(len(self.relay.of_kind('file')), 1)
        handle = self.relay.of_kind('status')[0][1]
        self.assertEqual(self.updates_for(handle)[-1], messages.download_settled(50, 0))


class TestQueue(DownloadManagerTestCase):
    """Очередь FIFO и ограничение одновременных задач"""

    def setUp(self):
        super().setUp()
        self.urls = [f'https://dood.la/e/video{i}' for i in range(4)]
        self.extractor = FakeExtractor({url: media(MEDIA + str(i)) for i, url in enumerate(self.urls)}, delay=0.01)

    async def test_fifo_order_with_single_slot(self):
        manager = self.make_manager(max_concurrent=1)
        responses = []
        for i, url in enumerate(self.urls):
            responses.append(await manager.request_download(i, f'chat{i}', url))

        self.assertEqual([r.position for r in responses], [1, 2, 3, 4])
        statuses = [event[2] for event in self.relay.of_kind('status')]
        self.assertEqual(statuses[0], messages.STATUS_SEARCHING)
        self.assertEqual(statuses[1], messages.queue_position(2))

        await manager.wait_until_idle()
        self.assertEqual(self.extractor.calls, self.urls)
        self.assertEqual([target for _, target, _ in self.relay.of_kind('file')], ['chat0', 'chat1', 'chat2', 'chat3'])

    async def test_waiting_jobs_get_new_positions(self):
        manager = self.make_manager(max_concurrent=1)
        for i, url in enumerate(self.urls):
            await manager.request_download(i, f'chat{i}', url)
        await manager.wait_until_idle()

        handles = [event[1] for event in self.relay.of_kind('status')]
        # Первая задача закончилась: третья и четвертая сдвинулись вперед
        self.assertEqual(self.updates_for(handles[2])[0], messages.queue_position(2))
        self.assertEqual(self.updates_for(handles[3])[:2], [messages.queue_position(3), messages.queue_position(2)])
        self.assertEqual(self.updates_for(handles[2])[1], messages.STATUS_SEARCHING)
        self.assertNotIn(messages.queue_position(2), self.updates_for(handles[1]))

    async def test_failed_position_update_does_not_stop_queue(self):
        self.relay.fail_update_texts = {messages.queue_position(2)}
        manager = self.make_manager(max_concurrent=1)
        for i, url in enumerate(self.urls):
            await manager.request_download(i, f'chat{i}', url)
        await manager.wait_until_idle()

        handles = [event[1] for event in self.relay.of_kind('status')]
        self.assertEqual(self.updates_for(handles[3])[0], messages.queue_position(3))
        self.assertEqual(len(self.relay.of_kind('file')), 4)
        self.assertEqual(manager.get_queue_status(), {'queue_length': 0, 'active': 0, 'max_concurrent': 1})

    async def test_concurrency_limit(self):
        manager = self.make_manager(max_concurrent=2)
        peak = 0

        original = self.extractor.extract_video_info

        async def tracking(url):
            nonlocal peak
            peak = max(peak, manager.get_queue_status()['active'])
            return await original(url)

        self.extractor.extract_video_info = tracking
        for i, url in enumerate(self.urls):
            await manager.request_download(i, f'chat{i}', url)

        status = manager.get_queue_status()
        self.assertEqual(status['active'], 2)
        self.assertEqual(status['queue_length'], 2)

        await manager.wait_until_idle()
        self.assertEqual(peak, 2)
        self.assertEqual(len(self.relay.of_kind('file')), 4)
        self.assertEqual(manager.get_queue_status()['active'], 0)

    async def test_close_cancels_running_jobs(self):
        self.extractor.delay = 5
        manager = self.make_manager(max_concurrent=1)
        for i, url in enumerate(self.urls):
            await manager.request_download(i, f'chat{i}', url)
        await asyncio.sleep(0)
        await manager.close()
        self.assertEqual(manager.get_queue_status()['queue_length'], 0)
        self.assertEqual(self.relay.of_kind('file'), [])


if __name__ == '__main__':
    unittest.main()
