"""
Тесты для TelegramRelay, StatusTicker и рассылки
"""
import asyncio
import unittest
from unittest.mock import AsyncMock, MagicMock

from aiogram.exceptions import TelegramBadRequest

from fakes import FakeRelay
from src.bot.relay import StatusHandle, TelegramRelay
from src.downloader.status_ticker import StatusTicker
from src.errors import RelayError
from src.services.broadcast_service import broadcast


def bad_request(message: str) -> TelegramBadRequest:
    return TelegramBadRequest(method=MagicMock(), message=message)


class TestTelegramRelay(unittest.IsolatedAsyncioTestCase):
    """Тесты relay поверх мок-бота aiogram"""

    def setUp(self):
        self.bot = MagicMock()
        self.bot.send_message = AsyncMock(return_value=MagicMock(chat=MagicMock(id=42), message_id=7))
        self.bot.edit_message_text = AsyncMock()
        self.bot.send_video = AsyncMock()
        self.relay = TelegramRelay(self.bot)

    async def test_send_status_returns_handle(self):
        handle = await self.relay.send_status(42, "🔍")
        self.assertEqual(handle, StatusHandle(chat_id=42, message_id=7))

    async def test_send_status_failure_returns_none(self):
        self.bot.send_message.side_effect = bad_request("chat not found")
        self.assertIsNone(await self.relay.send_status(42, "🔍"))

    async def test_update_status(self):
        handle = StatusHandle(chat_id=42, message_id=7)
        self.assertTrue(await self.relay.update_status(handle, "готово"))
        kwargs = self.bot.edit_message_text.await_args.kwargs
        self.assertEqual((kwargs['chat_id'], kwargs['message_id'], kwargs['text']), (42, 7, "готово"))
        self.assertIsNone(kwargs['reply_markup'])

        await self.relay.update_status(handle, "ошибка", with_retry=True)
        markup = self.bot.edit_message_text.await_args.kwargs['reply_markup']
        self.assertEqual(markup.inline_keyboard[0][0].callback_data, 'download')

    async def test_update_status_is_best_effort(self):
        self.bot.edit_message_text.side_effect = bad_request("message is not modified")
        self.assertFalse(await self.relay.update_status(StatusHandle(42, 7), "тот же текст"))
        self.assertFalse(await self.relay.update_status(None, "нет статуса"))

    async def test_deliver_file_rejected(self):
        self.bot.send_video.side_effect = bad_request("Request Entity Too Large")
        with self.assertRaises(RelayError) as ctx:
            await self.relay.deliver_file(42, '/tmp/video.mp4', "caption")
        self.assertEqual(ctx.exception.reason, 'relay_failed')

    async def test_deliver_link_has_button(self):
        await self.relay.deliver_link(42, 'https://cdn.net/v.mp4', "ссылка")
        markup = self.bot.send_message.await_args.kwargs['reply_markup']
        self.assertEqual(markup.inline_keyboard[0][0].url, 'https://cdn.net/v.mp4')

    async def test_deliver_link_failure(self):
        self.bot.send_message.side_effect = bad_request("chat not found")
        with self.assertRaises(RelayError):
            await self.relay.deliver_link(42, 'https://cdn.net/v.mp4', "ссылка")


class TestStatusTicker(unittest.IsolatedAsyncioTestCase):

    async def test_cycles_frames_and_stops(self):
        relay = FakeRelay()
        handle = StatusHandle('chat', 1)
        async with StatusTicker(relay, handle, ['a', 'b'], interval=0.01):
            await asyncio.sleep(0.055)
        count = len(relay.events)
        self.assertGreaterEqual(count, 3)
        self.assertEqual([e[2] for e in relay.events[:3]], ['a', 'b', 'a'])

        # После выхода из контекста обновлений больше нет
        await asyncio.sleep(0.03)
        self.assertEqual(len(relay.events), count)

    async def test_stops_on_error(self):
        relay = FakeRelay()
        with self.assertRaises(ValueError):
            async with StatusTicker(relay, StatusHandle('chat', 1), ['a'], interval=0.01) as ticker:
                raise ValueError("boom")
        self.assertIsNone(ticker._task)

    async def test_no_handle_no_task(self):
        ticker = StatusTicker(FakeRelay(), None, ['a'])
        async with ticker:
            self.assertIsNone(ticker._task)


class TestBroadcast(unittest.IsolatedAsyncioTestCase):

    async def test_counts_failures(self):
        relay = MagicMock()
        relay.send_message = AsyncMock(side_effect=[None, bad_request("bot was blocked by the user"), None])
        result = await broadcast(relay, ['1', '2', '3'], "новости", delay=0)
        self.assertEqual((result.sent, result.failed), (2, 1))
        self.assertEqual(relay.send_message.await_count, 3)


if __name__ == '__main__':
    unittest.main()
