"""
Тесты для поиска ссылок и LinkProcessingService
"""
import unittest
from unittest.mock import AsyncMock, patch

from aiohttp import web
from aiohttp.test_utils import TestServer

from src.services.link_processing_service import LinkProcessingService
from src.utils.utils import extract_urls, format_file_size, get_origin, is_supported_url


class TestUrlUtils(unittest.TestCase):

    def test_extract_urls_with_and_without_scheme(self):
        text = "смотри https://dood.la/e/abc123 и dood.wf/d/xyz789 потом https://dood.la/e/abc123 еще раз"
        self.assertEqual(extract_urls(text), ['https://dood.la/e/abc123', 'https://dood.wf/d/xyz789'])

    def test_extract_urls_empty(self):
        self.assertEqual(extract_urls(''), [])
        self.assertEqual(extract_urls('просто текст без ссылок'), [])

    def test_email_is_not_a_link(self):
        self.assertEqual(extract_urls('пиши на admin@mail.com'), [])

    def test_supported_hosts(self):
        self.assertTrue(is_supported_url('https://dood.la/e/abc123'))
        self.assertTrue(is_supported_url('https://d0000d.com/d/abc'))
        self.assertTrue(is_supported_url('https://filemoon.sx/e/abc'))
        # Неизвестный хост, но путь похож на видео
        self.assertTrue(is_supported_url('https://example.com/e/abc123'))

    def test_unsupported(self):
        self.assertFalse(is_supported_url('https://example.com/watch'))
        self.assertFalse(is_supported_url('ftp://dood.la/e/abc'))
        self.assertFalse(is_supported_url('не ссылка'))
        self.assertFalse(is_supported_url(''))

    def test_album_rejected(self):
        self.assertFalse(is_supported_url('https://dood.la/a/abc123'))

    def test_format_file_size(self):
        self.assertEqual(format_file_size(0), '0 B')
        self.assertEqual(format_file_size(512), '512 B')
        self.assertEqual(format_file_size(1536), '1.50 KB')
        self.assertEqual(format_file_size(5 * 1024 * 1024), '5.00 MB')

    def test_get_origin(self):
        self.assertEqual(get_origin('https://dood.la/e/abc?x=1'), 'https://dood.la')


class TestLinkProcessingService(unittest.IsolatedAsyncioTestCase):
    """Тесты подготовки ссылок"""

    def setUp(self):
        self.service = LinkProcessingService(timeout=5)

    def test_direct_media_link(self):
        url = 'https://cdn.example.com/files/My%20Clip.mp4?sig=1'
        self.assertTrue(self.service.is_direct_media_link(url))
        self.assertEqual(self.service.filename_from_url(url), 'My Clip.mp4')
        self.assertTrue(self.service.is_direct_media_link('https://cdn.example.com/live/index.M3U8'))

    def test_fake_direct_host(self):
        self.assertFalse(self.service.is_direct_media_link('https://cdn-vid.net/abc.mp4'))

    def test_page_is_not_direct(self):
        self.assertFalse(self.service.is_direct_media_link('https://dood.la/e/abc123'))

    def test_redirect_wrappers(self):
        self.assertTrue(self.service.is_redirect_wrapper('https://bit.ly/3abc'))
        self.assertTrue(self.service.is_redirect_wrapper('https://www.tinyurl.com/abc'))
        self.assertFalse(self.service.is_redirect_wrapper('https://notbit.ly/abc'))
        self.assertTrue(self.service.is_supported_url('https://bit.ly/3abc'))
        self.assertFalse(is_supported_url('https://bit.ly/3abc'))

    async def test_prepare_page(self):
        link = await self.service.prepare('https://dood.la/e/abc123')
        self.assertEqual(link.url, 'https://dood.la/e/abc123')
        self.assertFalse(link.is_direct)

    async def test_prepare_resolves_wrapper(self):
        resolve = AsyncMock(return_value='https://cdn.example.com/v/clip.mp4')
        with patch.object(self.service, 'resolve_redirect', resolve):
            link = await self.service.prepare('https://bit.ly/3abc')
        resolve.assert_awaited_once_with('https://bit.ly/3abc')
        self.assertTrue(link.is_direct)
        self.assertEqual(link.filename, 'clip.mp4')

    async def test_prepare_does_not_resolve_regular_links(self):
        resolve = AsyncMock()
        with patch.object(self.service, 'resolve_redirect', resolve):
            await self.service.prepare('https://dood.la/e/abc123')
        resolve.assert_not_awaited()


class TestResolveRedirect(unittest.IsolatedAsyncioTestCase):
    """Разворачивание редиректов на локальном сервере"""

    async def asyncSetUp(self):
        async def short(request):
            raise web.HTTPFound('/final')

        async def final(request):
            return web.Response(text='ok')

        async def missing(request):
            return web.Response(status=404)

        app = web.Application()
        app.router.add_get('/short', short)
        app.router.add_get('/final', final)
        app.router.add_get('/missing', missing)
        self.server = TestServer(app)
        await self.server.start_server()
        self.service = LinkProcessingService(timeout=5)

    async def asyncTearDown(self):
        await self.server.close()

    async def test_follows_redirect(self):
        resolved = await self.service.resolve_redirect(str(self.server.make_url('/short')))
        self.assertEqual(resolved, str(self.server.make_url('/final')))

    async def test_error_status_returns_original(self):
        url = str(self.server.make_url('/missing'))
        self.assertEqual(await self.service.resolve_redirect(url), url)


if __name__ == '__main__':
    unittest.main()
