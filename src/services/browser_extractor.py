"""
BrowserExtractor - извлечение ссылки через headless Chromium (Playwright)

Основной экстрактор: открывает embed-страницу, перехватывает запросы
плеера и выбирает ссылку на видео по общей политике (select_best_url).
"""
import asyncio
import re
from typing import List, Optional
from urllib.parse import urlparse

from playwright.async_api import async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from src.errors import SourceUnreachableError, ContentRemovedError, NoMediaFoundError
from src.models.extraction_result import ExtractionResult
from src.services.base import (
    BaseExtractor,
    USER_AGENT,
    is_candidate_url,
    select_best_url,
    preprocess_url,
    sanitize_title,
    has_not_found_marker,
    find_pass_md5_path,
    build_pass_md5_media_url,
)

LAUNCH_ARGS = [
    '--no-sandbox',
    '--disable-setuid-sandbox',
    '--disable-dev-shm-usage',
    '--disable-gpu',
    '--window-size=1920x1080',
    '--disable-blink-features=AutomationControlled',
]

STEALTH_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', {get: () => false});
Object.defineProperty(navigator, 'plugins', {get: () => [1, 2, 3, 4, 5]});
Object.defineProperty(navigator, 'languages', {get: () => ['en-US', 'en']});
"""

PLAY_SELECTORS = '.plyr__control--overlaid, .play-btn, [data-plyr="play"], .vjs-big-play-button, .vjs-play-control'

DOWNLOAD_LINK_SELECTORS = [
    'a.btn-success[href*="download"]',
    'a[href*="get_file"]',
    'a.download-btn',
    '.download_box a',
    '#download_link',
]

# Ссылки, спрятанные в скриптах плеера
SCRIPT_PATTERNS = [
    re.compile(r'''source:\s*['"]([^'"]+\.mp4[^'"]*)['"]'''),
    re.compile(r'''file:\s*['"]([^'"]+\.mp4[^'"]*)['"]'''),
    re.compile(r'''src:\s*['"]([^'"]+\.mp4[^'"]*)['"]'''),
    re.compile(r'''"videoUrl":\s*['"]([^'"]+)['"]'''),
    re.compile(r'''https://[^\s"']+cloudatacdn\.com[^\s"']*'''),
    re.compile(r'''https://[^\s"']+\.mp4[^\s"']*'''),
]

JS_VIDEO_SRC = """() => {
    const video = document.querySelector('video');
    if (video && video.src && video.src.startsWith('http')) return video.src;
    const vjs = document.querySelector('#video_player_html5_api');
    if (vjs && vjs.src && vjs.src.startsWith('http')) return vjs.src;
    return null;
}"""

JS_HAS_VIDEO_SRC = """() => {
    const video = document.querySelector('video');
    return !!(video && video.src && video.src.startsWith('http'));
}"""

JS_PAGE_STATE = """() => ({
    text: document.body ? document.body.innerText : '',
    title: document.title || ''
})"""

JS_TITLE = """() => {
    const el = document.querySelector('h4.h4, .title, h1');
    return el ? el.textContent.trim() : document.title;
}"""

JS_THUMBNAIL = """() => {
    const video = document.querySelector('video');
    const og = document.querySelector('meta[property="og:image"]');
    return (video && video.poster) || (og && og.content) || null;
}"""

JS_DOWNLOAD_LINK = """(selectors) => {
    for (const selector of selectors) {
        const el = document.querySelector(selector);
        if (el && el.href) return el.href;
    }
    if (document.querySelector('#btn_download, .countdown')) return 'WAIT_FOR_COUNTDOWN';
    return null;
}"""


def _is_blank(url: str) -> bool:
    return not url or url == 'about:blank'


def find_script_urls(html: str) -> List[str]:
    """Первая ссылка по каждому шаблону в html страницы"""
    found = []
    for pattern in SCRIPT_PATTERNS:
        match = pattern.search(html or '')
        if match:
            found.append(match.group(1) if match.groups() else match.group(0))
    return found


class BrowserExtractor(BaseExtractor):
    """
    Экстрактор на Playwright

    Один браузер на процесс (запускается лениво), на каждое извлечение -
    своя страница, которая закрывается на любом пути выхода.
    """

    name = 'browser'
    heavy = True

    def __init__(self, headless: bool = True, navigation_timeout: float = 30.0):
        super().__init__()
        self.headless = headless
        self.navigation_timeout_ms = int(navigation_timeout * 1000)
        self._playwright = None
        self._browser = None
        self._context = None
        self._start_lock = asyncio.Lock()

        # Паузы между шагами (секунды)
        self.settle_delay = 2.0
        self.popup_retry_delay = 1.5
        self.popup_retries = 3
        self.click_delay = 1.5
        self.video_src_timeout_ms = 15000
        self.countdown_delay = 10.0

    async def init(self) -> bool:
        """Запустить браузер, если он еще не запущен"""
        async with self._start_lock:
            if self._context is not None:
                return True
            self.logger.info("[browser] Запуск Chromium...")
            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(headless=self.headless, args=LAUNCH_ARGS)
            self._context = await self._browser.new_context(
                user_agent=USER_AGENT,
                viewport={'width': 1920, 'height': 1080},
            )
            await self._context.add_init_script(STEALTH_SCRIPT)
            self.logger.info("[browser] ✅ Chromium запущен")
        return True

    async def close(self):
        """Закрыть браузер"""
        if self._context is not None:
            await self._context.close()
            self._context = None
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
        self.logger.info("[browser] Chromium остановлен")

    async def extract_video_info(self, url: str) -> ExtractionResult:
        await self.init()

        captured: List[str] = []
        # Всплывающие окна, открытые только нашими страницами
        popups = []
        state = {'page': await self._context.new_page(), 'done': False}

        def on_request(request):
            if is_candidate_url(request.url):
                captured.append(request.url)

        def on_response(response):
            content_type = response.headers.get('content-type', '')
            if 'video' in content_type or is_candidate_url(response.url):
                captured.append(response.url)

        async def on_popup(new_page):
            if state['done']:
                return
            popups.append(new_page)
            # Пока главная страница пустая, всплывающее окно может оказаться нужной страницей
            if _is_blank(state['page'].url):
                return
            self.logger.debug("[browser] Закрываю всплывающее окно")
            await self._close_quietly(new_page)

        def attach(page):
            page.on('request', on_request)
            page.on('response', on_response)
            page.on('popup', on_popup)

        def detach(page):
            page.remove_listener('request', on_request)
            page.remove_listener('response', on_response)
            page.remove_listener('popup', on_popup)

        attach(state['page'])

        try:
            target_url = preprocess_url(url, strip_query=False)
            if target_url != url:
                self.logger.info(f"[browser] Ссылка приведена к embed-форме: {target_url}")

            page = state['page']
            self.logger.info(f"[browser] Открываю: {target_url}")
            try:
                await page.goto(target_url, wait_until='networkidle', timeout=self.navigation_timeout_ms)
            except PlaywrightTimeoutError as e:
                raise SourceUnreachableError(f"Таймаут загрузки страницы: {target_url}") from e
            except PlaywrightError as e:
                raise SourceUnreachableError(f"Страница недоступна: {e}") from e

            await asyncio.sleep(self.settle_delay)

            if _is_blank(page.url):
                adopted = await self._adopt_popup(page, popups)
                if adopted is not None:
                    detach(page)
                    await self._close_quietly(page)
                    state['page'] = page = adopted
                    attach(page)
                    await asyncio.sleep(self.settle_delay)

            try:
                page_state = await page.evaluate(JS_PAGE_STATE)
            except PlaywrightError as e:
                raise SourceUnreachableError(f"Страница недоступна: {e}") from e
            if has_not_found_marker(page_state.get('text', ''), page_state.get('title', '')):
                raise ContentRemovedError(f"Видео удалено: {url}")

            title = await self._evaluate_quietly(page, JS_TITLE)
            thumbnail = await self._evaluate_quietly(page, JS_THUMBNAIL)

            media_url = await self._try_pass_md5(page)
            if media_url:
                self.logger.info("[browser] Ссылка получена через pass_md5")
            else:
                media_url = await self._probe_player(page, captured)

            if not media_url:
                media_url = await self._try_download_page(page, target_url)

            if not media_url:
                raise NoMediaFoundError(f"Ссылка на видео не найдена: {url}")

            self.logger.info(f"[browser] ✅ Найдена ссылка: {media_url[:100]}")
            return ExtractionResult(
                title=sanitize_title(title),
                media_url=media_url,
                thumbnail=thumbnail,
                source_url=url,
                extractor=self.name,
            )
        finally:
            state['done'] = True
            detach(state['page'])
            await self._close_quietly(state['page'])
            for popup in popups:
                await self._close_quietly(popup)

    async def _adopt_popup(self, page, popups):
        """
        Главная страница пустая - ищем самую новую непустую вкладку

        Returns:
            Страница для работы или None
        """
        self.logger.info("[browser] Страница пустая, ищу всплывающие вкладки...")
        for attempt in range(1, self.popup_retries + 1):
            await asyncio.sleep(self.popup_retry_delay)
            candidates = [
                p for p in popups
                if p is not page
                and not p.is_closed()
                and not _is_blank(p.url)
                and not p.url.startswith('chrome')
            ]
            self.logger.info(f"[browser] Попытка {attempt}: найдено вкладок {len(candidates)}")
            if candidates:
                adopted = candidates[-1]
                popups.remove(adopted)
                self.logger.info(f"[browser] Переключаюсь на вкладку: {adopted.url}")
                return adopted
        self.logger.warning("[browser] Вкладка с видео не найдена")
        return None

    async def _try_pass_md5(self, page) -> Optional[str]:
        """Быстрый путь: запросить /pass_md5/ со страницы и собрать ссылку"""
        try:
            html = await page.content()
            path = find_pass_md5_path(html)
            if not path:
                return None
            parsed = urlparse(page.url)
            pass_url = f"{parsed.scheme}://{parsed.netloc}{path}"
            self.logger.info(f"[browser] Запрос pass_md5: {pass_url}")
            response = await page.request.get(pass_url, headers={'Referer': page.url})
            if not response.ok:
                return None
            return build_pass_md5_media_url(await response.text())
        except PlaywrightError as e:
            self.logger.warning(f"[browser] pass_md5 не сработал: {e}")
            return None

    async def _probe_player(self, page, captured: List[str]) -> Optional[str]:
        """Клики по плееру, ожидание <video src> и разбор скриптов"""
        for attempt in range(1, 4):
            try:
                self.logger.info(f"[browser] Клик {attempt}/3 по плееру...")
                await page.mouse.click(960, 400)
                await asyncio.sleep(self.click_delay)
                if await page.evaluate(JS_HAS_VIDEO_SRC):
                    break
                play_button = await page.query_selector(PLAY_SELECTORS)
                if play_button:
                    await play_button.click()
                    await asyncio.sleep(1.0)
            except PlaywrightError as e:
                self.logger.debug(f"[browser] Клик {attempt} не удался: {e}")

        try:
            await page.wait_for_function(JS_HAS_VIDEO_SRC, timeout=self.video_src_timeout_ms)
        except PlaywrightTimeoutError:
            self.logger.info("[browser] Не дождались src у <video>, пробую другие способы")

        video_src = await self._evaluate_quietly(page, JS_VIDEO_SRC)
        if video_src:
            captured.append(video_src)

        try:
            captured.extend(find_script_urls(await page.content()))
        except PlaywrightError as e:
            self.logger.debug(f"[browser] Не удалось прочитать html: {e}")

        await asyncio.sleep(self.settle_delay)
        return select_best_url(captured)

    async def _try_download_page(self, page, target_url: str) -> Optional[str]:
        """Запасной путь: страница скачивания /d/ с кнопкой download"""
        download_url = target_url.replace('/e/', '/d/', 1)
        try:
            if download_url != target_url:
                await page.goto(download_url, wait_until='networkidle', timeout=self.navigation_timeout_ms)
                await asyncio.sleep(self.settle_delay)

            link = await page.evaluate(JS_DOWNLOAD_LINK, DOWNLOAD_LINK_SELECTORS)
            if link == 'WAIT_FOR_COUNTDOWN':
                self.logger.info("[browser] Жду обратный отсчет...")
                await asyncio.sleep(self.countdown_delay)
                link = await page.evaluate(JS_DOWNLOAD_LINK, DOWNLOAD_LINK_SELECTORS[:2])
                if link == 'WAIT_FOR_COUNTDOWN':
                    link = None
            return link
        except PlaywrightError as e:
            self.logger.info(f"[browser] Запасной путь не сработал: {e}")
            return None

    async def _evaluate_quietly(self, page, script: str):
        try:
            return await page.evaluate(script)
        except PlaywrightError as e:
            self.logger.debug(f"[browser] evaluate не удался: {e}")
            return None

    async def _close_quietly(self, page):
        if page is None or page.is_closed():
            return
        try:
            await page.close()
        except PlaywrightError as e:
            self.logger.debug(f"[browser] Страница уже закрыта: {e}")
