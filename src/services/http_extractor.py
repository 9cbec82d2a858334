"""
HttpExtractor - легкий экстрактор без браузера (aiohttp + регулярные выражения)

Быстрее браузера, но ломается при изменении разметки страницы.
"""
import asyncio
import re
from typing import List, Optional, Tuple
from urllib.parse import urlparse

import aiohttp

from src.errors import SourceUnreachableError, ContentRemovedError, NoMediaFoundError
from src.models.extraction_result import ExtractionResult
from src.services.base import (
    BaseExtractor,
    USER_AGENT,
    select_best_url,
    preprocess_url,
    sanitize_title,
    has_not_found_marker,
    build_pass_md5_media_url,
)

_TITLE_RE = re.compile(r'<title>([^<]+)</title>', re.IGNORECASE)

# Прямая ссылка в разметке страницы (по порядку)
DIRECT_PATTERNS = [
    re.compile(r'''dsplayer\.hotkeys\.video_url\s*=\s*["']([^"']+)["']'''),
    re.compile(r'''<source\s+src=["']([^"']+\.mp4[^"']*)["']''', re.IGNORECASE),
    re.compile(r'''video\.src\s*=\s*["']([^"']+\.mp4[^"']*)["']'''),
]

PASS_MD5_PATTERNS = [
    re.compile(r'''(/pass_md5/[^/'"\s]+(?:/[^'"\s]*)?)'''),
    re.compile(r'''\$\.get\s*\(\s*['"]([^'"]*pass_md5[^'"]+)['"]'''),
]

CDN_PATTERNS = [
    re.compile(r'''https?://[a-z0-9.-]+\.(?:com|net|io|xyz)/[a-z0-9/-]+\.mp4[^"'\s]*''', re.IGNORECASE),
    re.compile(r'''https?://[a-z0-9.-]+/xbox-streaming/[^"'\s]+''', re.IGNORECASE),
    re.compile(r'''https?://[a-z0-9.-]+/video/[a-f0-9-]+\.mp4''', re.IGNORECASE),
]


def make_absolute(url: str, base_url: str) -> str:
    if url.startswith('//'):
        return 'https:' + url
    if url.startswith('/'):
        return base_url + url
    return url


class HttpExtractor(BaseExtractor):
    """
    Экстрактор на aiohttp

    Загружает embed-страницу и ищет ссылку регулярными выражениями.
    Всплывающие окна и клики не нужны - браузера нет.
    """

    name = 'http'
    heavy = False

    def __init__(self, timeout: float = 15.0):
        super().__init__()
        self.timeout = timeout

    async def init(self) -> bool:
        self.logger.info("[http] HTTP экстрактор готов")
        return True

    async def _get(self, url: str, referer: str) -> Tuple[int, str, str]:
        """
        GET запрос страницы

        Returns:
            Tuple (статус, текст ответа, итоговый URL после редиректов)
        """
        headers = {
            'User-Agent': USER_AGENT,
            'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8',
            'Accept-Language': 'en-US,en;q=0.5',
            'Referer': referer,
        }
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(url, headers=headers, max_redirects=5) as resp:
                text = await resp.text(errors='replace')
                return resp.status, text, str(resp.url)

    async def extract_video_info(self, url: str) -> ExtractionResult:
        processed_url = preprocess_url(url)
        self.logger.info(f"[http] Извлечение: {processed_url}")

        try:
            status, html, final_url = await self._get(processed_url, referer=url)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise SourceUnreachableError(f"Страница недоступна: {processed_url}: {e}") from e

        if status in (404, 410):
            raise ContentRemovedError(f"Видео удалено (HTTP {status}): {url}")
        if status >= 400:
            raise SourceUnreachableError(f"HTTP {status}: {processed_url}")

        title_match = _TITLE_RE.search(html)
        page_title = title_match.group(1) if title_match else ''
        if has_not_found_marker(html, page_title):
            raise ContentRemovedError(f"Видео удалено: {url}")

        parsed = urlparse(final_url)
        base_url = f"{parsed.scheme}://{parsed.netloc}"
        title = page_title.replace(' - DoodStream', '').replace('Watch', '').strip()

        media_url = await self._try_pass_md5(html, base_url, final_url)
        if media_url:
            self.logger.info("[http] Ссылка получена через pass_md5")
        else:
            candidates = [make_absolute(u, base_url) for u in self.find_candidates(html)]
            media_url = select_best_url(candidates)

        if not media_url:
            raise NoMediaFoundError(f"Ссылка на видео не найдена: {url}")

        self.logger.info(f"[http] ✅ Найдена ссылка: {title or url}")
        return ExtractionResult(
            title=sanitize_title(title),
            media_url=media_url,
            source_url=url,
            extractor=self.name,
        )

    def find_candidates(self, html: str) -> List[str]:
        """Все ссылки-кандидаты из разметки (прямые шаблоны и CDN)"""
        candidates = []
        for pattern in DIRECT_PATTERNS:
            match = pattern.search(html)
            if match:
                candidates.append(match.group(1))
        for pattern in CDN_PATTERNS:
            for match in pattern.findall(html):
                if '.mp4' in match and 'player' not in match:
                    candidates.append(match)
        return candidates

    async def _try_pass_md5(self, html: str, base_url: str, referer: str) -> Optional[str]:
        for pattern in PASS_MD5_PATTERNS:
            match = pattern.search(html)
            if not match:
                continue
            pass_url = make_absolute(match.group(1), base_url)
            self.logger.info(f"[http] Запрос pass_md5: {pass_url}")
            try:
                status, text, _ = await self._get(pass_url, referer=referer)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                self.logger.warning(f"[http] pass_md5 не сработал: {e}")
                continue
            if status < 400:
                media_url = build_pass_md5_media_url(text)
                if media_url:
                    return media_url
        return None
